"""CLI commands for patching, verifying and building the geometry library."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import typer
import yaml

from .config import (
    DEFAULT_CONFIG_NAME,
    configure_logging,
    copy_config_template,
    load_config,
    resolve_reports_dir,
    resolve_rules_file,
    resolve_tree_root,
    write_config,
)
from .errors import PipelineError, VerificationFailure
from .pipeline import Pipeline, PipelineReport, fetch_source, write_report
from .rules.catalog import describe_rule_set, dump_rule_set, load_rule_set
from .tools.engine import PatchApplicationResult, PatchEngine
from .tools.verifier import PatchVerifier, VerificationVerdict

APP_HELP = "Patch SFCGAL validity checks for LOD2 geometry, verify the patch, then build."

T = TypeVar("T")

app = typer.Typer(help=APP_HELP)

_STATE: Dict[str, Any] = {"log_level": None}


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Override logging.level from the configuration (DEBUG, INFO, WARNING, ...).",
    ),
) -> None:
    """Shared options."""
    _STATE["log_level"] = log_level


def _open_config(config: str) -> tuple[Dict[str, Any], Path]:
    """Load the configuration file or fail with a CLI error."""
    config_path = Path(config).resolve()
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")
    try:
        data = load_config(config_path)
    except PipelineError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=1) from error
    configure_logging(data, _STATE.get("log_level"))
    return data, config_path


def _fail(error: PipelineError) -> typer.Exit:
    typer.echo(f"[{error.stage}] {error}", err=True)
    for line in error.diagnostics():
        typer.echo(f"  - {line}", err=True)
    return typer.Exit(code=error.exit_code)


def _stage(action: Callable[[], T]) -> T:
    """Run ``action`` and translate pipeline errors into stage-coded exits."""
    try:
        return action()
    except PipelineError as error:
        raise _fail(error) from error


def _tree_root(config: Dict[str, Any], config_path: Path, tree: Optional[Path]) -> Path:
    if tree is not None:
        return tree.resolve()
    return _stage(lambda: resolve_tree_root(config, config_path))


def _render_results(results: Sequence[PatchApplicationResult]) -> None:
    typer.echo("Patch results:")
    for result in results:
        typer.echo(
            f"- {result.rule_id}: {result.status} "
            f"({result.occurrences_replaced} replacement(s) in {len(result.files_touched)} file(s))"
        )
        if result.missing_paths:
            typer.echo(f"    not present: {', '.join(result.missing_paths)}")


def _render_verdict(verdict: VerificationVerdict) -> None:
    typer.echo(verdict.format_summary())


def _render_report(report: PipelineReport) -> None:
    _render_results(report.results)
    if report.verdict is not None:
        _render_verdict(report.verdict)
    if report.fingerprint:
        typer.echo(f"Patch fingerprint: {report.fingerprint}")
    if report.artifact is not None:
        artifact = report.artifact
        label = " (dry run)" if artifact.dry_run else ""
        typer.echo(f"Built {artifact.library_name} {artifact.version}{label}")
        for path in artifact.installed_paths:
            typer.echo(f"- {path.as_posix()}")
        for link in artifact.links:
            typer.echo(f"- link {link.as_posix()}")


CONFIG_OPTION_HELP = "Path to the pipeline configuration file."


@app.command()
def init(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write the default configuration file."""
    config_path = Path(config).resolve()
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path, copy_config_template())
    typer.echo(f"Wrote configuration to {config_path}.")


@app.command()
def rules(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    rules_file: Optional[Path] = typer.Option(None, "--rules", help="Rule file overriding the configuration."),
    dump: bool = typer.Option(False, "--dump", help="Print the rule set as YAML instead of a summary."),
) -> None:
    """Describe the active rule set."""
    source = rules_file
    if source is None and Path(config).exists():
        data, config_path = _open_config(config)
        source = resolve_rules_file(data, config_path)
    rule_set = _stage(lambda: load_rule_set(source))
    if dump:
        typer.echo(yaml.safe_dump(dump_rule_set(rule_set), sort_keys=False))
    else:
        typer.echo(describe_rule_set(rule_set))


@app.command()
def fetch(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    tree: Optional[Path] = typer.Option(None, "--tree", help="Destination overriding source.root."),
) -> None:
    """Clone the upstream library source into the configured tree root."""
    data, config_path = _open_config(config)
    tree_root = _tree_root(data, config_path, tree)
    revision = _stage(lambda: fetch_source(data, tree_root))
    typer.echo(f"Fetched {revision or 'source'} into {tree_root}.")


@app.command()
def apply(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    tree: Optional[Path] = typer.Option(None, "--tree", help="Source tree overriding source.root."),
    rules_file: Optional[Path] = typer.Option(None, "--rules", help="Rule file overriding the configuration."),
) -> None:
    """Apply the rule set to the source tree without verifying or building."""
    data, config_path = _open_config(config)
    tree_root = _tree_root(data, config_path, tree)
    if not tree_root.is_dir():
        raise typer.BadParameter(f"Source tree not found: {tree_root}")
    rule_set = _stage(lambda: load_rule_set(rules_file or resolve_rules_file(data, config_path)))
    engine = PatchEngine.from_config(data)
    results: List[PatchApplicationResult] = _stage(lambda: engine.apply(tree_root, rule_set))
    _render_results(results)


@app.command()
def verify(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    tree: Optional[Path] = typer.Option(None, "--tree", help="Source tree overriding source.root."),
    rules_file: Optional[Path] = typer.Option(None, "--rules", help="Rule file overriding the configuration."),
) -> None:
    """Verify an already patched source tree."""
    data, config_path = _open_config(config)
    tree_root = _tree_root(data, config_path, tree)
    if not tree_root.is_dir():
        raise typer.BadParameter(f"Source tree not found: {tree_root}")
    rule_set = _stage(lambda: load_rule_set(rules_file or resolve_rules_file(data, config_path)))
    verdict = PatchVerifier().verify(tree_root, rule_set)
    _render_verdict(verdict)
    if not verdict.passed:
        raise _fail(VerificationFailure(verdict))


@app.command()
def run(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    tree: Optional[Path] = typer.Option(None, "--tree", help="Source tree overriding source.root."),
    rules_file: Optional[Path] = typer.Option(None, "--rules", help="Rule file overriding the configuration."),
    build: bool = typer.Option(True, "--build/--no-build", help="Build and install after verification."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log build commands instead of running them."),
    report: bool = typer.Option(True, "--report/--no-report", help="Write a JSON run report."),
) -> None:
    """Run the full patch -> verify -> build pipeline."""
    data, config_path = _open_config(config)
    tree_root = _tree_root(data, config_path, tree)
    pipeline = _stage(
        lambda: Pipeline.from_config(data, config_path=config_path, rules_file=rules_file, dry_run=dry_run)
    )
    outcome = _stage(lambda: pipeline.run(tree_root, build=build))
    _render_report(outcome)
    if report:
        report_path = write_report(outcome, resolve_reports_dir(data, config_path))
        typer.echo(f"Report: {report_path.as_posix()}")


if __name__ == "__main__":
    app()
