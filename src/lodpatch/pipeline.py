"""Sequential patch -> verify -> build pipeline.

Stages run strictly one after another over a single :class:`SourceTree`
handle.  The pipeline fails closed: a failed verdict raises
:class:`VerificationFailure` before the build orchestrator is touched, because
building an incompletely patched tree silently reinstates the stock validity
behaviour.  A run interrupted half way leaves the tree re-patchable, so the
recovery path is always to run the pipeline again from the top.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping

from .config import resolve_rules_file
from .errors import ConfigurationError, VerificationFailure
from .rules.catalog import load_rule_set
from .rules.schema import PatchRuleSet
from .tools.build import BuildArtifact, BuildOrchestrator, patch_fingerprint
from .tools.engine import PatchApplicationResult, PatchEngine
from .tools.vcs import GitError, GitRepository
from .tools.verifier import PatchVerifier, VerificationVerdict
from .tools.workspace import SourceTree

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PipelineReport:
    """Everything a pipeline run produced, stage by stage."""

    tree_root: Path
    results: List[PatchApplicationResult] = field(default_factory=list)
    verdict: VerificationVerdict | None = None
    fingerprint: str | None = None
    artifact: BuildArtifact | None = None

    @property
    def ok(self) -> bool:
        return self.verdict is not None and self.verdict.passed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tree_root": self.tree_root.as_posix(),
            "results": [result.to_dict() for result in self.results],
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "fingerprint": self.fingerprint,
            "artifact": self.artifact.to_dict() if self.artifact else None,
        }


class Pipeline:
    """Compose rule set, engine, verifier and orchestrator into one run."""

    def __init__(
        self,
        rule_set: PatchRuleSet,
        *,
        engine: PatchEngine | None = None,
        verifier: PatchVerifier | None = None,
        orchestrator: BuildOrchestrator | None = None,
    ) -> None:
        self.rule_set = rule_set
        self.engine = engine or PatchEngine()
        self.verifier = verifier or PatchVerifier()
        self.orchestrator = orchestrator

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        config_path: Path,
        rules_file: Path | None = None,
        dry_run: bool = False,
    ) -> "Pipeline":
        rule_set = load_rule_set(rules_file or resolve_rules_file(config, config_path))
        return cls(
            rule_set,
            engine=PatchEngine.from_config(config),
            orchestrator=BuildOrchestrator.from_config(
                config, base_dir=config_path.parent, dry_run=dry_run
            ),
        )

    def run(self, tree_root: Path | str, *, build: bool = True) -> PipelineReport:
        """Patch, verify and (optionally) build; raise on the first failing stage."""

        try:
            tree = SourceTree.open(tree_root)
        except FileNotFoundError as error:
            raise ConfigurationError(str(error)) from error

        report = PipelineReport(tree_root=tree.root)
        LOGGER.info(
            "Applying %d rule(s) to %s (tree access: %s)",
            len(self.rule_set.rules),
            tree.root,
            self.engine.tree_access,
        )
        report.results = self.engine.apply(tree, self.rule_set)

        report.verdict = self.verifier.verify(tree, self.rule_set, report.results)
        if not report.verdict.passed:
            LOGGER.error(report.verdict.format_summary())
            raise VerificationFailure(report.verdict)
        report.fingerprint = patch_fingerprint(self.rule_set, report.results)
        LOGGER.info("Verification passed (fingerprint %s)", report.fingerprint[:12])

        if build:
            if self.orchestrator is None:
                raise ConfigurationError("No build orchestrator configured")
            LOGGER.info("Building from %s (tree access: %s)", tree.root, self.orchestrator.tree_access)
            report.artifact = self.orchestrator.build(tree, report.verdict, fingerprint=report.fingerprint)
        return report


def fetch_source(config: Mapping[str, Any], tree_root: Path) -> str | None:
    """Clone the configured upstream repository into ``tree_root``."""

    source = config.get("source") or {}
    url = source.get("repository") if isinstance(source, Mapping) else None
    if not url:
        raise ConfigurationError("source.repository is not configured")
    refs = [str(ref) for ref in (source.get("refs") or ())]
    try:
        repo = GitRepository.clone(str(url), tree_root, refs=refs)
    except GitError as error:
        raise ConfigurationError(f"Unable to fetch source: {error}") from error
    return repo.describe()


def write_report(report: PipelineReport, reports_dir: Path) -> Path:
    """Persist ``report`` as JSON and return its path."""

    reports_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    suffix = (report.fingerprint or "unverified")[:12]
    report_path = reports_dir / f"{timestamp}__{suffix}.json"
    with report_path.open("w", encoding="utf-8") as handle:
        json.dump(report.to_dict(), handle, indent=2, sort_keys=True)
    return report_path


__all__ = ["Pipeline", "PipelineReport", "fetch_source", "write_report"]
