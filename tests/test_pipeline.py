from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from lodpatch.errors import ConfigurationError, VerificationFailure
from lodpatch.pipeline import Pipeline, write_report
from lodpatch.rules import PatchRuleSet, SuppressCallRule, ToleranceRule, default_rule_set
from lodpatch.tools.build import BuildArtifact


def _artifact(**fields) -> BuildArtifact:
    values = {"library_name": "SFCGAL", "version": "1.5.2", "patch_fingerprint": "abc"}
    values.update(fields)
    return BuildArtifact(**values)


def test_pipeline_builds_only_after_verification(sfcgal_tree) -> None:
    orchestrator = MagicMock()
    orchestrator.build.return_value = _artifact()
    pipeline = Pipeline(default_rule_set(), orchestrator=orchestrator)

    report = pipeline.run(sfcgal_tree.root)

    assert report.ok
    assert report.artifact is orchestrator.build.return_value
    orchestrator.build.assert_called_once()
    _, verdict = orchestrator.build.call_args.args
    assert verdict.passed
    assert orchestrator.build.call_args.kwargs["fingerprint"] == report.fingerprint


def test_pipeline_halts_before_build_on_failed_verification(sfcgal_tree) -> None:
    target = "src/algorithm/isValid.cpp"
    sfcgal_tree.write(target, "bool ok = CHECK(x) || CHECK(y);\n")
    rule_set = PatchRuleSet(
        rules=(
            ToleranceRule(id="tolerance-isvalid", scope="src/algorithm/isValid.h", matcher="1e-9", replacement="1e-2"),
            SuppressCallRule(id="check", scope=target, matcher="CHECK"),
        ),
        must_fully_patch=(target,),
    )
    orchestrator = MagicMock()

    with pytest.raises(VerificationFailure) as excinfo:
        Pipeline(rule_set, orchestrator=orchestrator).run(sfcgal_tree.root)

    orchestrator.build.assert_not_called()
    error = excinfo.value
    assert error.exit_code == 4
    assert error.verdict.failures
    # The positive check for the suppression rule and both residual calls are all listed.
    assert len(error.diagnostics()) == 3


def test_pipeline_without_build_stops_after_fingerprint(sfcgal_tree) -> None:
    orchestrator = MagicMock()

    report = Pipeline(default_rule_set(), orchestrator=orchestrator).run(sfcgal_tree.root, build=False)

    orchestrator.build.assert_not_called()
    assert report.fingerprint
    assert report.artifact is None


def test_pipeline_rejects_missing_tree(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        Pipeline(default_rule_set()).run(tmp_path / "missing", build=False)


def test_pipeline_from_config_uses_rule_file(tmp_path) -> None:
    rule_file = tmp_path / "rules.yaml"
    rule_file.write_text(
        "rules:\n"
        "  - kind: tolerance\n"
        "    id: eps\n"
        "    scope: [src/a.h]\n"
        "    matcher: '1e-9'\n"
        "    replacement: '1e-3'\n",
        encoding="utf-8",
    )
    config = {"patch": {"rules_file": "rules.yaml", "workers": 2}}

    pipeline = Pipeline.from_config(config, config_path=tmp_path / "lodpatch.yaml", dry_run=True)

    assert pipeline.rule_set.rule_ids == ("eps",)
    assert pipeline.engine.workers == 2
    assert pipeline.orchestrator.dry_run is True


def test_write_report_persists_json(sfcgal_tree, tmp_path) -> None:
    report = Pipeline(default_rule_set()).run(sfcgal_tree.root, build=False)

    path = write_report(report, tmp_path / "runs")

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert path.name.endswith(f"__{report.fingerprint[:12]}.json")
    assert payload["fingerprint"] == report.fingerprint
    assert payload["verdict"]["passed"] is True
    assert {result["rule_id"] for result in payload["results"]} == set(default_rule_set().rule_ids)
    assert Path(payload["tree_root"]) == sfcgal_tree.root.resolve()
