"""Post-application verification of a patched source tree.

Two checks run on every verification and both are mandatory:

positive
    Each rule's own marker (its rendered replacement, which names the rule)
    is present where the rule was expected to act. Every touched file carries
    at least as many markers as replacements were recorded, and every
    checkpoint file holds its marker.

negative
    The rule scopes are scanned for remaining occurrences of the original
    pattern, and the rule set's sentinels for pattern families no rule covers.
    Comments are ignored. Residuals are informational unless they sit in a
    file declared ``must_fully_patch``, in which case they block the build.

The verdict enumerates every violation rather than stopping at the first.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Mapping, Sequence, Tuple

from .engine import PatchApplicationResult, emit_event
from .workspace import SourceTree, TreeAccess
from ..rules.schema import PatchRuleSet, mask_comments

CheckName = Literal["positive", "negative", "checkpoint"]

_CONTEXT_WIDTH = 160


@dataclass(frozen=True, slots=True)
class Finding:
    """Single verification observation, fatal or informational."""

    check: CheckName
    rule_id: str | None
    message: str
    path: str | None = None
    line: int | None = None

    def render(self) -> str:
        location = self.path or "(scope)"
        if self.line is not None:
            location = f"{location}:{self.line}"
        label = self.rule_id or "-"
        return f"{self.check} :: {label} :: {location} :: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check": self.check,
            "rule_id": self.rule_id,
            "message": self.message,
            "path": self.path,
            "line": self.line,
        }


@dataclass(frozen=True, slots=True)
class Occurrence:
    """Remaining unpatched occurrence of an original pattern."""

    path: str
    line: int
    context: str
    blocking: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "line": self.line, "context": self.context, "blocking": self.blocking}


@dataclass(frozen=True, slots=True)
class VerificationVerdict:
    """Terminal artifact of :class:`PatchVerifier`."""

    passed: bool
    tree_root: Path
    unpatched_occurrences: Mapping[str, Tuple[Occurrence, ...]] = field(default_factory=dict)
    missing_expected_markers: Tuple[str, ...] = ()
    failures: Tuple[Finding, ...] = ()
    notices: Tuple[Finding, ...] = ()

    def format_summary(self) -> str:
        """Return a human readable summary of the verdict."""

        lines: List[str] = [f"Verification {'passed' if self.passed else 'FAILED'} for {self.tree_root}"]
        if self.failures:
            lines.append("Violations:")
            lines.extend(f"- {finding.render()}" for finding in self.failures)
        if self.missing_expected_markers:
            lines.append("Missing expected markers: " + ", ".join(self.missing_expected_markers))
        if self.notices:
            lines.append("Notices:")
            lines.extend(f"- {finding.render()}" for finding in self.notices)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "tree_root": self.tree_root.as_posix(),
            "unpatched_occurrences": {
                key: [item.to_dict() for item in value] for key, value in self.unpatched_occurrences.items()
            },
            "missing_expected_markers": list(self.missing_expected_markers),
            "failures": [finding.to_dict() for finding in self.failures],
            "notices": [finding.to_dict() for finding in self.notices],
        }


class _Inspection:
    """Read-only view of the tree with a per-verification text cache."""

    def __init__(self, tree: SourceTree) -> None:
        self.tree = tree
        self._texts: Dict[str, str] = {}
        self._masked: Dict[str, str] = {}

    def text(self, path: str) -> str:
        if path not in self._texts:
            self._texts[path] = self.tree.read_text(path)
        return self._texts[path]

    def code(self, path: str) -> str:
        """Return the file text with comments blanked out."""
        if path not in self._masked:
            self._masked[path] = mask_comments(self.text(path))
        return self._masked[path]


def _line_of(text: str, offset: int) -> tuple[int, str]:
    line = text.count("\n", 0, offset) + 1
    start = text.rfind("\n", 0, offset) + 1
    end = text.find("\n", offset)
    snippet = text[start : end if end != -1 else len(text)].strip()
    return line, snippet[:_CONTEXT_WIDTH]


class PatchVerifier:
    """Judge a patched tree against its rule set (tree access: inspect)."""

    tree_access: TreeAccess = "inspect"

    def verify(
        self,
        tree: SourceTree | Path | str,
        rule_set: PatchRuleSet,
        results: Sequence[PatchApplicationResult] | None = None,
    ) -> VerificationVerdict:
        if not isinstance(tree, SourceTree):
            tree = SourceTree.open(tree)
        tree.invalidate()
        inspection = _Inspection(tree)
        failures: List[Finding] = []
        notices: List[Finding] = []

        self._positive(inspection, rule_set, results, failures, notices)
        missing_markers = self._checkpoints(inspection, rule_set, failures)
        unpatched = self._negative(inspection, rule_set, failures, notices)

        verdict = VerificationVerdict(
            passed=not failures,
            tree_root=tree.root,
            unpatched_occurrences=unpatched,
            missing_expected_markers=tuple(missing_markers),
            failures=tuple(failures),
            notices=tuple(notices),
        )
        emit_event(
            "verification_completed",
            tree_root=tree.root,
            passed=verdict.passed,
            failures=[finding.render() for finding in verdict.failures],
            notices=len(verdict.notices),
        )
        return verdict

    # ----------------------------------------------------------- positive
    @staticmethod
    def _positive(
        inspection: _Inspection,
        rule_set: PatchRuleSet,
        results: Sequence[PatchApplicationResult] | None,
        failures: List[Finding],
        notices: List[Finding],
    ) -> None:
        by_rule = {result.rule_id: result for result in results or ()}
        for unknown in sorted(set(by_rule) - set(rule_set.rule_ids)):
            notices.append(Finding("positive", unknown, "result does not belong to this rule set"))

        for rule in rule_set.rules:
            resolution = inspection.tree.resolve(rule.scope)
            if resolution.empty:
                finding = Finding(
                    "positive",
                    rule.id,
                    f"scope {', '.join(rule.scope)} matches no file",
                )
                (failures if rule.required else notices).append(finding)
                continue

            markers = {path: rule.count_markers(inspection.text(path)) for path in resolution.files}
            if not any(markers.values()):
                finding = Finding(
                    "positive",
                    rule.id,
                    f"expected {rule.rendered_replacement!r} in {', '.join(rule.scope)} but found none",
                )
                (failures if rule.required else notices).append(finding)

            if results is None:
                continue
            result = by_rule.get(rule.id)
            if result is None:
                failures.append(Finding("positive", rule.id, "no application result recorded for rule"))
                continue
            for path in sorted(result.files_touched):
                expected = result.occurrences_by_file.get(path, 0)
                found = markers.get(path)
                if found is None:
                    failures.append(
                        Finding("positive", rule.id, "touched file is no longer in scope", path=path)
                    )
                elif found < expected:
                    failures.append(
                        Finding(
                            "positive",
                            rule.id,
                            f"expected at least {expected} marker(s), found {found}",
                            path=path,
                        )
                    )

    @staticmethod
    def _checkpoints(
        inspection: _Inspection,
        rule_set: PatchRuleSet,
        failures: List[Finding],
    ) -> List[str]:
        missing: List[str] = []
        for checkpoint in rule_set.checkpoints:
            if not inspection.tree.exists(checkpoint.path):
                missing.append(checkpoint.path)
                failures.append(Finding("checkpoint", None, "expected file is missing", path=checkpoint.path))
                continue
            count = inspection.text(checkpoint.path).count(checkpoint.marker)
            if count < checkpoint.min_count:
                missing.append(checkpoint.path)
                failures.append(
                    Finding(
                        "checkpoint",
                        None,
                        f"expected at least {checkpoint.min_count} {checkpoint.marker!r} marker(s), found {count}",
                        path=checkpoint.path,
                    )
                )
        return missing

    # ----------------------------------------------------------- negative
    @classmethod
    def _negative(
        cls,
        inspection: _Inspection,
        rule_set: PatchRuleSet,
        failures: List[Finding],
        notices: List[Finding],
    ) -> Dict[str, Tuple[Occurrence, ...]]:
        strict = set(rule_set.must_fully_patch)
        reported: set[tuple[str, int]] = set()
        unpatched: Dict[str, Tuple[Occurrence, ...]] = {}

        checks: List[tuple[str, re.Pattern[str], Tuple[str, ...]]] = [
            (rule.id, rule.residual_pattern, rule.scope) for rule in rule_set.rules
        ]
        checks.extend((sentinel.id, sentinel.compiled, sentinel.scope) for sentinel in rule_set.sentinels)

        for check_id, pattern, scope in checks:
            found = list(cls._scan(inspection, pattern, scope, strict, reported))
            if not found:
                continue
            unpatched[check_id] = tuple(found)
            for occurrence in found:
                finding = Finding(
                    "negative",
                    check_id,
                    f"unpatched occurrence: {occurrence.context}",
                    path=occurrence.path,
                    line=occurrence.line,
                )
                (failures if occurrence.blocking else notices).append(finding)
        return unpatched

    @staticmethod
    def _scan(
        inspection: _Inspection,
        pattern: re.Pattern[str],
        scope: Tuple[str, ...],
        strict: set[str],
        reported: set[tuple[str, int]],
    ) -> Iterable[Occurrence]:
        for path in inspection.tree.resolve(scope).files:
            text = inspection.text(path)
            for match in pattern.finditer(inspection.code(path)):
                key = (path, match.start())
                if key in reported:
                    continue
                reported.add(key)
                line, context = _line_of(text, match.start())
                yield Occurrence(path=path, line=line, context=context, blocking=path in strict)


def verify_tree(
    tree_root: Path | str,
    rule_set: PatchRuleSet,
    results: Sequence[PatchApplicationResult] | None = None,
) -> VerificationVerdict:
    """Convenience wrapper around :meth:`PatchVerifier.verify`."""

    return PatchVerifier().verify(tree_root, rule_set, results)


__all__ = [
    "Finding",
    "Occurrence",
    "PatchVerifier",
    "VerificationVerdict",
    "verify_tree",
]
