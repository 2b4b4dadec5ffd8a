"""Rule-driven rewriting of the source tree with per-rule accounting."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Mapping, Sequence, Tuple

from ..errors import ConfigurationError, PatchApplicationError
from ..rules.schema import PatchRule, PatchRuleSet, UnterminatedCallError
from .workspace import ScopeResolution, SourceTree, TreeAccess

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("lodpatch.telemetry")

ResultStatus = Literal["applied", "already-patched", "no-match", "no-files"]

# Narrow call shortcuts run before broad suppressions, numeric rewrites last.
_KIND_PRECEDENCE: Dict[str, int] = {
    "shortcut-call": 0,
    "suppress-call": 1,
    "tolerance": 2,
}


@dataclass(frozen=True, slots=True)
class PatchApplicationResult:
    """Outcome of applying a single rule across its scope."""

    rule_id: str
    files_touched: frozenset[str] = frozenset()
    occurrences_replaced: int = 0
    occurrences_by_file: Mapping[str, int] = field(default_factory=dict)
    scope_files: Tuple[str, ...] = ()
    missing_paths: Tuple[str, ...] = ()
    markers_by_file: Mapping[str, int] = field(default_factory=dict)

    @property
    def status(self) -> ResultStatus:
        if not self.scope_files:
            return "no-files"
        if self.occurrences_replaced:
            return "applied"
        if any(self.markers_by_file.values()):
            return "already-patched"
        return "no-match"

    def fingerprint_payload(self) -> Dict[str, Any]:
        """Return the run-independent part of the result."""

        return {
            "rule_id": self.rule_id,
            "markers": {path: count for path, count in sorted(self.markers_by_file.items()) if count},
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "status": self.status,
            "files_touched": sorted(self.files_touched),
            "occurrences_replaced": self.occurrences_replaced,
            "occurrences_by_file": dict(sorted(self.occurrences_by_file.items())),
            "scope_files": list(self.scope_files),
            "missing_paths": list(self.missing_paths),
            "markers_by_file": dict(sorted(self.markers_by_file.items())),
        }


@dataclass(slots=True)
class _FileOutcome:
    path: str
    replaced: Dict[str, int]
    markers: Dict[str, int]
    written: bool


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def emit_event(event: str, **fields: Any) -> None:
    """Log a structured telemetry event as a single JSON line."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


def ordered_rules(rules: Iterable[PatchRule]) -> List[PatchRule]:
    """Return ``rules`` in conflict-resolution order for a single file."""

    indexed = list(enumerate(rules))
    indexed.sort(key=lambda item: (_KIND_PRECEDENCE[item[1].kind], item[0]))
    return [rule for _, rule in indexed]


class PatchEngine:
    """Apply a :class:`PatchRuleSet` to a :class:`SourceTree` (tree access: write).

    Work is grouped per file so no two rules ever rewrite the same file
    concurrently; distinct files may be processed in parallel when
    ``workers > 1``.
    """

    tree_access: TreeAccess = "write"

    def __init__(self, *, workers: int = 1) -> None:
        self.workers = max(1, int(workers))

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PatchEngine":
        patch_cfg = config.get("patch") or {}
        workers = patch_cfg.get("workers", 1) if isinstance(patch_cfg, Mapping) else 1
        if not isinstance(workers, int) or workers < 1:
            workers = 1
        return cls(workers=workers)

    def preflight(self, tree: SourceTree, rule_set: PatchRuleSet) -> Dict[str, ScopeResolution]:
        """Resolve every rule scope, failing before any mutation on unresolvable required rules."""

        resolutions: Dict[str, ScopeResolution] = {}
        problems: List[str] = []
        for rule in rule_set.rules:
            resolution = tree.resolve(rule.scope)
            resolutions[rule.id] = resolution
            if resolution.empty and rule.required:
                problems.append(
                    f"{rule.id}: scope {', '.join(rule.scope)} matches no file under {tree.root}"
                )
            elif resolution.empty:
                LOGGER.info("Optional rule %s has no applicable files", rule.id)
            elif resolution.missing:
                LOGGER.info("Rule %s: scope entries without files: %s", rule.id, ", ".join(resolution.missing))
        if problems:
            raise ConfigurationError(
                "Rule scope does not resolve in the source tree",
                details={"problems": problems},
            )
        return resolutions

    def apply(self, tree: SourceTree | Path | str, rule_set: PatchRuleSet) -> List[PatchApplicationResult]:
        """Apply ``rule_set`` in place and return one result per rule, in rule order."""

        if not isinstance(tree, SourceTree):
            tree = SourceTree.open(tree)
        tree.invalidate()
        resolutions = self.preflight(tree, rule_set)

        per_file: Dict[str, List[PatchRule]] = defaultdict(list)
        for rule in rule_set.rules:
            for path in resolutions[rule.id].files:
                per_file[path].append(rule)

        work = [(path, ordered_rules(rules)) for path, rules in sorted(per_file.items())]
        if self.workers > 1 and len(work) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                outcomes = list(pool.map(lambda item: self._patch_file(tree, *item), work))
        else:
            outcomes = [self._patch_file(tree, path, rules) for path, rules in work]

        results = self._collect(rule_set, resolutions, outcomes)
        emit_event(
            "patch_run_completed",
            tree_root=tree.root,
            files_written=[outcome.path for outcome in outcomes if outcome.written],
            results=[result.to_dict() for result in results],
        )
        return results

    def _patch_file(self, tree: SourceTree, path: str, rules: Sequence[PatchRule]) -> _FileOutcome:
        try:
            original = tree.read_text(path)
        except OSError as error:
            raise PatchApplicationError(
                f"Unable to read {path}: {error}",
                details={"path": path, "rules": [rule.id for rule in rules]},
            ) from error

        text = original
        replaced: Dict[str, int] = {}
        for rule in rules:
            try:
                text, count = rule.rewrite(text)
            except UnterminatedCallError as error:
                line = text.count("\n", 0, error.offset) + 1
                raise PatchApplicationError(
                    f"{rule.id}: {error} in {path}:{line}",
                    details={"path": path, "line": line, "rule_id": rule.id},
                ) from error
            replaced[rule.id] = count
            if count:
                emit_event("patch_rule_applied", rule_id=rule.id, path=path, occurrences=count)

        markers = {rule.id: rule.count_markers(text) for rule in rules}
        written = text != original
        if written:
            try:
                tree.write_text(path, text)
            except OSError as error:
                raise PatchApplicationError(
                    f"Unable to write {path}: {error}",
                    details={"path": path, "rules": [rule_id for rule_id, count in replaced.items() if count]},
                ) from error
            emit_event("patch_file_written", path=path, replaced=replaced)
            LOGGER.debug("Patched %s (%s)", path, replaced)
        return _FileOutcome(path=path, replaced=replaced, markers=markers, written=written)

    @staticmethod
    def _collect(
        rule_set: PatchRuleSet,
        resolutions: Mapping[str, ScopeResolution],
        outcomes: Iterable[_FileOutcome],
    ) -> List[PatchApplicationResult]:
        replaced: Dict[str, Dict[str, int]] = defaultdict(dict)
        markers: Dict[str, Dict[str, int]] = defaultdict(dict)
        for outcome in outcomes:
            for rule_id, count in outcome.replaced.items():
                if count:
                    replaced[rule_id][outcome.path] = count
            for rule_id, count in outcome.markers.items():
                markers[rule_id][outcome.path] = count

        results: List[PatchApplicationResult] = []
        for rule in rule_set.rules:
            resolution = resolutions[rule.id]
            by_file = replaced.get(rule.id, {})
            result = PatchApplicationResult(
                rule_id=rule.id,
                files_touched=frozenset(by_file),
                occurrences_replaced=sum(by_file.values()),
                occurrences_by_file=dict(by_file),
                scope_files=resolution.files,
                missing_paths=resolution.missing,
                markers_by_file=dict(markers.get(rule.id, {})),
            )
            LOGGER.info(
                "Rule %s: %s (%d replacement(s) in %d file(s))",
                rule.id,
                result.status,
                result.occurrences_replaced,
                len(result.files_touched),
            )
            results.append(result)
        return results


def apply_rules(
    tree_root: Path | str,
    rule_set: PatchRuleSet,
    *,
    workers: int = 1,
) -> List[PatchApplicationResult]:
    """Convenience wrapper around :meth:`PatchEngine.apply`."""

    return PatchEngine(workers=workers).apply(tree_root, rule_set)


__all__ = [
    "PatchApplicationResult",
    "PatchEngine",
    "ResultStatus",
    "apply_rules",
    "emit_event",
    "ordered_rules",
]
