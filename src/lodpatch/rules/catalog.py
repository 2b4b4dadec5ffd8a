"""Built-in SFCGAL rule set and rule-file loading.

The default catalog relaxes the validity tolerance used by SFCGAL's planarity
checks, disables the geometry validity assertions across ``src/``, and
short-circuits the self-intersection tests that gate volume and area
computation inside ``isValid.cpp``.  LOD2 building geometry from survey and
cadastral pipelines carries sub-centimetre noise that the stock nanometre
epsilon rejects; the relaxed values accept practically planar faces without
materially affecting computed volumes.
"""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError
from .schema import (
    Checkpoint,
    PatchRuleSet,
    Sentinel,
    ShortcutCallRule,
    SuppressCallRule,
    ToleranceRule,
)

IS_VALID_CPP = "src/algorithm/isValid.cpp"
ALL_SOURCES = "src/**/*.cpp"

ASSERTION_FORMS: Dict[str, str] = {
    "assert-validity-on-plane": "SFCGAL_ASSERT_GEOMETRY_VALIDITY_ON_PLANE",
    "assert-validity-3d": "SFCGAL_ASSERT_GEOMETRY_VALIDITY_3D",
    "assert-validity-2d": "SFCGAL_ASSERT_GEOMETRY_VALIDITY_2D",
    "assert-validity": "SFCGAL_ASSERT_GEOMETRY_VALIDITY",
}

# (rule id, call expression, required).  Only one of the 2D/3D ring spellings
# exists in any given SFCGAL release.
SELF_INTERSECTION_CALLS: tuple[tuple[str, str, bool], ...] = (
    ("selfint-polyhedral-3d", "selfIntersects3D(polyhedralsurface, graph)", True),
    ("selfint-polyhedral-2d", "selfIntersects(polyhedralsurface, graph)", False),
    ("selfint-triangulated-3d", "selfIntersects3D(triangulatedsurface, graph)", True),
    ("selfint-triangulated-2d", "selfIntersects(triangulatedsurface, graph)", False),
    ("selfint-ring-3d", "selfIntersects3D(polygon.ringN(ring))", False),
    ("selfint-ring-2d", "selfIntersects(polygon.ringN(ring))", False),
)

CHECKPOINT_FILES: tuple[str, ...] = (
    "src/triangulate/triangulatePolygon.cpp",
    "src/algorithm/volume.cpp",
    "src/algorithm/area.cpp",
    "src/algorithm/distance3d.cpp",
    "src/algorithm/intersects.cpp",
)


def default_rule_set() -> PatchRuleSet:
    """Return the SFCGAL rule set used when no rule file is configured."""

    rules: List[Any] = [
        ToleranceRule(
            id="tolerance-isvalid",
            scope=("src/algorithm/isValid.h",),
            matcher="1e-9",
            replacement="1e-2",
            description="Relax the planarity/validity epsilon from nanometres to centimetres.",
        ),
        ToleranceRule(
            id="tolerance-issimple",
            scope=("src/algorithm/isSimple.h", "src/algorithm/isSimple.cpp"),
            matcher="1e-9",
            replacement="1e-2",
            required=False,
            description="Same relaxation for the simplicity checks; absent in some releases.",
        ),
    ]
    for rule_id, name in ASSERTION_FORMS.items():
        rules.append(
            SuppressCallRule(
                id=rule_id,
                scope=(ALL_SOURCES,),
                matcher=name,
                description=f"Disable {name} so invalid input degrades to a best-effort result.",
            )
        )
    for rule_id, expression, required in SELF_INTERSECTION_CALLS:
        rules.append(
            ShortcutCallRule(
                id=rule_id,
                scope=(IS_VALID_CPP,),
                matcher=expression,
                replacement="false",
                required=required,
                description=f"Report no self-intersection for {expression}.",
            )
        )

    return PatchRuleSet(
        rules=tuple(rules),
        must_fully_patch=(IS_VALID_CPP,),
        checkpoints=tuple(Checkpoint(path=path) for path in CHECKPOINT_FILES),
        sentinels=(
            Sentinel(
                id="assert-validity-any",
                pattern=r"(?<![\w.])SFCGAL_ASSERT_GEOMETRY_VALIDITY\w*\s*\(",
                scope=(ALL_SOURCES,),
                description="Any validity assertion form not covered by a suppression rule.",
            ),
        ),
    )


def parse_rule_set(data: Mapping[str, Any], *, source: str = "<mapping>") -> PatchRuleSet:
    """Validate a raw mapping into a :class:`PatchRuleSet`."""

    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Rule set in {source} must be a mapping")
    try:
        return PatchRuleSet.model_validate(dict(data))
    except ValidationError as error:
        problems = []
        for entry in error.errors():
            location = ".".join(str(part) for part in entry.get("loc", ()))
            problems.append(f"{location or '(root)'}: {entry.get('msg', 'invalid value')}")
        raise ConfigurationError(
            f"Invalid rule set in {source}",
            details={"problems": problems},
        ) from error


def load_rule_set(path: Path | str | None = None) -> PatchRuleSet:
    """Load a rule set from ``path`` or fall back to the built-in catalog."""

    if path is None:
        return default_rule_set()
    rule_path = Path(path)
    if not rule_path.exists():
        raise ConfigurationError(f"Rule file not found: {rule_path}")
    try:
        with rule_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigurationError(f"Failed to parse rule file {rule_path}: {error}") from error
    return parse_rule_set(data, source=rule_path.as_posix())


def dump_rule_set(rule_set: PatchRuleSet) -> Dict[str, Any]:
    """Return a YAML/JSON friendly mapping that :func:`parse_rule_set` accepts."""

    return rule_set.model_dump(mode="json")


def describe_rule_set(rule_set: PatchRuleSet) -> str:
    """Return a formatted description of ``rule_set``."""

    lines = ["Patch rules:"]
    for rule in rule_set.rules:
        flag = "required" if rule.required else "optional"
        lines.append(f"- {rule.id} [{rule.kind}, {rule.policy}, {flag}]")
        lines.append(f"  {rule.matcher!s} -> {rule.rendered_replacement}")
        lines.append(f"  scope: {', '.join(rule.scope)}")
        if rule.description:
            detail = textwrap.fill(rule.description, width=88, subsequent_indent="  ")
            lines.append(f"  {detail}")
    if rule_set.must_fully_patch:
        lines.append("Must be fully patched:")
        lines.extend(f"- {path}" for path in rule_set.must_fully_patch)
    if rule_set.checkpoints:
        lines.append("Marker checkpoints:")
        for checkpoint in rule_set.checkpoints:
            lines.append(f"- {checkpoint.path} (>= {checkpoint.min_count} x {checkpoint.marker})")
    if rule_set.sentinels:
        lines.append("Sentinels:")
        for sentinel in rule_set.sentinels:
            lines.append(f"- {sentinel.id} :: {sentinel.pattern} in {', '.join(sentinel.scope)}")
    return "\n".join(lines)


__all__ = [
    "ASSERTION_FORMS",
    "CHECKPOINT_FILES",
    "SELF_INTERSECTION_CALLS",
    "default_rule_set",
    "describe_rule_set",
    "dump_rule_set",
    "load_rule_set",
    "parse_rule_set",
]
