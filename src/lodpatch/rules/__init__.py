"""Patch rule records and the built-in SFCGAL catalog."""

from .catalog import default_rule_set, describe_rule_set, dump_rule_set, load_rule_set, parse_rule_set
from .schema import (
    Checkpoint,
    PatchRule,
    PatchRuleSet,
    Sentinel,
    ShortcutCallRule,
    SuppressCallRule,
    ToleranceRule,
)

__all__ = [
    "Checkpoint",
    "PatchRule",
    "PatchRuleSet",
    "Sentinel",
    "ShortcutCallRule",
    "SuppressCallRule",
    "ToleranceRule",
    "default_rule_set",
    "describe_rule_set",
    "dump_rule_set",
    "load_rule_set",
    "parse_rule_set",
]
