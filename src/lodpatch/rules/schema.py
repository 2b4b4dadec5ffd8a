"""Declarative patch rule records.

Rules carry no executable logic beyond locating their own matcher in a piece of
text and rendering their replacement.  Three tagged variants exist:

``tolerance``
    Rewrites a numeric literal (for example the planarity epsilon ``1e-9``)
    and tags it ``1e-2 /* PATCHED(<id>) */``.

``suppress-call``
    Replaces a whole ``NAME(<args>);`` statement with a marker comment,
    whatever its argument list looks like.

``shortcut-call``
    Replaces one exact call expression with a constant value.

Every variant renders a replacement that its own matcher no longer finds and
that names the rule, which is what keeps a second pipeline run from rewriting
anything twice.  Matching ignores C/C++ comments.
"""

from __future__ import annotations

import fnmatch
import math
import re
from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import PurePosixPath
from typing import Annotated, Literal, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

RulePolicy = Literal["all-occurrences", "first-only"]
Span = Tuple[int, int]

DISABLE = "disable"
MARKER_TOKEN = "PATCHED"

_RULE_ID_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*$")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_CALL_SHAPE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*\s*\(.*\)$", re.DOTALL)
_TOKEN_RE = re.compile(r"\w+|\S")
_GLOB_CHARS = frozenset("*?[")
_COMMENT_OR_LITERAL_RE = re.compile(
    r"//[^\n]*|/\*.*?(?:\*/|\Z)|\"(?:\\.|[^\"\\\n])*\"|'(?:\\.|[^'\\\n])*'",
    re.DOTALL,
)


class UnterminatedCallError(ValueError):
    """Raised when a suppressed call's argument list never closes."""

    def __init__(self, name: str, offset: int) -> None:
        super().__init__(f"Unterminated argument list for {name}")
        self.name = name
        self.offset = offset


def is_glob(entry: str) -> bool:
    return any(char in _GLOB_CHARS for char in entry)


def _normalise_scope_entry(raw: str) -> str:
    cleaned = raw.strip().replace("\\", "/")
    if not cleaned:
        raise ValueError("scope entries must not be empty")
    path = PurePosixPath(cleaned)
    if path.is_absolute():
        raise ValueError(f"scope entry must be relative to the tree root: {raw!r}")
    if ".." in path.parts:
        raise ValueError(f"scope entry must stay inside the tree root: {raw!r}")
    return path.as_posix()


def _normalise_scope(entries: Tuple[str, ...]) -> Tuple[str, ...]:
    normalised: list[str] = []
    for entry in entries:
        cleaned = _normalise_scope_entry(entry)
        if cleaned not in normalised:
            normalised.append(cleaned)
    return tuple(normalised)


def _validate_id(value: str) -> str:
    if not _RULE_ID_RE.match(value):
        raise ValueError(f"rule id must be a lowercase slug, got {value!r}")
    return value


def scopes_overlap(left: tuple[str, ...], right: tuple[str, ...]) -> bool:
    """Return ``True`` when two scopes may name the same file."""

    for first in left:
        for second in right:
            if first == second:
                return True
            if is_glob(first) and fnmatch.fnmatch(second, first):
                return True
            if is_glob(second) and fnmatch.fnmatch(first, second):
                return True
            if is_glob(first) and is_glob(second):
                return True
    return False


def _marker_comment(rule_id: str) -> str:
    return f"/* {MARKER_TOKEN}({rule_id}) */"


def mask_comments(text: str) -> str:
    """Blank out C/C++ comments, keeping string literals, offsets and newlines.

    Matching runs over the masked text so commented-out code is neither
    rewritten nor reported, while spans still index into the original.
    """

    def blank(match: re.Match[str]) -> str:
        token = match.group(0)
        if token.startswith(("//", "/*")):
            return re.sub(r"[^\n]", " ", token)
        return token

    return _COMMENT_OR_LITERAL_RE.sub(blank, text)


class RuleModel(BaseModel):
    """Base model: immutable, strict about unknown fields."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class _RuleBase(RuleModel, ABC):
    """Fields and rewriting shared by the rule variants; not instantiable."""

    id: str
    scope: Tuple[str, ...] = Field(min_length=1)
    matcher: str
    replacement: str
    policy: RulePolicy = "all-occurrences"
    required: bool = True
    description: str = ""

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        return _validate_id(value)

    @field_validator("scope", mode="before")
    @classmethod
    def _coerce_scope(cls, value: object) -> object:
        return (value,) if isinstance(value, str) else value

    @field_validator("scope")
    @classmethod
    def _check_scope(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return _normalise_scope(value)

    @field_validator("matcher", "replacement")
    @classmethod
    def _check_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @model_validator(mode="after")
    def _check_effective(self) -> "_RuleBase":
        if self.replacement == self.matcher:
            raise ValueError(f"rule {self.id}: replacement is identical to the matcher")
        if self.residual_pattern.search(self.rendered_replacement):
            raise ValueError(
                f"rule {self.id}: rendered replacement would be matched again by the rule"
            )
        return self

    # -- behaviour shared by all variants ------------------------------------
    @property
    def rendered_replacement(self) -> str:
        return self.replacement

    @property
    @abstractmethod
    def residual_pattern(self) -> re.Pattern[str]:
        """Pattern for any remaining unpatched occurrence of the original text."""

    def find(self, text: str) -> list[Span]:
        """Return the spans of every rewritable occurrence outside comments."""

        return [match.span() for match in self.residual_pattern.finditer(mask_comments(text))]

    def count_markers(self, text: str) -> int:
        """Count this rule's own rendered replacement, which embeds its id."""
        return text.count(self.rendered_replacement)

    def rewrite(self, text: str) -> tuple[str, int]:
        """Apply the rule to ``text`` and return the new text plus a replacement count.

        ``first-only`` rewrites the first occurrence in a file that does not yet
        carry this rule's marker; a file already marked is left alone.
        """

        spans = self.find(text)
        if not spans:
            return text, 0
        if self.policy == "first-only":
            if self.count_markers(text):
                return text, 0
            spans = spans[:1]
        replacement = self.rendered_replacement
        pieces: list[str] = []
        cursor = 0
        for start, end in spans:
            pieces.append(text[cursor:start])
            pieces.append(replacement)
            cursor = end
        pieces.append(text[cursor:])
        return "".join(pieces), len(spans)


class ToleranceRule(_RuleBase):
    """Replace a numeric epsilon literal with a relaxed one."""

    kind: Literal["tolerance"] = "tolerance"

    @field_validator("matcher", "replacement")
    @classmethod
    def _check_literal(cls, value: str) -> str:
        try:
            number = float(value)
        except ValueError as error:
            raise ValueError(f"expected a numeric literal, got {value!r}") from error
        if not math.isfinite(number):
            raise ValueError(f"expected a finite numeric literal, got {value!r}")
        return value

    @model_validator(mode="after")
    def _check_relaxes(self) -> "ToleranceRule":
        if float(self.matcher) == float(self.replacement):
            raise ValueError(f"rule {self.id}: replacement {self.replacement} equals {self.matcher}")
        return self

    @property
    def rendered_replacement(self) -> str:
        return f"{self.replacement} {_marker_comment(self.id)}"

    @property
    def residual_pattern(self) -> re.Pattern[str]:
        return _literal_pattern(self.matcher)


class SuppressCallRule(_RuleBase):
    """Turn a ``NAME(<args>);`` statement into a marker comment."""

    kind: Literal["suppress-call"] = "suppress-call"
    replacement: str = DISABLE

    @field_validator("matcher")
    @classmethod
    def _check_identifier(cls, value: str) -> str:
        if not _IDENTIFIER_RE.match(value):
            raise ValueError(f"suppress-call matcher must be a call name, got {value!r}")
        return value

    @property
    def rendered_replacement(self) -> str:
        if self.replacement == DISABLE:
            return f"{_marker_comment(self.id)} ;"
        return self.replacement

    @property
    def residual_pattern(self) -> re.Pattern[str]:
        return _call_name_pattern(self.matcher)

    def find(self, text: str) -> list[Span]:
        masked = mask_comments(text)
        spans: list[Span] = []
        for match in self.residual_pattern.finditer(masked):
            if spans and match.start() < spans[-1][1]:
                continue
            close = _scan_arguments(masked, match.end() - 1)
            if close is None:
                raise UnterminatedCallError(self.matcher, match.start())
            tail = re.compile(r"\s*;").match(masked, close)
            if tail is None:
                # Used as an expression rather than a statement; leave it for
                # the negative check to report.
                continue
            spans.append((match.start(), tail.end()))
        return spans


class ShortcutCallRule(_RuleBase):
    """Replace one exact call expression with a constant result."""

    kind: Literal["shortcut-call"] = "shortcut-call"
    replacement: str = "false"

    @field_validator("matcher")
    @classmethod
    def _check_call(cls, value: str) -> str:
        if not _CALL_SHAPE_RE.match(value):
            raise ValueError(f"shortcut-call matcher must be a call expression, got {value!r}")
        if _scan_arguments(value, value.index("(")) != len(value):
            raise ValueError(f"unbalanced parentheses in matcher {value!r}")
        return value

    @property
    def rendered_replacement(self) -> str:
        return f"{self.replacement} {_marker_comment(self.id)}"

    @property
    def residual_pattern(self) -> re.Pattern[str]:
        return _expression_pattern(self.matcher)


PatchRule = Annotated[
    Union[ToleranceRule, SuppressCallRule, ShortcutCallRule],
    Field(discriminator="kind"),
]


class Checkpoint(RuleModel):
    """File that must carry at least ``min_count`` markers after patching."""

    path: str
    marker: str = MARKER_TOKEN
    min_count: int = Field(default=1, ge=1)

    @field_validator("path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        cleaned = _normalise_scope_entry(value)
        if is_glob(cleaned):
            raise ValueError(f"checkpoint path must name a single file, got {value!r}")
        return cleaned


class Sentinel(RuleModel):
    """Negative-check pattern for an original pattern family no rule should leave behind."""

    id: str
    pattern: str
    scope: Tuple[str, ...] = Field(min_length=1)
    description: str = ""

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        return _validate_id(value)

    @field_validator("scope", mode="before")
    @classmethod
    def _coerce_scope(cls, value: object) -> object:
        return (value,) if isinstance(value, str) else value

    @field_validator("scope")
    @classmethod
    def _check_scope(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return _normalise_scope(value)

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("sentinel pattern must not be empty")
        try:
            re.compile(value)
        except re.error as error:
            raise ValueError(f"invalid sentinel pattern {value!r}: {error}") from error
        return value

    @property
    def compiled(self) -> re.Pattern[str]:
        return _compile(self.pattern)


class PatchRuleSet(RuleModel):
    """Ordered, immutable collection of patch rules plus verification metadata."""

    rules: Tuple[PatchRule, ...] = Field(min_length=1)
    must_fully_patch: Tuple[str, ...] = ()
    checkpoints: Tuple[Checkpoint, ...] = ()
    sentinels: Tuple[Sentinel, ...] = ()

    @field_validator("must_fully_patch")
    @classmethod
    def _check_must_fully_patch(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(_normalise_scope_entry(entry) for entry in value)

    @model_validator(mode="after")
    def _check_consistency(self) -> "PatchRuleSet":
        seen: set[str] = set()
        for identifier in [rule.id for rule in self.rules] + [item.id for item in self.sentinels]:
            if identifier in seen:
                raise ValueError(f"duplicate rule id {identifier!r}")
            seen.add(identifier)

        for index, rule in enumerate(self.rules):
            for other in self.rules[index + 1 :]:
                if rule.kind != other.kind or rule.matcher != other.matcher:
                    continue
                if scopes_overlap(rule.scope, other.scope):
                    raise ValueError(
                        f"rules {rule.id!r} and {other.id!r} rewrite the same text in overlapping scopes"
                    )
        return self

    def get(self, rule_id: str) -> PatchRule | None:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    @property
    def rule_ids(self) -> tuple[str, ...]:
        return tuple(rule.id for rule in self.rules)


def _scan_arguments(text: str, open_index: int) -> int | None:
    """Return the index just past the parenthesis matching ``text[open_index]``."""

    depth = 0
    index = open_index
    quote: str | None = None
    length = len(text)
    while index < length:
        char = text[index]
        if quote:
            if char == "\\":
                index += 2
                continue
            if char == quote:
                quote = None
        elif char in "\"'":
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return index + 1
        index += 1
    return None


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def _literal_pattern(literal: str) -> re.Pattern[str]:
    return _compile(r"(?<![\w.])" + re.escape(literal) + r"(?![\w.])")


def _call_name_pattern(name: str) -> re.Pattern[str]:
    return _compile(r"(?<![\w.])(?<!::)(?<!->)" + re.escape(name) + r"\s*\(")


def _expression_pattern(expression: str) -> re.Pattern[str]:
    tokens = _TOKEN_RE.findall(expression)
    body = r"\s*".join(re.escape(token) for token in tokens)
    return _compile(r"(?<![\w.])(?<!::)(?<!->)" + body)


__all__ = [
    "Checkpoint",
    "DISABLE",
    "MARKER_TOKEN",
    "PatchRule",
    "PatchRuleSet",
    "RulePolicy",
    "Sentinel",
    "ShortcutCallRule",
    "SuppressCallRule",
    "ToleranceRule",
    "UnterminatedCallError",
    "is_glob",
    "mask_comments",
    "scopes_overlap",
]
