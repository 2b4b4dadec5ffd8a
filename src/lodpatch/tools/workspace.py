"""Explicit handle for the third-party source tree being patched.

Stages never rely on the process working directory.  They receive a
:class:`SourceTree` and declare how they use it: the patch engine writes to it,
the verifier only inspects it, and the build orchestrator reads it as build
input.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Literal

from ..rules.schema import is_glob

TreeAccess = Literal["write", "inspect", "read"]

_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


@dataclass(frozen=True, slots=True)
class ScopeResolution:
    """Files a scope resolved to, plus the entries that resolved to nothing."""

    files: tuple[str, ...] = ()
    missing: tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.files


@dataclass(slots=True)
class SourceTree:
    """Filesystem tree rooted at ``root`` with scope resolution and safe IO."""

    root: Path
    _cache: dict[tuple[str, ...], ScopeResolution] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.root = Path(self.root).resolve()

    @classmethod
    def open(cls, root: Path | str) -> "SourceTree":
        path = Path(root)
        if not path.is_dir():
            raise FileNotFoundError(f"Source tree not found: {path}")
        return cls(path)

    def path(self, relative: str) -> Path:
        return self.root / relative

    def exists(self, relative: str) -> bool:
        return self.path(relative).is_file()

    def resolve(self, scope: Iterable[str]) -> ScopeResolution:
        """Expand ``scope`` entries (paths or globs) into sorted relative files."""

        key = tuple(scope)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        files: set[str] = set()
        missing: list[str] = []
        for entry in key:
            if is_glob(entry):
                matched = [
                    candidate
                    for candidate in self.root.glob(entry)
                    if candidate.is_file() and self._inside(candidate)
                ]
                if not matched:
                    missing.append(entry)
                files.update(candidate.relative_to(self.root).as_posix() for candidate in matched)
                continue
            candidate = self.path(entry)
            if candidate.is_file() and self._inside(candidate):
                files.add(entry)
            else:
                missing.append(entry)

        resolution = ScopeResolution(files=tuple(sorted(files)), missing=tuple(missing))
        self._cache[key] = resolution
        return resolution

    def invalidate(self) -> None:
        self._cache.clear()

    def read_text(self, relative: str) -> str:
        """Read a file preserving line endings and undecodable bytes."""

        with self.path(relative).open("r", encoding=_ENCODING, errors=_ERRORS, newline="") as handle:
            return handle.read()

    def write_text(self, relative: str, content: str) -> None:
        """Atomically replace ``relative`` with ``content``, keeping its mode bits."""

        target = self.path(relative)
        if not os.access(target, os.W_OK):
            raise PermissionError(f"File is not writable: {target}")
        handle = tempfile.NamedTemporaryFile(
            "w",
            encoding=_ENCODING,
            errors=_ERRORS,
            newline="",
            dir=target.parent,
            prefix=f".{target.name}.",
            suffix=".tmp",
            delete=False,
        )
        temp_path = Path(handle.name)
        try:
            with handle:
                handle.write(content)
            shutil.copymode(target, temp_path)
            os.replace(temp_path, target)
        finally:
            temp_path.unlink(missing_ok=True)

    def _inside(self, candidate: Path) -> bool:
        try:
            candidate.resolve().relative_to(self.root)
        except ValueError:
            return False
        return True


__all__ = ["ScopeResolution", "SourceTree", "TreeAccess"]
