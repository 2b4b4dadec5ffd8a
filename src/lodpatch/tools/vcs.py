"""Minimal git helpers for fetching upstream library sources."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Sequence

LOGGER = logging.getLogger(__name__)


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


def _run(args: Sequence[str], *, cwd: Path | None = None, check: bool = True) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
        )
    except FileNotFoundError as error:
        raise GitError("git executable not available") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def clone(
        cls,
        url: str,
        destination: Path | str,
        *,
        refs: Sequence[str] = (),
        depth: int | None = None,
    ) -> "GitRepository":
        """Clone ``url`` and check out the first ref in ``refs`` that exists.

        With ``depth`` set and a single ref, the ref is cloned directly as a
        shallow branch/tag (``git clone --branch <ref> --depth <n>``).  With
        several refs the full history is fetched so fallbacks can be tried.
        """

        target = Path(destination)
        if target.exists() and any(target.iterdir()):
            raise GitError(f"Clone destination is not empty: {target}")
        target.parent.mkdir(parents=True, exist_ok=True)

        args: List[str] = ["clone"]
        if depth and len(refs) == 1:
            args.extend(["--branch", refs[0], "--depth", str(depth)])
        args.extend([url, str(target)])
        _run(args)
        repo = cls(target)

        if len(refs) > 1 or (refs and not depth):
            repo.checkout_first(refs)
        return repo

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return _run(list(args), cwd=self.root, check=check)

    def checkout_first(self, refs: Sequence[str]) -> str:
        """Check out the first ref that succeeds and return it."""

        attempted: List[str] = []
        for ref in refs:
            result = self.git("checkout", "--quiet", ref, check=False)
            if result.returncode == 0:
                if attempted:
                    LOGGER.warning("Fell back to %s after %s were unavailable", ref, ", ".join(attempted))
                return ref
            attempted.append(ref)
        raise GitError(f"None of the requested refs could be checked out: {', '.join(refs)}")

    def describe(self) -> str | None:
        """Return a human readable name for the checked-out revision."""

        result = self.git("describe", "--tags", "--always", check=False)
        if result.returncode != 0:
            return None
        value = result.stdout.strip()
        return value or None


__all__ = ["GitError", "GitRepository"]
