from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from lodpatch.tools.vcs import GitError, GitRepository

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _upstream(tmp_path: Path) -> Path:
    root = tmp_path / "upstream"
    root.mkdir()

    def run_git(*cmd: str) -> None:
        subprocess.run(["git", *cmd], cwd=root, check=True, capture_output=True, text=True)

    run_git("init")
    run_git("config", "user.email", "builder@example.com")
    run_git("config", "user.name", "Builder")
    (root / "CMakeLists.txt").write_text("project(SFCGAL VERSION 1.5.1)\n", encoding="utf-8")
    run_git("add", ".")
    run_git("commit", "-m", "Release 1.5.1")
    run_git("tag", "v1.5.1")
    return root


def test_clone_falls_back_to_first_available_ref(tmp_path) -> None:
    upstream = _upstream(tmp_path)

    repo = GitRepository.clone(str(upstream), tmp_path / "SFCGAL", refs=["v1.5.2", "v1.5.1"])

    assert repo.describe() == "v1.5.1"
    assert (repo.root / "CMakeLists.txt").exists()


def test_clone_fails_when_no_ref_exists(tmp_path) -> None:
    upstream = _upstream(tmp_path)

    with pytest.raises(GitError, match="None of the requested refs"):
        GitRepository.clone(str(upstream), tmp_path / "SFCGAL", refs=["v9.9.9"])


def test_clone_refuses_non_empty_destination(tmp_path) -> None:
    destination = tmp_path / "SFCGAL"
    destination.mkdir()
    (destination / "keep.txt").write_text("x", encoding="utf-8")

    with pytest.raises(GitError, match="not empty"):
        GitRepository.clone("https://example.invalid/SFCGAL.git", destination)


def test_repository_requires_git_metadata(tmp_path) -> None:
    with pytest.raises(GitError):
        GitRepository(tmp_path)
