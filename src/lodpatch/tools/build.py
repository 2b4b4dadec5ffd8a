"""Native build and install of a verified source tree.

The orchestrator drives CMake for the dependency library first (the target
links against it), then configures, builds and installs the target library,
refreshes the dynamic linker cache, materialises compatibility symlinks, and
finally confirms the shared objects exist where consumers will look for them.
It is the only component that touches system library paths.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Mapping, Sequence, Tuple

from ..errors import BuildFailure, ContractViolation
from ..rules.schema import PatchRuleSet
from .engine import PatchApplicationResult, emit_event
from .vcs import GitError, GitRepository
from .verifier import VerificationVerdict
from .workspace import SourceTree, TreeAccess

LOGGER = logging.getLogger(__name__)

StepStatus = Literal["passed", "failed", "skipped", "dry-run"]
Runner = Callable[..., "subprocess.CompletedProcess[str]"]
Which = Callable[[str], "str | None"]

_VERSION_PART_RE = re.compile(
    r"set\s*\(\s*\w*?_?VERSION_(MAJOR|MINOR|PATCH)\s+\"?(\d+)\"?\s*\)",
    re.IGNORECASE,
)
_PROJECT_VERSION_RE = re.compile(r"project\s*\([^)]*?\bVERSION\s+([0-9][0-9.]*)", re.IGNORECASE | re.DOTALL)


@dataclass(slots=True)
class BuildStep:
    """Description of a single toolchain command."""

    name: str
    command: Sequence[str]
    cwd: Path | None = None
    optional: bool = False

    def run(self, runner: Runner, which: Which, *, dry_run: bool = False) -> "BuildStepResult":
        command = list(self.command)
        if dry_run:
            LOGGER.info("[dry-run] %s: %s", self.name, " ".join(command))
            return BuildStepResult(self.name, tuple(command), "dry-run")

        if self.optional and which(command[0]) is None:
            LOGGER.warning("Skipping %s: %s not available", self.name, command[0])
            return BuildStepResult(
                self.name, tuple(command), "skipped", stderr=f"Executable not available: {command[0]}"
            )

        LOGGER.info("Running %s: %s", self.name, " ".join(command))
        try:
            process = runner(  # noqa: S603  # command assembled from build settings
                command,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as error:
            raise BuildFailure(
                f"{self.name}: executable not found ({command[0]})",
                command=tuple(command),
            ) from error

        status: StepStatus = "passed" if process.returncode == 0 else "failed"
        result = BuildStepResult(
            self.name,
            tuple(command),
            status,
            exit_code=process.returncode,
            stdout=process.stdout or "",
            stderr=process.stderr or "",
        )
        emit_event("build_step_finished", step=self.name, status=status, exit_code=process.returncode)
        if result.failed:
            raise BuildFailure(
                f"{self.name} failed with exit code {process.returncode}",
                command=result.command,
                exit_code=process.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result


@dataclass(slots=True)
class BuildStepResult:
    """Result produced by :class:`BuildStep`."""

    name: str
    command: Tuple[str, ...]
    status: StepStatus
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""

    @property
    def failed(self) -> bool:
        return self.status == "failed"


@dataclass(slots=True)
class DependencySpec:
    """Library the target links against; built and installed first."""

    name: str
    source_dir: Path
    repository: str | None = None
    ref: str | None = None
    cmake_args: Tuple[str, ...] = ()
    expected_paths: Tuple[Path, ...] = ()


@dataclass(slots=True)
class BuildSettings:
    """Toolchain settings read from the ``build`` configuration section."""

    library_name: str = "SFCGAL"
    prefix: Path = Path("/usr")
    libdir: str = "lib/x86_64-linux-gnu"
    build_type: str = "Release"
    build_dir: str = "build"
    jobs: int | None = None
    cmake_args: Tuple[str, ...] = ()
    dependency: DependencySpec | None = None
    purge_roots: Tuple[Path, ...] = ()
    purge_pattern: str | None = None
    links: Tuple[Tuple[Path, Path], ...] = ()
    expected_artifacts: Tuple[Path, ...] = ()
    ldconfig: bool = True
    version: str | None = None

    @property
    def library_dir(self) -> Path:
        return self.prefix / self.libdir

    def artifacts(self) -> Tuple[Path, ...]:
        if self.expected_artifacts:
            return self.expected_artifacts
        return (self.library_dir / f"lib{self.library_name}.so",)


@dataclass(frozen=True, slots=True)
class BuildArtifact:
    """Installed shared library plus provenance metadata."""

    library_name: str
    version: str
    patch_fingerprint: str
    installed_paths: Tuple[Path, ...] = ()
    links: Tuple[Path, ...] = ()
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "library_name": self.library_name,
            "version": self.version,
            "patch_fingerprint": self.patch_fingerprint,
            "installed_paths": [path.as_posix() for path in self.installed_paths],
            "links": [path.as_posix() for path in self.links],
            "dry_run": self.dry_run,
        }


def patch_fingerprint(rule_set: PatchRuleSet, results: Sequence[PatchApplicationResult]) -> str:
    """Return a content hash identifying the patch set behind a build.

    Only rule definitions and post-write marker counts are hashed, so an
    idempotent re-run over an already patched tree yields the same value.
    """

    payload = {
        "rules": [rule.model_dump(mode="json") for rule in rule_set.rules],
        "results": sorted(
            (result.fingerprint_payload() for result in results),
            key=lambda item: item["rule_id"],
        ),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def read_library_version(tree: SourceTree) -> str | None:
    """Extract the library version declared in the tree's top-level CMakeLists."""

    if not tree.exists("CMakeLists.txt"):
        return None
    text = tree.read_text("CMakeLists.txt")
    parts: Dict[str, str] = {}
    for match in _VERSION_PART_RE.finditer(text):
        parts.setdefault(match.group(1).upper(), match.group(2))
    if "MAJOR" in parts and "MINOR" in parts:
        return ".".join(parts[key] for key in ("MAJOR", "MINOR", "PATCH") if key in parts)
    project = _PROJECT_VERSION_RE.search(text)
    if project:
        return project.group(1).rstrip(".")
    return None


def _as_path(value: Any, base: Path | None = None) -> Path:
    path = Path(str(value))
    if base is not None and not path.is_absolute():
        path = (base / path).resolve()
    return path


def _string_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(value.split())
    return tuple(str(item) for item in value)


class BuildOrchestrator:
    """Build and install a verified tree (tree access: read)."""

    tree_access: TreeAccess = "read"

    def __init__(
        self,
        settings: BuildSettings | None = None,
        *,
        runner: Runner = subprocess.run,
        which: Which = shutil.which,
        dry_run: bool = False,
    ) -> None:
        self.settings = settings or BuildSettings()
        self.runner = runner
        self.which = which
        self.dry_run = dry_run
        self.steps: List[BuildStepResult] = []

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        base_dir: Path | None = None,
        **kwargs: Any,
    ) -> "BuildOrchestrator":
        section = config.get("build") or {}
        if not isinstance(section, Mapping):
            section = {}

        dependency: DependencySpec | None = None
        dep_cfg = section.get("dependency")
        if isinstance(dep_cfg, Mapping) and dep_cfg.get("source_dir"):
            dependency = DependencySpec(
                name=str(dep_cfg.get("name") or "dependency"),
                source_dir=_as_path(dep_cfg["source_dir"], base_dir),
                repository=dep_cfg.get("repository") or None,
                ref=dep_cfg.get("ref") or None,
                cmake_args=_string_list(dep_cfg.get("cmake_args")),
                expected_paths=tuple(_as_path(item) for item in dep_cfg.get("expected_paths") or ()),
            )

        purge_cfg = section.get("purge") or {}
        purge_roots: Tuple[Path, ...] = ()
        purge_pattern: str | None = None
        if isinstance(purge_cfg, Mapping) and purge_cfg.get("pattern"):
            purge_pattern = str(purge_cfg["pattern"])
            purge_roots = tuple(_as_path(item) for item in purge_cfg.get("roots") or ())

        links: List[Tuple[Path, Path]] = []
        for entry in section.get("links") or ():
            if isinstance(entry, Mapping) and entry.get("link") and entry.get("target"):
                links.append((_as_path(entry["link"]), _as_path(entry["target"])))

        jobs = section.get("jobs")
        settings = BuildSettings(
            library_name=str(section.get("library_name") or "SFCGAL"),
            prefix=_as_path(section.get("prefix") or "/usr"),
            libdir=str(section.get("libdir") or "lib/x86_64-linux-gnu"),
            build_type=str(section.get("build_type") or "Release"),
            build_dir=str(section.get("build_dir") or "build"),
            jobs=jobs if isinstance(jobs, int) and jobs > 0 else None,
            cmake_args=_string_list(section.get("cmake_args")),
            dependency=dependency,
            purge_roots=purge_roots,
            purge_pattern=purge_pattern,
            links=tuple(links),
            expected_artifacts=tuple(_as_path(item) for item in section.get("expected_artifacts") or ()),
            ldconfig=bool(section.get("ldconfig", True)),
            version=str(section["version"]) if section.get("version") else None,
        )
        return cls(settings, **kwargs)

    # ------------------------------------------------------------------ API
    def build(
        self,
        tree: SourceTree | Path | str,
        verdict: VerificationVerdict,
        *,
        fingerprint: str,
    ) -> BuildArtifact:
        """Build, install and verify the target library from a verified tree."""

        if not isinstance(tree, SourceTree):
            tree = SourceTree.open(tree)
        if not verdict.passed:
            raise ContractViolation("BuildOrchestrator.build requires a passed verification verdict")
        if Path(verdict.tree_root).resolve() != tree.root:
            raise ContractViolation(
                f"Verdict was produced for {verdict.tree_root}, not for {tree.root}"
            )

        settings = self.settings
        self.steps = []
        if settings.dependency is not None:
            self._build_dependency(settings.dependency)

        build_dir = tree.root / settings.build_dir
        configure = [
            "cmake",
            "-S",
            str(tree.root),
            "-B",
            str(build_dir),
            f"-DCMAKE_BUILD_TYPE={settings.build_type}",
            f"-DCMAKE_INSTALL_PREFIX={settings.prefix.as_posix()}",
            f"-DCMAKE_INSTALL_LIBDIR={settings.libdir}",
            *settings.cmake_args,
        ]
        jobs = settings.jobs or os.cpu_count() or 1
        self._run(BuildStep(f"configure {settings.library_name}", configure))
        self._run(BuildStep(f"compile {settings.library_name}", ["cmake", "--build", str(build_dir), "-j", str(jobs)]))
        self._purge_stale()
        self._run(BuildStep(f"install {settings.library_name}", ["cmake", "--install", str(build_dir)]))
        self._refresh_linker_cache()
        created = self._materialise_links()
        if created:
            self._refresh_linker_cache()

        installed = settings.artifacts()
        if not self.dry_run:
            self._check_paths(installed, f"{settings.library_name} install")

        version = settings.version or read_library_version(tree) or "unknown"
        artifact = BuildArtifact(
            library_name=settings.library_name,
            version=version,
            patch_fingerprint=fingerprint,
            installed_paths=installed,
            links=tuple(created),
            dry_run=self.dry_run,
        )
        emit_event("build_completed", artifact=artifact.to_dict())
        return artifact

    # -------------------------------------------------------------- helpers
    def _run(self, step: BuildStep) -> BuildStepResult:
        result = step.run(self.runner, self.which, dry_run=self.dry_run)
        self.steps.append(result)
        return result

    def _build_dependency(self, dependency: DependencySpec) -> None:
        source = dependency.source_dir
        if not source.exists():
            if not dependency.repository:
                raise BuildFailure(f"{dependency.name} source not found at {source} and no repository configured")
            if self.dry_run:
                LOGGER.info("[dry-run] clone %s %s into %s", dependency.repository, dependency.ref or "", source)
            else:
                LOGGER.info("Cloning %s (%s) into %s", dependency.name, dependency.ref or "default", source)
                try:
                    GitRepository.clone(
                        dependency.repository,
                        source,
                        refs=(dependency.ref,) if dependency.ref else (),
                        depth=1,
                    )
                except GitError as error:
                    raise BuildFailure(f"Unable to fetch {dependency.name}: {error}") from error

        build_dir = source / self.settings.build_dir
        self._run(
            BuildStep(
                f"configure {dependency.name}",
                [
                    "cmake",
                    "-S",
                    str(source),
                    "-B",
                    str(build_dir),
                    f"-DCMAKE_BUILD_TYPE={self.settings.build_type}",
                    *dependency.cmake_args,
                ],
            )
        )
        self._run(BuildStep(f"install {dependency.name}", ["cmake", "--install", str(build_dir)]))
        if dependency.expected_paths and not self.dry_run:
            self._check_paths(dependency.expected_paths, f"{dependency.name} install")

    def _purge_stale(self) -> None:
        pattern = self.settings.purge_pattern
        if not pattern:
            return
        for root in self.settings.purge_roots:
            if not root.is_dir():
                continue
            for candidate in sorted(root.rglob(pattern)):
                if not (candidate.is_file() or candidate.is_symlink()):
                    continue
                if self.dry_run:
                    LOGGER.info("[dry-run] remove stale %s", candidate)
                    continue
                try:
                    candidate.unlink()
                except OSError as error:
                    raise BuildFailure(f"Unable to remove stale library {candidate}: {error}") from error
                LOGGER.info("Removed stale %s", candidate)

    def _refresh_linker_cache(self) -> None:
        if self.settings.ldconfig:
            self._run(BuildStep("ldconfig", ["ldconfig"], optional=True))

    def _materialise_links(self) -> List[Path]:
        created: List[Path] = []
        for link, target in self.settings.links:
            if self.dry_run:
                LOGGER.info("[dry-run] ln -sf %s %s", target, link)
                continue
            if not target.exists():
                LOGGER.warning("Skipping compatibility link %s: %s does not exist", link, target)
                continue
            link.parent.mkdir(parents=True, exist_ok=True)
            if link.is_symlink() or link.exists():
                link.unlink()
            os.symlink(target, link)
            created.append(link)
            LOGGER.info("Linked %s -> %s", link, target)
        return created

    @staticmethod
    def _check_paths(paths: Sequence[Path], label: str) -> None:
        missing = [path.as_posix() for path in paths if not path.exists()]
        if missing:
            raise BuildFailure(
                f"{label} reported success but expected files are missing",
                details={"problems": [f"missing: {path}" for path in missing]},
            )


__all__ = [
    "BuildArtifact",
    "BuildOrchestrator",
    "BuildSettings",
    "BuildStep",
    "BuildStepResult",
    "DependencySpec",
    "patch_fingerprint",
    "read_library_version",
]
