"""Error taxonomy shared by the patch pipeline stages.

Every stage failure derives from :class:`PipelineError` so the CLI can report
which stage halted the run and map it to a stable exit code.  None of these
errors is retried automatically: the pipeline is idempotent and an operator
simply re-runs it from the top.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from .tools.verifier import VerificationVerdict


class PipelineError(RuntimeError):
    """Base class for fatal, stage-attributed pipeline errors."""

    stage: str = "pipeline"
    exit_code: int = 1

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})

    def diagnostics(self) -> list[str]:
        """Return detail lines suitable for operator output."""

        problems = self.details.get("problems")
        if isinstance(problems, (list, tuple)):
            return [str(item) for item in problems]
        return []


class ConfigurationError(PipelineError):
    """Malformed rule set or unresolvable scope, raised before any mutation."""

    stage = "configure"
    exit_code = 2


class PatchApplicationError(PipelineError):
    """A file in scope could not be read, rewritten, or matched as expected."""

    stage = "patch"
    exit_code = 3


class VerificationFailure(PipelineError):
    """The patched tree failed the positive or negative verification checks."""

    stage = "verify"
    exit_code = 4

    def __init__(self, verdict: "VerificationVerdict") -> None:
        count = len(verdict.failures)
        super().__init__(
            f"Verification failed with {count} violation(s)",
            details={"problems": [finding.render() for finding in verdict.failures]},
        )
        self.verdict = verdict


class BuildFailure(PipelineError):
    """The native toolchain failed or the installed artifact is missing."""

    stage = "build"
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: tuple[str, ...] = (),
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.command = command
        self.returncode = exit_code
        self.stdout = stdout
        self.stderr = stderr

    def diagnostics(self) -> list[str]:
        lines = super().diagnostics()
        if self.command:
            lines.append("command: " + " ".join(self.command))
        if self.returncode is not None:
            lines.append(f"exit code: {self.returncode}")
        output = (self.stderr.strip() or self.stdout.strip())
        if output:
            lines.extend(output.splitlines()[-40:])
        return lines


class ContractViolation(RuntimeError):
    """Raised when a stage is invoked against its contract (a programming error)."""


__all__ = [
    "BuildFailure",
    "ConfigurationError",
    "ContractViolation",
    "PatchApplicationError",
    "PipelineError",
    "VerificationFailure",
]
