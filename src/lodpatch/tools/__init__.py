"""Pipeline stages operating on the third-party source tree."""

from .build import BuildArtifact, BuildOrchestrator, BuildSettings, BuildStep, BuildStepResult, patch_fingerprint
from .engine import PatchApplicationResult, PatchEngine, apply_rules
from .vcs import GitError, GitRepository
from .verifier import Finding, Occurrence, PatchVerifier, VerificationVerdict, verify_tree
from .workspace import ScopeResolution, SourceTree

__all__ = [
    "BuildArtifact",
    "BuildOrchestrator",
    "BuildSettings",
    "BuildStep",
    "BuildStepResult",
    "Finding",
    "GitError",
    "GitRepository",
    "Occurrence",
    "PatchApplicationResult",
    "PatchEngine",
    "PatchVerifier",
    "ScopeResolution",
    "SourceTree",
    "VerificationVerdict",
    "apply_rules",
    "patch_fingerprint",
    "verify_tree",
]
