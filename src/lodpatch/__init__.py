"""Patch, verify and build SFCGAL with relaxed validity checks for LOD2 geometry."""

from .errors import (
    BuildFailure,
    ConfigurationError,
    ContractViolation,
    PatchApplicationError,
    PipelineError,
    VerificationFailure,
)
from .pipeline import Pipeline, PipelineReport

__version__ = "0.1.0"

__all__ = [
    "BuildFailure",
    "ConfigurationError",
    "ContractViolation",
    "PatchApplicationError",
    "Pipeline",
    "PipelineError",
    "PipelineReport",
    "VerificationFailure",
    "__version__",
]
