"""Preview host models."""

from preview_host.models.preview import (
    DeploymentJob,
    JobStatus,
    LogRing,
    Preview,
    PreviewStatus,
)
from preview_host.models.schemas import (
    ContractDeployRequest,
    DeployRequest,
    ExecuteRequest,
    PreviewCreateRequest,
    ValidateRequest,
    ValidationConfig,
    ValidationIssue,
    ValidationReport,
    ValidationSummary,
)

__all__ = [
    "ContractDeployRequest",
    "DeployRequest",
    "DeploymentJob",
    "ExecuteRequest",
    "JobStatus",
    "LogRing",
    "Preview",
    "PreviewCreateRequest",
    "PreviewStatus",
    "ValidateRequest",
    "ValidationConfig",
    "ValidationIssue",
    "ValidationReport",
    "ValidationSummary",
]
