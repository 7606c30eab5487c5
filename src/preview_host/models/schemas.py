"""Request and response bodies for the preview host API.

Field names are snake_case in Python and camelCase on the wire, which is
what the creator service has always sent.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def normalize_files(value: Any) -> Any:
    """Accept either ``{path: content}`` or ``[{"path": ..., "content": ...}]``."""
    if value is None:
        return {}
    if isinstance(value, list):
        files: dict[str, str] = {}
        for entry in value:
            if not isinstance(entry, dict) or "path" not in entry:
                raise ValueError("file entries need a path and content")
            files[str(entry["path"])] = str(entry.get("content", ""))
        return files
    return value


class ValidationIssue(ApiModel):
    """One error or warning reported by the validator."""

    file: str
    line: int = 1
    column: int | None = None
    message: str
    severity: str = "error"
    category: str = "build"
    suggestion: str | None = None


class ValidationSummary(ApiModel):
    total_files: int = 0
    files_with_errors: int = 0
    files_with_warnings: int = 0
    critical_errors: int = 0


class ValidationReport(ApiModel):
    """Result of a compilation validation run."""

    success: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    compilation_time: int = 0
    validation_summary: ValidationSummary = Field(default_factory=ValidationSummary)


class ValidationConfig(ApiModel):
    """Which validation stages to run."""

    enable_typescript: bool = Field(default=True, alias="enableTypeScript")
    enable_solidity: bool = Field(default=True, alias="enableSolidity")
    enable_eslint: bool = Field(default=True, alias="enableESLint")
    enable_build: bool = Field(default=True, alias="enableBuild")
    enable_runtime_checks: bool = Field(default=True, alias="enableRuntimeChecks")


class ValidateRequest(ApiModel):
    project_id: str | None = None
    hash: str | None = None
    files: dict[str, str]
    is_web3: bool = False
    validation_config: ValidationConfig | None = None

    @field_validator("files", mode="before")
    @classmethod
    def coerce_files(cls, value: Any) -> Any:
        return normalize_files(value)

    @model_validator(mode="after")
    def require_project(self) -> ValidateRequest:
        if not (self.project_id or self.hash):
            raise ValueError("projectId required")
        return self

    @property
    def effective_project_id(self) -> str:
        return self.project_id or self.hash or ""


class PreviewCreateRequest(ApiModel):
    id: str
    files: dict[str, str] = Field(default_factory=dict)
    validation_result: ValidationReport | None = None
    wait: bool = True
    is_web3: bool = False

    @field_validator("files", mode="before")
    @classmethod
    def coerce_files(cls, value: Any) -> Any:
        return normalize_files(value)


class DeployRequest(ApiModel):
    hash: str
    files: dict[str, str]
    wait: bool = True
    deploy_to_external: str | None = None
    is_web3: bool = False
    skip_contracts: bool = False
    job_id: str | None = None

    @field_validator("files", mode="before")
    @classmethod
    def coerce_files(cls, value: Any) -> Any:
        return normalize_files(value)


class ContractDeployRequest(ApiModel):
    project_id: str
    files: dict[str, str]

    @field_validator("files", mode="before")
    @classmethod
    def coerce_files(cls, value: Any) -> Any:
        return normalize_files(value)


class ExecuteRequest(ApiModel):
    command: str = ""
    args: list[str] = Field(default_factory=list)
    working_directory: str = "."
