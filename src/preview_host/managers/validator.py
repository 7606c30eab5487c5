"""Compilation validation adapter.

The host only orchestrates validation: it stages the project, runs each
enabled toolchain stage and converts failures into ``ValidationIssue``
records. What the toolchains check is up to the toolchains.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import structlog

from preview_host.config import settings
from preview_host.exceptions import CommandFailed
from preview_host.managers.notifier import extract_error_from_logs
from preview_host.models.schemas import (
    ValidationConfig,
    ValidationIssue,
    ValidationReport,
    ValidationSummary,
)

if TYPE_CHECKING:
    from preview_host.managers.commands import CommandRunner
    from preview_host.managers.installer import DependencyInstaller
    from preview_host.managers.staging import ProjectStaging
    from preview_host.models.preview import LogRing

logger = structlog.get_logger()

# src/app/page.tsx(12,5): error TS2322: Type 'string' is not assignable ...
_TSC_DIAGNOSTIC = re.compile(
    r"^(?P<file>[^\s(][^(]*)\((?P<line>\d+),(?P<column>\d+)\): (?P<severity>error|warning) (?P<message>.+)$",
    re.MULTILINE,
)

ISSUE_MESSAGE_LIMIT = 1000


class CompilationValidator(Protocol):
    async def validate(
        self,
        project_id: str,
        files: dict[str, str],
        config: ValidationConfig,
        *,
        is_web3: bool = False,
    ) -> ValidationReport: ...


@dataclass
class ValidationStage:
    name: str
    program: str
    args: list[str]
    subdirectory: str | None = None


def stages_for(config: ValidationConfig) -> list[ValidationStage]:
    stages = []
    if config.enable_typescript:
        stages.append(ValidationStage("typescript", "npx", ["tsc", "--noEmit", "--pretty", "false"]))
    if config.enable_eslint:
        stages.append(ValidationStage("eslint", "npx", ["next", "lint"]))
    if config.enable_solidity:
        stages.append(ValidationStage("solidity", "npx", ["hardhat", "compile"], subdirectory="contracts"))
    if config.enable_build:
        stages.append(ValidationStage("build", "npm", ["run", "build"]))
    return stages


def issues_from_output(stage: str, output: str) -> list[ValidationIssue]:
    """Turn a failed stage's output into issues, one per diagnostic if any parse."""
    issues = [
        ValidationIssue(
            file=m.group("file").strip(),
            line=int(m.group("line")),
            column=int(m.group("column")),
            message=m.group("message").strip(),
            severity=m.group("severity"),
            category=stage,
        )
        for m in _TSC_DIAGNOSTIC.finditer(output)
    ]
    if issues:
        return issues

    message = extract_error_from_logs(output) or output.strip()[-ISSUE_MESSAGE_LIMIT:]
    return [
        ValidationIssue(
            file=stage,
            message=message or f"{stage} failed",
            category=stage,
        )
    ]


class SubprocessValidator:
    """Validates by running the project's own toolchains in a scratch copy."""

    def __init__(
        self,
        runner: CommandRunner,
        installer: DependencyInstaller,
        staging: ProjectStaging,
        log_factory: type[LogRing],
    ) -> None:
        self._runner = runner
        self._installer = installer
        self._staging = staging
        self._log_factory = log_factory

    async def validate(
        self,
        project_id: str,
        files: dict[str, str],
        config: ValidationConfig,
        *,
        is_web3: bool = False,
    ) -> ValidationReport:
        start = time.monotonic()
        logs = self._log_factory(settings.log_ring_capacity)
        directory = self._staging.directory_for(f"{project_id}-validate")

        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []
        try:
            await self._staging.remove_directory(directory)
            await self._staging.stage(settings.template_path(is_web3), directory, files)
            await self._installer.install(directory, logs=logs, label=project_id)

            for stage in stages_for(config):
                cwd = directory / stage.subdirectory if stage.subdirectory else directory
                if not cwd.is_dir():
                    continue
                stage_issues = await self._run_stage(stage, cwd, logs, project_id)
                errors.extend(i for i in stage_issues if i.severity == "error")
                warnings.extend(i for i in stage_issues if i.severity != "error")
        finally:
            await self._staging.remove_directory(directory)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        report = ValidationReport(
            success=not errors,
            errors=errors,
            warnings=warnings,
            compilation_time=elapsed_ms,
            validation_summary=summarize(files, errors, warnings),
        )
        logger.info(
            "Validation completed",
            project_id=project_id,
            success=report.success,
            errors=len(errors),
            warnings=len(warnings),
            elapsed_ms=elapsed_ms,
        )
        return report

    async def _run_stage(
        self, stage: ValidationStage, cwd: Path, logs: LogRing, project_id: str
    ) -> list[ValidationIssue]:
        try:
            await self._runner.run(stage.program, stage.args, cwd=cwd, logs=logs, label=project_id)
        except CommandFailed as e:
            logger.info("Validation stage failed", project_id=project_id, stage=stage.name)
            return issues_from_output(stage.name, e.output)
        return []


def summarize(
    files: dict[str, str],
    errors: list[ValidationIssue],
    warnings: list[ValidationIssue],
) -> ValidationSummary:
    return ValidationSummary(
        total_files=len(files),
        files_with_errors=len({i.file for i in errors}),
        files_with_warnings=len({i.file for i in warnings}),
        critical_errors=len(errors),
    )


def failure_report(error: str, elapsed_ms: int) -> ValidationReport:
    """Report returned when the validator itself crashed."""
    return ValidationReport(
        success=False,
        errors=[],
        warnings=[
            ValidationIssue(
                file="validation",
                line=1,
                message=f"Validation failed: {error}",
                severity="error",
                category="validation",
                suggestion="Check preview host logs for details",
            )
        ],
        compilation_time=elapsed_ms,
        validation_summary=ValidationSummary(critical_errors=1),
    )
