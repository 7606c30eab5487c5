"""Preview lifecycle endpoints: create or patch, delete, inspect, execute."""

import asyncio
import os
import time
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, PlainTextResponse

from preview_host.config import settings
from preview_host.deps import (
    RequireAuth,
    get_deployments,
    get_registry,
    get_runner,
)
from preview_host.exceptions import (
    CommandFailed,
    PreviewHostError,
    PreviewNotFound,
    ValidationRejected,
)
from preview_host.managers.commands import CommandRunner
from preview_host.managers.deployments import DeploymentOrchestrator
from preview_host.managers.registry import PreviewRegistry
from preview_host.models.schemas import ExecuteRequest, PreviewCreateRequest
from preview_host.validation import (
    ALLOWED_COMMANDS,
    ValidationError,
    resolve_inside,
    validate_command,
    validate_preview_id,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/previews", tags=["previews"])

Registry = Annotated[PreviewRegistry, Depends(get_registry)]


@router.post("")
async def create_preview(
    body: PreviewCreateRequest,
    _auth: RequireAuth,
    registry: Registry,
    deployments: Annotated[DeploymentOrchestrator, Depends(get_deployments)],
) -> dict[str, Any]:
    """Create a preview, or hot-patch files into the running one.

    A failed ``validationResult`` blocks the request before anything is
    written to disk.
    """
    preview_id = validate_preview_id(body.id)

    report = body.validation_result
    if report is not None and not report.success:
        logger.warning(
            "Validation failed, blocking preview",
            preview_id=preview_id,
            errors=len(report.errors),
            warnings=len(report.warnings),
        )
        raise ValidationRejected(
            "Validation failed - cannot deploy files with compilation errors",
            errors=[i.model_dump(by_alias=True) for i in report.errors],
            warnings=[i.model_dump(by_alias=True) for i in report.warnings],
        )

    existing = registry.get(preview_id)
    if existing is not None and existing.is_external:
        return await deployments.redeploy_external(existing, body.files)

    outcome = await registry.create_preview(
        preview_id, body.files, is_web3=body.is_web3, wait=body.wait
    )
    return {
        "url": f"/p/{preview_id}",
        "status": outcome.preview.status.value,
        "port": outcome.preview.port,
    }


@router.delete("/{preview_id}")
async def delete_preview(preview_id: str, _auth: RequireAuth, registry: Registry) -> dict[str, bool]:
    """Stop and wipe a preview. Deleting an unknown id is not an error."""
    await registry.delete_preview(validate_preview_id(preview_id))
    return {"ok": True}


@router.get("/{preview_id}/status")
async def preview_status(preview_id: str, registry: Registry) -> JSONResponse:
    preview = registry.get(validate_preview_id(preview_id))
    if preview is None:
        return JSONResponse(status_code=404, content={"status": "not_found"})
    return JSONResponse(content=preview.to_status())


@router.get("/{preview_id}/logs")
async def preview_logs(preview_id: str, registry: Registry) -> PlainTextResponse:
    preview = registry.get(validate_preview_id(preview_id))
    if preview is None:
        return PlainTextResponse("not_found", status_code=404)
    return PlainTextResponse(preview.logs.text())


@router.post("/{preview_id}/execute")
async def execute_command(
    preview_id: str,
    body: ExecuteRequest,
    _auth: RequireAuth,
    registry: Registry,
    runner: Annotated[CommandRunner, Depends(get_runner)],
) -> Any:
    """Run an allow-listed, read-only command inside the preview directory."""
    preview_id = validate_preview_id(preview_id)
    try:
        validate_command(body.command, body.args)
    except ValidationError as e:
        if body.command and body.command not in ALLOWED_COMMANDS:
            return JSONResponse(
                status_code=400,
                content={
                    "success": False,
                    "error": str(e),
                    "allowedCommands": list(ALLOWED_COMMANDS),
                },
            )
        raise

    preview = registry.get(preview_id)
    if preview is None:
        raise PreviewNotFound(preview_id)

    try:
        cwd = resolve_inside(preview.directory, body.working_directory)
    except ValidationError as e:
        raise ValidationRejected("Working directory outside project bounds") from e
    if not cwd.is_dir():
        raise ValidationRejected("Working directory does not exist")

    logger.info(
        "Executing command",
        preview_id=preview_id,
        command=body.command,
        args=" ".join(body.args),
    )
    start = time.monotonic()
    try:
        result = await asyncio.wait_for(
            runner.run(
                body.command,
                body.args,
                cwd=cwd,
                env={**os.environ, "NODE_ENV": "development"},
                label=preview_id,
            ),
            timeout=settings.execute_timeout_seconds,
        )
    except TimeoutError as e:
        raise PreviewHostError(
            f"{body.command} timed out after {settings.execute_timeout_seconds:g}s"
        ) from e
    except CommandFailed as e:
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": e.message,
                "command": body.command,
                "args": body.args,
                "exitCode": e.exit_code,
                "output": e.output,
            },
        )

    execution_time = int((time.monotonic() - start) * 1000)
    logger.info("Command completed", preview_id=preview_id, execution_time_ms=execution_time)
    return {
        "success": True,
        "command": body.command,
        "args": body.args,
        "workingDirectory": body.working_directory,
        "executionTime": execution_time,
        "output": result.to_dict(),
    }
