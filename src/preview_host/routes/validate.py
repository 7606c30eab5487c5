"""Compilation validation endpoint."""

import time
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from preview_host.config import settings
from preview_host.deps import RequireAuth, get_validator
from preview_host.managers.validator import CompilationValidator, failure_report
from preview_host.models.schemas import ValidateRequest, ValidationConfig
from preview_host.validation import validate_project_id

logger = structlog.get_logger()

router = APIRouter(tags=["validation"])


@router.post("/validate")
async def validate_project(
    body: ValidateRequest,
    _auth: RequireAuth,
    validator: Annotated[CompilationValidator, Depends(get_validator)],
) -> JSONResponse:
    project_id = validate_project_id(body.effective_project_id)
    # Hosted mode always runs every stage regardless of what the caller asked
    if settings.is_hosted or body.validation_config is None:
        config = ValidationConfig()
    else:
        config = body.validation_config

    logger.info(
        "Validation requested",
        project_id=project_id,
        files=len(body.files),
        is_web3=body.is_web3,
    )
    start = time.monotonic()
    try:
        report = await validator.validate(project_id, body.files, config, is_web3=body.is_web3)
    except Exception as e:
        logger.exception("Validation crashed", project_id=project_id)
        failed = failure_report(str(e), int((time.monotonic() - start) * 1000))
        return JSONResponse(
            status_code=500,
            content={"error": str(e), **failed.model_dump(by_alias=True)},
        )
    return JSONResponse(content=report.model_dump(by_alias=True))
