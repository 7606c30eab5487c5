"""Deployment endpoints: local previews and external platforms."""

import time
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from preview_host.deps import RequireAuth, get_deployments
from preview_host.managers.deployments import DeploymentOrchestrator
from preview_host.models.schemas import DeployRequest
from preview_host.validation import validate_project_id

logger = structlog.get_logger()

router = APIRouter(prefix="/deploy", tags=["deploy"])

Deployments = Annotated[DeploymentOrchestrator, Depends(get_deployments)]


@router.post("")
async def deploy(body: DeployRequest, _auth: RequireAuth, deployments: Deployments) -> dict[str, Any]:
    """Deploy a project locally or to an external platform.

    External deploys answer within the response threshold, either with the
    final result or with ``status: in_progress`` for the caller to poll.
    """
    project_id = validate_project_id(body.hash)
    start = time.monotonic()
    logger.info(
        "Deploy requested",
        project_id=project_id,
        platform=body.deploy_to_external,
        is_web3=body.is_web3,
        skip_contracts=body.skip_contracts,
    )

    platform = deployments.resolve_platform(body.deploy_to_external)
    if platform:
        outcome = await deployments.deploy_external(
            project_id,
            body.files,
            platform,
            is_web3=body.is_web3,
            skip_contracts=body.skip_contracts,
            callback_id=body.job_id,
        )
        return outcome.to_response()

    result = await deployments.deploy_local(
        project_id,
        body.files,
        wait=body.wait,
        is_web3=body.is_web3,
        skip_contracts=body.skip_contracts,
    )
    logger.info(
        "Local deployment finished",
        project_id=project_id,
        elapsed_ms=int((time.monotonic() - start) * 1000),
    )
    return result


@router.get("/status/{project_id}")
async def deployment_status(project_id: str, _auth: RequireAuth, deployments: Deployments) -> JSONResponse:
    """Current state of the latest deployment job for a project."""
    job = deployments.jobs.get(validate_project_id(project_id))
    if job is None:
        return JSONResponse(
            status_code=404,
            content={"error": "Deployment job not found", "projectId": project_id},
        )
    logger.debug("Deployment status polled", project_id=project_id, status=job.status.value)
    return JSONResponse(content=job.to_status())
