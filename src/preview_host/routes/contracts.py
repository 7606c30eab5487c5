"""Standalone smart contract deployment endpoint."""

import time
from datetime import UTC, datetime
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends

from preview_host.config import settings
from preview_host.deps import RequireAuth, get_contracts, get_registry
from preview_host.exceptions import ValidationRejected
from preview_host.managers.contracts import NETWORK, ContractDeployer
from preview_host.managers.registry import PreviewRegistry
from preview_host.models.schemas import ContractDeployRequest
from preview_host.validation import validate_project_id

logger = structlog.get_logger()

router = APIRouter(tags=["contracts"])


@router.post("/deploy-contracts")
async def deploy_contracts(
    body: ContractDeployRequest,
    _auth: RequireAuth,
    contracts: Annotated[ContractDeployer, Depends(get_contracts)],
    registry: Annotated[PreviewRegistry, Depends(get_registry)],
) -> dict[str, Any]:
    """Compile and deploy only the contract files of a project."""
    project_id = validate_project_id(body.project_id)
    if not body.files:
        raise ValidationRejected("files array required")

    start = time.monotonic()
    info = await contracts.deploy_standalone(project_id, body.files, registry.new_log_ring())
    deployment_time = int((time.monotonic() - start) * 1000)
    logger.info("Contracts deployed", project_id=project_id, elapsed_ms=deployment_time)
    return {
        "success": True,
        "contractAddresses": info,
        "network": NETWORK,
        "rpcUrl": settings.base_sepolia_rpc_url,
        "deploymentTime": deployment_time,
        "timestamp": datetime.now(UTC).isoformat(),
    }
