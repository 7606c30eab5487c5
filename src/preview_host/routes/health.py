"""Health check endpoints."""

from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends

from preview_host import __version__
from preview_host.config import settings
from preview_host.deps import ServiceContainer, get_container

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> dict[str, Any]:
    """Liveness plus a summary of what this host can do."""
    return {
        "status": "healthy",
        "service": "preview-host",
        "version": __version__,
        "timestamp": datetime.now(UTC).isoformat(),
        "platform": "railway" if settings.is_hosted else "local",
        "environment": settings.environment,
        "previews": len(container.registry),
        "externalDeployments": sum(1 for p in container.registry.entries() if p.is_external),
        "deploymentJobs": len(container.jobs),
        "features": {
            "vercelDeployment": settings.enable_vercel_deployment,
            "netlifyDeployment": settings.enable_netlify_deployment,
            "contractDeployment": settings.enable_contract_deployment,
            "forceExternalDeployment": settings.force_external_deployment,
            "customDomains": settings.enable_custom_domains,
            "compilationValidation": True,
        },
        "validation": {
            "available": True,
            "typescript": True,
            "solidity": True,
            "eslint": True,
            "build": True,
            "runtimeChecks": False,
        },
    }
