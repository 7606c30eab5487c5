"""Preview host routes."""

from preview_host.routes.contracts import router as contracts_router
from preview_host.routes.deploy import router as deploy_router
from preview_host.routes.health import router as health_router
from preview_host.routes.previews import router as previews_router
from preview_host.routes.proxy import router as proxy_router
from preview_host.routes.validate import router as validate_router

__all__ = [
    "contracts_router",
    "deploy_router",
    "health_router",
    "previews_router",
    "proxy_router",
    "validate_router",
]
