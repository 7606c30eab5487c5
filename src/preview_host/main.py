"""Preview Host - live previews and external deployments for generated apps."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from preview_host import __version__
from preview_host.config import settings
from preview_host.deps import get_container, shutdown_services
from preview_host.exceptions import PreviewHostError, Unauthorized
from preview_host.observability import SentryConfig, configure_logging, init_sentry
from preview_host.routes import (
    contracts_router,
    deploy_router,
    health_router,
    previews_router,
    proxy_router,
    validate_router,
)
from preview_host.validation import ValidationError

# Initialize Sentry
_sentry_config = SentryConfig(
    service_name="preview-host",
    dsn=settings.sentry_dsn,
    environment=settings.environment,
    release=f"preview-host@{__version__}",
    traces_sample_rate=settings.sentry_traces_sample_rate,
    profiles_sample_rate=settings.sentry_profiles_sample_rate,
)
init_sentry("preview-host", _sentry_config)

# Configure unified logging (structlog + Python logging + Sentry integration)
logger = configure_logging("preview-host")


class TemplateMissingError(RuntimeError):
    """A template directory required to stage projects does not exist."""


def check_templates() -> None:
    """Verify both templates exist.

    A missing template is fatal in production and only logged elsewhere,
    so a developer can run the host without every template checked out.
    """
    for family, path in (
        ("farcaster", settings.farcaster_template_path),
        ("web3", settings.web3_template_path),
    ):
        if path.is_dir():
            logger.info("Template directory verified", family=family, path=str(path))
            continue
        logger.error("Template directory not found", family=family, path=str(path))
        if settings.environment == "production":
            raise TemplateMissingError(f"{family} template directory not found: {path}")


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan - startup and shutdown."""
    logger.info(
        "Starting Preview Host",
        environment=settings.environment,
        hosted=settings.is_hosted,
        external_only=settings.external_only,
        vercel=settings.vercel_enabled,
        netlify=settings.netlify_enabled,
        contracts=settings.contracts_enabled,
        previews_root=str(settings.previews_path),
    )

    settings.previews_path.mkdir(parents=True, exist_ok=True)
    settings.package_store_path.mkdir(parents=True, exist_ok=True)
    check_templates()

    container = get_container()
    await container.reaper.start()

    yield

    logger.info("Shutting down Preview Host")
    try:
        await asyncio.wait_for(shutdown_services(), timeout=settings.shutdown_timeout)
        logger.info("Graceful shutdown completed")
    except TimeoutError:
        logger.warning(
            "Shutdown timed out, forcing exit",
            timeout_seconds=settings.shutdown_timeout,
        )


app = FastAPI(
    title="Preview Host",
    description="Runs live previews of generated apps and promotes them to hosting platforms",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(Unauthorized)
async def unauthorized_handler(_request: Request, _exc: Unauthorized) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "unauthorized"})


@app.exception_handler(PreviewHostError)
async def preview_host_error_handler(request: Request, exc: PreviewHostError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "Request failed",
            path=request.url.path,
            error=exc.message,
            error_type=type(exc).__name__,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, **exc.extra()},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(_request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request body"
    if errors:
        first = errors[0]
        field = first.get("loc", ())[-1] if first.get("loc") else "body"
        message = f"{field} required" if first.get("type") == "missing" else str(first.get("msg"))
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": message, "details": jsonable_errors(errors)},
    )


def jsonable_errors(errors: list[dict]) -> list[dict]:
    """Pydantic error dicts minus values that may not serialize."""
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]


# Configure Prometheus metrics endpoint
Instrumentator(excluded_handlers=["/metrics", "/p/.*"]).instrument(app).expose(app)

# Include routers
app.include_router(health_router)
app.include_router(validate_router)
app.include_router(contracts_router)
app.include_router(deploy_router)
app.include_router(previews_router)
app.include_router(proxy_router)


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        "preview_host.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
        ws="websockets",
    )


if __name__ == "__main__":
    run()
