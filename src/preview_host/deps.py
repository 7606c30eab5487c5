"""Dependency injection for the preview host."""

from __future__ import annotations

import secrets
from typing import Annotated

import httpx
import structlog
from fastapi import Depends, Header

from preview_host.config import settings
from preview_host.exceptions import Unauthorized
from preview_host.managers.commands import CommandRunner
from preview_host.managers.contracts import ContractDeployer
from preview_host.managers.deployments import DeploymentJobStore, DeploymentOrchestrator
from preview_host.managers.installer import DependencyInstaller
from preview_host.managers.notifier import FailureNotifier
from preview_host.managers.platforms import (
    NETLIFY,
    VERCEL,
    NetlifyDeployer,
    VercelClient,
    VercelDeployer,
)
from preview_host.managers.reaper import IdleReaper
from preview_host.managers.registry import PreviewRegistry
from preview_host.managers.staging import ProjectStaging
from preview_host.managers.validator import CompilationValidator, SubprocessValidator
from preview_host.models.preview import LogRing
from preview_host.proxy import PreviewGateway

logger = structlog.get_logger()

HTTP_TIMEOUT = httpx.Timeout(60.0, connect=5.0)


def validate_bearer_token(authorization: str | None) -> None:
    """Check an ``Authorization: Bearer`` header against the configured token.

    No configured token means management endpoints are open.
    """
    if not settings.preview_auth_token:
        return

    token = ""
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:]

    # Constant-time comparison
    if not token or not secrets.compare_digest(token, settings.preview_auth_token):
        logger.warning("Rejected request with invalid bearer token")
        raise Unauthorized()


def verify_bearer_token(
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    validate_bearer_token(authorization)


RequireAuth = Annotated[None, Depends(verify_bearer_token)]


class ServiceContainer:
    """Owns one instance of every component and wires them together."""

    _instance: ServiceContainer | None = None

    def __init__(self) -> None:
        self.http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT)
        self.runner = CommandRunner()
        self.staging = ProjectStaging(
            settings.previews_path,
            remove_attempts=settings.dir_remove_attempts,
            remove_backoff=settings.dir_remove_backoff_seconds,
        )
        self.installer = DependencyInstaller(
            self.runner,
            program=settings.install_program,
            args=settings.install_args,
            artifact=settings.install_artifact,
            timeout=settings.effective_install_timeout,
            store_dir=settings.package_store_path,
        )
        self.registry = PreviewRegistry(self.runner, self.installer, self.staging, self.http_client)
        self.jobs = DeploymentJobStore()
        self.contracts = ContractDeployer(self.runner, self.staging)
        self.notifier = FailureNotifier(self.http_client)
        self.platforms = {
            VERCEL: VercelDeployer(self.runner, VercelClient(self.http_client)),
            NETLIFY: NetlifyDeployer(self.runner),
        }
        self.deployments = DeploymentOrchestrator(
            registry=self.registry,
            staging=self.staging,
            installer=self.installer,
            contracts=self.contracts,
            platforms=self.platforms,
            notifier=self.notifier,
            jobs=self.jobs,
        )
        self.validator: CompilationValidator = SubprocessValidator(
            self.runner, self.installer, self.staging, LogRing
        )
        self.gateway = PreviewGateway(self.http_client)
        self.reaper = IdleReaper(self.registry, self.jobs)

    @classmethod
    def get(cls) -> ServiceContainer:
        """Get or create the container instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def clear_instance(cls) -> None:
        """Clear the singleton instance."""
        cls._instance = None

    async def aclose(self) -> None:
        """Stop background work, dev servers and the shared HTTP client."""
        await self.reaper.stop()
        await self.deployments.shutdown()
        await self.registry.shutdown()
        await self.runner.close()
        await self.http_client.aclose()


def get_container() -> ServiceContainer:
    return ServiceContainer.get()


def get_registry() -> PreviewRegistry:
    return ServiceContainer.get().registry


def get_deployments() -> DeploymentOrchestrator:
    return ServiceContainer.get().deployments


def get_contracts() -> ContractDeployer:
    return ServiceContainer.get().contracts


def get_runner() -> CommandRunner:
    return ServiceContainer.get().runner


def get_validator() -> CompilationValidator:
    return ServiceContainer.get().validator


def get_gateway() -> PreviewGateway:
    return ServiceContainer.get().gateway


async def shutdown_services() -> None:
    """Tear down the container if one was created."""
    container = ServiceContainer._instance
    if container is None:
        return
    await container.aclose()
    ServiceContainer.clear_instance()
