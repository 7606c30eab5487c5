"""Deployment jobs: local previews and promotion to external platforms.

External deploys can run for many minutes. The caller waits up to
``deploy_response_threshold_seconds``; if the platform has not settled by
then the caller gets ``in_progress`` and the deploy carries on in the
background, updating its job record when it settles. Pollers read the job
through ``/deploy/status/{project_id}``.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from preview_host.config import settings
from preview_host.exceptions import DeploymentFailed, PlatformUnavailable, PreviewHostError
from preview_host.managers.advisory import AdvisoryStep, run_advisory_steps
from preview_host.models.preview import DeploymentJob, JobStatus

if TYPE_CHECKING:
    from pathlib import Path

    from preview_host.managers.contracts import ContractDeployer
    from preview_host.managers.installer import DependencyInstaller
    from preview_host.managers.notifier import FailureNotifier
    from preview_host.managers.platforms import PlatformDeployer
    from preview_host.managers.registry import PreviewRegistry
    from preview_host.managers.staging import ProjectStaging
    from preview_host.models.preview import LogRing, Preview

logger = structlog.get_logger()

IN_PROGRESS_MESSAGE = "Deployment in progress, poll /deploy/status/:projectId for updates"
ESTIMATED_TIME = "2-5 minutes"


class DeploymentJobStore:
    """Latest deployment job per project id."""

    def __init__(self) -> None:
        self._jobs: dict[str, DeploymentJob] = {}

    def start(self, project_id: str, platform: str, callback_id: str | None = None) -> DeploymentJob:
        job = DeploymentJob(project_id=project_id, platform=platform, callback_id=callback_id)
        self._jobs[project_id] = job
        return job

    def get(self, project_id: str) -> DeploymentJob | None:
        return self._jobs.get(project_id)

    def evict_settled(self, ttl: float, now: float | None = None) -> list[str]:
        """Drop jobs that settled more than ``ttl`` seconds ago."""
        now = now if now is not None else time.monotonic()
        expired = [
            project_id
            for project_id, job in self._jobs.items()
            if job.settled_at is not None and now - job.settled_at > ttl
        ]
        for project_id in expired:
            del self._jobs[project_id]
        return expired

    def __len__(self) -> int:
        return len(self._jobs)


@dataclass
class DeploymentOutcome:
    """What the caller of an external deploy gets back."""

    project_id: str
    platform: str
    status: JobStatus
    deployment_url: str | None = None
    contract_deployment: dict[str, Any] | None = None

    def to_response(self) -> dict[str, Any]:
        if self.status == JobStatus.IN_PROGRESS:
            return {
                "success": True,
                "status": self.status.value,
                "projectId": self.project_id,
                "platform": self.platform,
                "message": IN_PROGRESS_MESSAGE,
                "estimatedTime": ESTIMATED_TIME,
            }
        return {
            "success": True,
            "previewUrl": self.deployment_url,
            "vercelUrl": self.deployment_url,
            "externalDeployment": True,
            "platform": self.platform,
            "aliasSuccess": True,
            "isNewDeployment": True,
            "hasPackageChanges": True,
            "status": self.status.value,
            "contractDeployment": self.contract_deployment,
        }


class DeploymentOrchestrator:
    """Runs local and external deployments and tracks their jobs."""

    def __init__(
        self,
        registry: PreviewRegistry,
        staging: ProjectStaging,
        installer: DependencyInstaller,
        contracts: ContractDeployer,
        platforms: dict[str, PlatformDeployer],
        notifier: FailureNotifier,
        jobs: DeploymentJobStore,
    ) -> None:
        self._registry = registry
        self._staging = staging
        self._installer = installer
        self._contracts = contracts
        self._platforms = platforms
        self._notifier = notifier
        self.jobs = jobs
        self._background: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Platform selection
    # ------------------------------------------------------------------

    def is_available(self, platform: str | None) -> bool:
        deployer = self._platforms.get(platform or "")
        return deployer is not None and deployer.enabled

    def resolve_platform(self, requested: str | None) -> str | None:
        """Platform a ``/deploy`` call should go to, or None for a local preview.

        Hosted forced-external mode defaults to Vercel and refuses to fall
        back to a local preview.

        Raises:
            PlatformUnavailable: External deployment is required but no
                platform is usable.
        """
        platform = requested
        if settings.external_only:
            platform = requested or "vercel"

        if platform and self.is_available(platform):
            return platform

        if settings.external_only:
            raise PlatformUnavailable(
                "External deployment required on Railway. "
                "Please configure Vercel or Netlify deployment.",
                suggestion=(
                    "Set ENABLE_VERCEL_DEPLOYMENT=true and DEPLOYMENT_TOKEN_SECRET, "
                    "or ENABLE_NETLIFY_DEPLOYMENT=true and NETLIFY_TOKEN"
                ),
            )
        if platform:
            logger.info("Platform unavailable, falling back to local preview", platform=platform)
        return None

    # ------------------------------------------------------------------
    # Local
    # ------------------------------------------------------------------

    async def deploy_local(
        self,
        project_id: str,
        files: dict[str, str],
        *,
        wait: bool = True,
        is_web3: bool = False,
        skip_contracts: bool = False,
    ) -> dict[str, Any]:
        """Create or patch a local preview and describe it for ``/deploy``."""

        async def deploy_contracts(directory: Path, logs: LogRing) -> dict[str, Any] | None:
            results = await run_advisory_steps(
                [
                    AdvisoryStep(
                        "contracts",
                        lambda: self._contracts.deploy_for_project(
                            directory, project_id, logs, skip=skip_contracts
                        ),
                    )
                ],
                project_id=project_id,
            )
            return results["contracts"]

        outcome = await self._registry.create_preview(
            project_id,
            files,
            is_web3=is_web3,
            wait=wait,
            after_install=deploy_contracts,
        )
        preview_url = f"localhost:{settings.port}/p/{project_id}"
        body: dict[str, Any] = {
            "previewUrl": preview_url,
            "vercelUrl": preview_url,
            "aliasSuccess": True,
            "isNewDeployment": outcome.is_new,
            "hasPackageChanges": outcome.is_new,
            "status": outcome.preview.status.value,
            "port": outcome.preview.port,
        }
        if outcome.is_new and wait:
            body["contractDeployment"] = outcome.after_install_result
        return body

    # ------------------------------------------------------------------
    # External
    # ------------------------------------------------------------------

    async def deploy_external(
        self,
        project_id: str,
        files: dict[str, str],
        platform: str,
        *,
        is_web3: bool = False,
        skip_contracts: bool = False,
        callback_id: str | None = None,
    ) -> DeploymentOutcome:
        """Stage, install and deploy to ``platform``.

        Raises:
            DeploymentFailed: Preparation or the platform deploy failed
                before the response threshold.
        """
        deployer = self._platforms[platform]
        start = time.monotonic()
        job = self.jobs.start(project_id, platform, callback_id)
        logs = self._registry.new_log_ring()
        directory = self._staging.directory_for(f"{project_id}-{platform}")

        try:
            contract_info = await self._prepare_external(
                directory, project_id, files, logs, is_web3=is_web3, skip_contracts=skip_contracts
            )
        except PreviewHostError as e:
            job.fail(e.message, logs.text())
            raise self._failure(platform, e, logs) from e

        deploy_task = asyncio.create_task(deployer.deploy(directory, project_id, logs))
        try:
            done, _ = await asyncio.wait({deploy_task}, timeout=settings.deploy_response_threshold_seconds)
        except asyncio.CancelledError:
            # Caller went away; the deploy still owns the job record
            self._finish_in_background(job, deploy_task, directory, logs)
            raise

        if deploy_task not in done:
            logger.info(
                "Deployment exceeded response threshold, continuing in background",
                project_id=project_id,
                platform=platform,
                threshold_seconds=settings.deploy_response_threshold_seconds,
            )
            self._finish_in_background(job, deploy_task, directory, logs)
            return DeploymentOutcome(project_id, platform, JobStatus.IN_PROGRESS)

        try:
            url = deploy_task.result()
        except Exception as e:
            job.fail(str(e), logs.text())
            logger.error("External deployment failed", project_id=project_id, platform=platform, error=str(e))
            raise self._failure(platform, e, logs) from e

        job.complete(url, logs.text())
        self._registry.register_external(project_id, directory, platform, url, logs)
        logger.info(
            "External deployment completed",
            project_id=project_id,
            platform=platform,
            url=url,
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )
        return DeploymentOutcome(
            project_id,
            platform,
            JobStatus.COMPLETED,
            deployment_url=url,
            contract_deployment=contract_info,
        )

    async def _prepare_external(
        self,
        directory: Path,
        project_id: str,
        files: dict[str, str],
        logs: LogRing,
        *,
        is_web3: bool,
        skip_contracts: bool,
    ) -> dict[str, Any] | None:
        await self._staging.remove_directory(directory)
        await self._staging.stage(settings.template_path(is_web3), directory, files)
        await self._staging.remove_foreign_lockfiles(directory)

        if settings.external_only:
            # The platform installs dependencies itself; contracts need a
            # local install and are deployed separately
            logger.info("Skipping local install and contracts", project_id=project_id)
            return None

        await self._installer.install(directory, logs=logs, label=project_id)
        results = await run_advisory_steps(
            [
                AdvisoryStep(
                    "contracts",
                    lambda: self._contracts.deploy_for_project(
                        directory, project_id, logs, skip=skip_contracts
                    ),
                )
            ],
            project_id=project_id,
        )
        return results["contracts"]

    def _finish_in_background(
        self,
        job: DeploymentJob,
        deploy_task: asyncio.Task[str],
        directory: Path,
        logs: LogRing,
    ) -> None:
        task = asyncio.create_task(self._settle_background(job, deploy_task, directory, logs))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _settle_background(
        self,
        job: DeploymentJob,
        deploy_task: asyncio.Task[str],
        directory: Path,
        logs: LogRing,
    ) -> None:
        try:
            url = await deploy_task
        except asyncio.CancelledError:
            job.fail("Deployment cancelled", logs.text())
            raise
        except Exception as e:
            error_logs = logs.text()
            if job.fail(str(e), error_logs):
                logger.exception(
                    "Background deployment failed", project_id=job.project_id, platform=job.platform
                )
                await run_advisory_steps(
                    [
                        AdvisoryStep(
                            "failure_callback",
                            lambda: self._notifier.notify(
                                job.callback_id, job.project_id, str(e), error_logs
                            ),
                        )
                    ],
                    project_id=job.project_id,
                )
            return

        if job.complete(url, logs.text()):
            self._registry.register_external(job.project_id, directory, job.platform, url, logs)
            logger.info(
                "Background deployment completed",
                project_id=job.project_id,
                platform=job.platform,
                url=url,
            )

    async def redeploy_external(self, preview: Preview, files: dict[str, str]) -> dict[str, Any]:
        """Patch files into an external deployment and push it again."""
        platform = preview.external_platform or ""
        deployer = self._platforms.get(platform)
        logs = self._registry.new_log_ring()
        try:
            if deployer is None:
                raise PlatformUnavailable(f"Unknown platform: {platform}")
            await self._staging.write_files(preview.directory, files)
            url = await deployer.deploy(preview.directory, preview.id, logs)
        except PreviewHostError as e:
            logger.error("External redeploy failed", preview_id=preview.id, platform=platform, error=e.message)
            raise DeploymentFailed(
                f"{platform} deployment update failed: {e.message}",
                logs=logs.text(),
                output=getattr(e, "output", ""),
            ) from e

        preview.touch()
        preview.deployment_url = url
        preview.logs = logs
        logger.info("External deployment updated", preview_id=preview.id, platform=platform, url=url)
        return {
            "url": url,
            "status": preview.status.value,
            "platform": platform,
            "vercelUrl": url,
            "deploymentUpdated": True,
        }

    @staticmethod
    def _failure(platform: str, error: Exception, logs: LogRing) -> DeploymentFailed:
        message = error.message if isinstance(error, PreviewHostError) else str(error)
        output = getattr(error, "output", "") or getattr(error, "stdout", "") or getattr(error, "stderr", "")
        return DeploymentFailed(
            f"External deployment to {platform} failed: {message}",
            logs=logs.text(),
            output=output,
        )

    async def shutdown(self) -> None:
        """Cancel deployments still running in the background."""
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._background.clear()
