"""Periodic cleanup of idle previews and settled deployment jobs."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from preview_host.config import settings

if TYPE_CHECKING:
    from preview_host.managers.deployments import DeploymentJobStore
    from preview_host.managers.registry import PreviewRegistry

logger = structlog.get_logger()


@dataclass
class SweepResult:
    reaped_previews: list[str] = field(default_factory=list)
    evicted_jobs: list[str] = field(default_factory=list)


class IdleReaper:
    """Stops previews nobody has hit for a while.

    Idle entries lose their process and registry slot but keep their
    directory, so the next proxied request restarts them from disk.
    """

    def __init__(self, registry: PreviewRegistry, jobs: DeploymentJobStore) -> None:
        self._registry = registry
        self._jobs = jobs
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    def sweep(self, now: float | None = None) -> SweepResult:
        """One reaping pass; safe to call directly."""
        result = SweepResult(
            reaped_previews=self._registry.reap_idle(settings.idle_timeout_seconds, now),
            evicted_jobs=self._jobs.evict_settled(settings.job_ttl_seconds, now),
        )
        if result.reaped_previews or result.evicted_jobs:
            logger.info(
                "Reaper sweep",
                reaped=len(result.reaped_previews),
                evicted_jobs=len(result.evicted_jobs),
            )
        return result

    async def start(self) -> None:
        if self._running:
            logger.warning("Idle reaper already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Idle reaper started",
            interval_seconds=settings.reaper_interval_seconds,
            idle_timeout_seconds=settings.idle_timeout_seconds,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Idle reaper stopped")

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(settings.reaper_interval_seconds)
            try:
                self.sweep()
            except Exception:
                logger.exception("Error in reaper sweep")
