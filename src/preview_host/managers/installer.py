"""Dependency installation for staged preview directories."""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from preview_host.exceptions import InstallTimeout, PostconditionFailed, PreviewHostError

if TYPE_CHECKING:
    from preview_host.managers.commands import CommandRunner
    from preview_host.models.preview import LogRing

logger = structlog.get_logger()

PREFER_OFFLINE_FLAG = "--prefer-offline"


class DependencyInstaller:
    """Installs a project's packages, retrying once without the offline cache.

    A timeout is never retried: the child is killed and ``InstallTimeout``
    raised straight away.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        program: str,
        args: list[str],
        artifact: str,
        timeout: float,
        store_dir: Path,
    ) -> None:
        self._runner = runner
        self._program = program
        self._args = list(args)
        self._artifact = artifact
        self._timeout = timeout
        self._store_dir = store_dir

    @property
    def timeout(self) -> float:
        return self._timeout

    def needs_install(self, directory: Path) -> bool:
        """True when the installed artifact the dev server needs is missing."""
        return not (directory / self._artifact).exists()

    async def install(
        self,
        directory: Path,
        *,
        logs: LogRing | None = None,
        label: str | None = None,
    ) -> None:
        """Install dependencies in ``directory``.

        Raises:
            InstallTimeout: An attempt ran past the configured timeout.
            PostconditionFailed: Install exited 0 but the artifact is missing.
            CommandFailed / SpawnError: The retry failed as well.
        """
        start = time.monotonic()
        await asyncio.to_thread(self._store_dir.mkdir, parents=True, exist_ok=True)

        env = {**os.environ, "NODE_ENV": "development", "CI": "1"}

        logger.info(
            "Installing dependencies",
            preview_id=label,
            directory=str(directory),
            timeout_seconds=self._timeout,
        )

        try:
            await self._attempt(self._args, directory, env, logs, label)
        except InstallTimeout:
            raise
        except PreviewHostError as e:
            logger.warning(
                "Install failed, retrying without offline cache",
                preview_id=label,
                error=e.message,
            )
            retry_args = [a for a in self._args if a != PREFER_OFFLINE_FLAG]
            await self._attempt(retry_args, directory, env, logs, label)

        if self.needs_install(directory):
            raise PostconditionFailed(f'install finished but "{self._artifact}" is missing')

        logger.info(
            "Dependencies installed",
            preview_id=label,
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )

    async def _attempt(
        self,
        args: list[str],
        directory: Path,
        env: dict[str, str],
        logs: LogRing | None,
        label: str | None,
    ) -> None:
        try:
            await asyncio.wait_for(
                self._runner.run(
                    self._program, args, cwd=directory, env=env, logs=logs, label=label
                ),
                timeout=self._timeout,
            )
        except TimeoutError as e:
            message = f"{self._program} install timeout after {int(self._timeout * 1000)}ms"
            logger.error("Install timed out", preview_id=label, timeout_seconds=self._timeout)
            if logs is not None:
                logs.push(f"[{label}] {message}\n" if label else f"{message}\n")
            raise InstallTimeout(message) from e
