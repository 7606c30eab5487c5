"""Preview registry and dev server supervisor.

Each preview id maps to at most one entry. An entry owns its dev server
process; when the process exits, the entry is marked crashed and removed on
the next loop tick so that a status poll racing the exit can still see
``crashed``.

State machine::

    starting -> running      readiness probe answered
    starting -> (removed)    readiness probe timed out
    running  -> crashed -> (removed)   process exited
    any      -> (removed)    explicit delete or idle reap
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import time
import weakref
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import structlog

from preview_host.config import settings
from preview_host.exceptions import CorruptedState, LocalPreviewsDisabled, ReadinessTimeout
from preview_host.managers.commands import CommandRunner
from preview_host.managers.installer import DependencyInstaller
from preview_host.managers.ports import PortAllocator
from preview_host.managers.staging import ProjectStaging
from preview_host.models.preview import LogRing, Preview, PreviewStatus

logger = structlog.get_logger()

READINESS_REQUEST_TIMEOUT = 1.5

AfterInstallHook = Callable[[Path, LogRing], Awaitable[Any]]


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        # Real-time signals have no enum member
        return str(signum)


@dataclass
class CreateOutcome:
    """Result of a create-or-patch call."""

    preview: Preview
    is_new: bool
    after_install_result: Any = None


class PreviewRegistry:
    """Tracks local previews and supervises their dev server processes."""

    def __init__(
        self,
        runner: CommandRunner,
        installer: DependencyInstaller,
        staging: ProjectStaging,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._runner = runner
        self._installer = installer
        self._staging = staging
        self._http = http_client
        self._previews: dict[str, Preview] = {}
        # Locks vanish once no create or restart holds them
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._tasks: set[asyncio.Task[None]] = set()
        self.ports = PortAllocator(settings.base_port, settings.port_window, self.used_ports)

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def get(self, preview_id: str) -> Preview | None:
        return self._previews.get(preview_id)

    def entries(self) -> list[Preview]:
        return list(self._previews.values())

    def used_ports(self) -> set[int]:
        return {p.port for p in self._previews.values() if p.port is not None}

    def __len__(self) -> int:
        return len(self._previews)

    def __contains__(self, preview_id: object) -> bool:
        return preview_id in self._previews

    def touch(self, preview_id: str) -> None:
        preview = self._previews.get(preview_id)
        if preview:
            preview.touch()

    def new_log_ring(self) -> LogRing:
        return LogRing(settings.log_ring_capacity)

    def _lock_for(self, preview_id: str) -> asyncio.Lock:
        lock = self._locks.get(preview_id)
        if lock is None:
            lock = self._locks[preview_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Create / patch
    # ------------------------------------------------------------------

    async def create_preview(
        self,
        preview_id: str,
        files: dict[str, str],
        *,
        is_web3: bool = False,
        wait: bool = True,
        after_install: AfterInstallHook | None = None,
    ) -> CreateOutcome:
        """Create a local preview, or patch files into the one already running.

        ``after_install`` runs once dependencies are in place and before the
        dev server starts; its return value is handed back in the outcome.

        Raises:
            LocalPreviewsDisabled: Hosted mode only allows external deployments.
            ReadinessTimeout: ``wait`` was set and the server never answered.
        """
        async with self._lock_for(preview_id):
            existing = self._previews.get(preview_id)
            if existing is not None:
                await self._staging.write_files(existing.directory, files)
                existing.touch()
                logger.info(
                    "Patched running preview",
                    preview_id=preview_id,
                    files=len(files),
                    status=existing.status.value,
                )
                return CreateOutcome(preview=existing, is_new=False)

            if settings.external_only:
                raise LocalPreviewsDisabled()

            start = time.monotonic()
            directory = self._staging.directory_for(preview_id)

            await self._terminate_stray(preview_id)
            await self._staging.remove_directory(directory)
            await self._staging.stage(settings.template_path(is_web3), directory, files)

            logs = self.new_log_ring()
            await self._installer.install(directory, logs=logs, label=preview_id)

            after_install_result = None
            if after_install is not None:
                after_install_result = await after_install(directory, logs)

            preview = await self._launch(preview_id, directory, logs)

            if wait:
                await self._await_ready_or_discard(
                    preview, settings.readiness_timeout_seconds
                )
                logger.info(
                    "Preview ready",
                    preview_id=preview_id,
                    port=preview.port,
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                )
            else:
                self._track(self._mark_running_when_ready(preview))

            return CreateOutcome(
                preview=preview, is_new=True, after_install_result=after_install_result
            )

    async def restart_from_disk(self, preview_id: str) -> Preview | None:
        """Bring a preview back from its directory after the entry was reaped.

        Returns None when nothing is staged on disk for the id.

        Raises:
            CorruptedState: The directory lacked a manifest or sources and
                was removed.
            ReadinessTimeout: The restarted server did not answer in time.
            PreviewHostError: Dependency install failed.
        """
        async with self._lock_for(preview_id):
            existing = self._previews.get(preview_id)
            if existing is not None:
                return existing

            directory = self._staging.directory_for(preview_id)
            if not directory.exists():
                return None

            if not self._staging.is_intact(directory):
                logger.warning("Corrupted preview directory, cleaning up", preview_id=preview_id)
                await self._staging.remove_directory(directory)
                raise CorruptedState(preview_id)

            logs = self.new_log_ring()
            if self._installer.needs_install(directory):
                await self._installer.install(directory, logs=logs, label=preview_id)

            preview = await self._launch(preview_id, directory, logs)
            await self._await_ready_or_discard(
                preview, settings.restart_readiness_timeout_seconds
            )
            logger.info("Preview auto-restarted", preview_id=preview_id, port=preview.port)
            return preview

    def register_external(
        self,
        preview_id: str,
        directory: Path,
        platform: str,
        deployment_url: str | None,
        logs: LogRing | None = None,
    ) -> Preview:
        """Record a preview that lives on an external platform.

        A local dev server previously registered under the id is stopped.
        """
        previous = self._previews.get(preview_id)
        if previous is not None and previous.process is not None:
            self._signal(previous.process, signal.SIGTERM)
        preview = Preview(
            id=preview_id,
            directory=directory,
            status=PreviewStatus.DEPLOYED,
            logs=logs or self.new_log_ring(),
            external_platform=platform,
            deployment_url=deployment_url,
        )
        self._previews[preview_id] = preview
        logger.info(
            "Registered external deployment",
            preview_id=preview_id,
            platform=platform,
            url=deployment_url,
        )
        return preview

    # ------------------------------------------------------------------
    # Delete / reap / shutdown
    # ------------------------------------------------------------------

    async def delete_preview(self, preview_id: str) -> None:
        """Stop the dev server, forget the entry and wipe its directory."""
        preview = self._previews.pop(preview_id, None)
        if preview is not None and preview.process is not None:
            self._signal(preview.process, signal.SIGTERM)
        await self._staging.remove_directory(self._staging.directory_for(preview_id))
        logger.info("Preview deleted", preview_id=preview_id, existed=preview is not None)

    def reap_idle(self, idle_timeout: float, now: float | None = None) -> list[str]:
        """Terminate and drop every entry idle for longer than ``idle_timeout``.

        Directories stay on disk so the gateway can restart them on demand.
        """
        now = now if now is not None else time.monotonic()
        reaped = []
        for preview_id, preview in list(self._previews.items()):
            if preview.idle_seconds(now) <= idle_timeout:
                continue
            if preview.process is not None:
                try:
                    self._signal(preview.process, signal.SIGTERM)
                except OSError as e:
                    logger.warning("Failed to stop idle preview", preview_id=preview_id, error=str(e))
            self._previews.pop(preview_id, None)
            reaped.append(preview_id)
            logger.info("Reaped idle preview", preview_id=preview_id)
        return reaped

    async def shutdown(self) -> None:
        """Stop every dev server and background probe."""
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        previews = list(self._previews.values())
        self._previews.clear()
        await asyncio.gather(
            *(self._stop(p.process) for p in previews if p.process is not None),
            return_exceptions=True,
        )
        logger.info("Preview registry shut down", stopped=len(previews))

    # ------------------------------------------------------------------
    # Process supervision
    # ------------------------------------------------------------------

    async def _launch(self, preview_id: str, directory: Path, logs: LogRing) -> Preview:
        port = self.ports.allocate()
        # Registered before spawning so the port is held while the server boots
        preview = Preview(id=preview_id, directory=directory, port=port, logs=logs)
        self._previews[preview_id] = preview

        program, *args = [part.format(port=port) for part in settings.dev_command]
        env = {
            **os.environ,
            "NODE_ENV": "development",
            "PORT": str(port),
            "ASSET_PREFIX": f"/p/{preview_id}",
        }
        try:
            process = await self._runner.spawn(
                program,
                args,
                cwd=directory,
                env=env,
                logs=logs,
                label=preview_id,
                start_new_session=True,
            )
        except Exception:
            self._previews.pop(preview_id, None)
            raise

        preview.process = process
        self._track(self._watch_exit(preview_id, process))
        logger.info("Dev server started", preview_id=preview_id, port=port, pid=process.pid)
        return preview

    async def _watch_exit(self, preview_id: str, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        preview = self._previews.get(preview_id)
        if preview is None or preview.process is not process:
            return

        if returncode < 0:
            code, sig = "null", _signal_name(-returncode)
        else:
            code, sig = str(returncode), "null"
        preview.status = PreviewStatus.CRASHED
        preview.last_error = f"dev exited code={code} signal={sig}"
        logger.warning("Dev server exited", preview_id=preview_id, code=code, signal=sig)

        asyncio.get_running_loop().call_soon(self._evict_crashed, preview_id, process)

    def _evict_crashed(self, preview_id: str, process: asyncio.subprocess.Process) -> None:
        preview = self._previews.get(preview_id)
        if preview is not None and preview.process is process:
            del self._previews[preview_id]

    async def _probe(self, port: int) -> bool:
        try:
            await self._http.get(f"http://127.0.0.1:{port}/", timeout=READINESS_REQUEST_TIMEOUT)
        except httpx.HTTPError:
            return False
        return True

    async def wait_for_ready(self, preview: Preview, timeout: float) -> bool:
        """Poll the dev server until it answers any HTTP response.

        Gives up early if the entry stops referring to the same process.
        """
        if preview.port is None:
            return False
        process = preview.process
        deadline = time.monotonic() + timeout
        while True:
            if await self._probe(preview.port):
                return True
            current = self._previews.get(preview.id)
            if current is not preview or preview.process is not process:
                return False
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(settings.readiness_poll_interval_seconds)

    async def _await_ready_or_discard(self, preview: Preview, timeout: float) -> None:
        if await self.wait_for_ready(preview, timeout):
            preview.status = PreviewStatus.RUNNING
            return

        logger.error("Dev server did not become ready", preview_id=preview.id, port=preview.port)
        if self._previews.get(preview.id) is preview:
            del self._previews[preview.id]
        if preview.process is not None:
            await self._stop(preview.process)
        raise ReadinessTimeout(preview.logs.tail(settings.log_tail_chars))

    async def _mark_running_when_ready(self, preview: Preview) -> None:
        if await self.wait_for_ready(preview, settings.readiness_timeout_seconds):
            if preview.status == PreviewStatus.STARTING:
                preview.status = PreviewStatus.RUNNING
                logger.info("Preview ready", preview_id=preview.id, port=preview.port)

    async def _terminate_stray(self, preview_id: str) -> None:
        preview = self._previews.pop(preview_id, None)
        if preview is not None and preview.process is not None:
            logger.info("Stopping stray dev server", preview_id=preview_id)
            await self._stop(preview.process)

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL if the process outlives the grace period."""
        if process.returncode is not None:
            return
        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=settings.stop_grace_seconds)
        except TimeoutError:
            self._signal(process, signal.SIGKILL)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=settings.stop_grace_seconds)

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            with contextlib.suppress(ProcessLookupError):
                process.send_signal(sig)

    def _track(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
