"""Run external programs, streaming their output into log rings."""

from __future__ import annotations

import asyncio
import contextlib
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from preview_host.exceptions import CommandFailed, SpawnError

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

    from preview_host.models.preview import LogRing

logger = structlog.get_logger()

READ_CHUNK_SIZE = 4096


@dataclass
class CommandResult:
    """Captured output of a command that exited 0."""

    stdout: str
    stderr: str
    output: str

    def to_dict(self) -> dict[str, str]:
        return {"stdout": self.stdout, "stderr": self.stderr, "output": self.output}


class CommandRunner:
    """Spawns programs and pumps their stdout/stderr as chunks arrive.

    Each chunk goes to the optional log ring (prefixed with ``[label] ``)
    and, when ``echo`` is set, to the host's own stdout so platform logs
    show preview output too.
    """

    def __init__(self, echo: bool = True) -> None:
        self._echo = echo
        self._pumps: set[asyncio.Task[None]] = set()

    async def run(
        self,
        program: str,
        args: list[str],
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        logs: LogRing | None = None,
        label: str | None = None,
    ) -> CommandResult:
        """Run a program to completion.

        Raises:
            SpawnError: The program could not be started.
            CommandFailed: The program exited nonzero; carries all output.
        """
        prefix = f"[{label}] " if label else ""
        process = await self._start(program, args, cwd=cwd, env=env, logs=logs, prefix=prefix)

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        combined: list[str] = []

        try:
            await asyncio.gather(
                self._pump(process.stdout, logs, prefix, stdout_parts, combined),
                self._pump(process.stderr, logs, prefix, stderr_parts, combined),
            )
            exit_code = await process.wait()
        except asyncio.CancelledError:
            # Caller gave up (timeout or shutdown); do not leave the child behind
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            raise

        stdout = "".join(stdout_parts)
        stderr = "".join(stderr_parts)
        output = "".join(combined)

        if exit_code != 0:
            message = f"{program} exited {exit_code}"
            logger.warning("Command failed", command=program, exit_code=exit_code, label=label)
            if logs is not None:
                logs.push(f"{prefix}{message}\n")
            raise CommandFailed(program, exit_code, stdout=stdout, stderr=stderr, output=output)

        return CommandResult(stdout=stdout, stderr=stderr, output=output)

    async def spawn(
        self,
        program: str,
        args: list[str],
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        logs: LogRing | None = None,
        label: str | None = None,
        start_new_session: bool = False,
    ) -> asyncio.subprocess.Process:
        """Start a long-running program and keep pumping its output.

        The caller owns the returned process and is responsible for
        watching its exit. With ``start_new_session`` the program leads its own
        process group so the whole tree can be signalled at once.
        """
        prefix = f"[{label}] " if label else ""
        process = await self._start(
            program,
            args,
            cwd=cwd,
            env=env,
            logs=logs,
            prefix=prefix,
            start_new_session=start_new_session,
        )
        for stream in (process.stdout, process.stderr):
            task = asyncio.create_task(self._pump(stream, logs, prefix))
            self._pumps.add(task)
            task.add_done_callback(self._pumps.discard)
        return process

    async def _start(
        self,
        program: str,
        args: list[str],
        *,
        cwd: Path | str | None,
        env: Mapping[str, str] | None,
        logs: LogRing | None,
        prefix: str,
        start_new_session: bool = False,
    ) -> asyncio.subprocess.Process:
        logger.info("Running command", command=program, args=" ".join(args), cwd=str(cwd or "."))
        try:
            return await asyncio.create_subprocess_exec(
                program,
                *args,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=start_new_session,
            )
        except OSError as e:
            message = f"{program} spawn error: {e}"
            logger.error("Command could not be started", command=program, error=str(e))
            if logs is not None:
                logs.push(f"{prefix}{message}\n")
            raise SpawnError(message) from e

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        logs: LogRing | None,
        prefix: str,
        sink: list[str] | None = None,
        combined: list[str] | None = None,
    ) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            if sink is not None:
                sink.append(text)
            if combined is not None:
                combined.append(text)
            line = f"{prefix}{text}"
            if logs is not None:
                logs.push(line)
            if self._echo:
                sys.stdout.write(line)
                sys.stdout.flush()

    async def close(self) -> None:
        """Cancel output pumps of processes still running."""
        for task in list(self._pumps):
            task.cancel()
        for task in list(self._pumps):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._pumps.clear()
