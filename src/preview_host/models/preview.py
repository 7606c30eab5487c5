"""In-memory state for previews and deployment jobs."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import asyncio
    from pathlib import Path

DEFAULT_LOG_CAPACITY = 4000


class LogRing:
    """Fixed-capacity buffer of the most recent output chunks."""

    def __init__(self, capacity: int = DEFAULT_LOG_CAPACITY) -> None:
        self._chunks: deque[str] = deque(maxlen=capacity)

    def push(self, chunk: str) -> None:
        self._chunks.append(chunk)

    def text(self) -> str:
        return "".join(self._chunks)

    def tail(self, chars: int) -> str:
        """Last ``chars`` characters of the buffered output."""
        return self.text()[-chars:] if chars > 0 else ""

    @property
    def capacity(self) -> int:
        return self._chunks.maxlen or 0

    def __len__(self) -> int:
        return len(self._chunks)


class PreviewStatus(str, Enum):
    """Lifecycle state of a preview registry entry."""

    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    DEPLOYED = "deployed"


@dataclass
class Preview:
    """One running or externally deployed instance of a project."""

    id: str
    directory: Path
    status: PreviewStatus = PreviewStatus.STARTING
    port: int | None = None
    process: asyncio.subprocess.Process | None = None
    logs: LogRing = field(default_factory=LogRing)
    last_hit: float = field(default_factory=time.monotonic)
    last_error: str | None = None
    external_platform: str | None = None
    deployment_url: str | None = None

    @property
    def is_external(self) -> bool:
        return self.external_platform is not None

    def touch(self) -> None:
        """Record traffic; drives idle reaping."""
        self.last_hit = time.monotonic()

    def idle_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_hit

    def to_status(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "port": self.port,
            "dir": str(self.directory),
            "lastError": self.last_error,
            "externalPlatform": self.external_platform,
            "deploymentUrl": self.deployment_url,
        }


class JobStatus(str, Enum):
    """Outcome of an external deployment attempt."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class DeploymentJob:
    """Tracked outcome of one external deployment attempt."""

    project_id: str
    platform: str
    status: JobStatus = JobStatus.IN_PROGRESS
    start_time: float = field(default_factory=time.time)
    error: str | None = None
    logs_snapshot: str = ""
    deployment_url: str | None = None
    callback_id: str | None = None
    settled_at: float | None = None

    @property
    def is_settled(self) -> bool:
        return self.status != JobStatus.IN_PROGRESS

    def complete(self, deployment_url: str | None, logs: str) -> bool:
        """Mark completed. Returns False if the job already settled."""
        if self.is_settled:
            return False
        self.status = JobStatus.COMPLETED
        self.deployment_url = deployment_url
        self.logs_snapshot = logs
        self.settled_at = time.monotonic()
        return True

    def fail(self, error: str, logs: str) -> bool:
        """Mark failed. Returns False if the job already settled."""
        if self.is_settled:
            return False
        self.status = JobStatus.FAILED
        self.error = error
        self.logs_snapshot = logs
        self.settled_at = time.monotonic()
        return True

    def to_status(self) -> dict[str, Any]:
        start_ms = int(self.start_time * 1000)
        body: dict[str, Any] = {
            "projectId": self.project_id,
            "status": self.status.value,
            "startTime": start_ms,
            "duration": int(time.time() * 1000) - start_ms,
            "platform": self.platform,
        }
        if self.status == JobStatus.COMPLETED:
            body["deploymentUrl"] = self.deployment_url
            body["success"] = True
        elif self.status == JobStatus.FAILED:
            body["error"] = self.error
            body["logs"] = self.logs_snapshot
            body["success"] = False
        return body
