"""Best-effort steps around a deployment whose failure must not fail it."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger()


@dataclass
class AdvisoryStep:
    """A named coroutine factory; its exceptions are logged and swallowed."""

    name: str
    run: Callable[[], Awaitable[Any]]


async def run_advisory_steps(
    steps: Sequence[AdvisoryStep],
    **context: Any,
) -> dict[str, Any]:
    """Run steps in order and map each name to its result.

    A step that raised maps to None. ``context`` is attached to log events.
    """
    results: dict[str, Any] = {}
    for step in steps:
        try:
            results[step.name] = await step.run()
        except Exception:
            logger.exception("Advisory step failed", step=step.name, **context)
            results[step.name] = None
    return results
