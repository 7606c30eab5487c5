"""Rolling port allocator for local preview dev servers."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from preview_host.exceptions import ResourceExhausted

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

logger = structlog.get_logger()


class PortAllocator:
    """Hands out ports from a fixed window, skipping ports held by live previews.

    The scan starts just after the last issued port so a port that was just
    released is not immediately reused while the OS may still hold it.
    """

    def __init__(
        self,
        base_port: int,
        window: int,
        ports_in_use: Callable[[], Iterable[int]],
    ) -> None:
        self._base_port = base_port
        self._window = window
        self._ports_in_use = ports_in_use
        self._last_port = base_port - 1

    @property
    def last_port(self) -> int:
        return self._last_port

    def allocate(self) -> int:
        """Return the next free port in the window.

        Raises:
            ResourceExhausted: Every port in the window is held.
        """
        in_use = set(self._ports_in_use())
        offset = self._last_port + 1 - self._base_port
        for i in range(self._window):
            candidate = (offset + i) % self._window + self._base_port
            if candidate not in in_use:
                self._last_port = candidate
                return candidate

        logger.error("Port window exhausted", base_port=self._base_port, window=self._window)
        raise ResourceExhausted("No free ports available")
