"""Periodic transport ping bound to a session's lifetime."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

LOGGER = logging.getLogger(__name__)


class LivenessMonitor:
    """Pings the peer every ``interval`` seconds until cancelled.

    ``start`` takes effect once and ``cancel`` is idempotent. Only pings that
    return a truthy value count as sent pings. A ping that raises is treated
    as a transport failure: the loop stops and ``on_failure`` runs.
    """

    def __init__(
        self,
        ping: Callable[[], Awaitable[object]],
        *,
        interval: float,
        on_failure: Callable[[BaseException], Awaitable[object]] | None = None,
        label: str = "",
    ) -> None:
        self._ping = ping
        self._interval = interval
        self._on_failure = on_failure
        self.label = label
        self._task: asyncio.Task | None = None
        self._cancelled = False
        self.pings_sent = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._cancelled

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        if self._task is not None or self._cancelled:
            LOGGER.warning("Keep-alive for %s already started; ignoring", self.label)
            return
        self._task = asyncio.create_task(self._run(), name=f"keepalive:{self.label}")

    def cancel(self) -> bool:
        """Stop pinging. Returns False when already cancelled."""

        if self._cancelled:
            return False
        self._cancelled = True
        task = self._task
        # The failure path cancels from inside the loop; that task ends on its own.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        LOGGER.debug("Keep-alive for %s cancelled after %d pings", self.label, self.pings_sent)
        return True

    async def _run(self) -> None:
        try:
            while not self._cancelled:
                await asyncio.sleep(self._interval)
                if self._cancelled:
                    return
                if await self._ping():
                    self.pings_sent += 1
                    LOGGER.debug("Heartbeat sent for %s", self.label)
                else:
                    LOGGER.debug("Heartbeat skipped for %s: transport cannot ping", self.label)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Keep-alive ping failed for %s: %s", self.label, exc)
            if self._on_failure is not None and not self._cancelled:
                await self._on_failure(exc)
