"""Count- and time-triggered consolidation requests."""

from __future__ import annotations

import asyncio
import time


class ConsolidationScheduler:
    """Merge the frame-count trigger and the periodic timer into one signal.

    The request slot holds at most one pending request, so any number of
    count triggers raised while a pass is pending collapse into that pass.
    """

    COUNT = "count"
    INTERVAL = "interval"

    def __init__(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = float(interval)
        self._requests: asyncio.Queue[str] = asyncio.Queue(maxsize=1)
        self._next_tick: float | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def pending(self) -> bool:
        return not self._requests.empty()

    def request(self, reason: str = COUNT) -> bool:
        """Ask for a pass without blocking; ``False`` when one is already pending."""

        try:
            self._requests.put_nowait(reason)
        except asyncio.QueueFull:
            return False
        return True

    async def wait_for_request(self, shutdown: asyncio.Event) -> str | None:
        """Wait for the next trigger; ``None`` once ``shutdown`` is set."""

        if shutdown.is_set():
            return None
        now = time.monotonic()
        if self._next_tick is None:
            self._next_tick = now + self._interval
        timeout = max(0.0, self._next_tick - now)

        request_task = asyncio.ensure_future(self._requests.get())
        shutdown_task = asyncio.ensure_future(shutdown.wait())
        try:
            done, _ = await asyncio.wait(
                {request_task, shutdown_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (request_task, shutdown_task):
                if not task.done():
                    task.cancel()
        # A request that completed alongside shutdown must not be lost.
        if request_task in done and not request_task.cancelled():
            reason = request_task.result()
            if shutdown_task in done:
                self.request(reason)
                return None
            return reason
        if shutdown_task in done:
            return None
        self._next_tick = time.monotonic() + self._interval
        return self.INTERVAL


__all__ = ["ConsolidationScheduler"]
