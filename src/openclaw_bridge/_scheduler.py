"""Timer-driven loops and retry helpers for the bridge's asyncio tasks."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from openclaw_bridge.exceptions import BridgeTransportError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(failures: int, *, base: float, cap: float) -> float:
    """Exponential delay for the *failures*-th consecutive failure, capped."""
    if failures <= 0:
        return 0.0
    return min(cap, base * (2 ** (failures - 1)))


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    max_delay: float,
    label: str,
) -> T:
    """Call *fn*, retrying :class:`BridgeTransportError` with backoff.

    The last error is re-raised once *attempts* are exhausted.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except BridgeTransportError as exc:
            if attempt >= attempts:
                raise
            delay = backoff_delay(attempt, base=base_delay, cap=max_delay)
            _logger.debug("%s failed attempt=%d retry_in=%.2fs: %s", label, attempt, delay, exc)
            await asyncio.sleep(delay)
            attempt += 1


class PeriodicTask:
    """Run ``tick`` every ``interval`` seconds on the running loop.

    A tick is *skipped*, not queued, while the previous tick is still
    outstanding.  ``interval`` may be a callable so a loop can shorten or
    stretch its next delay (e.g. backoff after a failure).
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], Awaitable[object]],
        interval: float | Callable[[], float],
    ) -> None:
        self.name = name
        self._tick = tick
        self._interval = interval
        self._runner: asyncio.Task[None] | None = None
        self._current: asyncio.Task[None] | None = None
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def _next_delay(self) -> float:
        interval = self._interval() if callable(self._interval) else self._interval
        return max(0.0, interval)

    def start(self, *, run_immediately: bool = True) -> None:
        if self.running:
            return
        self._runner = asyncio.create_task(self._run(run_immediately), name=f"periodic-{self.name}")

    async def _run(self, run_immediately: bool) -> None:
        if not run_immediately:
            await asyncio.sleep(self._next_delay())
        while True:
            if self._current is not None and not self._current.done():
                self.skipped += 1
                _logger.debug("Skipping %s tick, previous tick still running", self.name)
            else:
                self._current = asyncio.create_task(self._guarded_tick(), name=f"tick-{self.name}")
            await asyncio.sleep(self._next_delay())

    async def _guarded_tick(self) -> None:
        try:
            await self._tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            _logger.exception("Unhandled error in %s tick", self.name)

    async def stop(self) -> None:
        tasks = [t for t in (self._runner, self._current) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._runner = None
        self._current = None
