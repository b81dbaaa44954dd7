"""Durable, ordered, bounded outbox for telemetry.

Delivery is strictly head-first: event N+1 is never attempted before
event N was delivered (or dropped by overflow).  Overflow drops the
oldest events and counts them instead of blocking producers.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from openclaw_bridge._constants import STATE_FILE_VERSION
from openclaw_bridge._scheduler import PeriodicTask
from openclaw_bridge.exceptions import BridgeError, BridgeStateError
from openclaw_bridge.models._base import utcnow
from openclaw_bridge.models.telemetry import SpooledEvent
from openclaw_bridge.state._file import AtomicJsonFile
from openclaw_bridge.status import StatusRegistry

_logger = logging.getLogger(__name__)

Deliver = Callable[[dict[str, Any]], Awaitable[object]]


class TelemetrySpooler:
    """Disk-backed FIFO of telemetry payloads.

    Parameters
    ----------
    path
        Spool file, exclusively owned by this spooler.
    deliver
        Coroutine function posting one payload; any :class:`BridgeError`
        counts as a failed delivery.
    capacity
        Maximum queued events.
    enabled
        When ``False``, :meth:`append` is a no-op and nothing touches disk.
    flush_interval
        Seconds between flush attempts of the background loop.
    """

    COMPONENT = "telemetry_spool"

    def __init__(
        self,
        path: str | Path,
        deliver: Deliver,
        *,
        capacity: int,
        enabled: bool = True,
        flush_interval: float = 2.0,
        status: StatusRegistry | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._file = AtomicJsonFile(path)
        self._deliver = deliver
        self._capacity = capacity
        self._enabled = enabled
        self._status = status or StatusRegistry()
        self._events: deque[SpooledEvent] = deque()
        self._next_sequence = 1
        self._dropped = 0
        self._flushing = False
        self._loop = PeriodicTask("telemetry-flush", self.flush_once, flush_interval)
        if enabled:
            self._load()
        self._publish()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def pending(self) -> int:
        return len(self._events)

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def capacity(self) -> int:
        return self._capacity

    def peek(self) -> SpooledEvent | None:
        return self._events[0] if self._events else None

    def events(self) -> list[SpooledEvent]:
        return list(self._events)

    def _publish(self) -> None:
        self._status.update_details(
            self.COMPONENT,
            enabled=self._enabled,
            pending=len(self._events),
            dropped=self._dropped,
            capacity=self._capacity,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        try:
            document = self._file.read()
        except BridgeStateError as exc:
            _logger.warning("Telemetry spool unreadable, starting empty: %s", exc)
            self._status.record_failure(self.COMPONENT, exc, degraded=False)
            return
        if document is None:
            return
        if (
            not isinstance(document, dict)
            or document.get("version") != STATE_FILE_VERSION
            or not isinstance(document.get("events"), list)
        ):
            _logger.warning("Telemetry spool %s has an unknown layout, starting empty", self._file.path)
            self._status.record_failure(self.COMPONENT, f"unknown layout in {self._file.path}", degraded=False)
            return
        loaded: list[SpooledEvent] = []
        for raw in document["events"]:
            try:
                loaded.append(SpooledEvent.model_validate(raw))
            except ValidationError:
                _logger.warning("Skipping malformed spooled event in %s", self._file.path)
        loaded.sort(key=lambda e: e.sequence_id)
        overflow = max(0, len(loaded) - self._capacity)
        self._events = deque(loaded[overflow:])
        self._dropped = int(document.get("dropped", 0) or 0) + overflow
        highest = loaded[-1].sequence_id if loaded else 0
        self._next_sequence = max(int(document.get("nextSequence", 1) or 1), highest + 1)
        _logger.info(
            "Hydrated telemetry spool pending=%d dropped_on_hydrate=%d", len(self._events), overflow
        )

    async def _persist(self) -> None:
        try:
            await self._file.write(
                {
                    "version": STATE_FILE_VERSION,
                    "headSequence": self._events[0].sequence_id if self._events else self._next_sequence,
                    "nextSequence": self._next_sequence,
                    "dropped": self._dropped,
                    "events": [e.to_wire() for e in self._events],
                }
            )
        except BridgeStateError as exc:
            # The in-memory queue stays authoritative; the next write retries.
            _logger.warning("Telemetry spool persist failed: %s", exc)
            self._status.record_failure(self.COMPONENT, exc)
        else:
            self._status.update_details(self.COMPONENT, last_persisted_at=utcnow().isoformat())

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def append(self, payload: dict[str, Any]) -> SpooledEvent | None:
        """Enqueue *payload*; returns ``None`` when spooling is disabled."""
        if not self._enabled:
            _logger.debug("Telemetry spool disabled, not queueing event")
            return None
        event = SpooledEvent(sequence_id=self._next_sequence, payload=payload)
        self._next_sequence += 1
        self._events.append(event)
        overflow = 0
        while len(self._events) > self._capacity:
            self._events.popleft()
            overflow += 1
        if overflow:
            self._dropped += overflow
            _logger.warning("Telemetry spool full, dropped %d oldest event(s) total=%d", overflow, self._dropped)
        await self._persist()
        self._publish()
        return event

    async def flush_once(self) -> int:
        """Deliver queued events head-first until one fails.

        Returns the number of events delivered.
        """
        if not self._enabled or self._flushing:
            return 0
        self._flushing = True
        delivered = 0
        try:
            while self._events:
                head = self._events[0]
                try:
                    await self._deliver(head.payload)
                except BridgeError as exc:
                    _logger.debug("Telemetry flush stopped at sequence_id=%d: %s", head.sequence_id, exc)
                    self._status.record_failure(self.COMPONENT, exc)
                    break
                # The head may have been dropped by overflow while delivering.
                if self._events and self._events[0].sequence_id == head.sequence_id:
                    self._events.popleft()
                delivered += 1
                await self._persist()
            else:
                self._status.record_success(self.COMPONENT)
        finally:
            self._flushing = False
            self._publish()
        if delivered:
            _logger.debug("Flushed %d telemetry event(s), pending=%d", delivered, len(self._events))
        return delivered

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._enabled:
            self._loop.start()

    async def stop(self) -> None:
        await self._loop.stop()
