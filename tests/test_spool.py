from __future__ import annotations

from typing import Any

import pytest

from openclaw_bridge.exceptions import BridgeTransportError
from openclaw_bridge.state.spool import TelemetrySpooler
from openclaw_bridge.status import StatusRegistry


class _Sink:
    def __init__(self) -> None:
        self.attempts: list[int] = []
        self.delivered: list[int] = []
        self.fail_next = 0

    async def deliver(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.attempts.append(payload["n"])
        if self.fail_next:
            self.fail_next -= 1
            raise BridgeTransportError("ingest unavailable", status_code=503)
        self.delivered.append(payload["n"])
        return {}


@pytest.mark.asyncio
async def test_overflow_keeps_capacity_and_counts_drops(tmp_path) -> None:
    sink = _Sink()
    spool = TelemetrySpooler(tmp_path / "spool.json", sink.deliver, capacity=3)
    for n in range(5):
        await spool.append({"n": n})

    assert spool.pending == 3
    assert spool.dropped == 2
    assert [e.payload["n"] for e in spool.events()] == [2, 3, 4]


@pytest.mark.asyncio
async def test_flush_is_strictly_head_first(tmp_path) -> None:
    sink = _Sink()
    spool = TelemetrySpooler(tmp_path / "spool.json", sink.deliver, capacity=10)
    for n in (1, 2, 3):
        await spool.append({"n": n})

    sink.fail_next = 1
    assert await spool.flush_once() == 0
    assert sink.attempts == [1]
    assert spool.peek().payload == {"n": 1}

    assert await spool.flush_once() == 3
    assert sink.delivered == [1, 2, 3]
    assert spool.pending == 0


@pytest.mark.asyncio
async def test_spool_survives_restart(tmp_path) -> None:
    path = tmp_path / "spool.json"
    sink = _Sink()
    spool = TelemetrySpooler(path, sink.deliver, capacity=10)
    first = await spool.append({"n": 1})
    await spool.append({"n": 2})

    reloaded = TelemetrySpooler(path, sink.deliver, capacity=10)
    assert [e.payload["n"] for e in reloaded.events()] == [1, 2]
    third = await reloaded.append({"n": 3})
    assert third.sequence_id > first.sequence_id + 1


@pytest.mark.asyncio
async def test_hydrate_applies_smaller_capacity(tmp_path) -> None:
    path = tmp_path / "spool.json"
    sink = _Sink()
    spool = TelemetrySpooler(path, sink.deliver, capacity=10)
    for n in range(4):
        await spool.append({"n": n})

    reloaded = TelemetrySpooler(path, sink.deliver, capacity=2)
    assert [e.payload["n"] for e in reloaded.events()] == [2, 3]
    assert reloaded.dropped == 2


@pytest.mark.asyncio
async def test_disabled_spool_queues_nothing(tmp_path) -> None:
    path = tmp_path / "spool.json"
    spool = TelemetrySpooler(path, _Sink().deliver, capacity=10, enabled=False)

    assert await spool.append({"n": 1}) is None
    assert spool.pending == 0
    assert not path.exists()


@pytest.mark.asyncio
async def test_malformed_spool_file_starts_empty(tmp_path) -> None:
    path = tmp_path / "spool.json"
    path.write_text('{"version": 1, "events": [', encoding="utf-8")
    status = StatusRegistry()
    sink = _Sink()

    spool = TelemetrySpooler(path, sink.deliver, capacity=10, status=status)

    assert spool.pending == 0
    assert "Malformed JSON" in status.component(TelemetrySpooler.COMPONENT).last_error
    event = await spool.append({"n": 1})
    assert event.sequence_id == 1
    assert await spool.flush_once() == 1
