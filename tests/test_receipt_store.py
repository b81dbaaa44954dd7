from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta

import pytest

from openclaw_bridge.models.command import CommandOutcome
from openclaw_bridge.models.receipt import Receipt
from openclaw_bridge.exceptions import BridgeStateError
from openclaw_bridge.state.receipts import ReceiptStore
from openclaw_bridge.status import ComponentHealth, StatusRegistry


def _dt(hours: float = 0) -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC) + timedelta(hours=hours)


def _receipt(command_id: str, *, hours: float = 0, outcome: CommandOutcome = CommandOutcome.ACK) -> Receipt:
    return Receipt(command_id=command_id, outcome=outcome, completed_at=_dt(hours))


@pytest.mark.asyncio
async def test_receipts_survive_reload(tmp_path) -> None:
    path = tmp_path / "receipts.json"
    store = ReceiptStore(path, retention=3600 * 24, max_entries=10, clock=lambda: _dt(1))
    await store.put("cmd-1", _receipt("cmd-1", outcome=CommandOutcome.RESULT))
    await store.mark_reported("cmd-1")

    reloaded = ReceiptStore(path, retention=3600 * 24, max_entries=10, clock=lambda: _dt(1))
    stored = reloaded.get("cmd-1")
    assert stored is not None
    assert stored.outcome is CommandOutcome.RESULT
    assert stored.reported_at == _dt(1)
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 1


@pytest.mark.asyncio
async def test_first_receipt_wins(tmp_path) -> None:
    store = ReceiptStore(tmp_path / "r.json", retention=3600, max_entries=10, clock=lambda: _dt())
    first = await store.put("cmd-1", _receipt("cmd-1", outcome=CommandOutcome.RESULT))
    second = await store.put("cmd-1", _receipt("cmd-1", outcome=CommandOutcome.FAILED))

    assert second is first
    assert store.get("cmd-1").outcome is CommandOutcome.RESULT


@pytest.mark.asyncio
async def test_put_rejects_mismatched_id(tmp_path) -> None:
    store = ReceiptStore(tmp_path / "r.json", retention=3600, max_entries=10)
    with pytest.raises(ValueError):
        await store.put("cmd-1", _receipt("cmd-2"))


@pytest.mark.asyncio
async def test_prune_by_retention_and_cap(tmp_path) -> None:
    store = ReceiptStore(tmp_path / "r.json", retention=3600 * 10, max_entries=2, clock=lambda: _dt(20))
    await store.put("expired", _receipt("expired", hours=0))
    await store.put("old", _receipt("old", hours=15))
    await store.put("mid", _receipt("mid", hours=16))
    await store.put("new", _receipt("new", hours=17))

    assert "expired" not in store
    assert "old" not in store
    assert {"mid", "new"} <= {r.command_id for r in store.unreported()}
    assert len(store) == 2


@pytest.mark.asyncio
async def test_orphaned_receipts_are_not_unreported(tmp_path) -> None:
    store = ReceiptStore(tmp_path / "r.json", retention=3600, max_entries=10, clock=lambda: _dt())
    await store.put("cmd-1", _receipt("cmd-1"))
    await store.mark_orphaned("cmd-1")

    assert store.unreported() == []
    assert [r.command_id for r in store.orphaned()] == ["cmd-1"]


def test_corrupt_file_starts_empty(tmp_path, caplog) -> None:
    path = tmp_path / "r.json"
    path.write_text("{not json", encoding="utf-8")

    with caplog.at_level(logging.WARNING, logger="openclaw_bridge.state.receipts"):
        store = ReceiptStore(path, retention=3600, max_entries=10)

    assert len(store) == 0
    assert "unreadable" in caplog.text


def test_malformed_entries_are_skipped(tmp_path) -> None:
    path = tmp_path / "r.json"
    path.write_text(
        json.dumps(
            {
                "version": 1,
                "receipts": [
                    {"commandId": "cmd-1", "outcome": "ack", "completedAt": "2026-01-01T00:00:00Z"},
                    {"commandId": "cmd-2", "outcome": "exploded"},
                ],
            }
        ),
        encoding="utf-8",
    )
    store = ReceiptStore(path, retention=3600, max_entries=10)

    assert "cmd-1" in store
    assert "cmd-2" not in store


def test_corrupt_file_is_reported_to_status(tmp_path) -> None:
    path = tmp_path / "r.json"
    path.write_text("{not json", encoding="utf-8")
    status = StatusRegistry()

    ReceiptStore(path, retention=3600, max_entries=10, status=status)

    component = status.component(ReceiptStore.COMPONENT)
    assert component.state is ComponentHealth.HEALTHY
    assert "Malformed JSON" in component.last_error


@pytest.mark.asyncio
async def test_failed_put_keeps_receipt_in_memory(tmp_path, monkeypatch) -> None:
    status = StatusRegistry()
    store = ReceiptStore(tmp_path / "r.json", retention=3600, max_entries=10, status=status)

    def no_space(_document) -> None:
        raise BridgeStateError("no space left on device")

    monkeypatch.setattr(store._file, "write_now", no_space)
    with pytest.raises(BridgeStateError):
        await store.put("cmd-1", Receipt(command_id="cmd-1", outcome=CommandOutcome.ACK))
    await store.mark_reported("cmd-1")

    assert store.get("cmd-1").reported_at is not None
    assert status.component(ReceiptStore.COMPONENT).state is ComponentHealth.DEGRADED

    monkeypatch.undo()
    await store.mark_orphaned("cmd-1")
    assert status.component(ReceiptStore.COMPONENT).state is ComponentHealth.HEALTHY
    assert "cmd-1" in ReceiptStore(store.path, retention=3600, max_entries=10)
