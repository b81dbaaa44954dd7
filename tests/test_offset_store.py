from __future__ import annotations

import json

import pytest

from openclaw_bridge.exceptions import BridgeStateError

from openclaw_bridge.models.cron import CronOffset
from openclaw_bridge.state.offsets import OffsetStore
from openclaw_bridge.status import ComponentHealth, StatusRegistry


@pytest.mark.asyncio
async def test_commit_persists_updates_and_removals(tmp_path) -> None:
    path = tmp_path / "offsets.json"
    store = OffsetStore(path)
    await store.commit([CronOffset(source_id="job:a", fingerprint="fa"), CronOffset(source_id="job:b", fingerprint="fb")])
    await store.commit([CronOffset(source_id="runlog:a.jsonl", position=42)], removals=["job:b"])

    reloaded = OffsetStore(path)
    assert set(reloaded.snapshot()) == {"job:a", "runlog:a.jsonl"}
    assert reloaded.get("job:a").fingerprint == "fa"
    assert reloaded.get("runlog:a.jsonl").position == 42
    assert set(reloaded.snapshot("job:")) == {"job:a"}

    document = json.loads(path.read_text(encoding="utf-8"))
    assert "sourceId" not in document["offsets"]["job:a"]


@pytest.mark.asyncio
async def test_empty_commit_does_not_touch_disk(tmp_path) -> None:
    path = tmp_path / "offsets.json"
    store = OffsetStore(path)
    await store.commit([], removals=["job:missing"])

    assert not path.exists()


def test_unknown_layout_starts_empty(tmp_path) -> None:
    path = tmp_path / "offsets.json"
    path.write_text(json.dumps(["not", "a", "document"]), encoding="utf-8")

    assert len(OffsetStore(path)) == 0


def test_malformed_json_starts_empty_and_is_visible_in_status(tmp_path) -> None:
    path = tmp_path / "offsets.json"
    path.write_text('{"version": 1, "offsets": {', encoding="utf-8")
    status = StatusRegistry()

    store = OffsetStore(path, status=status)

    assert len(store) == 0
    component = status.component(OffsetStore.COMPONENT)
    assert component.state is ComponentHealth.HEALTHY
    assert "Malformed JSON" in component.last_error


@pytest.mark.asyncio
async def test_failed_commit_degrades_and_raises(tmp_path, monkeypatch) -> None:
    status = StatusRegistry()
    store = OffsetStore(tmp_path / "offsets.json", status=status)

    def read_only(_document) -> None:
        raise BridgeStateError("read-only file system")

    monkeypatch.setattr(store._file, "write_now", read_only)
    with pytest.raises(BridgeStateError):
        await store.commit([CronOffset(source_id="job:a", fingerprint="fa")])

    assert status.component(OffsetStore.COMPONENT).state is ComponentHealth.DEGRADED
