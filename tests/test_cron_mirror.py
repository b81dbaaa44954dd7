from __future__ import annotations

import asyncio
import dataclasses
import json
from pathlib import Path

import pytest

from openclaw_bridge.cron import CronMirror, diff_jobs, fingerprint_job
from openclaw_bridge.exceptions import BridgeStateError
from openclaw_bridge.models.cron import CronOffset
from openclaw_bridge.state.offsets import OffsetStore
from openclaw_bridge.status import ComponentHealth, StatusRegistry


def _write_jobs(home: Path, *jobs: dict) -> None:
    (home / "cron" / "jobs.json").write_text(json.dumps({"jobs": list(jobs)}), encoding="utf-8")


def _mirror(config, transport) -> tuple[CronMirror, OffsetStore]:
    offsets = OffsetStore(config.cron_offset_file)
    return CronMirror(config, transport, offsets), offsets


def test_fingerprint_ignores_key_order() -> None:
    assert fingerprint_job({"id": "a", "schedule": "* * * * *"}) == fingerprint_job({"schedule": "* * * * *", "id": "a"})


def test_diff_jobs_reports_adds_changes_and_tombstones() -> None:
    known = {
        "a": CronOffset(source_id="job:a", fingerprint=fingerprint_job({"id": "a", "v": 1})),
        "b": CronOffset(source_id="job:b", fingerprint="fb"),
    }
    delta = diff_jobs({"a": {"id": "a", "v": 2}, "c": {"id": "c"}}, known)

    assert [c.job_id for c in delta.added] == ["c"]
    assert [c.job_id for c in delta.changed] == ["a"]
    assert [(t.job_id, t.fingerprint) for t in delta.removed] == [("b", "fb")]


@pytest.mark.asyncio
async def test_mutated_job_set_pushes_change_tombstone_and_add(config, transport, openclaw_home) -> None:
    mirror, offsets = _mirror(config, transport)
    _write_jobs(openclaw_home, {"id": "A", "schedule": "0 * * * *"}, {"id": "B", "schedule": "5 * * * *"})
    await mirror.sync_once()
    assert set(offsets.snapshot("job:")) == {"job:A", "job:B"}

    _write_jobs(openclaw_home, {"id": "A", "schedule": "30 * * * *"}, {"id": "C", "schedule": "1 * * * *"})
    delta = await mirror.sync_once()

    body = transport.bodies(config.cron_sync_path)[-1]
    assert [job["jobId"] for job in body["added"]] == ["C"]
    assert [job["jobId"] for job in body["changed"]] == ["A"]
    assert [job["jobId"] for job in body["removed"]] == ["B"]
    assert body["machineId"] == "machine_test"
    assert len(delta.added) == len(delta.changed) == len(delta.removed) == 1
    assert set(offsets.snapshot("job:")) == {"job:A", "job:C"}
    assert offsets.get("job:A").fingerprint == fingerprint_job({"id": "A", "schedule": "30 * * * *"})


@pytest.mark.asyncio
async def test_failed_push_leaves_offsets_untouched(config, transport, openclaw_home) -> None:
    mirror, offsets = _mirror(config, transport)
    _write_jobs(openclaw_home, {"id": "A"})
    transport.failures[config.cron_sync_path] = 1

    assert await mirror.sync_once() is None
    assert len(offsets) == 0
    assert not config.cron_offset_file.exists()

    await mirror.sync_once()
    bodies = transport.bodies(config.cron_sync_path)
    assert bodies[0]["added"] == bodies[1]["added"]
    assert offsets.get("job:A") is not None


@pytest.mark.asyncio
async def test_unchanged_jobs_are_not_pushed(config, transport, openclaw_home) -> None:
    mirror, _offsets = _mirror(config, transport)
    _write_jobs(openclaw_home, {"id": "A"})
    await mirror.sync_once()
    delta = await mirror.sync_once()

    assert delta.is_empty
    assert len(transport.bodies(config.cron_sync_path)) == 1


@pytest.mark.asyncio
async def test_missing_jobs_file_does_not_tombstone(config, transport, openclaw_home) -> None:
    mirror, offsets = _mirror(config, transport)
    _write_jobs(openclaw_home, {"id": "A"})
    await mirror.sync_once()
    (openclaw_home / "cron" / "jobs.json").unlink()

    await mirror.sync_once()

    assert len(transport.bodies(config.cron_sync_path)) == 1
    assert offsets.get("job:A") is not None


@pytest.mark.asyncio
async def test_malformed_jobs_file_skips_tick(config, transport, openclaw_home) -> None:
    mirror, _offsets = _mirror(config, transport)
    (openclaw_home / "cron" / "jobs.json").write_text("[{", encoding="utf-8")

    assert await mirror.sync_once() is None
    assert transport.calls == []


@pytest.mark.asyncio
async def test_run_logs_are_tailed_incrementally(config, transport, openclaw_home) -> None:
    mirror, offsets = _mirror(config, transport)
    runs_dir = openclaw_home / "cron" / "runs"
    runs_dir.mkdir()
    log = runs_dir / "A.jsonl"
    log.write_text(
        json.dumps({"jobId": "A", "status": "ok"}) + "\n" + json.dumps({"jobId": "A", "status": "error"}) + "\n"
        '{"jobId": "A", "sta',
        encoding="utf-8",
    )

    await mirror.sync_once()
    first = transport.bodies(config.cron_sync_path)[0]
    assert [run["status"] for run in first["newRuns"]["A"]] == ["ok", "error"]
    position = offsets.get("runlog:A.jsonl").position

    with open(log, "a", encoding="utf-8") as handle:
        handle.write('tus": "late"}\n')
    await mirror.sync_once()

    second = transport.bodies(config.cron_sync_path)[1]
    assert [run["status"] for run in second["newRuns"]["A"]] == ["late"]
    assert offsets.get("runlog:A.jsonl").position > position


@pytest.mark.asyncio
async def test_offset_write_failure_degrades_mirror(config, transport, openclaw_home, monkeypatch) -> None:
    status = StatusRegistry()
    offsets = OffsetStore(config.cron_offset_file, status=status)
    mirror = CronMirror(config, transport, offsets, status=status)

    def unwritable(_document) -> None:
        raise BridgeStateError("permission denied")

    monkeypatch.setattr(offsets._file, "write_now", unwritable)
    _write_jobs(openclaw_home, {"id": "A", "schedule": "0 * * * *"})

    assert await mirror.sync_once() is None
    assert len(transport.bodies(config.cron_sync_path)) == 1
    assert status.component(CronMirror.COMPONENT).state is ComponentHealth.DEGRADED
    assert status.component(OffsetStore.COMPONENT).last_error == "permission denied"


@pytest.mark.asyncio
async def test_slow_sync_skips_ticks_instead_of_queueing(config, transport, openclaw_home) -> None:
    config = dataclasses.replace(config, cron_sync_interval=0.05)
    release = asyncio.Event()

    async def slow_push(_payload: dict) -> dict:
        await release.wait()
        return {}

    transport.handlers[config.cron_sync_path] = slow_push
    _write_jobs(openclaw_home, {"id": "A", "schedule": "0 * * * *"})
    mirror, offsets = _mirror(config, transport)

    mirror.start()
    await asyncio.sleep(0.3)
    assert len(transport.bodies(config.cron_sync_path)) == 1
    assert mirror._loop.skipped >= 1

    release.set()
    await asyncio.sleep(0.02)
    await mirror.stop()
    assert offsets.get("job:A") is not None
