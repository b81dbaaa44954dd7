"""Incremental mirroring of local cron jobs to the control plane.

Each tick reads ``<openclaw_home>/cron/jobs.json``, fingerprints every
job and pushes only what changed since the last *acknowledged* push:
added jobs, changed jobs and tombstones for jobs that disappeared.  New
lines appended to ``cron/runs/*.jsonl`` ride along as ``newRuns``.

Offsets are committed only after the control plane accepted the push.
A crash in between leads to the same delta being pushed again, which
the control plane dedupes by job id + fingerprint.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

from openclaw_bridge._scheduler import PeriodicTask
from openclaw_bridge._transport import Transport
from openclaw_bridge.config import BridgeConfig
from openclaw_bridge.exceptions import BridgeStateError, BridgeTransportError
from openclaw_bridge.models._base import utcnow
from openclaw_bridge.models.cron import CronDelta, CronOffset, JobChange, JobTombstone
from openclaw_bridge.state.offsets import OffsetStore
from openclaw_bridge.status import StatusRegistry

_logger = logging.getLogger(__name__)

JOB_PREFIX = "job:"
RUN_LOG_PREFIX = "runlog:"

RunsByJob = dict[str, list[dict[str, Any]]]


def fingerprint_job(job: Mapping[str, Any]) -> str:
    """SHA-256 of the job's canonical JSON (sorted keys, compact)."""
    canonical = json.dumps(job, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def diff_jobs(current: Mapping[str, Mapping[str, Any]], known: Mapping[str, CronOffset]) -> CronDelta:
    """Compare the local job set against acknowledged fingerprints.

    *known* is keyed by job id (without the store prefix).
    """
    added: list[JobChange] = []
    changed: list[JobChange] = []
    for job_id in sorted(current):
        job = dict(current[job_id])
        fingerprint = fingerprint_job(job)
        previous = known.get(job_id)
        if previous is None:
            added.append(JobChange(job_id=job_id, fingerprint=fingerprint, job=job))
        elif previous.fingerprint != fingerprint:
            changed.append(JobChange(job_id=job_id, fingerprint=fingerprint, job=job))
    removed = [
        JobTombstone(job_id=job_id, fingerprint=known[job_id].fingerprint)
        for job_id in sorted(known)
        if job_id not in current
    ]
    return CronDelta(added=added, changed=changed, removed=removed)


class CronSource(Protocol):
    """Where the local job set and run logs come from."""

    def read_jobs(self) -> dict[str, dict[str, Any]] | None:
        ...

    def read_new_runs(self, positions: Mapping[str, int]) -> tuple[RunsByJob, dict[str, int]]:
        ...


class LocalCronSource:
    """Reads jobs and run logs from an openclaw home directory."""

    def __init__(self, openclaw_home: Path) -> None:
        self.jobs_path = Path(openclaw_home) / "cron" / "jobs.json"
        self.runs_dir = Path(openclaw_home) / "cron" / "runs"

    def read_jobs(self) -> dict[str, dict[str, Any]] | None:
        """Return jobs keyed by id, or ``None`` if the jobs file is absent.

        Raises
        ------
        BridgeStateError
            If the file exists but is not valid JSON.
        """
        try:
            text = self.jobs_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise BridgeStateError(f"Cannot read {self.jobs_path}: {exc}", path=str(self.jobs_path)) from exc
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise BridgeStateError(f"Malformed {self.jobs_path}: {exc}", path=str(self.jobs_path)) from exc

        entries = document.get("jobs") if isinstance(document, dict) else document
        if not isinstance(entries, list):
            raise BridgeStateError(f"{self.jobs_path} holds no job list", path=str(self.jobs_path))
        jobs: dict[str, dict[str, Any]] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            job_id = entry.get("id") or entry.get("jobId")
            if isinstance(job_id, str) and job_id:
                jobs[job_id] = entry
        return jobs

    @staticmethod
    def _read_complete_lines(path: Path, position: int) -> tuple[list[str], int]:
        size = path.stat().st_size
        # A file shorter than our cursor was rotated or truncated.
        start = 0 if position > size else position
        if size <= start:
            return [], start
        with open(path, "rb") as handle:
            handle.seek(start)
            chunk = handle.read(size - start)
        last_newline = chunk.rfind(b"\n")
        if last_newline == -1:
            return [], start
        consumable = chunk[: last_newline + 1]
        lines = [line for line in consumable.decode("utf-8", errors="replace").split("\n") if line]
        return lines, start + len(consumable)

    def read_new_runs(self, positions: Mapping[str, int]) -> tuple[RunsByJob, dict[str, int]]:
        """Collect complete run records appended since *positions*.

        Returns runs grouped by job id and the next byte position per file.
        """
        next_positions = dict(positions)
        runs: RunsByJob = {}
        if not self.runs_dir.is_dir():
            return runs, next_positions
        for path in sorted(self.runs_dir.glob("*.jsonl")):
            try:
                lines, next_positions[path.name] = self._read_complete_lines(path, positions.get(path.name, 0))
            except OSError:
                _logger.debug("Cannot read run log %s", path, exc_info=True)
                continue
            for line in lines:
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                job_id = record.get("jobId") if isinstance(record, dict) else None
                if isinstance(job_id, str) and job_id:
                    runs.setdefault(job_id, []).append(record)
        return runs, next_positions


class CronMirror:
    """Periodic cron-sync pusher backed by an :class:`OffsetStore`."""

    COMPONENT = "cron_mirror"

    def __init__(
        self,
        config: BridgeConfig,
        transport: Transport,
        offsets: OffsetStore,
        *,
        source: CronSource | None = None,
        status: StatusRegistry | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._offsets = offsets
        self._source = source or LocalCronSource(config.openclaw_home)
        self._status = status or StatusRegistry()
        self._loop = PeriodicTask("cron-sync", self.sync_once, config.cron_sync_interval)

    @property
    def running(self) -> bool:
        return self._loop.running

    def start(self, *, skip_initial_sync: bool = False) -> None:
        self._loop.start(run_immediately=not skip_initial_sync)

    async def stop(self) -> None:
        await self._loop.stop()

    def _known_jobs(self) -> dict[str, CronOffset]:
        return {sid[len(JOB_PREFIX):]: off for sid, off in self._offsets.snapshot(JOB_PREFIX).items()}

    def _known_positions(self) -> dict[str, int]:
        return {
            sid[len(RUN_LOG_PREFIX):]: off.position or 0
            for sid, off in self._offsets.snapshot(RUN_LOG_PREFIX).items()
        }

    async def sync_once(self) -> CronDelta | None:
        """Push the current delta once.

        Returns the delta that was acknowledged (possibly empty), or
        ``None`` when nothing could be pushed this tick.
        """
        try:
            jobs = self._source.read_jobs()
        except BridgeStateError as exc:
            _logger.warning("Cron jobs unreadable, skipping sync: %s", exc)
            self._status.record_failure(self.COMPONENT, exc)
            return None

        # A missing jobs file means "no data", not "all jobs deleted".
        delta = diff_jobs(jobs, self._known_jobs()) if jobs is not None else CronDelta()
        positions = self._known_positions()
        new_runs, next_positions = self._source.read_new_runs(positions)
        moved = {name: pos for name, pos in next_positions.items() if positions.get(name) != pos}

        if delta.is_empty and not new_runs and not moved:
            self._status.record_success(self.COMPONENT, tracked_jobs=len(self._known_jobs()))
            return delta

        if not delta.is_empty or new_runs:
            body = {
                "machineId": self._config.machine_id,
                "added": [change.to_wire() for change in delta.added],
                "changed": [change.to_wire() for change in delta.changed],
                "removed": [tombstone.to_wire() for tombstone in delta.removed],
                "newRuns": new_runs,
                "sentAt": utcnow().isoformat(),
            }
            try:
                await self._transport.post_json(self._config.cron_sync_path, body)
            except BridgeTransportError as exc:
                _logger.warning("Cron sync push failed, offsets unchanged: %s", exc)
                self._status.record_failure(self.COMPONENT, exc)
                return None

        now = utcnow()
        updates = [
            CronOffset(source_id=f"{JOB_PREFIX}{change.job_id}", fingerprint=change.fingerprint, last_synced_at=now)
            for change in (*delta.added, *delta.changed)
        ]
        updates.extend(
            CronOffset(source_id=f"{RUN_LOG_PREFIX}{name}", last_synced_at=now, position=pos)
            for name, pos in moved.items()
        )
        removals = [f"{JOB_PREFIX}{tombstone.job_id}" for tombstone in delta.removed]
        try:
            await self._offsets.commit(updates, removals)
        except BridgeStateError as exc:
            _logger.warning("Cron sync pushed but offsets not persisted: %s", exc)
            self._status.record_failure(self.COMPONENT, exc)
            return None

        _logger.info(
            "Cron sync pushed added=%d changed=%d removed=%d run_jobs=%d",
            len(delta.added),
            len(delta.changed),
            len(delta.removed),
            len(new_runs),
        )
        self._status.record_success(self.COMPONENT, tracked_jobs=len(self._known_jobs()))
        return delta
