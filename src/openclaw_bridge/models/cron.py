"""Cron mirroring models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import Field

from openclaw_bridge.models._base import BridgeModel, UtcDatetime, utcnow


class CronOffset(BridgeModel):
    """Last acknowledged state of one mirrored source.

    For job definitions ``fingerprint`` is the content hash of the job.
    For run-log files ``position`` is the byte offset already pushed.
    """

    source_id: str
    fingerprint: str = ""
    last_synced_at: UtcDatetime = Field(default_factory=utcnow)
    position: int | None = None


class JobChange(BridgeModel):
    """An added or changed job in a cron-sync push."""

    job_id: str
    fingerprint: str
    job: dict[str, Any]


class JobTombstone(BridgeModel):
    """A job that disappeared since the last acknowledged push."""

    job_id: str
    fingerprint: str


@dataclass(frozen=True)
class CronDelta:
    """Difference between the local job set and the acknowledged offsets."""

    added: list[JobChange] = field(default_factory=list)
    changed: list[JobChange] = field(default_factory=list)
    removed: list[JobTombstone] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.changed or self.removed)
