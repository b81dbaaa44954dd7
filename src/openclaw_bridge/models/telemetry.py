"""Telemetry envelope, spool entry and heartbeat models."""

from __future__ import annotations

import secrets
import time
from typing import Any, Literal

from pydantic import Field

from openclaw_bridge._constants import TELEMETRY_SCHEMA_VERSION
from openclaw_bridge.models._base import BridgeModel, UtcDatetime, utcnow


def _make_id(prefix: str) -> str:
    stamp = format(int(time.time() * 1000), "x")
    return f"{prefix}_{stamp}_{secrets.token_hex(4)}"


class TelemetryTrace(BridgeModel):
    trace_id: str = Field(default_factory=lambda: _make_id("trace"))
    span_id: str = Field(default_factory=lambda: _make_id("span"))


class TelemetryEnvelope(BridgeModel):
    """One event posted to the telemetry ingestion endpoint."""

    version: str = TELEMETRY_SCHEMA_VERSION
    id: str = Field(default_factory=lambda: _make_id("evt"))
    ts: UtcDatetime = Field(default_factory=utcnow)
    machine_id: str
    severity: Literal["debug", "info", "warn", "error", "critical"] = "info"
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    trace: TelemetryTrace = Field(default_factory=TelemetryTrace)


class SpooledEvent(BridgeModel):
    """An envelope waiting in the telemetry spool."""

    sequence_id: int
    payload: dict[str, Any]
    captured_at: UtcDatetime = Field(default_factory=utcnow)


class MachineResources(BridgeModel):
    cpu_pct: float
    memory_bytes: int
    memory_pct: float
    disk_usage_bytes: int | None = None
    disk_total_bytes: int | None = None
    disk_pct: float | None = None


class MachineHeartbeat(BridgeModel):
    """Liveness payload; recomputed every tick and never persisted."""

    machine_id: str
    status: Literal["online", "degraded"] = "online"
    resource: MachineResources
    in_flight_commands: int = 0
    spool_depth: int = 0
