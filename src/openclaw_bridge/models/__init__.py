"""Typed models for control-plane payloads and persisted bridge state."""

from openclaw_bridge.models.command import (
    Command,
    CommandIntent,
    CommandOutcome,
    CommandState,
    ExecutionResult,
    LeaseRenewal,
    PollResponse,
)
from openclaw_bridge.models.cron import CronDelta, CronOffset, JobChange, JobTombstone
from openclaw_bridge.models.receipt import Receipt
from openclaw_bridge.models.run import (
    DetectedLogEntry,
    DetectedModelUsage,
    DetectedRun,
    DetectedToolCall,
    RunState,
)
from openclaw_bridge.models.telemetry import (
    MachineHeartbeat,
    MachineResources,
    SpooledEvent,
    TelemetryEnvelope,
    TelemetryTrace,
)

__all__ = [
    "Command",
    "CommandIntent",
    "CommandOutcome",
    "CommandState",
    "CronDelta",
    "CronOffset",
    "DetectedLogEntry",
    "DetectedModelUsage",
    "DetectedRun",
    "DetectedToolCall",
    "ExecutionResult",
    "JobChange",
    "JobTombstone",
    "LeaseRenewal",
    "MachineHeartbeat",
    "MachineResources",
    "PollResponse",
    "Receipt",
    "RunState",
    "SpooledEvent",
    "TelemetryEnvelope",
    "TelemetryTrace",
]
