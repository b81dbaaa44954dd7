"""Agent runs detected on the local openclaw install."""

from __future__ import annotations

import enum
from typing import Literal

from pydantic import ConfigDict, Field

from openclaw_bridge.models._base import BridgeModel


class RunState(enum.StrEnum):
    """Lifecycle shared by runs and sessions."""

    CREATED = "created"
    QUEUED = "queued"
    RUNNING = "running"
    WAITING_TOOL = "waiting_tool"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED)

    @property
    def is_active(self) -> bool:
        return not self.is_terminal


LogLevel = Literal["debug", "info", "warn", "error", "critical"]
ToolCallStatus = Literal["started", "completed", "failed", "cancelled"]


class DetectedToolCall(BridgeModel):
    tool_call_id: str
    tool_name: str
    status: ToolCallStatus = "completed"
    started_at: str | None = None
    duration_ms: float | None = None
    success: bool | None = None
    error_message: str | None = None


class DetectedModelUsage(BridgeModel):
    provider: str = "unknown"
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float | None = None


class DetectedLogEntry(BridgeModel):
    id: str
    level: LogLevel = "info"
    message: str
    ts: str


class DetectedRun(BridgeModel):
    """One run as reported by a run source, already normalized."""

    model_config = ConfigDict(protected_namespaces=())

    run_id: str
    session_id: str
    agent_id: str
    state: RunState
    started_at: str | None = None
    tool_calls: list[DetectedToolCall] = Field(default_factory=list)
    model_usage: DetectedModelUsage | None = None
    logs: list[DetectedLogEntry] = Field(default_factory=list)
    error_message: str | None = None
