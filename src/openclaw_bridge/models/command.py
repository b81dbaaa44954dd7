"""Control-plane command models."""

from __future__ import annotations

import enum
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator

from openclaw_bridge.models._base import BridgeModel, OptionalUtcDatetime


class CommandIntent(enum.StrEnum):
    """Intents the bridge knows how to execute."""

    TRIGGER_JOB = "trigger_job"
    AGENT_SET_ENABLED = "agent_set_enabled"
    APPROVE_REQUEST = "approve_request"
    RUN_COMMAND = "run_command"


class CommandOutcome(enum.StrEnum):
    """Terminal outcome recorded in a receipt."""

    ACK = "ack"
    RESULT = "result"
    FAILED = "failed"


class CommandState(enum.StrEnum):
    """Lifecycle of a command inside the bridge.

    ``received -> leased -> (renewing)* -> completed | orphaned``
    """

    RECEIVED = "received"
    LEASED = "leased"
    RENEWING = "renewing"
    COMPLETED = "completed"
    ORPHANED = "orphaned"


class Command(BridgeModel):
    """A leased command as delivered by the poll endpoint.

    ``intent`` stays a plain string: an unknown intent must still be
    receivable so it can be answered with a ``failed`` receipt.
    """

    command_id: str
    intent: str
    args: dict[str, Any] = Field(default_factory=dict)
    lease_expires_at: OptionalUtcDatetime = None
    attempt: int = 1

    @model_validator(mode="before")
    @classmethod
    def _normalize_shapes(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        merged = dict(values)
        # Queue-record shape: {"id": ..., "snapshot": {"intent": ..., "args": ...}}
        if "commandId" not in merged and "command_id" not in merged and "id" in merged:
            merged["commandId"] = merged["id"]
        snapshot = merged.get("snapshot")
        if isinstance(snapshot, dict):
            merged.setdefault("intent", snapshot.get("intent"))
            merged.setdefault("args", snapshot.get("args") or {})
        return merged

    @field_validator("command_id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("commandId must be non-empty")
        return value


class PollResponse(BridgeModel):
    """Body of the command-poll endpoint.

    Entries stay raw here and are validated one at a time, so one
    malformed command cannot hide the valid ones delivered with it.
    """

    commands: list[Any] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_single_command(cls, values: Any) -> Any:
        if not isinstance(values, dict) or "commands" in values:
            return values
        command = values.get("command")
        if values.get("available") and isinstance(command, dict):
            return {"commands": [command]}
        return {"commands": []}


def raw_command_id(raw: Any) -> str | None:
    """Best-effort command id of an entry that failed validation."""
    if not isinstance(raw, dict):
        return None
    for key in ("commandId", "command_id", "id"):
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class LeaseRenewal(BridgeModel):
    """Body of the lease heartbeat endpoint (all fields optional)."""

    lease_expires_at: OptionalUtcDatetime = None


class ExecutionResult(BridgeModel):
    """Outcome of running a command through the local CLI."""

    status: Literal["succeeded", "failed"]
    exit_code: int
    duration_ms: int
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"
