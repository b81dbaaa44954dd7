"""Command receipt model (idempotency ledger entry)."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from openclaw_bridge.models._base import BridgeModel, OptionalUtcDatetime, UtcDatetime, utcnow
from openclaw_bridge.models.command import CommandOutcome


class Receipt(BridgeModel):
    """Terminal outcome of a command.

    ``reported_at`` is set once the control plane accepted the result;
    ``orphaned`` marks receipts whose reporting exhausted its retries.
    Neither field is part of the reported body, so re-sends stay
    identical to the first send.
    """

    command_id: str
    outcome: CommandOutcome
    payload: dict[str, Any] | None = None
    completed_at: UtcDatetime = Field(default_factory=utcnow)
    reported_at: OptionalUtcDatetime = None
    orphaned: bool = False

    def result_body(self, machine_id: str) -> dict[str, Any]:
        """Body posted to the result endpoint for this receipt."""
        wire = self.to_wire()
        return {
            "machineId": machine_id,
            "outcome": wire["outcome"],
            "payload": wire["payload"],
            "completedAt": wire["completedAt"],
        }
