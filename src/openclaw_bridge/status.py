"""In-process status registry shared by the bridge components.

One registry is created per :class:`~openclaw_bridge.runtime.BridgeRuntime`
and injected into every component; the health endpoint only reads it.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from openclaw_bridge.models._base import utcnow


class ComponentHealth(enum.StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


@dataclass
class ComponentStatus:
    """Last-known state of one component."""

    name: str
    state: ComponentHealth = ComponentHealth.HEALTHY
    last_error: str | None = None
    last_error_at: datetime | None = None
    last_success_at: datetime | None = None
    consecutive_failures: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": str(self.state),
            "lastError": self.last_error,
            "lastErrorAt": self.last_error_at.isoformat() if self.last_error_at else None,
            "lastSuccessAt": self.last_success_at.isoformat() if self.last_success_at else None,
            "consecutiveFailures": self.consecutive_failures,
            "details": dict(self.details),
        }


class StatusRegistry:
    """Named component statuses with an aggregated overall state."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._components: dict[str, ComponentStatus] = {}

    def component(self, name: str) -> ComponentStatus:
        status = self._components.get(name)
        if status is None:
            status = ComponentStatus(name=name)
            self._components[name] = status
        return status

    def record_success(self, name: str, **details: Any) -> None:
        status = self.component(name)
        status.state = ComponentHealth.HEALTHY
        status.consecutive_failures = 0
        status.last_success_at = self._clock()
        status.details.update(details)

    def record_failure(self, name: str, error: BaseException | str, *, degraded: bool = True, **details: Any) -> None:
        """Record a failed operation.

        With ``degraded=False`` the error is kept for inspection but the
        component stays ``healthy`` (e.g. below a failure threshold).
        """
        status = self.component(name)
        status.consecutive_failures += 1
        status.last_error = str(error)
        status.last_error_at = self._clock()
        if degraded:
            status.state = ComponentHealth.DEGRADED
        status.details.update(details)

    def update_details(self, name: str, **details: Any) -> None:
        self.component(name).details.update(details)

    @property
    def overall(self) -> ComponentHealth:
        if any(s.state is ComponentHealth.DEGRADED for s in self._components.values()):
            return ComponentHealth.DEGRADED
        return ComponentHealth.HEALTHY

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: status.as_dict() for name, status in sorted(self._components.items())}
