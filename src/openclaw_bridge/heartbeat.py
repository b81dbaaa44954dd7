"""Periodic machine heartbeat, run telemetry and other events."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import psutil

from openclaw_bridge._scheduler import PeriodicTask
from openclaw_bridge._transport import Transport
from openclaw_bridge.config import BridgeConfig
from openclaw_bridge.exceptions import BridgeError, BridgeTransportError
from openclaw_bridge.models._base import utcnow
from openclaw_bridge.models.telemetry import MachineHeartbeat, MachineResources, TelemetryEnvelope
from openclaw_bridge.runs import RunSource, RunStateTracker
from openclaw_bridge.state.spool import TelemetrySpooler
from openclaw_bridge.status import ComponentHealth, StatusRegistry

_logger = logging.getLogger(__name__)


def collect_machine_resources(disk_path: str = "/") -> MachineResources:
    """Sample CPU, memory and disk usage.

    CPU is the 1-minute load average over the core count, clamped to
    0-100, so sampling never blocks.
    """
    cores = psutil.cpu_count() or 0
    load_one = psutil.getloadavg()[0]
    cpu_pct = max(0.0, min(100.0, (load_one / cores) * 100)) if cores else 0.0
    memory = psutil.virtual_memory()
    resources: dict[str, Any] = {
        "cpu_pct": cpu_pct,
        "memory_bytes": memory.total - memory.available,
        "memory_pct": memory.percent,
    }
    try:
        disk = psutil.disk_usage(disk_path)
    except OSError:
        _logger.debug("Disk usage unavailable for %s", disk_path, exc_info=True)
    else:
        resources.update(disk_usage_bytes=disk.used, disk_total_bytes=disk.total, disk_pct=disk.percent)
    return MachineResources(**resources)


class HeartbeatEmitter:
    """Emit ``machine.heartbeat`` on a fixed interval.

    Heartbeats are latest-wins.  A failed delivery is queued in the spool
    when spooling is enabled; otherwise it is logged and superseded by the
    next tick.  While the spool holds a backlog, new events join the back
    of the queue so telemetry order is preserved.

    With a *run_source*, every tick also collects the visible agent runs
    and emits the resulting run and session events after the heartbeat.
    """

    COMPONENT = "heartbeat"
    RUN_COMPONENT = "run_detector"

    def __init__(
        self,
        config: BridgeConfig,
        transport: Transport,
        spooler: TelemetrySpooler,
        *,
        status: StatusRegistry | None = None,
        resources: Callable[[], MachineResources] = collect_machine_resources,
        in_flight_commands: Callable[[], int] = lambda: 0,
        run_source: RunSource | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._spooler = spooler
        self._status = status or StatusRegistry()
        self._resources = resources
        self._in_flight_commands = in_flight_commands
        self._run_source = run_source
        self._tracker = RunStateTracker(config.machine_id)
        self._loop = PeriodicTask("heartbeat", self.beat_once, config.heartbeat_interval)
        self.sent = 0

    @property
    def running(self) -> bool:
        return self._loop.running

    def start(self) -> None:
        self._loop.start()

    async def stop(self) -> None:
        await self._loop.stop()

    def build_heartbeat(self) -> TelemetryEnvelope:
        degraded = self._status.overall is ComponentHealth.DEGRADED
        heartbeat = MachineHeartbeat(
            machine_id=self._config.machine_id,
            status="degraded" if degraded else "online",
            resource=self._resources(),
            in_flight_commands=self._in_flight_commands(),
            spool_depth=self._spooler.pending,
        )
        return TelemetryEnvelope(
            machine_id=self._config.machine_id,
            type="machine.heartbeat",
            payload=heartbeat.to_wire(),
        )

    def build_registration(self) -> TelemetryEnvelope:
        return TelemetryEnvelope(
            machine_id=self._config.machine_id,
            type="machine.registered",
            payload={
                "machineId": self._config.machine_id,
                "name": self._config.machine_label,
                "kind": self._config.machine_kind,
                "status": "online",
                "bridgeVersion": self._config.bridge_version,
                "registeredAt": utcnow().isoformat(),
            },
        )

    async def emit(self, envelope: TelemetryEnvelope) -> bool:
        """Deliver *envelope*; returns ``True`` if it reached the control plane now."""
        body = envelope.to_wire()
        if self._spooler.enabled and self._spooler.pending:
            await self._spooler.append(body)
            return False
        try:
            await self._transport.post_json(self._config.telemetry_path, body)
        except BridgeTransportError as exc:
            self._status.record_failure(self.COMPONENT, exc)
            if self._spooler.enabled:
                await self._spooler.append(body)
                _logger.info("Telemetry %s queued for retry: %s", envelope.type, exc)
            else:
                _logger.warning("Telemetry %s dropped, spool disabled: %s", envelope.type, exc)
            return False
        self.sent += 1
        self._status.record_success(self.COMPONENT, sent=self.sent)
        return True

    async def announce(self) -> bool:
        """Emit ``machine.registered`` once at startup."""
        return await self.emit(self.build_registration())

    async def report_runs(self) -> int:
        """Collect runs once and emit what changed; returns the event count."""
        if self._run_source is None:
            return 0
        try:
            runs = await self._run_source.collect()
        except BridgeError as exc:
            _logger.warning("Run detection failed, keeping the previous snapshot: %s", exc)
            self._status.record_failure(self.RUN_COMPONENT, exc, degraded=False)
            return 0
        events = self._tracker.map_events(runs)
        for envelope in events:
            await self.emit(envelope)
        self._status.record_success(self.RUN_COMPONENT, known_runs=len(self._tracker.known_runs))
        if events:
            _logger.debug("Emitted %d run event(s)", len(events))
        return len(events)

    async def beat_once(self) -> bool:
        delivered = await self.emit(self.build_heartbeat())
        await self.report_runs()
        return delivered
