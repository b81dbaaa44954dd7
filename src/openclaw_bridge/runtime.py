"""Wiring of the bridge components into one runnable unit."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import aiohttp

from openclaw_bridge._transport import HttpTransport, Transport
from openclaw_bridge.commands import CommandLeaseClient
from openclaw_bridge.config import BridgeConfig
from openclaw_bridge.cron import CronMirror, CronSource
from openclaw_bridge.exceptions import BridgeConfigError, BridgeError
from openclaw_bridge.executor import CliCommandExecutor, CommandExecutor
from openclaw_bridge.health import HealthServer
from openclaw_bridge.heartbeat import HeartbeatEmitter
from openclaw_bridge.runs import CliRunSource, RunSource, SessionDirRunSource
from openclaw_bridge.state import OffsetStore, ReceiptStore, TelemetrySpooler
from openclaw_bridge.status import StatusRegistry

_logger = logging.getLogger(__name__)


class BridgeRuntime:
    """Owns the HTTP session, the state stores and every periodic loop.

    Usage::

        async with BridgeRuntime(BridgeConfig.from_env()) as runtime:
            await runtime.start()
            await stop_event.wait()

    Leaving the context stops all components and closes the HTTP session
    unless it was passed in by the caller.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        transport: Transport | None = None,
        executor: CommandExecutor | None = None,
        cron_source: CronSource | None = None,
        run_source: RunSource | None = None,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._transport = transport
        self._executor = executor
        self._cron_source = cron_source
        self._run_source = run_source
        self._started = False

        self.status = StatusRegistry()
        self.health: HealthServer | None = None
        self.spooler: TelemetrySpooler | None = None
        self.heartbeat: HeartbeatEmitter | None = None
        self.cron: CronMirror | None = None
        self.commands: CommandLeaseClient | None = None

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def started(self) -> bool:
        return self._started

    async def __aenter__(self) -> BridgeRuntime:
        if self._transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._transport = HttpTransport(self._config, self._http_session)
        self._build(self._transport)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    def _build(self, transport: Transport) -> None:
        config = self._config

        async def deliver_telemetry(payload: Mapping[str, Any]) -> dict[str, Any]:
            return await transport.post_json(config.telemetry_path, payload)

        self.spooler = TelemetrySpooler(
            config.telemetry_spool_file,
            deliver_telemetry,
            capacity=config.telemetry_spool_capacity,
            enabled=config.telemetry_spool_enabled,
            flush_interval=config.telemetry_flush_interval,
            status=self.status,
        )
        receipts = ReceiptStore(
            config.receipt_file,
            retention=config.receipt_retention,
            max_entries=config.receipt_max_entries,
            status=self.status,
        )
        executor = self._executor or CliCommandExecutor(
            openclaw_bin=config.openclaw_bin,
            openclaw_home=config.openclaw_home,
        )
        self.commands = CommandLeaseClient(config, transport, receipts, executor, status=self.status)
        self.heartbeat = HeartbeatEmitter(
            config,
            transport,
            self.spooler,
            status=self.status,
            in_flight_commands=lambda: len(self.commands.in_flight) if self.commands else 0,
            run_source=self._run_source or self._default_run_source(),
        )
        self.cron = CronMirror(
            config,
            transport,
            OffsetStore(config.cron_offset_file, status=self.status),
            source=self._cron_source,
            status=self.status,
        )
        self.health = HealthServer(config, self.status)

    def _default_run_source(self) -> RunSource:
        config = self._config
        if config.run_source_mode == "cli":
            return CliRunSource(config.openclaw_bin, config.openclaw_cli_args)
        return SessionDirRunSource(config.session_dir)

    async def start(self) -> None:
        """Start every component.

        Raises
        ------
        BridgeConfigError
            If the bridge token expired after the config was loaded.
        """
        if self._started:
            return
        if self.commands is None:
            raise BridgeError("BridgeRuntime.start() called outside 'async with'")
        if self._config.token_expired:
            raise BridgeConfigError("Bridge token has expired. Refusing to start.")

        _logger.info(
            "Starting bridge machine_id=%s control_plane=%s version=%s",
            self._config.machine_id,
            self._config.control_plane_base_url,
            self._config.bridge_version,
        )
        await self.health.start()
        await self.heartbeat.announce()
        self.spooler.start()
        self.heartbeat.start()
        self.cron.start()
        self.commands.start()
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        _logger.info("Stopping bridge machine_id=%s", self._config.machine_id)
        await self.commands.stop()
        await asyncio.gather(self.cron.stop(), self.heartbeat.stop(), self.spooler.stop())
        await self.health.stop()
        _logger.info("Bridge stopped")
