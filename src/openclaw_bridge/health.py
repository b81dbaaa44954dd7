"""Local read-only health endpoint."""

from __future__ import annotations

import asyncio
import errno
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from aiohttp import web

from openclaw_bridge.config import BridgeConfig
from openclaw_bridge.models._base import utcnow
from openclaw_bridge.status import ComponentHealth, StatusRegistry

_logger = logging.getLogger(__name__)

_BIND_ATTEMPTS = 6
_BIND_RETRY_DELAY = 0.1


class HealthServer:
    """Serve ``GET /health`` with the aggregated :class:`StatusRegistry`.

    The endpoint always answers ``200`` with a JSON summary; the
    ``status`` field carries ``healthy`` or ``degraded``.
    """

    def __init__(
        self,
        config: BridgeConfig,
        status: StatusRegistry,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._status = status
        self._clock = clock
        self._started_at = clock()
        self._runner: web.AppRunner | None = None

    @property
    def addresses(self) -> list[Any]:
        return list(self._runner.addresses) if self._runner is not None else []

    def snapshot(self) -> dict[str, Any]:
        now = self._clock()
        overall = self._status.overall
        return {
            "ok": overall is ComponentHealth.HEALTHY,
            "status": str(overall),
            "startedAt": self._started_at.isoformat(),
            "now": now.isoformat(),
            "uptimeSec": int((now - self._started_at).total_seconds()),
            "machineId": self._config.machine_id,
            "machineLabel": self._config.machine_label,
            "bridgeVersion": self._config.bridge_version,
            "controlPlaneBaseUrl": self._config.control_plane_base_url,
            "tokenExpiresAt": self._config.token_expires_at.isoformat() if self._config.token_expires_at else None,
            "components": self._status.snapshot(),
        }

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(self.snapshot())

    async def handle_not_found(self, request: web.Request) -> web.Response:
        return web.json_response({"error": "not_found"}, status=404)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.handle_health)
        app.router.add_route("*", "/{tail:.*}", self.handle_not_found)
        return app

    async def start(self) -> None:
        """Bind the endpoint; a port of ``0`` or less disables it.

        Binding retries briefly on address-in-use, which happens when a
        restarted bridge races its predecessor's socket teardown.
        """
        if self._config.health_port <= 0 or self._runner is not None:
            return
        runner = web.AppRunner(self.build_app(), access_log=None)
        await runner.setup()
        for attempt in range(1, _BIND_ATTEMPTS + 1):
            site = web.TCPSite(runner, self._config.health_host, self._config.health_port)
            try:
                await site.start()
                break
            except OSError as exc:
                if exc.errno != errno.EADDRINUSE or attempt >= _BIND_ATTEMPTS:
                    await runner.cleanup()
                    raise
                _logger.debug("Health port busy, retrying attempt=%d", attempt)
                await asyncio.sleep(_BIND_RETRY_DELAY)
        self._runner = runner
        _logger.info("Health server listening host=%s port=%d", self._config.health_host, self._config.health_port)

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        _logger.info("Health server stopped")
