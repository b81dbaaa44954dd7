from __future__ import annotations

import copy
import inspect
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from openclaw_bridge.config import BridgeConfig
from openclaw_bridge.exceptions import BridgeTransportError

Handler = Callable[[dict[str, Any]], Any]


@dataclass
class FakeTransport:
    """In-memory control plane.

    ``handlers`` map a path to a (sync or async) callable returning the
    response body.  ``failures`` map a path to the number of calls that
    should fail; ``-1`` fails forever.
    """

    handlers: dict[str, Handler] = field(default_factory=dict)
    failures: dict[str, int] = field(default_factory=dict)
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    call_times: list[float] = field(default_factory=list)

    async def post_json(self, path: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        self.calls.append((path, copy.deepcopy(dict(payload))))
        self.call_times.append(time.monotonic())
        remaining = self.failures.get(path, 0)
        if remaining:
            if remaining > 0:
                self.failures[path] = remaining - 1
            raise BridgeTransportError(f"fake failure for {path}", status_code=503, endpoint=path)
        handler = self.handlers.get(path)
        if handler is None:
            return {}
        result = handler(dict(payload))
        if inspect.isawaitable(result):
            result = await result
        return result or {}

    def paths(self) -> list[str]:
        return [path for path, _ in self.calls]

    def bodies(self, path: str) -> list[dict[str, Any]]:
        return [body for p, body in self.calls if p == path]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def openclaw_home(tmp_path: Path) -> Path:
    home = tmp_path / "openclaw"
    (home / "cron").mkdir(parents=True)
    return home


@pytest.fixture
def config(tmp_path: Path, openclaw_home: Path) -> BridgeConfig:
    return BridgeConfig(
        machine_id="machine_test",
        control_plane_base_url="http://control.invalid",
        state_dir=tmp_path / "state",
        openclaw_home=openclaw_home,
        heartbeat_interval=60.0,
        poll_interval=60.0,
        cron_sync_interval=60.0,
        telemetry_flush_interval=60.0,
        request_retries=1,
        shutdown_grace=1.0,
        health_port=0,
    )
