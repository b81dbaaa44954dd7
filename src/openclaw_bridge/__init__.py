"""openclaw-bridge - connects a local openclaw installation to its control plane."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("openclaw-bridge")
except PackageNotFoundError:
    __version__ = "0+local"
from openclaw_bridge.commands import CommandLeaseClient
from openclaw_bridge.config import BridgeConfig
from openclaw_bridge.cron import CronMirror, LocalCronSource
from openclaw_bridge.exceptions import (
    BridgeCommandError,
    BridgeConfigError,
    BridgeError,
    BridgeProtocolError,
    BridgeStateError,
    BridgeTransportError,
)
from openclaw_bridge.executor import CliCommandExecutor, CommandExecutor
from openclaw_bridge.health import HealthServer
from openclaw_bridge.heartbeat import HeartbeatEmitter
from openclaw_bridge.runs import CliRunSource, RunSource, RunStateTracker, SessionDirRunSource
from openclaw_bridge.runtime import BridgeRuntime
from openclaw_bridge.state import OffsetStore, ReceiptStore, TelemetrySpooler
from openclaw_bridge.status import StatusRegistry

__all__ = [
    "__version__",
    "BridgeCommandError",
    "BridgeConfig",
    "BridgeConfigError",
    "BridgeError",
    "BridgeProtocolError",
    "BridgeRuntime",
    "BridgeStateError",
    "BridgeTransportError",
    "CliCommandExecutor",
    "CliRunSource",
    "CommandExecutor",
    "CommandLeaseClient",
    "CronMirror",
    "HealthServer",
    "HeartbeatEmitter",
    "LocalCronSource",
    "OffsetStore",
    "ReceiptStore",
    "RunSource",
    "RunStateTracker",
    "SessionDirRunSource",
    "StatusRegistry",
    "TelemetrySpooler",
]
