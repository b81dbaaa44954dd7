"""Bridge configuration.

A :class:`BridgeConfig` is built once at boot (usually through
:meth:`BridgeConfig.from_env`) and never mutated afterwards.  Picking up
new settings requires a process restart.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import os
import socket
import uuid
from collections.abc import MutableMapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from openclaw_bridge import _constants as c
from openclaw_bridge.exceptions import BridgeConfigError

_logger = logging.getLogger(__name__)


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_seconds_from_ms(value: str | None, default: float, floor: float) -> float:
    """Parse a millisecond env value into seconds.

    Unparsable values and values under *floor* fall back to *default*
    rather than being clamped, so a typo never produces a tight loop.
    """
    if value is None or not value.strip():
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    if not math.isfinite(parsed) or parsed < floor * 1000:
        return default
    return math.floor(parsed) / 1000.0


def _env_int(value: str | None, default: int, floor: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed >= floor else default


def _expand_home(value: str | Path) -> Path:
    return Path(value).expanduser()


def _normalize_path(value: str | None, fallback: str) -> str:
    if value is None or not value.strip():
        return fallback
    value = value.strip()
    return value if value.startswith("/") else f"/{value}"


def _normalize_health_port(value: str | None) -> int:
    if value is None or not value.strip():
        return c.DEFAULT_HEALTH_PORT
    try:
        parsed = float(value)
    except ValueError:
        return c.DEFAULT_HEALTH_PORT
    if not math.isfinite(parsed):
        return c.DEFAULT_HEALTH_PORT
    if parsed <= 0:
        return 0
    if parsed > 65535:
        return c.DEFAULT_HEALTH_PORT
    return math.floor(parsed)


def parse_token_expiry(value: str | None, *, now: datetime | None = None) -> datetime | None:
    """Validate ``TOKEN_EXPIRES_AT``.

    Raises
    ------
    BridgeConfigError
        If the value is not ISO-8601 or already in the past.
    """
    if value is None or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise BridgeConfigError("TOKEN_EXPIRES_AT must be a valid ISO-8601 timestamp.") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    current = now or datetime.now(UTC)
    if current >= parsed:
        raise BridgeConfigError(f"Bridge token expired at {parsed.isoformat()}. Refusing to start.")
    return parsed


def load_env_file(path: str | Path, environ: MutableMapping[str, str] | None = None) -> int:
    """Load ``KEY=VALUE`` lines from *path* into *environ*.

    Blank lines and ``#`` comments are skipped.  Returns the number of
    variables set.
    """
    target = os.environ if environ is None else environ
    count = 0
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        target[key] = value.strip()
        count += 1
    return count


def ensure_machine_id(path: Path) -> str:
    """Return the persisted machine id, generating one on first boot."""
    try:
        existing = path.read_text(encoding="utf-8").strip()
    except OSError:
        existing = ""
    if existing:
        return existing

    machine_id = f"machine_{uuid.uuid4()}"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{machine_id}\n", encoding="utf-8")
    _logger.info("Generated machine id machine_id=%s file=%s", machine_id, path)
    return machine_id


@dataclasses.dataclass(frozen=True)
class BridgeConfig:
    """Immutable bridge configuration snapshot.

    Parameters
    ----------
    machine_id : str
        Stable identity of this machine, sent with every request.
    control_plane_base_url : str
        Base URL of the control plane.
    control_plane_token : str or None
        Bearer token.  Requests are unauthenticated when unset.
    token_expires_at : datetime or None
        Expiry of the token.  A past value is rejected at load time.
    state_dir : Path
        Directory holding the state files and the machine-id file.
    heartbeat_interval, poll_interval, cron_sync_interval : float
        Loop intervals in seconds.
    lease_ttl : float
        Lease duration requested from the control plane, in seconds.
    lease_renew_margin : float
        Lead time before lease expiry at which a renewal is sent.  Capped
        at half the TTL.
    request_timeout : float
        Timeout applied to every outbound request.
    request_retries : int
        Attempts for ack/heartbeat/result calls before giving up.
    degraded_after_failures : int
        Consecutive poll failures after which the poller reports
        ``degraded``.
    receipt_file, cron_offset_file, telemetry_spool_file, machine_id_file : Path
        State files; default to names under *state_dir*.
    health_port : int
        Local health endpoint port, ``0`` disables the server.
    session_dir : Path
        Directory of per-run JSON files read by the ``files`` run source.
        Defaults to ``<openclaw_home>/sessions``.
    run_source_mode : str
        ``files`` (read *session_dir*) or ``cli`` (run ``openclaw`` with
        *openclaw_cli_args*).
    """

    machine_id: str
    control_plane_base_url: str = c.DEFAULT_CONTROL_PLANE_BASE_URL
    control_plane_token: str | None = None
    token_expires_at: datetime | None = None
    bridge_version: str = "0.1.0"
    machine_label: str = dataclasses.field(default_factory=socket.gethostname)
    machine_kind: str = "local"
    openclaw_home: Path = dataclasses.field(default_factory=lambda: _expand_home(c.DEFAULT_OPENCLAW_HOME))
    openclaw_bin: str = "openclaw"
    session_dir: Path | None = None
    run_source_mode: str = "files"
    openclaw_cli_args: tuple[str, ...] = c.DEFAULT_OPENCLAW_CLI_ARGS
    state_dir: Path = dataclasses.field(default_factory=lambda: _expand_home(c.DEFAULT_STATE_DIR))

    heartbeat_interval: float = c.DEFAULT_HEARTBEAT_INTERVAL
    poll_interval: float = c.DEFAULT_POLL_INTERVAL
    lease_ttl: float = c.DEFAULT_LEASE_TTL
    lease_renew_margin: float = c.DEFAULT_LEASE_RENEW_MARGIN
    cron_sync_interval: float = c.DEFAULT_CRON_SYNC_INTERVAL
    telemetry_flush_interval: float = c.DEFAULT_TELEMETRY_FLUSH_INTERVAL
    request_timeout: float = c.DEFAULT_REQUEST_TIMEOUT
    request_retries: int = 3
    degraded_after_failures: int = 3
    shutdown_grace: float = c.DEFAULT_SHUTDOWN_GRACE

    control_poll_path: str = c.DEFAULT_CONTROL_POLL_PATH
    control_ack_path_template: str = c.DEFAULT_CONTROL_ACK_PATH_TEMPLATE
    control_heartbeat_path_template: str = c.DEFAULT_CONTROL_HEARTBEAT_PATH_TEMPLATE
    control_result_path_template: str = c.DEFAULT_CONTROL_RESULT_PATH_TEMPLATE
    cron_sync_path: str = c.DEFAULT_CRON_SYNC_PATH
    telemetry_path: str = c.DEFAULT_TELEMETRY_PATH

    receipt_file: Path | None = None
    receipt_retention: float = c.DEFAULT_RECEIPT_RETENTION
    receipt_max_entries: int = c.DEFAULT_RECEIPT_MAX_ENTRIES
    cron_offset_file: Path | None = None
    telemetry_spool_enabled: bool = True
    telemetry_spool_file: Path | None = None
    telemetry_spool_capacity: int = c.DEFAULT_TELEMETRY_SPOOL_CAPACITY
    machine_id_file: Path | None = None

    health_host: str = c.DEFAULT_HEALTH_HOST
    health_port: int = c.DEFAULT_HEALTH_PORT

    def __post_init__(self) -> None:
        state_dir = Path(self.state_dir)
        object.__setattr__(self, "state_dir", state_dir)
        object.__setattr__(self, "openclaw_home", Path(self.openclaw_home))
        session_dir = Path(self.openclaw_home) / "sessions" if self.session_dir is None else Path(self.session_dir)
        object.__setattr__(self, "session_dir", session_dir)
        object.__setattr__(self, "openclaw_cli_args", tuple(self.openclaw_cli_args))
        if self.run_source_mode not in ("files", "cli"):
            raise BridgeConfigError(f"run_source_mode must be 'files' or 'cli', got {self.run_source_mode!r}")
        defaults = {
            "receipt_file": "bridge-control-receipts.json",
            "cron_offset_file": "cron-offsets.json",
            "telemetry_spool_file": "telemetry-spool.json",
            "machine_id_file": "machine-id",
        }
        for field_name, filename in defaults.items():
            value = getattr(self, field_name)
            object.__setattr__(self, field_name, state_dir / filename if value is None else Path(value))

    @property
    def lease_renew_interval(self) -> float:
        """Seconds between lease renewals for an in-flight command."""
        margin = min(self.lease_renew_margin, self.lease_ttl / 2)
        return self.lease_ttl - margin

    @property
    def token_expired(self) -> bool:
        return self.token_expires_at is not None and datetime.now(UTC) >= self.token_expires_at

    @classmethod
    def from_env(cls, **overrides: Any) -> BridgeConfig:
        """Create configuration from environment variables.

        ``BRIDGE_CONFIG_FILE`` (when set) is loaded into the environment
        first.  Interval variables are in milliseconds.  Explicit keyword
        arguments override environment values.

        Raises
        ------
        BridgeConfigError
            If ``TOKEN_EXPIRES_AT`` is invalid or in the past.
        """
        env = os.environ
        config_file = env.get("BRIDGE_CONFIG_FILE")
        if config_file:
            try:
                load_env_file(_expand_home(config_file))
            except OSError as exc:
                raise BridgeConfigError(f"Cannot read BRIDGE_CONFIG_FILE {config_file}: {exc}") from exc

        # Checked first: an expired token must fail before any file or network I/O.
        token_expires_at = parse_token_expiry(env.get("TOKEN_EXPIRES_AT"))

        state_dir = _expand_home(env.get("BRIDGE_STATE_DIR", c.DEFAULT_STATE_DIR))
        config_kwargs: dict[str, Any] = {
            "state_dir": state_dir,
            "token_expires_at": token_expires_at,
            "control_plane_base_url": env.get("CONTROL_PLANE_BASE_URL", c.DEFAULT_CONTROL_PLANE_BASE_URL),
            "control_plane_token": env.get("CONTROL_PLANE_TOKEN") or None,
            "bridge_version": env.get("BRIDGE_VERSION", "0.1.0"),
            "machine_label": env.get("MACHINE_LABEL") or socket.gethostname(),
            "machine_kind": "vps" if env.get("MACHINE_KIND") == "vps" else "local",
            "openclaw_home": _expand_home(env.get("OPENCLAW_HOME", c.DEFAULT_OPENCLAW_HOME)),
            "openclaw_bin": env.get("OPENCLAW_BIN", "openclaw"),
            "run_source_mode": "cli" if env.get("OPENCLAW_BRIDGE_SOURCE") == "cli" else "files",
            "openclaw_cli_args": tuple((env.get("OPENCLAW_CLI_ARGS") or "").split()) or c.DEFAULT_OPENCLAW_CLI_ARGS,
            "heartbeat_interval": _env_seconds_from_ms(
                env.get("HEARTBEAT_INTERVAL_MS"), c.DEFAULT_HEARTBEAT_INTERVAL, c.MIN_HEARTBEAT_INTERVAL
            ),
            "poll_interval": _env_seconds_from_ms(
                env.get("BRIDGE_CONTROL_POLL_INTERVAL_MS"), c.DEFAULT_POLL_INTERVAL, c.MIN_POLL_INTERVAL
            ),
            "lease_ttl": _env_seconds_from_ms(
                env.get("BRIDGE_CONTROL_LEASE_TTL_MS"), c.DEFAULT_LEASE_TTL, c.MIN_LEASE_TTL
            ),
            "cron_sync_interval": _env_seconds_from_ms(
                env.get("CRON_SYNC_INTERVAL_MS"), c.DEFAULT_CRON_SYNC_INTERVAL, c.MIN_CRON_SYNC_INTERVAL
            ),
            "telemetry_flush_interval": _env_seconds_from_ms(
                env.get("BRIDGE_TELEMETRY_FLUSH_INTERVAL_MS"),
                c.DEFAULT_TELEMETRY_FLUSH_INTERVAL,
                c.MIN_TELEMETRY_FLUSH_INTERVAL,
            ),
            "request_timeout": _env_seconds_from_ms(
                env.get("BRIDGE_REQUEST_TIMEOUT_MS"), c.DEFAULT_REQUEST_TIMEOUT, c.MIN_REQUEST_TIMEOUT
            ),
            "control_poll_path": _normalize_path(env.get("BRIDGE_CONTROL_POLL_PATH"), c.DEFAULT_CONTROL_POLL_PATH),
            "control_ack_path_template": _normalize_path(
                env.get("BRIDGE_CONTROL_ACK_PATH_TEMPLATE"), c.DEFAULT_CONTROL_ACK_PATH_TEMPLATE
            ),
            "control_heartbeat_path_template": _normalize_path(
                env.get("BRIDGE_CONTROL_HEARTBEAT_PATH_TEMPLATE"), c.DEFAULT_CONTROL_HEARTBEAT_PATH_TEMPLATE
            ),
            "control_result_path_template": _normalize_path(
                env.get("BRIDGE_CONTROL_RESULT_PATH_TEMPLATE"), c.DEFAULT_CONTROL_RESULT_PATH_TEMPLATE
            ),
            "cron_sync_path": _normalize_path(env.get("CRON_SYNC_PATH"), c.DEFAULT_CRON_SYNC_PATH),
            "telemetry_path": _normalize_path(env.get("BRIDGE_TELEMETRY_PATH"), c.DEFAULT_TELEMETRY_PATH),
            "telemetry_spool_enabled": _env_bool(env.get("BRIDGE_TELEMETRY_SPOOL_ENABLED"), True),
            "telemetry_spool_capacity": _env_int(
                env.get("BRIDGE_TELEMETRY_SPOOL_CAPACITY"), c.DEFAULT_TELEMETRY_SPOOL_CAPACITY, 1
            ),
            "health_host": (env.get("BRIDGE_HEALTH_HOST") or "").strip() or c.DEFAULT_HEALTH_HOST,
            "health_port": _normalize_health_port(env.get("BRIDGE_HEALTH_PORT")),
        }

        _ENV_PATH_MAP = {
            "BRIDGE_CONTROL_RECEIPTS_FILE": "receipt_file",
            "BRIDGE_CRON_OFFSET_FILE": "cron_offset_file",
            "BRIDGE_TELEMETRY_SPOOL_FILE": "telemetry_spool_file",
            "OPENCLAW_SESSION_DIR": "session_dir",
        }
        for env_key, field_name in _ENV_PATH_MAP.items():
            val = env.get(env_key)
            if val:
                config_kwargs[field_name] = _expand_home(val)

        machine_id_file = _expand_home(
            env.get("MACHINE_ID_FILE") or env.get("BRIDGE_MACHINE_ID_FILE") or state_dir / "machine-id"
        )
        config_kwargs["machine_id_file"] = machine_id_file

        config_kwargs.update(overrides)
        if "machine_id" not in config_kwargs:
            config_kwargs["machine_id"] = env.get("MACHINE_ID") or ensure_machine_id(machine_id_file)

        return cls(**config_kwargs)
