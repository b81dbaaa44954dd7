"""Detection of agent runs and their translation into telemetry.

A run source reports a snapshot of the runs it can see.  The
:class:`RunStateTracker` diffs consecutive snapshots and emits
``run.state.changed`` (plus tool, log and model-usage events) for what
changed, and infers ``session.state.changed`` from the runs of each
session.

Rules applied while diffing:

* an unchanged state emits no transition;
* a run that already reached a terminal state is never resurrected;
* an active run missing from the snapshot is reported as ``completed``;
* a session that went terminal ignores late runs.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from openclaw_bridge._constants import (
    RUN_CLI_MAX_OUTPUT_BYTES,
    RUN_CLI_TIMEOUT,
    RUN_SESSION_CAP,
    RUN_SESSION_EVICT_AFTER,
)
from openclaw_bridge.exceptions import BridgeError
from openclaw_bridge.models._base import utcnow
from openclaw_bridge.models.run import (
    DetectedLogEntry,
    DetectedModelUsage,
    DetectedRun,
    DetectedToolCall,
    LogLevel,
    RunState,
)
from openclaw_bridge.models.telemetry import TelemetryEnvelope

_logger = logging.getLogger(__name__)

_STATE_ALIASES: dict[str, RunState] = {
    "created": RunState.CREATED,
    "queued": RunState.QUEUED,
    "pending": RunState.QUEUED,
    "running": RunState.RUNNING,
    "active": RunState.RUNNING,
    "in_progress": RunState.RUNNING,
    "waiting_tool": RunState.WAITING_TOOL,
    "waiting": RunState.WAITING_TOOL,
    "tool_wait": RunState.WAITING_TOOL,
    "streaming": RunState.STREAMING,
    "completed": RunState.COMPLETED,
    "done": RunState.COMPLETED,
    "success": RunState.COMPLETED,
    "failed": RunState.FAILED,
    "error": RunState.FAILED,
    "cancelled": RunState.CANCELLED,
    "canceled": RunState.CANCELLED,
}

_LOG_LEVELS: dict[str, LogLevel] = {
    "critical": "critical",
    "fatal": "critical",
    "error": "error",
    "err": "error",
    "warn": "warn",
    "warning": "warn",
    "debug": "debug",
    "trace": "debug",
}

_TOOL_STATUSES = frozenset({"started", "completed", "failed", "cancelled"})


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _number(value: Any, default: float = 0) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return default
    return default


def _real(value: Any) -> float | None:
    if isinstance(value, int | float) and not isinstance(value, bool):
        return float(value)
    return None


def normalize_lifecycle_state(value: Any) -> RunState | None:
    """Map the many spellings openclaw uses to a :class:`RunState`."""
    if not isinstance(value, str):
        return None
    return _STATE_ALIASES.get(value.strip().lower())


def normalize_log_level(value: Any) -> LogLevel:
    if not isinstance(value, str):
        return "info"
    return _LOG_LEVELS.get(value.lower(), "info")


def _parse_tool_calls(raw: Any) -> list[DetectedToolCall]:
    if not isinstance(raw, list):
        return []
    calls: list[DetectedToolCall] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        call_id = _text(_first(entry, "toolCallId", "id", "tool_call_id"))
        name = _text(_first(entry, "toolName", "name", "tool_name", "function"))
        if call_id is None or name is None:
            continue
        status = _first(entry, "status", "state")
        calls.append(
            DetectedToolCall(
                tool_call_id=call_id,
                tool_name=name,
                status=status if isinstance(status, str) and status in _TOOL_STATUSES else "completed",
                started_at=entry["startedAt"] if isinstance(entry.get("startedAt"), str) else None,
                duration_ms=_real(entry.get("durationMs")),
                success=entry["success"] if isinstance(entry.get("success"), bool) else None,
                error_message=_text(_first(entry, "errorMessage", "error_message")),
            )
        )
    return calls


def _parse_model_usage(record: Mapping[str, Any]) -> DetectedModelUsage | None:
    model = _text(record.get("model"))
    usage = _first(record, "tokenUsage", "token_usage", "tokens")
    if model is None or not isinstance(usage, dict):
        return None
    input_tokens = _number(_first(usage, "inputTokens", "input_tokens", "prompt_tokens"))
    output_tokens = _number(_first(usage, "outputTokens", "output_tokens", "completion_tokens"))
    total = _first(usage, "totalTokens", "total_tokens")
    total_tokens = _number(total) if total is not None else input_tokens + output_tokens
    return DetectedModelUsage(
        provider=_text(record.get("provider")) or "unknown",
        model=model,
        input_tokens=int(input_tokens),
        output_tokens=int(output_tokens),
        total_tokens=int(total_tokens),
        estimated_cost_usd=_real(usage.get("estimatedCostUsd")),
    )


def _parse_logs(raw: Any) -> list[DetectedLogEntry]:
    if not isinstance(raw, list):
        return []
    entries: list[DetectedLogEntry] = []
    generated = 0
    for entry in raw:
        if isinstance(entry, str):
            entries.append(DetectedLogEntry(id=f"log_{generated}", message=entry, ts=utcnow().isoformat()))
            generated += 1
            continue
        if not isinstance(entry, dict):
            continue
        message = _text(_first(entry, "message", "msg", "text"))
        if message is None:
            continue
        log_id = entry.get("id")
        if not isinstance(log_id, str):
            log_id = f"log_{generated}"
            generated += 1
        ts = _first(entry, "ts", "timestamp")
        entries.append(
            DetectedLogEntry(
                id=log_id,
                level=normalize_log_level(_first(entry, "level", "severity")),
                message=message,
                ts=ts if isinstance(ts, str) else utcnow().isoformat(),
            )
        )
    return entries


def _error_message(record: Mapping[str, Any]) -> str | None:
    error = record.get("error")
    if isinstance(error, str):
        return error
    for key in ("errorMessage", "error_message", "failureReason"):
        if isinstance(record.get(key), str):
            return record[key]
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return None


def parse_run_record(payload: Any) -> DetectedRun | None:
    """Normalize one raw run record, or return ``None`` if it is unusable.

    A record needs a run id, a session id, an agent id and a known
    lifecycle state.  Everything else is optional.
    """
    if not isinstance(payload, dict):
        return None
    run_id = _text(_first(payload, "runId", "id"))
    session_id = _text(_first(payload, "sessionId", "session_id"))
    agent_id = _text(_first(payload, "agentId", "agent_id"))
    if run_id is None or session_id is None or agent_id is None:
        return None
    state = normalize_lifecycle_state(_first(payload, "state", "status"))
    if state is None:
        return None
    started_at = _first(payload, "startedAt", "started_at", "startTime")
    try:
        return DetectedRun(
            run_id=run_id,
            session_id=session_id,
            agent_id=agent_id,
            state=state,
            started_at=started_at if isinstance(started_at, str) and started_at else None,
            tool_calls=_parse_tool_calls(_first(payload, "toolCalls", "tools", "tool_calls")),
            model_usage=_parse_model_usage(payload),
            logs=_parse_logs(_first(payload, "logs", "log", "output")),
            error_message=_error_message(payload),
        )
    except ValidationError:
        _logger.debug("Discarding run record run_id=%s", run_id, exc_info=True)
        return None


def parse_runs_payload(payload: Any) -> list[DetectedRun]:
    """Parse a list of run records, or a single record."""
    records = payload if isinstance(payload, list) else [payload]
    return [run for run in map(parse_run_record, records) if run is not None]


# ----------------------------------------------------------------------
# Sources
# ----------------------------------------------------------------------


class RunSource(Protocol):
    """Where run snapshots come from.

    Raising :class:`BridgeError` means "no snapshot this tick"; an empty
    list means "no runs", which completes every run still known.
    """

    async def collect(self) -> list[DetectedRun]:
        ...


class SessionDirRunSource:
    """One run record per ``*.json`` file in the openclaw session directory."""

    def __init__(self, session_dir: Path) -> None:
        self.session_dir = Path(session_dir)

    async def collect(self) -> list[DetectedRun]:
        if not self.session_dir.is_dir():
            return []
        runs: list[DetectedRun] = []
        for path in sorted(self.session_dir.glob("*.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, json.JSONDecodeError):
                _logger.debug("Skipping unreadable session file %s", path, exc_info=True)
                continue
            run = parse_run_record(payload)
            if run is not None:
                runs.append(run)
        return runs


class CliRunSource:
    """Runs reported by ``openclaw <args>`` as JSON on stdout."""

    def __init__(
        self,
        openclaw_bin: str,
        args: Iterable[str],
        *,
        timeout: float = RUN_CLI_TIMEOUT,
        max_output_bytes: int = RUN_CLI_MAX_OUTPUT_BYTES,
    ) -> None:
        self._bin = openclaw_bin
        self._args = list(args)
        self._timeout = timeout
        self._max_output = max_output_bytes

    async def collect(self) -> list[DetectedRun]:
        """Run the CLI once.

        Raises
        ------
        BridgeError
            If the CLI cannot be spawned, times out, exits non-zero,
            prints too much or prints something that is not JSON.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self._bin,
                *self._args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise BridgeError(f"Cannot run {self._bin}: {exc}") from exc
        try:
            stdout, _stderr = await asyncio.wait_for(proc.communicate(), self._timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise BridgeError(f"{self._bin} {' '.join(self._args)} timed out after {self._timeout:g}s") from None
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            raise BridgeError(f"{self._bin} {' '.join(self._args)} exited with {proc.returncode}")
        if len(stdout) > self._max_output:
            raise BridgeError(f"{self._bin} printed more than {self._max_output} bytes")
        try:
            payload = json.loads(stdout)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise BridgeError(f"{self._bin} printed invalid JSON: {exc}") from exc
        return parse_runs_payload(payload)


# ----------------------------------------------------------------------
# Diffing
# ----------------------------------------------------------------------


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


@dataclass
class _SessionTrack:
    session_id: str
    agent_id: str
    state: RunState = RunState.RUNNING
    active_run_ids: set[str] = field(default_factory=set)
    terminal_since: float | None = None


class RunStateTracker:
    """Turns successive run snapshots into telemetry envelopes.

    State lives in memory only; after a restart every visible run is
    reported again from its initial state.
    """

    def __init__(
        self,
        machine_id: str,
        *,
        session_cap: int = RUN_SESSION_CAP,
        session_evict_after: float = RUN_SESSION_EVICT_AFTER,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._machine_id = machine_id
        self._session_cap = session_cap
        self._session_evict_after = session_evict_after
        self._clock = clock
        self._runs: dict[str, DetectedRun] = {}
        self._sessions: dict[str, _SessionTrack] = {}
        self._emitted_tool_calls: set[str] = set()
        self._emitted_logs: set[str] = set()
        self._emitted_usage: set[str] = set()

    @property
    def known_runs(self) -> dict[str, DetectedRun]:
        return dict(self._runs)

    def session_state(self, session_id: str) -> RunState | None:
        track = self._sessions.get(session_id)
        return track.state if track is not None else None

    def _envelope(
        self, event_type: str, payload: dict[str, Any], *, ts: datetime | None = None, severity: LogLevel = "info"
    ) -> TelemetryEnvelope:
        return TelemetryEnvelope(
            machine_id=self._machine_id,
            type=event_type,
            severity=severity,
            payload=payload,
            ts=ts or utcnow(),
        )

    def _state_changed(
        self, run: DetectedRun, from_state: RunState, to_state: RunState, *, first_seen: bool = False
    ) -> TelemetryEnvelope:
        return self._envelope(
            "run.state.changed",
            {
                "runId": run.run_id,
                "sessionId": run.session_id,
                "agentId": run.agent_id,
                "from": str(from_state),
                "to": str(to_state),
            },
            ts=_parse_timestamp(run.started_at) if first_seen else None,
        )

    def _tool_events(self, run: DetectedRun) -> list[TelemetryEnvelope]:
        events = []
        for call in run.tool_calls:
            key = f"{run.run_id}:{call.tool_call_id}:{call.status}"
            if key in self._emitted_tool_calls:
                continue
            self._emitted_tool_calls.add(key)
            if call.status == "started":
                started_at = call.started_at or utcnow().isoformat()
                events.append(
                    self._envelope(
                        "run.tool.started",
                        {
                            "runId": run.run_id,
                            "toolCallId": call.tool_call_id,
                            "toolName": call.tool_name,
                            "startedAt": started_at,
                        },
                        ts=_parse_timestamp(call.started_at),
                    )
                )
                continue
            payload: dict[str, Any] = {
                "runId": run.run_id,
                "toolCallId": call.tool_call_id,
                "toolName": call.tool_name,
                "status": call.status,
                "durationMs": call.duration_ms or 0,
                "success": call.success if call.success is not None else call.status == "completed",
            }
            if call.error_message:
                payload["errorMessage"] = call.error_message
            events.append(
                self._envelope(
                    "run.tool.completed", payload, severity="error" if call.status == "failed" else "info"
                )
            )
        return events

    def _log_events(self, run: DetectedRun) -> list[TelemetryEnvelope]:
        events = []
        for entry in run.logs:
            key = f"{run.run_id}:{entry.id}"
            if key in self._emitted_logs:
                continue
            self._emitted_logs.add(key)
            events.append(
                self._envelope(
                    "run.log.emitted",
                    {
                        "logEntryId": entry.id,
                        "runId": run.run_id,
                        "sessionId": run.session_id,
                        "level": entry.level,
                        "message": entry.message,
                        "ts": entry.ts,
                    },
                    ts=_parse_timestamp(entry.ts),
                    severity=entry.level,
                )
            )
        return events

    def _usage_event(self, run: DetectedRun) -> list[TelemetryEnvelope]:
        usage = run.model_usage
        if usage is None or run.run_id in self._emitted_usage:
            return []
        self._emitted_usage.add(run.run_id)
        payload: dict[str, Any] = {
            "runId": run.run_id,
            "machineId": self._machine_id,
            "provider": usage.provider,
            "model": usage.model,
            "inputTokens": usage.input_tokens,
            "outputTokens": usage.output_tokens,
            "totalTokens": usage.total_tokens,
            "measuredAt": utcnow().isoformat(),
        }
        if usage.estimated_cost_usd is not None:
            payload["estimatedCostUsd"] = usage.estimated_cost_usd
        return [self._envelope("run.model.usage", payload)]

    def _details(self, run: DetectedRun) -> list[TelemetryEnvelope]:
        return [*self._tool_events(run), *self._log_events(run), *self._usage_event(run)]

    def map_events(self, runs: Iterable[DetectedRun]) -> list[TelemetryEnvelope]:
        """Diff *runs* against the previous snapshot."""
        events: list[TelemetryEnvelope] = []
        transitions: list[tuple[DetectedRun, RunState]] = []
        seen: set[str] = set()

        for run in runs:
            seen.add(run.run_id)
            previous = self._runs.get(run.run_id)
            if previous is not None and previous.state is run.state:
                events.extend(self._details(run))
                self._runs[run.run_id] = run
                continue
            if previous is not None and previous.state.is_terminal:
                continue
            from_state = previous.state if previous is not None else self._initial_from(run.state)
            if from_state is run.state:
                continue
            events.append(self._state_changed(run, from_state, run.state, first_seen=previous is None))
            transitions.append((run, run.state))
            events.extend(self._details(run))
            self._runs[run.run_id] = run

        for run_id, known in list(self._runs.items()):
            if run_id not in seen and known.state.is_active:
                events.append(self._state_changed(known, known.state, RunState.COMPLETED))
                transitions.append((known, RunState.COMPLETED))
                del self._runs[run_id]

        events.extend(self._session_events(transitions))
        return events

    @staticmethod
    def _initial_from(to_state: RunState) -> RunState:
        return RunState.QUEUED if to_state is RunState.CREATED else RunState.CREATED

    def _session_changed(
        self, track: _SessionTrack, from_state: RunState, to_state: RunState
    ) -> TelemetryEnvelope:
        return self._envelope(
            "session.state.changed",
            {
                "sessionId": track.session_id,
                "agentId": track.agent_id,
                "machineId": self._machine_id,
                "from": str(from_state),
                "to": str(to_state),
            },
        )

    def _session_events(self, transitions: list[tuple[DetectedRun, RunState]]) -> list[TelemetryEnvelope]:
        events: list[TelemetryEnvelope] = []
        for run, to_state in transitions:
            track = self._sessions.get(run.session_id)
            if track is not None and track.state.is_terminal:
                continue
            if track is None:
                track = _SessionTrack(session_id=run.session_id, agent_id=run.agent_id)
                self._sessions[run.session_id] = track
                events.append(self._session_changed(track, RunState.CREATED, RunState.RUNNING))
            if to_state.is_terminal:
                track.active_run_ids.discard(run.run_id)
            else:
                track.active_run_ids.add(run.run_id)

        for session_id, track in self._sessions.items():
            if track.active_run_ids or not track.state.is_active:
                continue
            failed = any(r.session_id == session_id and r.state is RunState.FAILED for r in self._runs.values())
            terminal = RunState.FAILED if failed else RunState.COMPLETED
            events.append(self._session_changed(track, track.state, terminal))
            track.state = terminal
            track.terminal_since = self._clock()

        self._evict_sessions()
        return events

    def _evict_sessions(self) -> None:
        now = self._clock()
        stale = [
            sid
            for sid, track in self._sessions.items()
            if track.terminal_since is not None and now - track.terminal_since > self._session_evict_after
        ]
        excess = len(self._sessions) - len(stale) - self._session_cap
        if excess > 0:
            terminal = sorted(
                (t for sid, t in self._sessions.items() if t.terminal_since is not None and sid not in stale),
                key=lambda t: t.terminal_since,
            )
            stale.extend(t.session_id for t in terminal[:excess])
        for session_id in stale:
            del self._sessions[session_id]
            for run_id in [rid for rid, run in self._runs.items() if run.session_id == session_id]:
                del self._runs[run_id]
        if stale:
            _logger.debug("Evicted %d terminal session(s)", len(stale))
