"""Local execution of control-plane commands through the openclaw CLI."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

from openclaw_bridge._constants import COMMAND_EXEC_TIMEOUT, MAX_STDERR_BYTES, MAX_STDOUT_BYTES
from openclaw_bridge.exceptions import BridgeCommandError
from openclaw_bridge.models.command import Command, CommandIntent, ExecutionResult

_logger = logging.getLogger(__name__)


class CommandExecutor(Protocol):
    """Runs one leased command.

    Returning ``None`` records an ``ack`` receipt (nothing to report
    beyond completion).  Raising :class:`BridgeCommandError` records a
    ``failed`` receipt.
    """

    async def execute(self, command: Command) -> ExecutionResult | None:
        ...


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


def build_cli_args(intent: str, args: Mapping[str, Any]) -> list[str]:
    """Map an intent and its args to ``openclaw`` CLI arguments.

    Raises
    ------
    BridgeCommandError
        For unknown intents or missing/invalid arguments.
    """
    try:
        known = CommandIntent(intent)
    except ValueError:
        raise BridgeCommandError(f"unsupported intent {intent!r}", intent=intent) from None

    if known is CommandIntent.TRIGGER_JOB:
        job_id = _as_str(args.get("jobId"))
        if job_id is None:
            raise BridgeCommandError("trigger_job requires args.jobId", intent=intent)
        return ["cron", "run", job_id]

    if known is CommandIntent.AGENT_SET_ENABLED:
        agent_id = _as_str(args.get("agentId"))
        enabled = args.get("enabled")
        if agent_id is None or not isinstance(enabled, bool):
            raise BridgeCommandError("agent_set_enabled requires args.agentId and args.enabled", intent=intent)
        return ["config", "set", f"agents.{agent_id}.enabled", "true" if enabled else "false"]

    if known is CommandIntent.APPROVE_REQUEST:
        request_id = _as_str(args.get("requestId"))
        if request_id is None:
            raise BridgeCommandError("approve_request requires args.requestId", intent=intent)
        return ["approvals", "approve", request_id]

    # run_command
    command = _as_str(args.get("command"))
    if command is None:
        raise BridgeCommandError("run_command requires args.command", intent=intent)
    if command != "openclaw":
        raise BridgeCommandError("run_command only allows command=openclaw", intent=intent)
    raw_args = args.get("args")
    if not isinstance(raw_args, list) or not raw_args:
        raise BridgeCommandError("run_command requires a non-empty args list", intent=intent)
    if not all(isinstance(item, str) for item in raw_args):
        raise BridgeCommandError("run_command args must all be strings", intent=intent)
    return list(raw_args)


def truncate_output(data: bytes, max_bytes: int) -> tuple[str, bool]:
    """Decode *data*, keeping at most *max_bytes* bytes."""
    if len(data) <= max_bytes:
        return data.decode("utf-8", errors="replace"), False
    return data[:max_bytes].decode("utf-8", errors="ignore"), True


class CliCommandExecutor:
    """Run commands as ``openclaw`` subprocesses.

    The subprocess gets *timeout* seconds; on expiry it is killed and the
    command reported as failed.  Output is truncated to a byte budget so a
    chatty command cannot bloat the receipt file.
    """

    def __init__(
        self,
        *,
        openclaw_bin: str = "openclaw",
        openclaw_home: Path | None = None,
        timeout: float = COMMAND_EXEC_TIMEOUT,
        max_stdout_bytes: int = MAX_STDOUT_BYTES,
        max_stderr_bytes: int = MAX_STDERR_BYTES,
    ) -> None:
        self._bin = openclaw_bin
        self._home = openclaw_home
        self._timeout = timeout
        self._max_stdout = max_stdout_bytes
        self._max_stderr = max_stderr_bytes

    def _result(
        self,
        *,
        started: float,
        exit_code: int,
        stdout: bytes = b"",
        stderr: bytes = b"",
    ) -> ExecutionResult:
        out, out_truncated = truncate_output(stdout, self._max_stdout)
        err, err_truncated = truncate_output(stderr, self._max_stderr)
        return ExecutionResult(
            status="succeeded" if exit_code == 0 else "failed",
            exit_code=exit_code,
            duration_ms=int((time.monotonic() - started) * 1000),
            stdout=out,
            stderr=err,
            truncated=out_truncated or err_truncated,
        )

    async def execute(self, command: Command) -> ExecutionResult:
        started = time.monotonic()
        try:
            argv = build_cli_args(command.intent, command.args)
        except BridgeCommandError as exc:
            _logger.warning("Rejected command command_id=%s intent=%s: %s", command.command_id, command.intent, exc)
            return self._result(started=started, exit_code=1, stderr=str(exc).encode())

        cwd = self._home if self._home is not None and self._home.is_dir() else None
        _logger.debug("Executing command_id=%s argv=%s", command.command_id, [self._bin, *argv])
        try:
            proc = await asyncio.create_subprocess_exec(
                self._bin,
                *argv,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            _logger.warning("Cannot spawn %s for command_id=%s: %s", self._bin, command.command_id, exc)
            exit_code = 127 if isinstance(exc, FileNotFoundError) else 126
            return self._result(started=started, exit_code=exit_code, stderr=str(exc).encode())

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self._timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            stdout, stderr = await proc.communicate()
            message = f"\ncommand timed out after {self._timeout:.0f}s".encode()
            _logger.warning("Command timed out command_id=%s", command.command_id)
            return self._result(started=started, exit_code=proc.returncode or -9, stdout=stdout, stderr=stderr + message)
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise

        exit_code = proc.returncode if proc.returncode is not None else 1
        if exit_code != 0:
            _logger.warning(
                "Command failed command_id=%s intent=%s exit_code=%d", command.command_id, command.intent, exit_code
            )
        return self._result(started=started, exit_code=exit_code, stdout=stdout, stderr=stderr)
