"""Command lease protocol: poll, claim, execute, renew, report.

Lifecycle of a command inside the bridge::

    received -> leased -> (renewing)* -> completed | orphaned

Delivery from the control plane is at-least-once.  The receipt for a
command is persisted *before* its outcome is reported, and a redelivered
command that already has a receipt is answered from that receipt without
running it again.

Lease expiry policy is "fail open": a renewal that fails never aborts
execution.  The command still completes and reports; the failure is
logged because the control plane may have handed the command to another
bridge meanwhile.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar

from pydantic import ValidationError

from openclaw_bridge._redact import redact_for_log
from openclaw_bridge._scheduler import PeriodicTask, backoff_delay, retry_async
from openclaw_bridge._transport import Transport, command_path
from openclaw_bridge.config import BridgeConfig
from openclaw_bridge.exceptions import (
    BridgeCommandError,
    BridgeProtocolError,
    BridgeStateError,
    BridgeTransportError,
)
from openclaw_bridge.executor import CommandExecutor
from openclaw_bridge.models._base import utcnow
from openclaw_bridge.models.command import (
    Command,
    CommandOutcome,
    CommandState,
    LeaseRenewal,
    PollResponse,
    raw_command_id,
)
from openclaw_bridge.models.receipt import Receipt
from openclaw_bridge.state.receipts import ReceiptStore
from openclaw_bridge.status import StatusRegistry

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRY_BASE_DELAY = 0.5
_MIN_RENEW_DELAY = 0.5


@dataclass(slots=True)
class LeasedCommand:
    """A command currently owned by this bridge.

    ``rejection`` is set for entries that failed validation but carried a
    usable id; they are acked and answered with a ``failed`` receipt
    without running anything.
    """

    command: Command
    state: CommandState = CommandState.RECEIVED
    received_at: float = field(default_factory=time.monotonic)
    lease_expires_at: datetime | None = None
    renewals: int = 0
    renewal_failures: int = 0
    task: asyncio.Task[None] | None = None
    rejection: str | None = None

    @property
    def command_id(self) -> str:
        return self.command.command_id


class CommandLeaseClient:
    """Poll loop plus one task (and one renewal timer) per leased command."""

    COMPONENT = "control_poller"

    def __init__(
        self,
        config: BridgeConfig,
        transport: Transport,
        receipts: ReceiptStore,
        executor: CommandExecutor,
        *,
        status: StatusRegistry | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._receipts = receipts
        self._executor = executor
        self._status = status or StatusRegistry()
        self._in_flight: dict[str, LeasedCommand] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._consecutive_poll_failures = 0
        self._polling = False
        self._poll_loop = PeriodicTask("control-poll", self.poll_once, self._next_poll_delay)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._poll_loop.running

    @property
    def in_flight(self) -> dict[str, LeasedCommand]:
        return dict(self._in_flight)

    @property
    def consecutive_poll_failures(self) -> int:
        return self._consecutive_poll_failures

    def start(self, *, skip_initial_poll: bool = False) -> None:
        """Start polling and re-send receipts left unreported by a previous run."""
        if self.running:
            return
        unreported = self._receipts.unreported()
        if unreported:
            _logger.info("Re-sending %d unreported receipt(s) from a previous run", len(unreported))
            self._spawn(self._resend_all(unreported), name="receipt-recovery")
        self._poll_loop.start(run_immediately=not skip_initial_poll)

    async def stop(self, grace: float | None = None) -> None:
        """Stop polling, then give in-flight commands *grace* seconds to finish."""
        await self._poll_loop.stop()
        grace = self._config.shutdown_grace if grace is None else grace
        pending = [e.task for e in self._in_flight.values() if e.task is not None and not e.task.done()]
        pending.extend(t for t in self._background if not t.done())
        if not pending:
            return
        _logger.info("Waiting up to %.1fs for %d in-flight task(s)", grace, len(pending))
        _done, still_running = await asyncio.wait(pending, timeout=grace)
        for task in still_running:
            task.cancel()
        for task in still_running:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if still_running:
            _logger.warning("Cancelled %d command task(s) after shutdown grace", len(still_running))

    def _spawn(self, coro: Awaitable[None], *, name: str) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _next_poll_delay(self) -> float:
        interval = self._config.poll_interval
        if self._consecutive_poll_failures == 0:
            return interval
        return backoff_delay(self._consecutive_poll_failures, base=_RETRY_BASE_DELAY, cap=interval)

    def _record_poll_failure(self, exc: Exception) -> None:
        self._consecutive_poll_failures += 1
        degraded = self._consecutive_poll_failures >= self._config.degraded_after_failures
        self._status.record_failure(
            self.COMPONENT,
            exc,
            degraded=degraded,
            in_flight=len(self._in_flight),
        )
        log = _logger.warning if degraded else _logger.info
        log("Command poll failed consecutive=%d: %s", self._consecutive_poll_failures, exc)

    async def poll_once(self) -> list[str]:
        """Fetch commands once and dispatch them.

        Returns the ids of newly dispatched commands.  A call made while a
        previous poll request is still outstanding returns immediately.
        """
        if self._polling:
            _logger.debug("Poll still outstanding, skipping")
            return []
        self._polling = True
        try:
            try:
                raw = await self._transport.post_json(
                    self._config.control_poll_path,
                    {"machineId": self._config.machine_id, "leaseTtlMs": int(self._config.lease_ttl * 1000)},
                )
                response = PollResponse.model_validate(raw)
            except BridgeTransportError as exc:
                self._record_poll_failure(exc)
                return []
            except ValidationError as exc:
                self._record_poll_failure(
                    BridgeProtocolError(f"invalid poll response: {exc}", endpoint=self._config.control_poll_path)
                )
                return []

            self._consecutive_poll_failures = 0
            dispatched: list[str] = []
            for raw_command in response.commands:
                entry = self._entry_from_raw(raw_command)
                if entry is not None and self._dispatch(entry):
                    dispatched.append(entry.command_id)
            self._status.record_success(
                self.COMPONENT,
                in_flight=len(self._in_flight),
                orphaned=len(self._receipts.orphaned()),
            )
            return dispatched
        finally:
            self._polling = False

    def _entry_from_raw(self, raw: Any) -> LeasedCommand | None:
        try:
            command = Command.model_validate(raw)
        except ValidationError as exc:
            command_id = raw_command_id(raw)
            if command_id is None:
                _logger.warning("Skipping malformed command without a usable id: %s", redact_for_log(raw))
                return None
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'command'}: {error['msg']}"
                for error in exc.errors()
            )
            _logger.warning("Malformed command command_id=%s, answering it as failed: %s", command_id, problems)
            intent = raw.get("intent")
            return LeasedCommand(
                command=Command(command_id=command_id, intent=intent if isinstance(intent, str) else ""),
                rejection=f"invalid command: {problems}",
            )
        return LeasedCommand(command=command, lease_expires_at=command.lease_expires_at)

    def _dispatch(self, entry: LeasedCommand) -> bool:
        command_id = entry.command_id
        if command_id in self._in_flight:
            _logger.debug("Command already in flight command_id=%s", command_id)
            return False
        entry.task = asyncio.create_task(self._process(entry), name=f"command-{command_id}")
        self._in_flight[command_id] = entry
        entry.task.add_done_callback(lambda task, cid=command_id: self._command_done(cid, task))
        return True

    def _command_done(self, command_id: str, task: asyncio.Task[None]) -> None:
        self._in_flight.pop(command_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.error("Command task crashed command_id=%s", command_id, exc_info=exc)
            self._status.record_failure(self.COMPONENT, exc)

    # ------------------------------------------------------------------
    # Per-command processing
    # ------------------------------------------------------------------

    async def _with_retries(self, label: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await retry_async(
            fn,
            attempts=max(1, self._config.request_retries),
            base_delay=_RETRY_BASE_DELAY,
            max_delay=self._config.poll_interval,
            label=label,
        )

    async def _post_command(self, template: str, command_id: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._transport.post_json(command_path(template, command_id), body)

    async def _process(self, entry: LeasedCommand) -> None:
        command = entry.command
        stored = self._receipts.get(command.command_id)
        if stored is not None:
            _logger.info(
                "Redelivered command_id=%s answered from receipt outcome=%s", command.command_id, stored.outcome
            )
            await self._resend(stored)
            entry.state = CommandState.COMPLETED
            return

        try:
            await self._with_retries(
                f"ack {command.command_id}",
                lambda: self._post_command(
                    self._config.control_ack_path_template,
                    command.command_id,
                    {"machineId": self._config.machine_id},
                ),
            )
        except BridgeTransportError as exc:
            # Not claimed, not executed: the control plane will redeliver.
            _logger.warning("Ack failed command_id=%s, leaving it for redelivery: %s", command.command_id, exc)
            self._status.record_failure(self.COMPONENT, exc, degraded=False)
            return

        entry.state = CommandState.LEASED
        _logger.info("Leased command_id=%s intent=%s attempt=%d", command.command_id, command.intent, command.attempt)

        if entry.rejection is not None:
            receipt = Receipt(
                command_id=command.command_id, outcome=CommandOutcome.FAILED, payload={"error": entry.rejection}
            )
        else:
            renewal = asyncio.create_task(self._renew_lease(entry), name=f"lease-{command.command_id}")
            try:
                receipt = await self._execute(command)
            finally:
                renewal.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await renewal

        try:
            receipt = await self._receipts.put(command.command_id, receipt)
        except BridgeStateError as exc:
            # Still reported; a restart before the control plane dedupes
            # this command may execute it again.
            _logger.warning(
                "Receipt for command_id=%s not persisted, reporting anyway: %s", command.command_id, exc
            )
            self._status.record_failure(self.COMPONENT, exc, receipt_persisted=False)
        await self._report(entry, receipt)

    async def _execute(self, command: Command) -> Receipt:
        try:
            result = await self._executor.execute(command)
        except BridgeCommandError as exc:
            return Receipt(command_id=command.command_id, outcome=CommandOutcome.FAILED, payload={"error": str(exc)})
        except Exception as exc:
            _logger.exception("Executor raised for command_id=%s", command.command_id)
            return Receipt(
                command_id=command.command_id,
                outcome=CommandOutcome.FAILED,
                payload={"error": f"{type(exc).__name__}: {exc}"},
            )
        if result is None:
            return Receipt(command_id=command.command_id, outcome=CommandOutcome.ACK)
        outcome = CommandOutcome.RESULT if result.succeeded else CommandOutcome.FAILED
        return Receipt(command_id=command.command_id, outcome=outcome, payload=result.to_wire())

    def _next_renewal_delay(self, entry: LeasedCommand) -> float:
        """Seconds until the next lease heartbeat for *entry*.

        Follows the server's ``leaseExpiresAt`` when known, renewing one
        margin ahead of it, and never waits longer than the configured
        renewal interval.
        """
        interval = self._config.lease_renew_interval
        if entry.lease_expires_at is None:
            return interval
        margin = min(self._config.lease_renew_margin, self._config.lease_ttl / 2)
        remaining = (entry.lease_expires_at - utcnow()).total_seconds() - margin
        return max(min(interval, _MIN_RENEW_DELAY), min(interval, remaining))

    async def _renew_lease(self, entry: LeasedCommand) -> None:
        body = {"machineId": self._config.machine_id, "leaseTtlMs": int(self._config.lease_ttl * 1000)}
        while True:
            await asyncio.sleep(self._next_renewal_delay(entry))
            entry.state = CommandState.RENEWING
            try:
                raw = await self._with_retries(
                    f"lease heartbeat {entry.command_id}",
                    lambda: self._post_command(
                        self._config.control_heartbeat_path_template, entry.command_id, body
                    ),
                )
            except BridgeTransportError as exc:
                entry.renewal_failures += 1
                entry.lease_expires_at = None
                _logger.warning(
                    "Lease renewal failed command_id=%s failures=%d, execution continues; "
                    "the command may be reassigned to another bridge: %s",
                    entry.command_id,
                    entry.renewal_failures,
                    exc,
                )
                continue
            entry.renewals += 1
            try:
                renewal = LeaseRenewal.model_validate(raw)
            except ValidationError:
                renewal = LeaseRenewal()
            entry.lease_expires_at = renewal.lease_expires_at or utcnow() + timedelta(seconds=self._config.lease_ttl)
            _logger.debug("Lease renewed command_id=%s renewals=%d", entry.command_id, entry.renewals)

    async def _send_result(self, receipt: Receipt) -> None:
        body = receipt.result_body(self._config.machine_id)
        await self._with_retries(
            f"result {receipt.command_id}",
            lambda: self._post_command(self._config.control_result_path_template, receipt.command_id, body),
        )

    async def _report(self, entry: LeasedCommand, receipt: Receipt) -> None:
        try:
            await self._send_result(receipt)
        except BridgeTransportError as exc:
            entry.state = CommandState.ORPHANED
            await self._receipts.mark_orphaned(receipt.command_id)
            self._status.record_failure(
                self.COMPONENT, exc, degraded=False, orphaned=len(self._receipts.orphaned())
            )
            _logger.warning(
                "Result report exhausted retries, command orphaned command_id=%s outcome=%s: %s",
                receipt.command_id,
                receipt.outcome,
                exc,
            )
            return
        entry.state = CommandState.COMPLETED
        await self._receipts.mark_reported(receipt.command_id)
        _logger.info(
            "Command processed command_id=%s intent=%s outcome=%s renewals=%d",
            receipt.command_id,
            entry.command.intent,
            receipt.outcome,
            entry.renewals,
        )

    async def _resend(self, receipt: Receipt) -> None:
        try:
            await self._send_result(receipt)
        except BridgeTransportError as exc:
            _logger.warning("Receipt re-send failed command_id=%s: %s", receipt.command_id, exc)
            return
        if receipt.reported_at is None or receipt.orphaned:
            await self._receipts.mark_reported(receipt.command_id)

    async def _resend_all(self, receipts: list[Receipt]) -> None:
        for receipt in receipts:
            await self._resend(receipt)
