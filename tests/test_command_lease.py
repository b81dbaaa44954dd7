from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from openclaw_bridge._transport import command_path, encode_body
from openclaw_bridge.commands import CommandLeaseClient
from openclaw_bridge.config import BridgeConfig
from openclaw_bridge.exceptions import BridgeStateError
from openclaw_bridge.models.command import Command, CommandOutcome, ExecutionResult
from openclaw_bridge.models.receipt import Receipt
from openclaw_bridge.state.receipts import ReceiptStore
from openclaw_bridge.status import ComponentHealth, StatusRegistry


class _FakeExecutor:
    def __init__(self, *, delay: float = 0.0, result: ExecutionResult | None = None) -> None:
        self.delay = delay
        self.result = result or ExecutionResult(status="succeeded", exit_code=0, duration_ms=1, stdout="ok")
        self.calls: list[str] = []
        self.spans: dict[str, tuple[float, float]] = {}

    async def execute(self, command: Command) -> ExecutionResult | None:
        self.calls.append(command.command_id)
        started = time.monotonic()
        if self.delay:
            await asyncio.sleep(self.delay)
        self.spans[command.command_id] = (started, time.monotonic())
        return self.result


def _receipts(config: BridgeConfig) -> ReceiptStore:
    return ReceiptStore(config.receipt_file, retention=3600, max_entries=100)


def _poll_returns(*command_ids: str) -> Any:
    def handler(_payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "commands": [
                {"commandId": cid, "intent": "trigger_job", "args": {"jobId": "nightly"}} for cid in command_ids
            ]
        }

    return handler


async def _poll_and_drain(client: CommandLeaseClient) -> list[str]:
    dispatched = await client.poll_once()
    tasks = [entry.task for entry in client.in_flight.values() if entry.task is not None]
    await asyncio.gather(*tasks)
    return dispatched


def _paths(config: BridgeConfig, command_id: str) -> tuple[str, str, str]:
    return (
        command_path(config.control_ack_path_template, command_id),
        command_path(config.control_heartbeat_path_template, command_id),
        command_path(config.control_result_path_template, command_id),
    )


@pytest.mark.asyncio
async def test_first_delivery_acks_executes_and_reports(config, transport) -> None:
    receipts = _receipts(config)
    executor = _FakeExecutor()
    ack_path, _hb_path, result_path = _paths(config, "cmd-1")
    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1")

    client = CommandLeaseClient(config, transport, receipts, executor)
    dispatched = await _poll_and_drain(client)

    assert dispatched == ["cmd-1"]
    assert executor.calls == ["cmd-1"]
    assert transport.paths() == [config.control_poll_path, ack_path, result_path]
    poll_body = transport.bodies(config.control_poll_path)[0]
    assert poll_body == {"machineId": "machine_test", "leaseTtlMs": 30000}

    result_body = transport.bodies(result_path)[0]
    assert result_body["machineId"] == "machine_test"
    assert result_body["outcome"] == "result"
    assert result_body["payload"]["stdout"] == "ok"

    stored = receipts.get("cmd-1")
    assert stored is not None
    assert stored.reported_at is not None
    assert not stored.orphaned


@pytest.mark.asyncio
async def test_receipt_is_persisted_before_result_is_sent(config, transport) -> None:
    receipts = _receipts(config)
    _ack, _hb, result_path = _paths(config, "cmd-1")
    on_disk_at_report: list[bool] = []

    def result_handler(_payload: dict[str, Any]) -> dict[str, Any]:
        document = json.loads(receipts.path.read_text(encoding="utf-8"))
        on_disk_at_report.append(any(r["commandId"] == "cmd-1" for r in document["receipts"]))
        return {}

    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1")
    transport.handlers[result_path] = result_handler

    client = CommandLeaseClient(config, transport, receipts, _FakeExecutor())
    await _poll_and_drain(client)

    assert on_disk_at_report == [True]


@pytest.mark.asyncio
async def test_redelivered_command_is_answered_from_receipt_without_execution(config, transport) -> None:
    receipts = _receipts(config)
    stored = await receipts.put(
        "cmd-1",
        Receipt(command_id="cmd-1", outcome=CommandOutcome.RESULT, payload={"exitCode": 0, "stdout": "done"}),
    )
    await receipts.mark_reported("cmd-1")
    executor = _FakeExecutor()
    ack_path, _hb, result_path = _paths(config, "cmd-1")
    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1")

    client = CommandLeaseClient(config, transport, receipts, executor)
    await _poll_and_drain(client)
    await _poll_and_drain(client)

    assert executor.calls == []
    assert ack_path not in transport.paths()
    sent = transport.bodies(result_path)
    assert len(sent) == 2
    expected = encode_body(stored.result_body("machine_test"))
    assert [encode_body(body) for body in sent] == [expected, expected]


@pytest.mark.asyncio
async def test_duplicate_ids_in_one_poll_dispatch_once(config, transport) -> None:
    executor = _FakeExecutor()
    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1", "cmd-1")

    client = CommandLeaseClient(config, transport, _receipts(config), executor)
    dispatched = await _poll_and_drain(client)

    assert dispatched == ["cmd-1"]
    assert executor.calls == ["cmd-1"]


@pytest.mark.asyncio
async def test_legacy_single_command_poll_shape(config, transport) -> None:
    executor = _FakeExecutor()
    transport.handlers[config.control_poll_path] = lambda _p: {
        "available": True,
        "command": {"id": "cmd-9", "snapshot": {"intent": "trigger_job", "args": {"jobId": "j"}}},
    }

    client = CommandLeaseClient(config, transport, _receipts(config), executor)
    await _poll_and_drain(client)

    assert executor.calls == ["cmd-9"]


@pytest.mark.asyncio
async def test_lease_is_renewed_while_execution_outlasts_ttl(config, transport) -> None:
    config = dataclasses.replace(config, lease_ttl=0.2, lease_renew_margin=0.1)
    ack_path, hb_path, result_path = _paths(config, "cmd-1")
    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1")
    transport.handlers[hb_path] = lambda _p: {"leaseExpiresAt": "2030-01-01T00:00:00Z"}

    client = CommandLeaseClient(config, transport, _receipts(config), _FakeExecutor(delay=0.35))
    await _poll_and_drain(client)

    paths = transport.paths()
    heartbeats = [i for i, p in enumerate(paths) if p == hb_path]
    assert heartbeats
    ack_index = paths.index(ack_path)
    first_heartbeat_after_ack = transport.call_times[heartbeats[0]] - transport.call_times[ack_index]
    assert first_heartbeat_after_ack < config.lease_ttl
    assert paths[-1] == result_path
    assert transport.bodies(hb_path)[0] == {"machineId": "machine_test", "leaseTtlMs": 200}


@pytest.mark.asyncio
async def test_failed_lease_renewal_does_not_abort_execution(config, transport, caplog) -> None:
    config = dataclasses.replace(config, lease_ttl=0.2, lease_renew_margin=0.1)
    _ack, hb_path, result_path = _paths(config, "cmd-1")
    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1")
    transport.failures[hb_path] = -1
    receipts = _receipts(config)

    client = CommandLeaseClient(config, transport, receipts, _FakeExecutor(delay=0.3))
    with caplog.at_level(logging.WARNING, logger="openclaw_bridge.commands"):
        await _poll_and_drain(client)

    assert hb_path in transport.paths()
    assert transport.bodies(result_path)[0]["outcome"] == "result"
    assert receipts.get("cmd-1").reported_at is not None
    assert "Lease renewal failed" in caplog.text


@pytest.mark.asyncio
async def test_ack_failure_leaves_command_for_redelivery(config, transport) -> None:
    ack_path, _hb, result_path = _paths(config, "cmd-1")
    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1")
    transport.failures[ack_path] = -1
    executor = _FakeExecutor()
    receipts = _receipts(config)

    client = CommandLeaseClient(config, transport, receipts, executor)
    await _poll_and_drain(client)

    assert executor.calls == []
    assert "cmd-1" not in receipts
    assert result_path not in transport.paths()


@pytest.mark.asyncio
async def test_failed_execution_is_reported_as_failed(config, transport) -> None:
    _ack, _hb, result_path = _paths(config, "cmd-1")
    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1")
    executor = _FakeExecutor(
        result=ExecutionResult(status="failed", exit_code=3, duration_ms=5, stderr="boom"),
    )
    receipts = _receipts(config)

    client = CommandLeaseClient(config, transport, receipts, executor)
    await _poll_and_drain(client)

    assert receipts.get("cmd-1").outcome is CommandOutcome.FAILED
    assert transport.bodies(result_path)[0]["payload"]["exitCode"] == 3


@pytest.mark.asyncio
async def test_exhausted_result_report_orphans_the_receipt(config, transport) -> None:
    _ack, _hb, result_path = _paths(config, "cmd-1")
    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1")
    transport.failures[result_path] = -1
    receipts = _receipts(config)
    status = StatusRegistry()

    client = CommandLeaseClient(config, transport, receipts, _FakeExecutor(), status=status)
    await _poll_and_drain(client)

    stored = receipts.get("cmd-1")
    assert stored.orphaned
    assert stored.reported_at is None
    assert receipts.unreported() == []
    assert status.component(CommandLeaseClient.COMPONENT).details["orphaned"] == 1

    # A later redelivery re-sends the same receipt and clears the orphan flag.
    transport.failures.clear()
    await _poll_and_drain(client)
    assert receipts.get("cmd-1").orphaned is False
    assert receipts.get("cmd-1").reported_at is not None


@pytest.mark.asyncio
async def test_restart_answers_redelivery_from_persisted_receipt(config, transport) -> None:
    _ack, _hb, result_path = _paths(config, "cmd-1")
    reached_report = asyncio.Event()

    async def hang(_payload: dict[str, Any]) -> dict[str, Any]:
        reached_report.set()
        await asyncio.Event().wait()
        return {}

    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1")
    transport.handlers[result_path] = hang
    first_executor = _FakeExecutor()
    first = CommandLeaseClient(config, transport, _receipts(config), first_executor)

    await first.poll_once()
    await asyncio.wait_for(reached_report.wait(), timeout=2)
    # The process "dies" while the result call is in flight.
    await first.stop(grace=0)
    assert first_executor.calls == ["cmd-1"]
    first_body = transport.bodies(result_path)[0]

    restarted_receipts = _receipts(config)
    assert [r.command_id for r in restarted_receipts.unreported()] == ["cmd-1"]

    transport.calls.clear()
    transport.handlers.pop(result_path)
    second_executor = _FakeExecutor()
    second = CommandLeaseClient(config, transport, restarted_receipts, second_executor)
    await _poll_and_drain(second)

    assert second_executor.calls == []
    assert encode_body(transport.bodies(result_path)[0]) == encode_body(first_body)
    assert restarted_receipts.get("cmd-1").reported_at is not None


@pytest.mark.asyncio
async def test_start_resends_unreported_receipts(config, transport) -> None:
    receipts = _receipts(config)
    await receipts.put("cmd-7", Receipt(command_id="cmd-7", outcome=CommandOutcome.ACK))
    _ack, _hb, result_path = _paths(config, "cmd-7")

    client = CommandLeaseClient(config, transport, receipts, _FakeExecutor())
    client.start(skip_initial_poll=True)
    await client.stop()

    assert transport.bodies(result_path)[0]["outcome"] == "ack"
    assert receipts.unreported() == []


@pytest.mark.asyncio
async def test_poll_is_skipped_while_previous_request_outstanding(config, transport) -> None:
    release = asyncio.Event()

    async def slow_poll(_payload: dict[str, Any]) -> dict[str, Any]:
        await release.wait()
        return {"commands": []}

    transport.handlers[config.control_poll_path] = slow_poll
    client = CommandLeaseClient(config, transport, _receipts(config), _FakeExecutor())

    first = asyncio.create_task(client.poll_once())
    await asyncio.sleep(0)
    assert await client.poll_once() == []
    release.set()
    await first

    assert transport.paths() == [config.control_poll_path]


@pytest.mark.asyncio
async def test_poller_degrades_after_consecutive_failures(config, transport) -> None:
    config = dataclasses.replace(config, degraded_after_failures=3)
    transport.failures[config.control_poll_path] = 3
    status = StatusRegistry()
    client = CommandLeaseClient(config, transport, _receipts(config), _FakeExecutor(), status=status)
    component = status.component(CommandLeaseClient.COMPONENT)

    await client.poll_once()
    await client.poll_once()
    assert component.state is ComponentHealth.HEALTHY
    assert client.consecutive_poll_failures == 2

    await client.poll_once()
    assert component.state is ComponentHealth.DEGRADED

    await client.poll_once()
    assert component.state is ComponentHealth.HEALTHY
    assert client.consecutive_poll_failures == 0


@pytest.mark.asyncio
async def test_valid_command_runs_next_to_malformed_ones(config, transport) -> None:
    transport.handlers[config.control_poll_path] = lambda _p: {
        "commands": [
            {"commandId": "good", "intent": "trigger_job", "args": {"jobId": "nightly"}},
            {"commandId": "bad", "args": "not-a-dict"},
            {"intent": "trigger_job"},
            "garbage",
        ]
    }
    executor = _FakeExecutor()
    receipts = _receipts(config)
    client = CommandLeaseClient(config, transport, receipts, executor)

    dispatched = await _poll_and_drain(client)

    assert dispatched == ["good", "bad"]
    assert executor.calls == ["good"]
    assert client.consecutive_poll_failures == 0
    bad_ack, _hb, bad_result = _paths(config, "bad")
    assert bad_ack in transport.paths()
    [body] = transport.bodies(bad_result)
    assert body["outcome"] == "failed"
    assert body["payload"]["error"].startswith("invalid command:")
    assert receipts.get("bad").outcome is CommandOutcome.FAILED
    assert transport.bodies(_paths(config, "good")[2])[0]["outcome"] == "result"


@pytest.mark.asyncio
async def test_poll_response_without_command_list_counts_as_failure(config, transport) -> None:
    transport.handlers[config.control_poll_path] = lambda _p: {"commands": "none"}
    client = CommandLeaseClient(config, transport, _receipts(config), _FakeExecutor())

    assert await client.poll_once() == []
    assert client.consecutive_poll_failures == 1


@pytest.mark.asyncio
async def test_receipt_write_failure_still_reports_and_degrades(config, transport, monkeypatch) -> None:
    status = StatusRegistry()
    receipts = ReceiptStore(config.receipt_file, retention=3600, max_entries=100, status=status)

    def disk_full(_document: Any) -> None:
        raise BridgeStateError("disk full", path=str(receipts.path))

    monkeypatch.setattr(receipts._file, "write_now", disk_full)  # type: ignore[attr-defined]
    _ack, _hb, result_path = _paths(config, "cmd-1")
    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1")

    client = CommandLeaseClient(config, transport, receipts, _FakeExecutor(), status=status)
    await _poll_and_drain(client)

    assert transport.bodies(result_path)[0]["outcome"] == "result"
    assert receipts.get("cmd-1") is not None
    assert not receipts.path.exists()
    assert status.overall is ComponentHealth.DEGRADED
    snapshot = status.snapshot()
    assert snapshot[ReceiptStore.COMPONENT]["lastError"] == "disk full"
    assert snapshot[CommandLeaseClient.COMPONENT]["details"]["receipt_persisted"] is False


@pytest.mark.asyncio
async def test_concurrent_commands_renew_their_own_leases(config, transport) -> None:
    config = dataclasses.replace(config, lease_ttl=0.2, lease_renew_margin=0.1)
    transport.handlers[config.control_poll_path] = _poll_returns("cmd-a", "cmd-b")
    executor = _FakeExecutor(delay=0.35)

    client = CommandLeaseClient(config, transport, _receipts(config), executor)
    await _poll_and_drain(client)

    for command_id in ("cmd-a", "cmd-b"):
        _ack, hb_path, result_path = _paths(config, command_id)
        assert transport.bodies(hb_path)
        assert transport.bodies(result_path)[0]["outcome"] == "result"
    (start_a, end_a), (start_b, end_b) = executor.spans["cmd-a"], executor.spans["cmd-b"]
    assert start_a < end_b and start_b < end_a


@pytest.mark.asyncio
async def test_stop_lets_command_finish_within_grace(config, transport) -> None:
    _ack, _hb, result_path = _paths(config, "cmd-1")
    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1")
    receipts = _receipts(config)
    client = CommandLeaseClient(config, transport, receipts, _FakeExecutor(delay=0.1))

    await client.poll_once()
    await client.stop(grace=1.0)

    assert transport.bodies(result_path)[0]["outcome"] == "result"
    assert receipts.get("cmd-1").reported_at is not None


@pytest.mark.asyncio
async def test_stop_cancels_command_after_grace(config, transport) -> None:
    ack_path, _hb, result_path = _paths(config, "cmd-1")
    transport.handlers[config.control_poll_path] = _poll_returns("cmd-1")
    receipts = _receipts(config)
    executor = _FakeExecutor(delay=5.0)
    client = CommandLeaseClient(config, transport, receipts, executor)

    await client.poll_once()
    await asyncio.sleep(0.05)
    started = time.monotonic()
    await client.stop(grace=0.1)

    assert time.monotonic() - started < 1.0
    assert executor.calls == ["cmd-1"]
    assert ack_path in transport.paths()
    assert result_path not in transport.paths()
    assert receipts.get("cmd-1") is None


@pytest.mark.asyncio
async def test_lease_renewal_follows_server_expiry(config, transport) -> None:
    config = dataclasses.replace(config, lease_ttl=2.0, lease_renew_margin=0.5)
    ack_path, hb_path, _result = _paths(config, "cmd-1")
    expires = (datetime.now(UTC) + timedelta(seconds=0.8)).isoformat()
    transport.handlers[config.control_poll_path] = lambda _p: {
        "commands": [
            {"commandId": "cmd-1", "intent": "trigger_job", "args": {"jobId": "n"}, "leaseExpiresAt": expires}
        ]
    }

    client = CommandLeaseClient(config, transport, _receipts(config), _FakeExecutor(delay=0.8))
    await _poll_and_drain(client)

    # The plain renewal interval (1.5s) would not renew at all here.
    paths = transport.paths()
    heartbeats = [i for i, p in enumerate(paths) if p == hb_path]
    assert len(heartbeats) == 1
    assert transport.call_times[heartbeats[0]] - transport.call_times[paths.index(ack_path)] < 0.75


def test_poll_delay_backs_off_and_is_capped(config) -> None:
    config = dataclasses.replace(config, poll_interval=2.0)
    client = CommandLeaseClient(config, None, _receipts(config), _FakeExecutor())  # type: ignore[arg-type]

    assert client._next_poll_delay() == 2.0  # type: ignore[attr-defined]
    client._consecutive_poll_failures = 1  # type: ignore[attr-defined]
    assert client._next_poll_delay() == 0.5  # type: ignore[attr-defined]
    client._consecutive_poll_failures = 10  # type: ignore[attr-defined]
    assert client._next_poll_delay() == 2.0  # type: ignore[attr-defined]
