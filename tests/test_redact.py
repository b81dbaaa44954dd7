from __future__ import annotations

from openclaw_bridge._redact import redact_for_log, redact_headers
from openclaw_bridge.models.command import ExecutionResult


def test_redact_for_log_masks_tokens_and_command_output() -> None:
    payload = {
        "machineId": "machine_1",
        "controlPlaneToken": "secret-token",
        "payload": {"stdout": "private output", "exitCode": 0},
        "headers": [{"Authorization": "Bearer abc"}],
    }

    redacted = redact_for_log(payload)
    assert redacted["machineId"] == "machine_1"
    assert redacted["controlPlaneToken"] == "<redacted>"
    assert redacted["payload"]["stdout"] == "<redacted>"
    assert redacted["payload"]["exitCode"] == 0
    assert redacted["headers"][0]["Authorization"] == "<redacted>"


def test_redact_for_log_dumps_models_by_alias() -> None:
    result = ExecutionResult(status="failed", exit_code=2, duration_ms=10, stderr="trace")
    redacted = redact_for_log(result)

    assert redacted["exitCode"] == 2
    assert redacted["stderr"] == "<redacted>"


def test_redact_for_log_truncates_long_strings() -> None:
    redacted = redact_for_log({"value": "x" * 600}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_headers_keeps_scheme() -> None:
    headers = redact_headers({"authorization": "Bearer abc", "X-Bridge-Machine-Id": "machine_1"})
    assert headers == {"authorization": "Bearer <redacted>", "X-Bridge-Machine-Id": "machine_1"}
