"""Helpers for safe debug logging.

The bridge carries a bearer token on every request and relays raw CLI
output from command execution.  Bodies and headers pass through here
before they are written to DEBUG logs.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

_REDACTED = "<redacted>"

_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "authorization",
        "cookie",
        "password",
        "secret",
        "token",
        "controlplanetoken",
        # CLI output and raw config can hold arbitrary local data
        "stdout",
        "stderr",
        "configraw",
    }
)


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Mask credentials in an outgoing header mapping."""
    masked: dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() == "authorization":
            scheme, _, _ = value.partition(" ")
            masked[key] = f"{scheme} {_REDACTED}" if scheme else _REDACTED
        else:
            masked[key] = value
    return masked


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs.

    Pydantic models are dumped by alias first so the logged shape matches
    what goes over the wire.
    """
    if _depth > 20:
        return "<max-depth>"

    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True)

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        return {
            str(key): (
                _REDACTED
                if str(key).lower() in _SENSITIVE_KEYS
                else redact_for_log(item, max_string=max_string, _depth=_depth + 1)
            )
            for key, item in value.items()
        }

    if isinstance(value, (Sequence, set, frozenset)):
        return [redact_for_log(item, max_string=max_string, _depth=_depth + 1) for item in value]

    return repr(value)
