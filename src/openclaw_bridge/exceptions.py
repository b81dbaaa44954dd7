"""Custom exception hierarchy for openclaw-bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class BridgeConfigError(BridgeError):
    """Invalid or missing configuration.

    Raised while loading :class:`~openclaw_bridge.config.BridgeConfig`
    (e.g. an expired ``TOKEN_EXPIRES_AT``).  Always fatal at startup.
    """


class BridgeTransportError(BridgeError):
    """HTTP-level failure (network, timeout, non-2xx, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class BridgeProtocolError(BridgeError):
    """Control plane answered with a payload the bridge cannot use."""

    def __init__(self, message: str, *, endpoint: str = "") -> None:
        self.endpoint = endpoint
        super().__init__(message)


class BridgeCommandError(BridgeError):
    """A command was refused before execution (unknown intent, bad args)."""

    def __init__(self, message: str, *, intent: str = "") -> None:
        self.intent = intent
        super().__init__(message)


class BridgeStateError(BridgeError):
    """A persisted state file could not be read or written."""

    def __init__(self, message: str, *, path: str = "") -> None:
        self.path = path
        super().__init__(message)
