"""JSON-over-HTTP transport to the control plane."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol
from urllib.parse import quote

import aiohttp

from openclaw_bridge._constants import BRIDGE_VERSION_HEADER, MACHINE_ID_HEADER, USER_AGENT
from openclaw_bridge._redact import redact_for_log, redact_headers
from openclaw_bridge.config import BridgeConfig
from openclaw_bridge.exceptions import BridgeTransportError

_logger = logging.getLogger(__name__)


def command_path(template: str, command_id: str) -> str:
    """Fill ``{commandId}`` in an endpoint template (URL-encoded)."""
    return template.replace("{commandId}", quote(command_id, safe=""))


def encode_body(payload: Mapping[str, Any]) -> str:
    """Serialize a request body.  Equal payloads always encode to equal bytes."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


class Transport(Protocol):
    """Structural transport interface used by the bridge components.

    Tests pass fakes implementing ``post_json``; production uses
    :class:`HttpTransport`.
    """

    async def post_json(self, path: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        ...


class HttpTransport:
    """aiohttp transport with bearer auth and a per-request timeout."""

    def __init__(self, config: BridgeConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._base_url = config.control_plane_base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)
        self._headers = self._build_headers()

    def _build_headers(self) -> dict[str, str]:
        headers = {
            "content-type": "application/json",
            "accept": "application/json",
            "user-agent": f"{USER_AGENT}/{self._config.bridge_version}",
            MACHINE_ID_HEADER: self._config.machine_id,
            BRIDGE_VERSION_HEADER: self._config.bridge_version,
        }
        if self._config.control_plane_token:
            headers["authorization"] = f"Bearer {self._config.control_plane_token}"
        return headers

    def url_for(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def post_json(self, path: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        """POST *payload* as JSON and return the decoded JSON object.

        An empty body decodes to ``{}``.  Network errors, timeouts,
        non-2xx statuses and invalid JSON raise :class:`BridgeTransportError`.
        """
        url = self.url_for(path)
        body = encode_body(payload)
        if _logger.isEnabledFor(logging.DEBUG):
            _logger.debug(
                "POST %s headers=%s body=%s",
                url,
                redact_headers(self._headers),
                redact_for_log(payload),
            )

        try:
            async with self._http.post(url, data=body, headers=self._headers, timeout=self._timeout) as resp:
                text = await resp.text()
                if not 200 <= resp.status < 300:
                    raise BridgeTransportError(
                        f"HTTP {resp.status} from {path}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=path,
                    )
        except BridgeTransportError:
            raise
        except asyncio.TimeoutError as exc:
            raise BridgeTransportError(
                f"Request to {path} timed out after {self._config.request_timeout:.1f}s",
                endpoint=path,
            ) from exc
        except aiohttp.ClientError as exc:
            raise BridgeTransportError(f"Request to {path} failed: {exc}", endpoint=path) from exc

        if not text.strip():
            return {}
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as exc:
            raise BridgeTransportError(f"Invalid JSON from {path}: {text[:200]}", endpoint=path) from exc
        if not isinstance(decoded, dict):
            _logger.debug("Non-object JSON from %s ignored", path)
            return {}
        return decoded
