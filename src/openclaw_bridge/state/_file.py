"""Atomic JSON document persistence shared by the state stores."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from openclaw_bridge.exceptions import BridgeStateError

_logger = logging.getLogger(__name__)


class AtomicJsonFile:
    """A JSON document rewritten as a whole via temp file + ``os.replace``.

    Writes for one file go through a single :class:`asyncio.Lock`, so two
    coroutines can never interleave a rewrite.  A reader (or a crash) only
    ever observes the previous or the next complete document.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> Any | None:
        """Return the decoded document, or ``None`` if the file is absent.

        Raises
        ------
        BridgeStateError
            If the file exists but cannot be read or is not valid JSON.
        """
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise BridgeStateError(f"Cannot read {self._path}: {exc}", path=str(self._path)) from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise BridgeStateError(f"Malformed JSON in {self._path}: {exc}", path=str(self._path)) from exc

    def write_now(self, document: Any) -> None:
        """Synchronously replace the file with *document*."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f".{self._path.name}.{os.getpid()}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise BridgeStateError(f"Cannot write {self._path}: {exc}", path=str(self._path)) from exc

    async def write(self, document: Any) -> None:
        """Serialized atomic rewrite."""
        async with self._lock:
            self.write_now(document)
            _logger.debug("Persisted %s", self._path)
