"""Durable sync cursors for incrementally mirrored sources."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from pydantic import ValidationError

from openclaw_bridge._constants import STATE_FILE_VERSION
from openclaw_bridge.exceptions import BridgeStateError
from openclaw_bridge.models.cron import CronOffset
from openclaw_bridge.state._file import AtomicJsonFile
from openclaw_bridge.status import StatusRegistry

_logger = logging.getLogger(__name__)


class OffsetStore:
    """Offsets keyed by sync-source id, persisted as one JSON document.

    Callers commit a whole acknowledged delta at once via :meth:`commit`,
    so the file never reflects half of a push.
    """

    COMPONENT = "offset_store"

    def __init__(self, path: str | Path, *, status: StatusRegistry | None = None) -> None:
        self._file = AtomicJsonFile(path)
        self._status = status or StatusRegistry()
        self._offsets: dict[str, CronOffset] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._file.path

    def _load(self) -> None:
        try:
            document = self._file.read()
        except BridgeStateError as exc:
            _logger.warning("Offset file unreadable, starting empty: %s", exc)
            self._status.record_failure(self.COMPONENT, exc, degraded=False)
            return
        if document is None:
            return
        if not isinstance(document, dict):
            document = {}
        offsets = document.get("offsets")
        if document.get("version") != STATE_FILE_VERSION or not isinstance(offsets, dict):
            _logger.warning("Offset file %s has an unknown layout, starting empty", self.path)
            self._status.record_failure(self.COMPONENT, f"unknown layout in {self.path}", degraded=False)
            return
        for source_id, raw in offsets.items():
            if not isinstance(raw, dict):
                continue
            try:
                self._offsets[source_id] = CronOffset.model_validate({**raw, "sourceId": source_id})
            except ValidationError:
                _logger.warning("Skipping malformed offset source_id=%s", source_id)

    def get(self, source_id: str) -> CronOffset | None:
        return self._offsets.get(source_id)

    def snapshot(self, prefix: str = "") -> dict[str, CronOffset]:
        """Copy of the offsets whose source id starts with *prefix*."""
        return {sid: off for sid, off in self._offsets.items() if sid.startswith(prefix)}

    def __len__(self) -> int:
        return len(self._offsets)

    async def commit(self, updates: Iterable[CronOffset] = (), removals: Iterable[str] = ()) -> None:
        """Apply *updates* and *removals* and persist them in one write.

        Raises :class:`BridgeStateError` if the write fails; memory then
        holds the new offsets while the file still has the old ones.
        """
        changed = False
        for offset in updates:
            self._offsets[offset.source_id] = offset
            changed = True
        for source_id in removals:
            if self._offsets.pop(source_id, None) is not None:
                changed = True
        if not changed:
            return
        document = {
            "version": STATE_FILE_VERSION,
            "offsets": {
                sid: off.model_dump(mode="json", by_alias=True, exclude={"source_id"})
                for sid, off in sorted(self._offsets.items())
            },
        }
        try:
            await self._file.write(document)
        except BridgeStateError as exc:
            self._status.record_failure(self.COMPONENT, exc)
            raise
        self._status.record_success(self.COMPONENT, sources=len(self._offsets))
