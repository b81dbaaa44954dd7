"""Durable idempotency ledger for control-plane commands.

A receipt is written before the outcome is reported to the control
plane.  When a command is redelivered, the stored receipt is re-sent
instead of executing the command again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from openclaw_bridge._constants import STATE_FILE_VERSION
from openclaw_bridge.exceptions import BridgeStateError
from openclaw_bridge.models._base import utcnow
from openclaw_bridge.models.receipt import Receipt
from openclaw_bridge.state._file import AtomicJsonFile
from openclaw_bridge.status import StatusRegistry

_logger = logging.getLogger(__name__)


class ReceiptStore:
    """Receipts keyed by command id, cached in memory, persisted as one file.

    Parameters
    ----------
    path
        Receipt file.  Exclusively owned by this store.
    retention
        Seconds after ``completed_at`` at which a receipt is pruned.
    max_entries
        Hard cap on stored receipts; the oldest are pruned first.
    status
        Registry receiving load fallbacks and write failures.
    """

    COMPONENT = "receipt_store"

    def __init__(
        self,
        path: str | Path,
        *,
        retention: float,
        max_entries: int,
        clock: Callable[[], datetime] = utcnow,
        status: StatusRegistry | None = None,
    ) -> None:
        self._file = AtomicJsonFile(path)
        self._status = status or StatusRegistry()
        self._retention = timedelta(seconds=retention)
        self._max_entries = max_entries
        self._clock = clock
        self._receipts: dict[str, Receipt] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._file.path

    def _load(self) -> None:
        try:
            document = self._file.read()
        except BridgeStateError as exc:
            _logger.warning("Receipt file unreadable, starting empty: %s", exc)
            self._status.record_failure(self.COMPONENT, exc, degraded=False)
            return
        if document is None:
            return
        if (
            not isinstance(document, dict)
            or document.get("version") != STATE_FILE_VERSION
            or not isinstance(document.get("receipts"), list)
        ):
            _logger.warning("Receipt file %s has an unknown layout, starting empty", self.path)
            self._status.record_failure(self.COMPONENT, f"unknown layout in {self.path}", degraded=False)
            return
        for raw in document["receipts"]:
            try:
                receipt = Receipt.model_validate(raw)
            except ValidationError:
                _logger.warning("Skipping malformed receipt in %s", self.path)
                continue
            self._receipts[receipt.command_id] = receipt
        _logger.debug("Loaded %d receipts from %s", len(self._receipts), self.path)

    def __len__(self) -> int:
        return len(self._receipts)

    def __contains__(self, command_id: object) -> bool:
        return command_id in self._receipts

    def get(self, command_id: str) -> Receipt | None:
        return self._receipts.get(command_id)

    def unreported(self) -> list[Receipt]:
        """Receipts never acknowledged by the control plane and not orphaned."""
        return [r for r in self._receipts.values() if r.reported_at is None and not r.orphaned]

    def orphaned(self) -> list[Receipt]:
        return [r for r in self._receipts.values() if r.orphaned]

    async def put(self, command_id: str, receipt: Receipt) -> Receipt:
        """Persist the terminal receipt for *command_id*.

        The first receipt stored for a command wins; a second ``put`` for
        the same id returns the existing receipt unchanged.

        Raises :class:`BridgeStateError` when the file write fails.  The
        receipt is kept in memory in that case, so a redelivery in this
        process is still answered from it.
        """
        if receipt.command_id != command_id:
            raise ValueError(f"receipt is for {receipt.command_id!r}, not {command_id!r}")
        existing = self._receipts.get(command_id)
        if existing is not None:
            _logger.warning("Receipt already stored for command_id=%s, keeping the first", command_id)
            return existing
        self._receipts[command_id] = receipt
        await self._persist()
        return receipt

    async def mark_reported(self, command_id: str) -> None:
        await self._update(command_id, reported_at=self._clock(), orphaned=False)

    async def mark_orphaned(self, command_id: str) -> None:
        await self._update(command_id, orphaned=True)

    async def _update(self, command_id: str, **changes: object) -> None:
        receipt = self._receipts.get(command_id)
        if receipt is None:
            return
        self._receipts[command_id] = receipt.model_copy(update=changes)
        try:
            await self._persist()
        except BridgeStateError as exc:
            _logger.warning("Receipt update for command_id=%s kept in memory only: %s", command_id, exc)

    def _prune(self) -> None:
        cutoff = self._clock() - self._retention
        expired = [cid for cid, r in self._receipts.items() if r.completed_at < cutoff]
        for cid in expired:
            del self._receipts[cid]
        overflow = len(self._receipts) - self._max_entries
        if overflow > 0:
            oldest = sorted(self._receipts.values(), key=lambda r: r.completed_at)[:overflow]
            for receipt in oldest:
                del self._receipts[receipt.command_id]
        if expired or overflow > 0:
            _logger.debug("Pruned receipts expired=%d overflow=%d", len(expired), max(overflow, 0))

    async def _persist(self) -> None:
        self._prune()
        try:
            await self._file.write(
                {
                    "version": STATE_FILE_VERSION,
                    "receipts": [r.to_wire() for r in self._receipts.values()],
                }
            )
        except BridgeStateError as exc:
            self._status.record_failure(self.COMPONENT, exc)
            raise
        self._status.record_success(self.COMPONENT, stored=len(self._receipts))
