"""Persisted bridge state.

Each store here exclusively owns one JSON file, serves reads from memory
and rewrites the file atomically on every change.
"""

from openclaw_bridge.state.offsets import OffsetStore
from openclaw_bridge.state.receipts import ReceiptStore
from openclaw_bridge.state.spool import TelemetrySpooler

__all__ = ["OffsetStore", "ReceiptStore", "TelemetrySpooler"]
