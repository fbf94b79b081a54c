"""
Shared live state for the token monitor.

One ``Row`` per ``(category, symbol)``, written by many collectors and read
by the renderer. Writes are field-level merges: a field missing from an
update (or given as ``None``) keeps its previous value, so a failed or
partial poll never blanks out what was already known. The update
timestamp only moves forward.

Usage::

    store = RowStore()
    store.merge(InstrumentCategory.SPOT, "PEPE/USDT", {"last": 0.0000123})
    rows = store.snapshot()
"""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Any, Mapping, Optional

from tokenwatch.core.models import ROW_FIELDS, InstrumentCategory, Row


def now_ms() -> int:
    return int(time.time() * 1000)


class RowStore:
    """
    Keyed container of ``Row`` objects with atomic per-key merges.

    The lock only spans a single merge or snapshot copy, so writers to
    different keys never wait on network I/O held by another writer.
    """

    def __init__(self) -> None:
        self._rows: dict[tuple[InstrumentCategory, str], Row] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    def merge(
        self,
        category: InstrumentCategory,
        symbol: str,
        fields: Mapping[str, Any],
        ts: Optional[int] = None,
    ) -> Row:
        """
        Apply ``fields`` to the row for ``(category, symbol)``.

        Unknown field names raise ``ValueError`` before anything is written.
        Returns a copy of the row after the merge.
        """
        unknown = set(fields) - ROW_FIELDS
        if unknown:
            raise ValueError(f"Unknown row fields: {sorted(unknown)}")

        updates = {name: value for name, value in fields.items() if value is not None}
        incoming_ts = now_ms() if ts is None else int(ts)

        with self._lock:
            key = (category, symbol)
            row = self._rows.get(key)
            if row is None:
                row = Row(category=category, symbol=symbol, ts=incoming_ts)
                self._rows[key] = row
            for name, value in updates.items():
                setattr(row, name, value)
            row.ts = max(row.ts, incoming_ts)
            return replace(row)

    def get(self, category: InstrumentCategory, symbol: str) -> Optional[Row]:
        with self._lock:
            row = self._rows.get((category, symbol))
            return replace(row) if row is not None else None

    def snapshot(self) -> list[Row]:
        """Copies of all rows, ordered by category then symbol."""
        with self._lock:
            rows = [replace(row) for row in self._rows.values()]
        rows.sort(key=lambda r: (r.category.value, r.symbol))
        return rows
