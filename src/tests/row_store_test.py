"""Tests for RowStore merge semantics."""

import threading

import pytest

from tokenwatch.core.models import InstrumentCategory
from tokenwatch.data.row_store import RowStore

SPOT = InstrumentCategory.SPOT
LINEAR = InstrumentCategory.LINEAR_PERP


class TestMerge:

    def test_first_merge_creates_row_with_only_given_fields(self):
        store = RowStore()
        row = store.merge(SPOT, "PEPE/USDT", {"last": 1.0}, ts=100)
        assert row.last == 1.0
        assert row.bid is None
        assert row.ts == 100
        assert len(store) == 1

    def test_disjoint_fields_accumulate(self):
        store = RowStore()
        store.merge(SPOT, "PEPE/USDT", {"last": 1.0}, ts=100)
        store.merge(LINEAR, "PEPE/USDT:USDT", {"last": 9.0}, ts=101)
        store.merge(SPOT, "PEPE/USDT", {"bid": 2.0}, ts=102)

        row = store.get(SPOT, "PEPE/USDT")
        assert row.last == 1.0
        assert row.bid == 2.0
        assert store.get(LINEAR, "PEPE/USDT:USDT").bid is None

    def test_overwrites_only_present_fields(self):
        store = RowStore()
        store.merge(SPOT, "X", {"last": 1.0, "bid": 0.9, "ask": 1.1}, ts=1)
        store.merge(SPOT, "X", {"last": 1.5}, ts=2)
        row = store.get(SPOT, "X")
        assert (row.last, row.bid, row.ask) == (1.5, 0.9, 1.1)

    def test_none_value_does_not_clear(self):
        store = RowStore()
        store.merge(SPOT, "X", {"open_interest": 5.0}, ts=1)
        store.merge(SPOT, "X", {"open_interest": None}, ts=2)
        assert store.get(SPOT, "X").open_interest == 5.0

    def test_timestamp_never_goes_backwards(self):
        store = RowStore()
        store.merge(SPOT, "X", {"last": 1.0}, ts=200)
        store.merge(SPOT, "X", {"bid": 2.0}, ts=100)
        row = store.get(SPOT, "X")
        assert row.ts == 200
        assert row.bid == 2.0

    def test_unknown_field_rejects_whole_update(self):
        store = RowStore()
        store.merge(SPOT, "X", {"last": 1.0}, ts=1)
        with pytest.raises(ValueError):
            store.merge(SPOT, "X", {"last": 2.0, "bogus": 3}, ts=2)
        row = store.get(SPOT, "X")
        assert row.last == 1.0
        assert row.ts == 1

    def test_key_fields_cannot_be_merged(self):
        store = RowStore()
        with pytest.raises(ValueError):
            store.merge(SPOT, "X", {"symbol": "Y"})

    def test_default_timestamp_is_now(self):
        store = RowStore()
        row = store.merge(SPOT, "X", {"last": 1.0})
        assert row.ts > 1_600_000_000_000


class TestSnapshot:

    def test_snapshot_is_a_copy(self):
        store = RowStore()
        store.merge(SPOT, "X", {"last": 1.0}, ts=1)
        snap = store.snapshot()
        snap[0].last = 99.0
        assert store.get(SPOT, "X").last == 1.0

    def test_snapshot_not_affected_by_later_merges(self):
        store = RowStore()
        store.merge(SPOT, "X", {"last": 1.0}, ts=1)
        snap = store.snapshot()
        store.merge(SPOT, "X", {"last": 2.0}, ts=2)
        assert snap[0].last == 1.0

    def test_get_missing_row(self):
        assert RowStore().get(SPOT, "NOPE") is None


def test_concurrent_merges_to_same_key():
    store = RowStore()

    def writer(field, offset):
        for i in range(500):
            store.merge(SPOT, "X", {field: float(i)}, ts=offset + i)

    threads = [
        threading.Thread(target=writer, args=("last", 0)),
        threading.Thread(target=writer, args=("bid", 10_000)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    row = store.get(SPOT, "X")
    assert row.last == 499.0
    assert row.bid == 499.0
    assert row.ts == 10_499
