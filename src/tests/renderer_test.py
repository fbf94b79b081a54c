"""Tests for row ordering and cell formatting."""

import io

from rich.console import Console

from tokenwatch.core.models import InstrumentCategory, Row
from tokenwatch.data.row_store import RowStore
from tokenwatch.display.renderer import (
    COLUMNS,
    SnapshotRenderer,
    fmt_countdown,
    fmt_funding,
    fmt_millions,
    fmt_percent,
    fmt_price,
    order_rows,
)

SPOT = InstrumentCategory.SPOT
LINEAR = InstrumentCategory.LINEAR_PERP
INVERSE = InstrumentCategory.INVERSE_PERP
ALL = [SPOT, LINEAR, INVERSE]


def row(category, symbol, vol5=None):
    return Row(category=category, symbol=symbol, quote_volume_5m=vol5)


class TestOrderRows:

    def test_futures_before_spot(self):
        rows = [
            row(SPOT, "A/USDT", 1e9),
            row(INVERSE, "A/USD:A", 1.0),
            row(LINEAR, "A/USDT:USDT", 1.0),
        ]
        ordered = order_rows(rows, ALL)
        assert [r.category for r in ordered] == [LINEAR, INVERSE, SPOT]

    def test_busiest_first_within_category(self):
        rows = [row(SPOT, "A/USDT", 1.0), row(SPOT, "A/USDC", 5.0), row(SPOT, "A/FDUSD", 3.0)]
        assert [r.symbol for r in order_rows(rows, ALL)] == ["A/USDC", "A/FDUSD", "A/USDT"]

    def test_unknown_volume_counts_as_zero_and_ties_break_by_symbol(self):
        rows = [row(SPOT, "B/USDT"), row(SPOT, "A/USDT", 0.0), row(SPOT, "C/USDT", 1.0)]
        assert [r.symbol for r in order_rows(rows, ALL)] == ["C/USDT", "A/USDT", "B/USDT"]

    def test_disabled_categories_hidden(self):
        rows = [row(SPOT, "A/USDT"), row(LINEAR, "A/USDT:USDT")]
        assert [r.category for r in order_rows(rows, [SPOT])] == [SPOT]

    def test_empty(self):
        assert order_rows([], ALL) == []


class TestFormatting:

    def test_millions(self):
        assert fmt_millions(1_234_567) == "1.23M"
        assert fmt_millions(12_345_678) == "12.3M"
        assert fmt_millions(123_456_789) == "123M"
        assert fmt_millions(None) == ""
        assert fmt_millions(float("nan")) == ""

    def test_price(self):
        assert fmt_price(0.0000123) == "1.23e-05"
        assert fmt_price(65000.5) == "65000.5"
        assert fmt_price(None) == ""

    def test_percent_colours(self):
        assert fmt_percent(3.5).style == "red"
        assert fmt_percent(-3.5).style == "green"
        assert fmt_percent(0.0).plain == "0.00%"
        assert fmt_percent(None).plain == ""

    def test_funding_below_threshold_is_plain(self):
        cell = fmt_funding(0.00001, LINEAR, 0.00005)
        assert cell.plain == "0.0010%"
        assert not cell.style

    def test_funding_above_threshold_is_coloured(self):
        assert fmt_funding(0.0001, LINEAR, 0.00005).style == "red"
        assert fmt_funding(-0.0001, INVERSE, 0.00005).style == "green"

    def test_funding_blank_for_spot(self):
        assert fmt_funding(0.0001, SPOT, 0.00005).plain == ""

    def test_countdown(self):
        assert fmt_countdown(1_000 + 3_723_000, now_ms=1_000) == "01:02:03"
        assert fmt_countdown(500, now_ms=1_000) == "00:00:00"
        assert fmt_countdown(None) == ""


def test_render_includes_rows_and_title():
    store = RowStore()
    store.merge(LINEAR, "1000PEPE/USDT:USDT", {"last": 0.0123, "quote_volume_5m": 2e6}, ts=1)
    store.merge(SPOT, "PEPE/USDT", {"last": 0.0000123}, ts=1)

    buffer = io.StringIO()
    console = Console(file=buffer, width=250, color_system=None)
    renderer = SnapshotRenderer(store, "PEPE", [SPOT, LINEAR], console=console)

    assert [r.symbol for r in renderer.current_rows()] == ["1000PEPE/USDT:USDT", "PEPE/USDT"]
    console.print(renderer.render())
    output = buffer.getvalue()
    assert "token: PEPE" in output
    assert "1000PEPE/USDT:USDT" in output
    assert "2.00M" in output
    assert len(renderer.build_table(renderer.current_rows()).columns) == len(COLUMNS)
