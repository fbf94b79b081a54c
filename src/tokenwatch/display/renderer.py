"""
Live terminal table for the token monitor.

The ordering contract lives in :func:`order_rows`; everything else here is
presentation (``rich`` table, colours, number formatting).
"""

from __future__ import annotations

import asyncio
import math
import time
from datetime import datetime
from typing import Iterable, Optional, Sequence

from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from tokenwatch.core.models import InstrumentCategory, Row
from tokenwatch.data.row_store import RowStore

# Display priority: futures first, spot last
_CATEGORY_RANK = {
    InstrumentCategory.LINEAR_PERP: 0,
    InstrumentCategory.INVERSE_PERP: 1,
    InstrumentCategory.SPOT: 2,
}

_CATEGORY_STYLE = {
    InstrumentCategory.SPOT: "blue",
    InstrumentCategory.LINEAR_PERP: "yellow",
    InstrumentCategory.INVERSE_PERP: "magenta",
}

# Rising values are red, falling green
_UP_STYLE = "red"
_DOWN_STYLE = "green"

COLUMNS = [
    ("Exchange", "left"),
    ("Type", "left"),
    ("Symbol", "left"),
    ("Last", "right"),
    ("Chg 24h", "right"),
    ("Vol 5m", "right"),
    ("Vol 30m", "right"),
    ("Vol 24h", "right"),
    ("OI", "right"),
    ("Funding", "right"),
    ("Next funding", "right"),
    ("Updated", "right"),
]


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def order_rows(rows: Iterable[Row], enabled: Iterable[InstrumentCategory]) -> list[Row]:
    """
    Rows of enabled categories, grouped USDM → COINM → Spot, busiest first.

    Within a category rows sort by descending 5m quote volume (unknown
    counts as zero), ties broken by symbol.
    """
    enabled = set(enabled)
    visible = [r for r in rows if r.category in enabled]
    return sorted(
        visible,
        key=lambda r: (
            _CATEGORY_RANK.get(r.category, len(_CATEGORY_RANK)),
            -(r.quote_volume_5m or 0.0),
            r.symbol,
        ),
    )


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def _finite(value) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def fmt_millions(value: Optional[float]) -> str:
    if not _finite(value):
        return ""
    m = value / 1e6
    if m >= 100:
        return f"{m:.0f}M"
    if m >= 10:
        return f"{m:.1f}M"
    return f"{m:.2f}M"


def fmt_price(value: Optional[float]) -> str:
    if not _finite(value):
        return ""
    return f"{value:.10g}"


def fmt_percent(value: Optional[float]) -> Text:
    if not _finite(value):
        return Text("")
    text = f"{value:.2f}%"
    if value == 0:
        return Text(text)
    return Text(text, style=_UP_STYLE if value > 0 else _DOWN_STYLE)


def fmt_funding(rate: Optional[float], category: InstrumentCategory, eps: float) -> Text:
    """Funding as a percentage; coloured only when ``|rate| >= eps``."""
    if not category.is_futures or not _finite(rate):
        return Text("")
    text = f"{rate * 100:.4f}%"
    if abs(rate) < eps:
        return Text(text)
    return Text(text, style=_UP_STYLE if rate > 0 else _DOWN_STYLE)


def fmt_countdown(next_ts: Optional[int], now_ms: Optional[int] = None) -> str:
    if not _finite(next_ts) or next_ts <= 0:
        return ""
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    total = max(0, int(next_ts) - now_ms) // 1000
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def fmt_local_time(ts_ms: int) -> str:
    if not ts_ms:
        return ""
    return datetime.fromtimestamp(ts_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------

class SnapshotRenderer:
    """
    Periodically renders the store as a ``rich`` table.

    Parameters
    ----------
    store : RowStore
    token : str
        Keyword shown in the title.
    enabled : Sequence[InstrumentCategory]
        Categories whose rows are shown.
    interval : float
        Seconds between refreshes.
    funding_eps : float
        Funding rates below this magnitude are not highlighted.
    type_color : bool
        Colour the category column.
    console : Console, optional
    """

    def __init__(
        self,
        store: RowStore,
        token: str,
        enabled: Sequence[InstrumentCategory],
        interval: float = 2.0,
        funding_eps: float = 0.00005,
        type_color: bool = True,
        console: Optional[Console] = None,
    ) -> None:
        self.store = store
        self.token = token
        self.enabled = list(enabled)
        self.interval = interval
        self.funding_eps = funding_eps
        self.type_color = type_color
        self.console = console or Console()

    def current_rows(self) -> list[Row]:
        return order_rows(self.store.snapshot(), self.enabled)

    def build_table(self, rows: Sequence[Row]) -> Table:
        table = Table(box=box.SIMPLE_HEAVY, header_style="cyan")
        for name, justify in COLUMNS:
            table.add_column(name, justify=justify, no_wrap=True)

        for row in rows:
            style = _CATEGORY_STYLE.get(row.category) if self.type_color else None
            table.add_row(
                "Binance",
                Text(row.category.label, style=style or ""),
                row.symbol,
                fmt_price(row.last),
                fmt_percent(row.change_24h),
                fmt_millions(row.quote_volume_5m),
                fmt_millions(row.quote_volume_30m),
                fmt_millions(row.quote_volume_24h),
                fmt_millions(row.open_interest),
                fmt_funding(row.funding_rate, row.category, self.funding_eps),
                fmt_countdown(row.next_funding_ts),
                fmt_local_time(row.ts),
            )
        return table

    def render(self) -> Group:
        tags = "/".join(c.label for c in self.enabled) or "none"
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        title = Text(
            f"Binance live monitor (token: {self.token} | enabled: {tags})  {now}",
            style="bold",
        )
        return Group(title, self.build_table(self.current_rows()))

    async def run_forever(self) -> None:
        with Live(self.render(), console=self.console, auto_refresh=False, screen=False) as live:
            while True:
                await asyncio.sleep(self.interval)
                live.update(self.render(), refresh=True)
