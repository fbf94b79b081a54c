from dataclasses import dataclass, fields
from enum import Enum
from typing import Optional


class InstrumentCategory(Enum):
    SPOT = "spot"
    LINEAR_PERP = "usdm"
    INVERSE_PERP = "coinm"

    @property
    def label(self) -> str:
        return _CATEGORY_LABELS[self]

    @property
    def is_futures(self) -> bool:
        return self is not InstrumentCategory.SPOT


_CATEGORY_LABELS = {
    InstrumentCategory.SPOT: "Spot",
    InstrumentCategory.LINEAR_PERP: "USDM",
    InstrumentCategory.INVERSE_PERP: "COINM",
}

# Order in which categories are swept by the allocator
ALLOCATION_ORDER = (
    InstrumentCategory.SPOT,
    InstrumentCategory.LINEAR_PERP,
    InstrumentCategory.INVERSE_PERP,
)


class StreamCapability(Enum):
    NATIVE_STREAM = "native_stream"
    POLLING_ONLY = "polling_only"


@dataclass(frozen=True)
class CatalogEntry:
    category: InstrumentCategory
    symbol: str               # unified, e.g. "PEPE/USDT" or "1000PEPE/USDT:USDT"
    base: str
    quote: str
    settle: Optional[str] = None
    market_id: Optional[str] = None   # native id, e.g. "1000PEPEUSDT"
    perpetual: bool = False
    trading: Optional[bool] = None


@dataclass(frozen=True)
class MatchCandidate:
    category: InstrumentCategory
    symbol: str
    market_id: Optional[str] = None

    @property
    def key(self) -> tuple[InstrumentCategory, str]:
        return (self.category, self.symbol)


@dataclass(frozen=True)
class Target:
    category: InstrumentCategory
    symbol: str
    market_id: Optional[str]
    capability: StreamCapability

    @property
    def native_id(self) -> str:
        """Native exchange id, derived from the symbol when metadata had none."""
        if self.market_id:
            return self.market_id.upper()
        base, _, rest = self.symbol.partition("/")
        quote = rest.split(":")[0]
        return f"{base}{quote}".upper()


@dataclass
class Row:
    category: InstrumentCategory
    symbol: str
    last: Optional[float] = None
    bid: Optional[float] = None
    ask: Optional[float] = None
    change_24h: Optional[float] = None       # percent, 1.5 == 1.5%
    base_volume_24h: Optional[float] = None
    quote_volume_24h: Optional[float] = None
    quote_volume_5m: Optional[float] = None
    quote_volume_30m: Optional[float] = None
    open_interest: Optional[float] = None
    funding_rate: Optional[float] = None     # raw fraction, 0.0001 == 0.01%
    funding_ts: Optional[int] = None         # epoch ms
    next_funding_ts: Optional[int] = None    # epoch ms
    ts: int = 0                              # last update, epoch ms


# Fields a collector may merge into a Row
ROW_FIELDS = frozenset(
    f.name for f in fields(Row) if f.name not in ("category", "symbol", "ts")
)
