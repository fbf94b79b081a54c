"""
Per-instrument data collectors.

Every target gets a handful of independent asyncio tasks that never talk to
each other; each one only merges what it fetched into the shared
``RowStore``:

    StatsCollector        every 30s   24h change/volume, funding, open interest
    ShortVolumeCollector  every 10s   5m / 30m quote volume from 1m klines
    StreamCollector       push        last price, best bid/ask (native stream)
    QuotePollCollector    every 3s    last price, best bid/ask (no stream)

A failed upstream call is logged at debug level and skipped: the fields it
would have written keep their previous values and the call is simply made
again on the next cycle. A cycle that raises anyway (a payload that breaks
extraction) is dropped the same way. Only ``Exception`` is caught, so task
cancellation still propagates.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
from concurrent.futures import Executor
from typing import Callable, Optional

import pandas as pd

from tokenwatch.core.config import MonitorSettings
from tokenwatch.core.models import StreamCapability, Target
from tokenwatch.data.row_store import RowStore
from tokenwatch.exchanges.binance_rest import BinanceRestClient
from tokenwatch.exchanges.binance_stream import InstrumentStream

# Kline window used for the short-term volumes
KLINE_INTERVAL = "1m"
KLINE_LIMIT = 30
SHORT_WINDOW_BUCKETS = 5


# ---------------------------------------------------------------------------
# Field extraction
# ---------------------------------------------------------------------------

def _num(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _ms(value) -> Optional[int]:
    number = _num(value)
    return int(number) if number is not None else None


def _first_present(payload: dict, *keys):
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def ticker_24h_fields(payload: Optional[dict]) -> dict:
    """24h change and volumes from a ``ticker/24hr`` payload."""
    if not isinstance(payload, dict):
        return {}
    return {
        "change_24h": _num(payload.get("priceChangePercent")),
        # COIN-M reports contracts in "volume" and coins in "baseVolume"
        "base_volume_24h": _num(_first_present(payload, "baseVolume", "volume")),
        "quote_volume_24h": _num(_first_present(payload, "quoteVolume", "quoteAssetVolume")),
    }


def last_price_fields(payload: Optional[dict]) -> dict:
    if not isinstance(payload, dict):
        return {}
    return {"last": _num(payload.get("lastPrice"))}


def book_ticker_fields(payload: Optional[dict]) -> dict:
    if not isinstance(payload, dict):
        return {}
    return {"bid": _num(payload.get("bidPrice")), "ask": _num(payload.get("askPrice"))}


def premium_index_fields(payload: Optional[dict]) -> dict:
    """Funding fields, only when the payload carries a usable funding rate."""
    if not isinstance(payload, dict):
        return {}
    rate = _num(_first_present(payload, "lastFundingRate", "fundingRate"))
    if rate is None:
        return {}
    return {
        "funding_rate": rate,
        "funding_ts": _ms(_first_present(payload, "time", "E")),
        "next_funding_ts": _ms(_first_present(payload, "nextFundingTime", "N")),
    }


def open_interest_fields(payload: Optional[dict]) -> dict:
    if not isinstance(payload, dict):
        return {}
    return {"open_interest": _num(payload.get("openInterest"))}


def window_volumes(klines: pd.DataFrame, short_window: int = SHORT_WINDOW_BUCKETS) -> tuple[float, float]:
    """
    Sum quote volume over the last ``short_window`` buckets and over all buckets.

    Unparsable bucket volumes count as zero. A short history (fewer buckets
    than requested) just yields smaller sums.
    """
    if klines.empty:
        return 0.0, 0.0
    quote = pd.to_numeric(klines["quote_volume"], errors="coerce")
    return float(quote.tail(short_window).sum()), float(quote.sum())


# ---------------------------------------------------------------------------
# Collectors
# ---------------------------------------------------------------------------

class PollingCollector:
    """
    Base for fixed-interval REST collectors.

    Subclasses implement :meth:`poll_once`; :meth:`run_forever` calls it,
    sleeps ``interval`` seconds, and repeats for the life of the process.
    """

    name = "poll"

    def __init__(
        self,
        target: Target,
        store: RowStore,
        rest: BinanceRestClient,
        interval: float,
        logger: Optional[logging.Logger] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self.target = target
        self.store = store
        self.rest = rest
        self.interval = interval
        self.logger = logger or logging.getLogger(__name__)
        self.executor = executor

    async def run_forever(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as exc:
                # A payload that breaks extraction drops this cycle only
                self.logger.debug(
                    f"[{self.name}][{self.target.category.label}] {self.target.symbol}: "
                    f"cycle failed: {exc!r}"
                )
            await asyncio.sleep(self.interval)

    async def poll_once(self) -> None:
        raise NotImplementedError

    async def _call(self, fetch: Callable, *args):
        """Run a blocking REST call off the loop; ``None`` on any failure."""
        try:
            if self.executor is None:
                return await asyncio.to_thread(fetch, *args)
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self.executor, functools.partial(fetch, *args))
        except Exception as exc:
            self.logger.debug(
                f"[{self.name}][{self.target.category.label}] {self.target.symbol}: {exc}"
            )
            return None

    def _merge(self, fields: dict) -> None:
        fields = {k: v for k, v in fields.items() if v is not None}
        if fields:
            self.store.merge(self.target.category, self.target.symbol, fields)


class StatsCollector(PollingCollector):
    name = "stats"

    async def poll_once(self) -> None:
        category = self.target.category
        market_id = self.target.native_id

        ticker = await self._call(self.rest.fetch_ticker_24h, category, market_id)
        self._merge(ticker_24h_fields(ticker))

        if not category.is_futures:
            return

        premium = await self._call(self.rest.fetch_premium_index, category, market_id)
        self._merge(premium_index_fields(premium))

        oi = await self._call(self.rest.fetch_open_interest, category, market_id)
        self._merge(open_interest_fields(oi))


class ShortVolumeCollector(PollingCollector):
    name = "volume"

    async def poll_once(self) -> None:
        klines = await self._call(
            self.rest.fetch_klines,
            self.target.category,
            self.target.native_id,
            KLINE_INTERVAL,
            KLINE_LIMIT,
        )
        if klines is None:
            return
        vol_5m, vol_30m = window_volumes(klines)
        self._merge({"quote_volume_5m": vol_5m, "quote_volume_30m": vol_30m})


class QuotePollCollector(PollingCollector):
    """Stands in for the stream on targets without a native stream."""

    name = "quotes"

    async def poll_once(self) -> None:
        category = self.target.category
        market_id = self.target.native_id

        ticker = await self._call(self.rest.fetch_ticker_24h, category, market_id)
        self._merge(last_price_fields(ticker))

        book = await self._call(self.rest.fetch_book_ticker, category, market_id)
        self._merge(book_ticker_fields(book))


class StreamCollector:
    def __init__(
        self,
        target: Target,
        store: RowStore,
        host: str,
        reconnect_delay: float,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.target = target
        self.store = store
        self.stream = InstrumentStream(
            host=host,
            market_id=target.native_id,
            on_update=self._on_update,
            reconnect_delay=reconnect_delay,
            logger=logger,
        )

    def _on_update(self, fields: dict) -> None:
        self.store.merge(self.target.category, self.target.symbol, fields)

    async def run_forever(self) -> None:
        await self.stream.run_forever()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_collectors(
    target: Target,
    store: RowStore,
    rest: BinanceRestClient,
    settings: MonitorSettings,
    logger: Optional[logging.Logger] = None,
    executor: Optional[Executor] = None,
) -> list:
    collectors: list = [
        StatsCollector(target, store, rest, settings.stats_interval, logger, executor),
        ShortVolumeCollector(target, store, rest, settings.short_volume_interval, logger, executor),
    ]
    if target.capability is StreamCapability.NATIVE_STREAM:
        host = settings.hosts[target.category].stream
        collectors.append(
            StreamCollector(target, store, host, settings.stream_reconnect_delay, logger)
        )
    else:
        collectors.append(
            QuotePollCollector(target, store, rest, settings.quote_poll_interval, logger, executor)
        )
    return collectors


def spawn_collectors(
    target: Target,
    store: RowStore,
    rest: BinanceRestClient,
    settings: MonitorSettings,
    logger: Optional[logging.Logger] = None,
    executor: Optional[Executor] = None,
) -> list[asyncio.Task]:
    """Start every collector of ``target`` as its own task on the running loop."""
    return [
        asyncio.create_task(
            collector.run_forever(),
            name=f"{type(collector).__name__}:{target.category.value}:{target.symbol}",
        )
        for collector in build_collectors(target, store, rest, settings, logger, executor)
    ]


def polling_worker_count(targets) -> int:
    """One REST worker per polling collector, so a hung call only blocks its own collector."""
    return sum(
        3 if target.capability is StreamCapability.POLLING_ONLY else 2
        for target in targets
    )
