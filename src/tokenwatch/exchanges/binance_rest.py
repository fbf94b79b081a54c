"""
Thin client for the Binance public REST endpoints used by the monitor.

One client serves all three categories; the category selects host and
path prefix::

    Spot         https://api-gcp.binance.com/api/v3/...
    LinearPerp   https://fapi.binance.com/fapi/v1/...
    InversePerp  https://dapi.binance.com/dapi/v1/...

Methods are blocking (``requests``); the collectors call them through
``asyncio.to_thread``. Every call raises on HTTP or decode errors and
leaves retry policy to the caller.
"""

from __future__ import annotations

from typing import Mapping, Optional

import pandas as pd
import requests

from tokenwatch.core.models import InstrumentCategory

_API_PREFIX = {
    InstrumentCategory.SPOT: "/api/v3",
    InstrumentCategory.LINEAR_PERP: "/fapi/v1",
    InstrumentCategory.INVERSE_PERP: "/dapi/v1",
}

KLINE_COLUMNS = [
    "open_time", "open", "high", "low", "close", "volume",
    "close_time", "quote_volume", "count",
    "taker_buy_volume", "taker_buy_quote_volume", "ignore",
]

_NUMERIC_KLINE_COLUMNS = [
    "open", "high", "low", "close", "volume",
    "quote_volume", "count",
    "taker_buy_volume", "taker_buy_quote_volume",
]

_REQUEST_TIMEOUT = 15
_POOL_SIZE = 16


def _single(payload):
    """COIN-M endpoints answer single-symbol queries with a one-item list."""
    if isinstance(payload, list):
        return payload[0] if payload else None
    return payload


class BinanceRestClient:
    """
    Parameters
    ----------
    hosts : Mapping[InstrumentCategory, str]
        REST host per category, e.g. ``{SPOT: "api-gcp.binance.com"}``.
    timeout : float
        Per-request timeout in seconds.
    proxy : str, optional
        HTTP(S) proxy URL applied to every request.
    """

    def __init__(
        self,
        hosts: Mapping[InstrumentCategory, str],
        timeout: float = _REQUEST_TIMEOUT,
        proxy: Optional[str] = None,
    ) -> None:
        self.hosts = dict(hosts)
        self.timeout = timeout
        self._session = self._build_session(proxy)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch_ticker_24h(self, category: InstrumentCategory, market_id: str) -> Optional[dict]:
        return _single(self._get(category, "/ticker/24hr", {"symbol": market_id}))

    def fetch_book_ticker(self, category: InstrumentCategory, market_id: str) -> Optional[dict]:
        return _single(self._get(category, "/ticker/bookTicker", {"symbol": market_id}))

    def fetch_premium_index(self, category: InstrumentCategory, market_id: str) -> Optional[dict]:
        self._require_futures(category)
        return _single(self._get(category, "/premiumIndex", {"symbol": market_id}))

    def fetch_open_interest(self, category: InstrumentCategory, market_id: str) -> Optional[dict]:
        self._require_futures(category)
        return _single(self._get(category, "/openInterest", {"symbol": market_id}))

    def fetch_exchange_info(self, category: InstrumentCategory) -> dict:
        return self._get(category, "/exchangeInfo")

    def fetch_klines(
        self,
        category: InstrumentCategory,
        market_id: str,
        interval: str = "1m",
        limit: int = 30,
    ) -> pd.DataFrame:
        """
        Fetch the most recent ``limit`` klines, oldest first.

        Numeric columns are coerced with ``errors="coerce"``: a bucket with
        an unparsable value carries ``NaN`` rather than failing the batch.
        """
        raw = self._get(
            category,
            "/klines",
            {"symbol": market_id, "interval": interval, "limit": limit},
        )
        if not isinstance(raw, list):
            raise ValueError(f"Unexpected klines payload: {type(raw).__name__}")

        width = len(KLINE_COLUMNS)
        rows = [(list(k) + [None] * width)[:width] for k in raw if isinstance(k, (list, tuple))]
        df = pd.DataFrame(rows, columns=KLINE_COLUMNS)

        for col in _NUMERIC_KLINE_COLUMNS:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df.drop(columns=["ignore"], inplace=True)
        return df

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def base_url(self, category: InstrumentCategory) -> str:
        return f"https://{self.hosts[category]}{_API_PREFIX[category]}"

    @staticmethod
    def _require_futures(category: InstrumentCategory) -> None:
        if not category.is_futures:
            raise ValueError(f"{category.label} has no funding or open interest endpoints")

    def _get(self, category: InstrumentCategory, path: str, params: Optional[dict] = None):
        response = self._session.get(
            self.base_url(category) + path,
            params=params,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _build_session(proxy: Optional[str]) -> requests.Session:
        session = requests.Session()
        adapter = requests.adapters.HTTPAdapter(
            pool_connections=_POOL_SIZE,
            pool_maxsize=_POOL_SIZE * 2,
        )
        session.mount("https://", adapter)
        if proxy:
            session.proxies.update({"http": proxy, "https": proxy})
        return session
