"""
Instrument catalog loading with host fallback.

Primary path: ccxt ``load_markets`` through ``ccxt.async_support``, tried
against the configured REST host and then every alternate host of the
category until one returns a complete catalog.

Fallback path: a single ``exchangeInfo`` request against the primary host,
used only when every host failed. It carries fewer fields (symbol, base,
quote, status and, for futures, margin asset and contract type) but is
enough to run the same matching rules.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional
from urllib.parse import urlsplit, urlunsplit

import ccxt.async_support as ccxt_async

from tokenwatch.core.config import HostSettings
from tokenwatch.core.models import CatalogEntry, InstrumentCategory
from tokenwatch.exchanges.binance_rest import BinanceRestClient

# ccxt exchange class and the host its urls point at out of the box
_CCXT_EXCHANGES = {
    InstrumentCategory.SPOT: ("binance", "api.binance.com"),
    InstrumentCategory.LINEAR_PERP: ("binanceusdm", "fapi.binance.com"),
    InstrumentCategory.INVERSE_PERP: ("binancecoinm", "dapi.binance.com"),
}

_DEFAULT_TYPE = {
    InstrumentCategory.SPOT: "spot",
    InstrumentCategory.LINEAR_PERP: "future",
    InstrumentCategory.INVERSE_PERP: "delivery",
}

ExchangeFactory = Callable[[InstrumentCategory, str], Any]


# ---------------------------------------------------------------------------
# ccxt helpers
# ---------------------------------------------------------------------------

def rehost_urls(urls: Any, old_host: str, new_host: str) -> Any:
    """Return a copy of a ccxt ``urls['api']`` tree with ``old_host`` replaced."""
    if isinstance(urls, dict):
        return {k: rehost_urls(v, old_host, new_host) for k, v in urls.items()}
    if isinstance(urls, str):
        parts = urlsplit(urls)
        if parts.hostname == old_host:
            return urlunsplit(parts._replace(netloc=new_host))
    return urls


def build_exchange(
    category: InstrumentCategory,
    host: str,
    timeout: float = 15.0,
    proxy: Optional[str] = None,
):
    exchange_id, default_host = _CCXT_EXCHANGES[category]
    exchange = getattr(ccxt_async, exchange_id)({
        "enableRateLimit": True,
        "timeout": int(timeout * 1000),
        "options": {
            "defaultType": _DEFAULT_TYPE[category],
            # SAPI currency endpoints need keys and break anonymous loads
            "fetchCurrencies": False,
        },
    })
    exchange.has["fetchCurrencies"] = False

    if category is InstrumentCategory.SPOT:
        # Keep the spot loader off the futures hosts
        current = exchange.options.get("fetchMarkets")
        if isinstance(current, dict):
            exchange.options["fetchMarkets"] = {**current, "types": ["spot"]}
        else:
            exchange.options["fetchMarkets"] = ["spot"]

    if host != default_host:
        exchange.urls["api"] = rehost_urls(exchange.urls.get("api", {}), default_host, host)
    if proxy:
        exchange.https_proxy = proxy
    return exchange


def _in_category(category: InstrumentCategory, market: dict) -> bool:
    if category is InstrumentCategory.SPOT:
        return bool(market.get("spot"))
    if category is InstrumentCategory.LINEAR_PERP:
        return bool(market.get("linear"))
    return bool(market.get("inverse"))


def market_to_entry(category: InstrumentCategory, market: dict) -> CatalogEntry:
    """Convert one ccxt market structure. Raises ``KeyError`` on a malformed market."""
    info = market.get("info") or {}
    contract_type = str(info.get("contractType") or "").upper()
    settle = market.get("settle") or info.get("marginAsset")
    if category is InstrumentCategory.LINEAR_PERP and not settle:
        settle = "USDT"

    return CatalogEntry(
        category=category,
        symbol=market["symbol"],
        base=str(market.get("base") or "").upper(),
        quote=str(market.get("quote") or "").upper(),
        settle=str(settle).upper() if settle else None,
        market_id=market.get("id"),
        perpetual=market.get("swap") is True or contract_type == "PERPETUAL",
        trading=market.get("active"),
    )


# ---------------------------------------------------------------------------
# Raw exchangeInfo fallback
# ---------------------------------------------------------------------------

def raw_symbol_to_entry(category: InstrumentCategory, raw: dict) -> Optional[CatalogEntry]:
    """Entry for one ``exchangeInfo`` symbol, or ``None`` if it is not trading."""
    status = raw.get("status") or raw.get("contractStatus")
    if status != "TRADING":
        return None

    base = str(raw.get("baseAsset") or "").upper()
    quote = str(raw.get("quoteAsset") or "").upper()
    if not base or not quote:
        return None

    settle = None
    symbol = f"{base}/{quote}"
    if category.is_futures:
        settle = str(raw.get("marginAsset") or ("USDT" if category is InstrumentCategory.LINEAR_PERP else base)).upper()
        symbol = f"{symbol}:{settle}"

    return CatalogEntry(
        category=category,
        symbol=symbol,
        base=base,
        quote=quote,
        settle=settle,
        market_id=str(raw.get("symbol") or "").upper() or None,
        perpetual=str(raw.get("contractType") or "").upper() == "PERPETUAL",
        trading=True,
    )


def load_raw_catalog(
    rest: BinanceRestClient,
    category: InstrumentCategory,
    logger: Optional[logging.Logger] = None,
) -> list[CatalogEntry]:
    """One-shot ``exchangeInfo`` discovery. Never raises, never retries."""
    logger = logger or logging.getLogger(__name__)
    try:
        info = rest.fetch_exchange_info(category)
        symbols = info.get("symbols") if isinstance(info, dict) else None
        if not isinstance(symbols, list):
            raise ValueError("exchangeInfo payload has no symbols list")
    except Exception as exc:
        logger.warning(f"[{category.label}] Raw catalog fallback failed: {exc}")
        return []

    entries = []
    for raw in symbols:
        if isinstance(raw, dict):
            entry = raw_symbol_to_entry(category, raw)
            if entry is not None:
                entries.append(entry)
    logger.info(f"[{category.label}] Raw catalog fallback returned {len(entries)} trading symbols.")
    return entries


# ---------------------------------------------------------------------------
# CatalogLoader
# ---------------------------------------------------------------------------

class CatalogLoader:
    """
    Loads the full instrument catalog of a category, walking its host list.

    Parameters
    ----------
    hosts : dict[InstrumentCategory, HostSettings]
        Primary and alternate REST hosts per category.
    timeout : float
        Request timeout in seconds handed to ccxt.
    proxy : str, optional
        Proxy URL handed to ccxt.
    exchange_factory : callable, optional
        ``(category, host) -> exchange``. Defaults to :func:`build_exchange`;
        tests pass fakes here.
    logger : logging.Logger, optional
    """

    def __init__(
        self,
        hosts: dict[InstrumentCategory, HostSettings],
        timeout: float = 15.0,
        proxy: Optional[str] = None,
        exchange_factory: Optional[ExchangeFactory] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.hosts = hosts
        self.exchange_factory = exchange_factory or (
            lambda category, host: build_exchange(category, host, timeout, proxy)
        )
        self.logger = logger or logging.getLogger(__name__)

    async def load(self, category: InstrumentCategory) -> Optional[list[CatalogEntry]]:
        """Catalog from the first host that succeeds, or ``None`` if all fail."""
        host_settings = self.hosts.get(category)
        hosts = host_settings.catalog_hosts if host_settings else []

        for host in hosts:
            try:
                entries = await self._load_from(category, host)
            except Exception as exc:
                self.logger.warning(f"[{category.label}] Catalog load from {host} failed: {exc}")
                continue
            self.logger.info(f"[{category.label}] Loaded {len(entries)} markets from {host}.")
            return entries

        self.logger.error(f"[{category.label}] All {len(hosts)} catalog host(s) failed.")
        return None

    async def _load_from(self, category: InstrumentCategory, host: str) -> list[CatalogEntry]:
        exchange = self.exchange_factory(category, host)
        try:
            markets = await exchange.load_markets(True)
            # Convert everything before returning so a bad market fails the host
            return [
                market_to_entry(category, market)
                for market in markets.values()
                if _in_category(category, market)
            ]
        finally:
            await exchange.close()
