"""Tests for catalog loading

Tests cover:
- ccxt market conversion
- Host fallback order and exchange cleanup
- Raw exchangeInfo fallback parsing
"""

import asyncio
from unittest.mock import Mock

import requests

from tokenwatch.core.config import HostSettings
from tokenwatch.core.models import CatalogEntry, InstrumentCategory
from tokenwatch.exchanges.catalog import (
    CatalogLoader,
    build_exchange,
    load_raw_catalog,
    market_to_entry,
    raw_symbol_to_entry,
    rehost_urls,
)

SPOT = InstrumentCategory.SPOT
LINEAR = InstrumentCategory.LINEAR_PERP
INVERSE = InstrumentCategory.INVERSE_PERP

LINEAR_MARKET = {
    "id": "1000PEPEUSDT",
    "symbol": "1000PEPE/USDT:USDT",
    "base": "1000PEPE",
    "quote": "USDT",
    "settle": "USDT",
    "swap": True,
    "linear": True,
    "active": True,
    "info": {"contractType": "PERPETUAL", "marginAsset": "USDT"},
}

DATED_MARKET = {
    "id": "BTCUSDT_251226",
    "symbol": "BTC/USDT:USDT-251226",
    "base": "BTC",
    "quote": "USDT",
    "settle": "USDT",
    "swap": False,
    "future": True,
    "linear": True,
    "info": {"contractType": "CURRENT_QUARTER"},
}


class FakeExchange:

    def __init__(self, markets=None, error=None):
        self.markets = markets
        self.error = error
        self.closed = False

    async def load_markets(self, reload=False):
        if self.error:
            raise self.error
        return self.markets

    async def close(self):
        self.closed = True


class TestMarketToEntry:

    def test_perpetual_linear_market(self):
        entry = market_to_entry(LINEAR, LINEAR_MARKET)
        assert entry == CatalogEntry(
            category=LINEAR,
            symbol="1000PEPE/USDT:USDT",
            base="1000PEPE",
            quote="USDT",
            settle="USDT",
            market_id="1000PEPEUSDT",
            perpetual=True,
            trading=True,
        )

    def test_dated_future_is_not_perpetual(self):
        assert market_to_entry(LINEAR, DATED_MARKET).perpetual is False

    def test_contract_type_marks_perpetual(self):
        market = dict(LINEAR_MARKET, swap=None)
        assert market_to_entry(LINEAR, market).perpetual is True

    def test_linear_settle_defaults_to_usdt(self):
        market = dict(LINEAR_MARKET, settle=None, info={"contractType": "PERPETUAL"})
        assert market_to_entry(LINEAR, market).settle == "USDT"


def test_rehost_urls_replaces_matching_hosts_only():
    urls = {
        "public": "https://api.binance.com/api/v3",
        "sapi": "https://api.binance.com/sapi/v1",
        "fapiPublic": "https://fapi.binance.com/fapi/v1",
        "nested": {"x": "https://api.binance.com/x"},
    }
    result = rehost_urls(urls, "api.binance.com", "api3.binance.com")
    assert result["public"] == "https://api3.binance.com/api/v3"
    assert result["sapi"] == "https://api3.binance.com/sapi/v1"
    assert result["fapiPublic"] == "https://fapi.binance.com/fapi/v1"
    assert result["nested"]["x"] == "https://api3.binance.com/x"
    assert urls["public"] == "https://api.binance.com/api/v3"


class TestCatalogLoader:

    HOSTS = {LINEAR: HostSettings(rest="primary", alternates=("alt1", "primary", "alt2"))}

    def test_first_successful_host_wins(self):
        attempts = []
        exchanges = {
            "primary": FakeExchange(error=ConnectionError("refused")),
            "alt1": FakeExchange({"1000PEPE/USDT:USDT": LINEAR_MARKET}),
            "alt2": FakeExchange({}),
        }

        def factory(category, host):
            attempts.append(host)
            return exchanges[host]

        loader = CatalogLoader(self.HOSTS, exchange_factory=factory)
        entries = asyncio.run(loader.load(LINEAR))

        assert attempts == ["primary", "alt1"]
        assert [e.symbol for e in entries] == ["1000PEPE/USDT:USDT"]
        assert exchanges["primary"].closed and exchanges["alt1"].closed

    def test_all_hosts_fail(self):
        attempts = []

        def factory(category, host):
            attempts.append(host)
            return FakeExchange(error=TimeoutError("slow"))

        loader = CatalogLoader(self.HOSTS, exchange_factory=factory)
        assert asyncio.run(loader.load(LINEAR)) is None
        assert attempts == ["primary", "alt1", "alt2"]

    def test_malformed_market_fails_the_host(self):
        broken = {"x": {"linear": True, "info": {}}}   # no "symbol"
        exchanges = {
            "primary": FakeExchange(broken),
            "alt1": FakeExchange({"1000PEPE/USDT:USDT": LINEAR_MARKET}),
        }
        loader = CatalogLoader(self.HOSTS, exchange_factory=lambda c, h: exchanges[h])
        entries = asyncio.run(loader.load(LINEAR))
        assert len(entries) == 1

    def test_only_category_markets_are_kept(self):
        spot_market = {"id": "PEPEUSDT", "symbol": "PEPE/USDT", "base": "PEPE", "quote": "USDT", "spot": True}
        exchange = FakeExchange({"PEPE/USDT": spot_market, "1000PEPE/USDT:USDT": LINEAR_MARKET})
        loader = CatalogLoader({SPOT: HostSettings(rest="primary")}, exchange_factory=lambda c, h: exchange)
        entries = asyncio.run(loader.load(SPOT))
        assert [e.symbol for e in entries] == ["PEPE/USDT"]

    def test_unknown_category_has_no_hosts(self):
        loader = CatalogLoader({}, exchange_factory=Mock())
        assert asyncio.run(loader.load(INVERSE)) is None


def test_build_exchange_rehosts_and_closes():

    async def build_and_inspect():
        exchange = build_exchange(LINEAR, "fapi2.binance.com", timeout=5)
        try:
            api_urls = [v for v in exchange.urls["api"].values() if isinstance(v, str)]
            return api_urls, exchange.timeout
        finally:
            await exchange.close()

    api_urls, timeout = asyncio.run(build_and_inspect())
    assert not any("//fapi.binance.com" in url for url in api_urls)
    assert any("//fapi2.binance.com" in url for url in api_urls)
    assert timeout == 5000


class TestRawCatalog:

    def test_spot_symbol(self):
        entry = raw_symbol_to_entry(SPOT, {
            "symbol": "PEPEUSDT", "status": "TRADING", "baseAsset": "PEPE", "quoteAsset": "USDT",
        })
        assert entry.symbol == "PEPE/USDT"
        assert entry.market_id == "PEPEUSDT"
        assert entry.settle is None

    def test_coin_margined_symbol_uses_contract_status(self):
        entry = raw_symbol_to_entry(INVERSE, {
            "symbol": "BTCUSD_PERP",
            "contractStatus": "TRADING",
            "contractType": "PERPETUAL",
            "baseAsset": "BTC",
            "quoteAsset": "USD",
            "marginAsset": "BTC",
        })
        assert entry.symbol == "BTC/USD:BTC"
        assert entry.perpetual is True
        assert entry.market_id == "BTCUSD_PERP"

    def test_non_trading_symbol_skipped(self):
        assert raw_symbol_to_entry(SPOT, {
            "symbol": "PEPEUSDT", "status": "BREAK", "baseAsset": "PEPE", "quoteAsset": "USDT",
        }) is None

    def test_load_raw_catalog(self):
        rest = Mock()
        rest.fetch_exchange_info.return_value = {"symbols": [
            {"symbol": "PEPEUSDT", "status": "TRADING", "baseAsset": "PEPE", "quoteAsset": "USDT"},
            {"symbol": "OLDUSDT", "status": "HALT", "baseAsset": "OLD", "quoteAsset": "USDT"},
            "garbage",
        ]}
        entries = load_raw_catalog(rest, SPOT)
        assert [e.symbol for e in entries] == ["PEPE/USDT"]
        rest.fetch_exchange_info.assert_called_once_with(SPOT)

    def test_load_raw_catalog_failure_is_empty_and_single_shot(self):
        rest = Mock()
        rest.fetch_exchange_info.side_effect = requests.ConnectionError("down")
        assert load_raw_catalog(rest, SPOT) == []
        assert rest.fetch_exchange_info.call_count == 1
