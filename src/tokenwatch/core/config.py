"""
Runtime settings for the token monitor.

Settings are layered, lowest priority first:

1. ``config/token_monitor_config.json``, the checked-in defaults.
2. Environment variables (a ``.env`` file in the working directory is
   loaded first, without overriding variables already set).
3. Command-line flags, applied by the pipeline via :func:`apply_cli_overrides`.

Usage::

    from tokenwatch.core.config import load_settings

    settings = load_settings(ROOT / "config" / "token_monitor_config.json")
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from tokenwatch.core.models import ALLOCATION_ORDER, InstrumentCategory


class ConfigError(ValueError):
    """Raised when a configuration value cannot be interpreted."""


# Env var prefix per category for host overrides
_HOST_ENV = {
    InstrumentCategory.SPOT: ("BINANCE_SPOT_HOST", "BINANCE_SPOT_ALT_HOSTS", "BINANCE_SPOT_WS_HOST"),
    InstrumentCategory.LINEAR_PERP: ("BINANCE_FAPI_HOST", "BINANCE_FAPI_ALT_HOSTS", "BINANCE_FSTREAM_HOST"),
    InstrumentCategory.INVERSE_PERP: ("BINANCE_DAPI_HOST", "BINANCE_DAPI_ALT_HOSTS", "BINANCE_DSTREAM_HOST"),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class HostSettings:
    rest: str
    alternates: tuple[str, ...] = ()
    stream: str = ""    # empty: no native stream, poll instead

    @property
    def catalog_hosts(self) -> list[str]:
        """Primary host followed by alternates, without repeats."""
        hosts: list[str] = []
        for host in (self.rest, *self.alternates):
            if host and host not in hosts:
                hosts.append(host)
        return hosts


@dataclass(frozen=True)
class MonitorSettings:
    categories: dict[InstrumentCategory, bool]
    max_symbols: int = 50
    spot_allowed_quotes: frozenset[str] = frozenset()
    spot_excluded_quotes: frozenset[str] = frozenset({"TRY"})
    linear_allowed_quotes: frozenset[str] = frozenset()
    inverse_allowed_quotes: frozenset[str] = frozenset()
    render_interval: float = 2.0
    stats_interval: float = 30.0
    short_volume_interval: float = 10.0
    quote_poll_interval: float = 3.0
    stream_reconnect_delay: float = 1.0
    funding_rate_eps: float = 0.00005
    hosts: dict[InstrumentCategory, HostSettings] = field(default_factory=dict)
    request_timeout: float = 15.0
    proxy: Optional[str] = None
    type_color: bool = True
    log_level: str = "INFO"
    log_path: str = "logs/token_monitor.log"

    @property
    def enabled_categories(self) -> list[InstrumentCategory]:
        """Enabled categories in allocation priority order."""
        return [c for c in ALLOCATION_ORDER if self.categories.get(c)]


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name}: expected a boolean, got {value!r}")


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    return _parse_bool(name, value)


def _env_number(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    try:
        number = float(value)
    except ValueError:
        raise ConfigError(f"{name}: expected a number, got {value!r}") from None
    if number <= 0:
        raise ConfigError(f"{name}: must be positive, got {value!r}")
    return number


def _to_quote_set(values) -> frozenset[str]:
    return frozenset(v.strip().upper() for v in values if v and v.strip())


def _env_quotes(env: Mapping[str, str], name: str, default) -> frozenset[str]:
    value = env.get(name)
    if value is None or not value.strip():
        return _to_quote_set(default)
    return _to_quote_set(value.split(","))


def _strip_scheme(host: str) -> str:
    host = host.strip()
    for scheme in ("wss://", "ws://", "https://", "http://"):
        if host.startswith(scheme):
            host = host[len(scheme):]
    return host.rstrip("/")


def _resolve_categories(config: dict, env: Mapping[str, str]) -> dict[InstrumentCategory, bool]:
    defaults = config.get("categories", {})
    spot_default = bool(defaults.get("spot", True))
    if env.get("FUTURES_ONLY", "").strip():
        spot_default = not _parse_bool("FUTURES_ONLY", env["FUTURES_ONLY"])

    usdm_default = bool(defaults.get("usdm", True))
    coinm_default = bool(defaults.get("coinm", True))
    futures_type = env.get("FUTURES_TYPE", "").strip().lower()
    if futures_type:
        if futures_type not in ("all", "usdm", "coinm"):
            raise ConfigError(f"FUTURES_TYPE: expected all, usdm or coinm, got {futures_type!r}")
        usdm_default = futures_type in ("all", "usdm")
        coinm_default = futures_type in ("all", "coinm")

    return {
        InstrumentCategory.SPOT: _env_bool(env, "SPOT_ENABLED", spot_default),
        InstrumentCategory.LINEAR_PERP: _env_bool(env, "USDM_ENABLED", usdm_default),
        InstrumentCategory.INVERSE_PERP: _env_bool(env, "COINM_ENABLED", coinm_default),
    }


def _resolve_hosts(config: dict, env: Mapping[str, str]) -> dict[InstrumentCategory, HostSettings]:
    hosts = {}
    for category, (rest_var, alt_var, stream_var) in _HOST_ENV.items():
        section = config.get("hosts", {}).get(category.value, {})
        rest = env.get(rest_var, "").strip() or section.get("rest", "")
        if env.get(alt_var, "").strip():
            alternates = [h for h in env[alt_var].split(",") if h.strip()]
        else:
            alternates = section.get("alternates", [])
        # An explicitly empty stream host switches the category to polling
        stream = env[stream_var] if stream_var in env else section.get("stream", "")
        hosts[category] = HostSettings(
            rest=_strip_scheme(rest),
            alternates=tuple(_strip_scheme(h) for h in alternates),
            stream=_strip_scheme(stream),
        )
    return hosts


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def load_config(config_path: str | Path) -> dict:
    with open(config_path, "r") as f:
        return json.load(f)


def settings_from_config(config: dict, env: Optional[Mapping[str, str]] = None) -> MonitorSettings:
    """Build settings from a config dict, applying environment overrides."""
    env = os.environ if env is None else env
    quotes = config.get("quotes", {})
    intervals = config.get("intervals_ms", {})

    def interval(key: str, var: str, default_ms: float) -> float:
        return _env_number(env, var, float(intervals.get(key, default_ms))) / 1000.0

    max_symbols = _env_number(env, "MAX_SYMBOLS", float(config.get("max_symbols", 50)))
    if max_symbols != int(max_symbols):
        raise ConfigError(f"MAX_SYMBOLS: expected an integer, got {max_symbols}")

    log_dir = config.get("data_paths", {}).get("log_path", "logs")

    return MonitorSettings(
        categories=_resolve_categories(config, env),
        max_symbols=int(max_symbols),
        spot_allowed_quotes=_env_quotes(env, "ALLOWED_SPOT_QUOTES", quotes.get("spot_allowed", [])),
        spot_excluded_quotes=_env_quotes(env, "EXCLUDE_SPOT_QUOTES", quotes.get("spot_excluded", ["TRY"])),
        linear_allowed_quotes=_env_quotes(env, "ALLOWED_USDM_QUOTES", quotes.get("usdm_allowed", [])),
        inverse_allowed_quotes=_env_quotes(env, "ALLOWED_COINM_QUOTES", quotes.get("coinm_allowed", [])),
        render_interval=interval("render", "RENDER_INTERVAL_MS", 2000),
        stats_interval=interval("stats", "T24_INTERVAL_MS", 30000),
        short_volume_interval=interval("short_volume", "SHORT_VOLUME_INTERVAL_MS", 10000),
        quote_poll_interval=interval("quote_poll", "POLL_INTERVAL_MS", 3000),
        stream_reconnect_delay=interval("stream_reconnect", "STREAM_RECONNECT_MS", 1000),
        funding_rate_eps=_env_number(env, "FUNDING_RATE_EPS", float(config.get("funding_rate_eps", 0.00005))),
        hosts=_resolve_hosts(config, env),
        request_timeout=float(config.get("request_timeout", 15)),
        proxy=(env.get("HTTPS_PROXY") or env.get("HTTP_PROXY") or None),
        type_color=_env_bool(env, "TYPE_COLOR", bool(config.get("type_color", True))),
        log_level=(env.get("LOG_LEVEL") or config.get("log_level", "INFO")).upper(),
        log_path=env.get("LOG_PATH") or str(Path(log_dir) / "token_monitor.log"),
    )


def load_settings(config_path: str | Path, env: Optional[Mapping[str, str]] = None) -> MonitorSettings:
    if env is None:
        load_dotenv(override=False)
    return settings_from_config(load_config(config_path), env)


def apply_cli_overrides(
    settings: MonitorSettings,
    max_symbols: Optional[int] = None,
    spot: Optional[bool] = None,
    futures: Optional[bool] = None,
) -> MonitorSettings:
    """Flags left as ``None`` keep the configured value."""
    categories = dict(settings.categories)
    if spot is not None:
        categories[InstrumentCategory.SPOT] = spot
    if futures is False:
        categories[InstrumentCategory.LINEAR_PERP] = False
        categories[InstrumentCategory.INVERSE_PERP] = False

    if max_symbols is not None and max_symbols <= 0:
        raise ConfigError(f"--max must be positive, got {max_symbols}")

    return replace(
        settings,
        categories=categories,
        max_symbols=settings.max_symbols if max_symbols is None else max_symbols,
    )
