"""
Token keyword matching against catalog entries.

A catalog entry is a *strong match* for a token when its base asset (or
the leading segment of its unified symbol) equals the token, possibly
after removing a rebased-contract prefix such as ``1000`` in
``1000PEPE``. Strong matches are then checked against the per-category
quote / settlement allow-lists and, for futures, the perpetual filter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from tokenwatch.core.models import CatalogEntry, InstrumentCategory, MatchCandidate

# Longest alternative first so "1000000PEPE" loses all six zeros
_LEVERAGE_PREFIX = re.compile(r"^(1000000|1000|1M)")
_LEVERAGE_PREFIXES = ("1000000", "1000", "1M")
_SYMBOL_SEPARATORS = re.compile(r"[/:]")

# The token's own name starts with a digit run that is not a prefix
_LITERAL_DIGIT_TOKENS = frozenset({"1INCH"})

# Spot quotes rejected whatever the allow-list says
ALWAYS_EXCLUDED_SPOT_QUOTES = frozenset({"TRY"})


@dataclass(frozen=True)
class MatchFilters:
    spot_allowed_quotes: frozenset[str] = frozenset()
    spot_excluded_quotes: frozenset[str] = frozenset()
    linear_allowed_quotes: frozenset[str] = frozenset()
    inverse_allowed_quotes: frozenset[str] = frozenset()

    @classmethod
    def from_settings(cls, settings) -> "MatchFilters":
        return cls(
            spot_allowed_quotes=settings.spot_allowed_quotes,
            spot_excluded_quotes=settings.spot_excluded_quotes,
            linear_allowed_quotes=settings.linear_allowed_quotes,
            inverse_allowed_quotes=settings.inverse_allowed_quotes,
        )


def strip_leverage_prefix(value: str, token: str) -> str:
    if token.upper() in _LITERAL_DIGIT_TOKENS:
        return value
    return _LEVERAGE_PREFIX.sub("", value, count=1)


def leverage_stripped(value: str, token: str) -> set[str]:
    """Every reading of ``value`` with one leverage prefix removed."""
    if token.upper() in _LITERAL_DIGIT_TOKENS:
        return set()
    return {value[len(p):] for p in _LEVERAGE_PREFIXES if value.startswith(p)}


def is_strong_match(token: str, entry: CatalogEntry) -> bool:
    token = token.strip().upper()
    if not token:
        return False

    base = (entry.base or "").upper()
    symbol = (entry.symbol or "").upper()
    leading = _SYMBOL_SEPARATORS.split(symbol, maxsplit=1)[0]

    return (
        base == token
        or symbol.startswith(f"{token}/")
        or symbol.startswith(f"{token}:")
        or token in leverage_stripped(base, token)
        or token in leverage_stripped(leading, token)
    )


def _allowed(value: str, allow_list: frozenset[str]) -> bool:
    # Empty allow-list means any value is accepted
    return not allow_list or value in allow_list


def passes_category_filters(entry: CatalogEntry, filters: MatchFilters) -> bool:
    # ccxt marks halted and delisted markets inactive; unknown status passes
    if entry.trading is False:
        return False

    quote = (entry.quote or "").upper()

    if entry.category is InstrumentCategory.SPOT:
        if quote in ALWAYS_EXCLUDED_SPOT_QUOTES or quote in filters.spot_excluded_quotes:
            return False
        return _allowed(quote, filters.spot_allowed_quotes)

    if not entry.perpetual:
        return False

    if entry.category is InstrumentCategory.LINEAR_PERP:
        settle = (entry.settle or "USDT").upper()
        return _allowed(settle, filters.linear_allowed_quotes)

    return _allowed(quote, filters.inverse_allowed_quotes)


def match_entry(token: str, entry: CatalogEntry, filters: MatchFilters) -> Optional[MatchCandidate]:
    if not is_strong_match(token, entry):
        return None
    if not passes_category_filters(entry, filters):
        return None
    return MatchCandidate(category=entry.category, symbol=entry.symbol, market_id=entry.market_id)


def match_catalog(
    token: str,
    entries: Iterable[CatalogEntry],
    filters: MatchFilters,
) -> list[MatchCandidate]:
    """Candidates for ``token`` in catalog order."""
    matches = []
    for entry in entries:
        candidate = match_entry(token, entry, filters)
        if candidate is not None:
            matches.append(candidate)
    return matches
