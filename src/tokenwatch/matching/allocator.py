"""
Target allocation across categories.

Candidates are deduplicated per ``(category, symbol)`` and then picked
round-robin over the enabled categories, one per category per sweep, until
the cap is reached or every group is exhausted. This interleaves spot and
futures instead of filling the cap from the first category alone.
"""

from __future__ import annotations

from collections import deque
from typing import Iterable, Mapping, Sequence

from tokenwatch.core.models import (
    InstrumentCategory,
    MatchCandidate,
    StreamCapability,
    Target,
)


class NoMatchingInstruments(Exception):
    """Resolution produced zero targets. Not an error: the CLI exits with 0."""

    def __init__(self, token: str) -> None:
        super().__init__(f"No instruments matching {token!r} were found.")
        self.token = token


def dedupe_candidates(
    candidates: Iterable[MatchCandidate],
) -> dict[InstrumentCategory, list[MatchCandidate]]:
    """Group by category, keeping discovery order and one entry per symbol."""
    unique: dict[tuple[InstrumentCategory, str], MatchCandidate] = {}
    for candidate in candidates:
        # Re-assigning an existing key keeps its original position
        unique[candidate.key] = candidate

    groups: dict[InstrumentCategory, list[MatchCandidate]] = {}
    for candidate in unique.values():
        groups.setdefault(candidate.category, []).append(candidate)
    return groups


def allocate(
    groups: Mapping[InstrumentCategory, Sequence[MatchCandidate]],
    enabled: Sequence[InstrumentCategory],
    max_count: int,
) -> list[MatchCandidate]:
    queues = {category: deque(groups.get(category, ())) for category in enabled}
    selected: list[MatchCandidate] = []

    added = True
    while added and len(selected) < max_count:
        added = False
        for category in enabled:
            queue = queues[category]
            if queue and len(selected) < max_count:
                selected.append(queue.popleft())
                added = True

    return selected


def build_targets(
    selected: Iterable[MatchCandidate],
    capabilities: Mapping[InstrumentCategory, StreamCapability],
) -> list[Target]:
    return [
        Target(
            category=c.category,
            symbol=c.symbol,
            market_id=c.market_id,
            capability=capabilities.get(c.category, StreamCapability.POLLING_ONLY),
        )
        for c in selected
    ]
