"""Ranking and provider diversification of ingested items."""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime
from typing import Protocol, TypeVar

from brainsync.constants import RECENCY_DECAY_DAYS, TERM_MATCH_WEIGHT
from brainsync.integrations.mappings import type_weight_for
from brainsync.utils import ensure_aware, utcnow

SECONDS_PER_DAY = 86400.0


class Scorable(Protocol):
    title: str | None
    content: str | None
    item_type: str | None
    created_at: datetime | None


class HasProvider(Protocol):
    provider: str


T = TypeVar("T", bound=HasProvider)
S = TypeVar("S", bound=Scorable)


def score_item(item: Scorable, terms: Sequence[str], now: datetime | None = None) -> float:
    """``recency + term matches + type boost`` for one item.

    Recency decays as ``exp(-age_days / 10)``; a title match counts twice
    a content match.
    """
    current = now or utcnow()
    created_at = ensure_aware(item.created_at) if item.created_at else current
    age_days = max(0.0, (current - created_at).total_seconds() / SECONDS_PER_DAY)
    recency_score = math.exp(-age_days / RECENCY_DECAY_DAYS)

    title = (item.title or "").lower()
    content = (item.content or "").lower()
    matches = sum(2 * (term in title) + (term in content) for term in terms)
    term_score = matches * TERM_MATCH_WEIGHT

    return recency_score + term_score + type_weight_for(item.item_type)


def rank_items(
    items: Sequence[S], terms: Sequence[str], now: datetime | None = None
) -> list[tuple[S, float]]:
    """``(item, score)`` pairs by descending score; ties keep input order."""
    current = now or utcnow()
    scored = [(item, score_item(item, terms, current)) for item in items]
    return sorted(scored, key=lambda pair: -pair[1])


def select_diverse_items(
    items: Sequence[T],
    *,
    max_items: int,
    max_per_provider: int,
) -> list[T]:
    """Pick up to ``max_items`` from score-ordered ``items`` across providers.

    The best item of every provider is taken first, then the remaining
    slots fill in score order while each provider stays under
    ``max_per_provider``. The result keeps the input (score) order.
    """
    if max_items <= 0:
        return []

    seeds: dict[str, int] = {}
    for index, item in enumerate(items):
        seeds.setdefault(item.provider, index)

    selected = sorted(seeds.values())[:max_items]
    chosen = set(selected)
    counts: dict[str, int] = {}
    for index in selected:
        counts[items[index].provider] = counts.get(items[index].provider, 0) + 1

    for index, item in enumerate(items):
        if len(selected) >= max_items:
            break
        if index in chosen:
            continue
        count = counts.get(item.provider, 0)
        if count >= max_per_provider:
            continue
        counts[item.provider] = count + 1
        selected.append(index)
        chosen.add(index)

    return [items[index] for index in sorted(selected)]
