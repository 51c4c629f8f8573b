"""Human-readable digests over selected context items."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Protocol

from brainsync.constants import DIGEST_RECENT_DAYS, HIGHLIGHTS_LIMIT
from brainsync.utils import ensure_aware, utcnow

SUMMARY_TOP_PROVIDERS = 3


class DigestItem(Protocol):
    provider: str
    title: str | None
    created_at: datetime | None


def _provider_label(provider: str) -> str:
    return provider.replace("_", " ")


def build_integration_summary(
    items: Sequence[DigestItem],
    now: datetime | None = None,
    recent_days: int = DIGEST_RECENT_DAYS,
) -> str | None:
    """One line counting recent items per provider, or None when nothing is recent."""
    current = now or utcnow()
    cutoff = current - timedelta(days=recent_days)
    recent = [
        item
        for item in items
        if (ensure_aware(item.created_at) if item.created_at else current) >= cutoff
    ]
    if not recent:
        return None

    counts = Counter(_provider_label(item.provider) for item in recent)
    top = ", ".join(
        f"{provider} ({count})" for provider, count in counts.most_common(SUMMARY_TOP_PROVIDERS)
    )
    return f"Recent ingested data ({len(recent)} items): {top}"


def build_integration_highlights(
    items: Sequence[DigestItem],
    limit: int = HIGHLIGHTS_LIMIT,
) -> list[str]:
    """Up to ``limit`` titled items as ``provider: title (Mon D)``."""
    highlights: list[str] = []
    for item in items:
        if not item.title:
            continue
        line = f"{_provider_label(item.provider)}: {item.title}"
        if item.created_at:
            line += f" ({item.created_at:%b} {item.created_at.day})"
        highlights.append(line)
        if len(highlights) >= limit:
            break
    return highlights
