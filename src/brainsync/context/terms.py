"""Keyword extraction for context retrieval."""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence

DEFAULT_MAX_TERMS = 8
MIN_TERM_LENGTH = 3

STOPWORDS: frozenset[str] = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "from",
        "has", "have", "how", "i", "if", "in", "into", "is", "it", "its", "me",
        "my", "need", "not", "of", "on", "or", "our", "so", "that", "the",
        "their", "then", "there", "they", "this", "to", "up", "us", "we",
        "what", "when", "where", "which", "who", "why", "will", "with", "you",
        "your",
    }
)  # fmt: skip

_NON_TOKEN = re.compile(r"[^a-z0-9@._-]+")

Message = Mapping[str, str]


def tokenize(text: str) -> list[str]:
    """Lowercase, split on non-token characters, drop stopwords and short tokens."""
    return [
        token
        for token in _NON_TOKEN.sub(" ", text.lower()).split()
        if len(token) >= MIN_TERM_LENGTH and token not in STOPWORDS
    ]


def _top_terms(tokens: Iterable[str], max_terms: int) -> list[str]:
    # Counter keeps first-occurrence order, so equal (count, length) ties stay stable.
    counts = Counter(tokens)
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], -len(kv[0])))
    return [token for token, _ in ranked[:max_terms]]


def extract_search_terms(
    messages: Sequence[Message],
    max_terms: int = DEFAULT_MAX_TERMS,
    extra_text: Iterable[str] = (),
) -> list[str]:
    """Top terms from the last two user turns plus any extra text.

    Terms are ordered by frequency, then by length, longest first.
    """
    recent_user = [m.get("content", "") for m in messages if m.get("role") == "user"][-2:]
    combined = " ".join([" ".join(recent_user), *[t for t in extra_text if t]])
    return _top_terms(tokenize(combined), max_terms)


def extract_terms_from_query(query: str, max_terms: int = DEFAULT_MAX_TERMS) -> list[str]:
    """Top terms from a free-text query."""
    return _top_terms(tokenize(query), max_terms)
