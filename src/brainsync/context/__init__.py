"""Context retrieval over ingested items for AI calls."""

from brainsync.context.digest import build_integration_highlights, build_integration_summary
from brainsync.context.engine import ContextItem, IntegrationContext, IntegrationContextEngine
from brainsync.context.scoring import score_item, select_diverse_items
from brainsync.context.terms import extract_search_terms, extract_terms_from_query

__all__ = [
    "ContextItem",
    "IntegrationContext",
    "IntegrationContextEngine",
    "build_integration_highlights",
    "build_integration_summary",
    "extract_search_terms",
    "extract_terms_from_query",
    "score_item",
    "select_diverse_items",
]
