"""Centralized constants for brainsync."""

# Context retrieval
CONTEXT_MAX_ITEMS = 50
CONTEXT_MAX_PER_PROVIDER = 10
CONTEXT_RECENT_LIMIT = 60
CONTEXT_SEARCH_LIMIT = 60
CONTEXT_SEARCH_TERMS = 10
ADDITIONAL_DATA_LIMIT = 25
DIGEST_RECENT_DAYS = 7
HIGHLIGHTS_LIMIT = 5

# Scoring
RECENCY_DECAY_DAYS = 10.0
TERM_MATCH_WEIGHT = 0.35

# Ingestion
TASK_TITLE_MAX_LENGTH = 100
MEETING_MEMORY_SNIPPET_LENGTH = 200

# Embeddings
EMBEDDING_MAX_INPUT_CHARS = 6000
EMBEDDING_BATCH_LIMIT = 40

# Provider pagination
PROVIDER_FETCH_LIMIT = 100
