"""brainsync: integration sync, ingestion and context retrieval."""

__version__ = "0.1.0"
