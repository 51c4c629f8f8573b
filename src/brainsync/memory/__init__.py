"""Embedding generation and vector backfill for ingested items."""
