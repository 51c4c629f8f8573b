"""Ingestion pipeline: turns ingested items into captures, memories and tasks."""
