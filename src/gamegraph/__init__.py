"""Resumable, cache-aware Wikidata ingestion for video game platforms and games."""

__version__ = "0.1.0"
