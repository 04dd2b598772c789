"""Indexing API clients."""
