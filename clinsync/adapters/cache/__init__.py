"""Offline cache adapters."""

from clinsync.adapters.cache.offline_cache import DuckDBOfflineCache, InMemoryOfflineCache

__all__ = ["DuckDBOfflineCache", "InMemoryOfflineCache"]
