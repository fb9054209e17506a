"""Storage adapters for Clinical-Sync.

This module contains storage adapters that implement the record store, user
store and audit log ports for persisting patient records and the audit trail.
"""

from clinsync.adapters.storage.duckdb_adapter import DuckDBAdapter
from clinsync.adapters.storage.memory_adapter import InMemoryStorageAdapter

__all__ = ["DuckDBAdapter", "InMemoryStorageAdapter"]
