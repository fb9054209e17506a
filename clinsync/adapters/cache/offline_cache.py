"""Offline Cache Adapters.

The offline cache mirrors patient records captured while REDCap is
unreachable. It is a queue of local copies, not a second source of truth:
the record store stays authoritative, and the sync engine purges a cached
copy once REDCap has confirmed the record.

Architecture:
    - Implements OfflineCachePort
    - ``InMemoryOfflineCache`` for tests and ``CS_DB_TYPE=memory``
    - ``DuckDBOfflineCache`` survives restarts (the cached copy is stored as JSON)
    - Capture is an upsert keyed by record id; the first capture time fixes queue order
"""

import logging
import threading
from datetime import datetime
from typing import Any, Optional

import duckdb

from clinsync.domain.enums import SyncStatus
from clinsync.domain.models import CachedRecord, PatientRecord
from clinsync.domain.ports import NotFoundError, OfflineCachePort, StorageError
from clinsync.domain.utils import to_naive_utc

logger = logging.getLogger(__name__)


class InMemoryOfflineCache(OfflineCachePort):
    """Offline cache held in a dictionary (insertion order is capture order)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[int, CachedRecord] = {}

    def capture(self, record: PatientRecord, now: datetime) -> CachedRecord:
        with self._lock:
            existing = self._entries.get(record.id)
            cached = CachedRecord(
                record=record,
                cache_status=SyncStatus.PENDING,
                error=None,
                captured_at=existing.captured_at if existing else now,
                updated_at=now,
            )
            self._entries[record.id] = cached
        logger.debug(f"Captured record {record.id} in offline cache")
        return cached

    def list_captured(self) -> list[CachedRecord]:
        with self._lock:
            return list(self._entries.values())

    def get(self, record_id: int) -> Optional[CachedRecord]:
        with self._lock:
            return self._entries.get(record_id)

    def mark_status(
        self,
        record_id: int,
        status: SyncStatus,
        now: datetime,
        error: Optional[str] = None
    ) -> CachedRecord:
        with self._lock:
            existing = self._entries.get(record_id)
            if existing is None:
                raise NotFoundError(
                    f"Record {record_id} is not in the offline cache",
                    entity_type="cached_record",
                    entity_id=record_id,
                )
            updated = existing.model_copy(update={"cache_status": status, "error": error, "updated_at": now})
            self._entries[record_id] = updated
            return updated

    def purge(self, record_id: int) -> bool:
        with self._lock:
            return self._entries.pop(record_id, None) is not None


class DuckDBOfflineCache(OfflineCachePort):
    """Offline cache persisted in a DuckDB table.

    Parameters:
        db_path: Path to the DuckDB file (or ':memory:')

    Example Usage:
        ```python
        cache = DuckDBOfflineCache("data/offline_cache.duckdb")
        cache.capture(record, utc_now())
        for cached in cache.list_captured():
            print(cached.record.patient_external_id, cached.cache_status)
        ```
    """

    CREATE_TABLE = """
        CREATE TABLE IF NOT EXISTS offline_records (
            record_id INTEGER PRIMARY KEY,
            payload VARCHAR NOT NULL,
            cache_status VARCHAR NOT NULL DEFAULT 'pending',
            error VARCHAR,
            captured_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or ":memory:"
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                self._connection.execute(self.CREATE_TABLE)
                logger.info(f"Opened offline cache: {self.db_path}")
            except duckdb.Error as e:
                self._connection = None
                raise StorageError(
                    f"Failed to open offline cache: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def _fetch(self, sql: str, params: Optional[list] = None) -> list[dict[str, Any]]:
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params or [])
                if cursor.description is None:
                    return []
                columns = [column[0] for column in cursor.description]
                return [dict(zip(columns, row)) for row in cursor.fetchall()]
            except duckdb.Error as e:
                raise StorageError(f"Offline cache query failed: {str(e)}", operation="offline_cache")

    @staticmethod
    def _row_to_cached(row: dict[str, Any]) -> CachedRecord:
        return CachedRecord(
            record=PatientRecord.model_validate_json(row["payload"]),
            cache_status=row["cache_status"],
            error=row["error"],
            captured_at=row["captured_at"],
            updated_at=row["updated_at"],
        )

    def capture(self, record: PatientRecord, now: datetime) -> CachedRecord:
        naive_now = to_naive_utc(now)
        # captured_at is left untouched on conflict so the queue position is kept
        rows = self._fetch(
            """
            INSERT INTO offline_records (record_id, payload, cache_status, error, captured_at, updated_at)
            VALUES (?, ?, 'pending', NULL, ?, ?)
            ON CONFLICT (record_id) DO UPDATE SET
                payload = excluded.payload,
                cache_status = 'pending',
                error = NULL,
                updated_at = excluded.updated_at
            RETURNING *
            """,
            [record.id, record.model_dump_json(), naive_now, naive_now],
        )
        logger.debug(f"Captured record {record.id} in offline cache")
        return self._row_to_cached(rows[0])

    def list_captured(self) -> list[CachedRecord]:
        rows = self._fetch("SELECT * FROM offline_records ORDER BY captured_at, record_id")
        return [self._row_to_cached(row) for row in rows]

    def get(self, record_id: int) -> Optional[CachedRecord]:
        rows = self._fetch("SELECT * FROM offline_records WHERE record_id = ?", [record_id])
        return self._row_to_cached(rows[0]) if rows else None

    def mark_status(
        self,
        record_id: int,
        status: SyncStatus,
        now: datetime,
        error: Optional[str] = None
    ) -> CachedRecord:
        rows = self._fetch(
            "UPDATE offline_records SET cache_status = ?, error = ?, updated_at = ? WHERE record_id = ? RETURNING *",
            [status.value, error, to_naive_utc(now), record_id],
        )
        if not rows:
            raise NotFoundError(
                f"Record {record_id} is not in the offline cache",
                entity_type="cached_record",
                entity_id=record_id,
            )
        return self._row_to_cached(rows[0])

    def purge(self, record_id: int) -> bool:
        rows = self._fetch("DELETE FROM offline_records WHERE record_id = ? RETURNING record_id", [record_id])
        return bool(rows)

    def count(self) -> int:
        return int(self._fetch("SELECT COUNT(*) AS n FROM offline_records")[0]["n"])

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
