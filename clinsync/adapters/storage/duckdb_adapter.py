"""DuckDB Storage Adapter.

This adapter implements the record store, user store and audit log ports
on DuckDB, an in-process database that keeps everything in one local file.

Security Impact:
    - Only validated domain models are persisted; rows are re-validated on read
    - The audit_log table is append-only: the adapter issues no UPDATE or DELETE on it
    - The external id / sync status invariant is also enforced by a CHECK constraint
    - Password hashes are stored, plain passwords never reach this layer

Architecture:
    - Implements RecordStorePort, UserStorePort and AuditLogPort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - Timestamps are stored as naive UTC and re-tagged as UTC on read
    - No foreign keys: DuckDB rejects updates to referenced rows, so ownership
      (created_by, user_id) is enforced by the services instead
"""

import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

import duckdb

from clinsync.domain.enums import SyncStatus, UserRole
from clinsync.domain.models import (
    AuditEntry,
    AuditFilters,
    AuditStats,
    FieldChange,
    PasswordResetToken,
    PatientRecord,
    PatientRecordInput,
    PATIENT_BUSINESS_FIELDS,
    SyncAttemptOutcome,
    SyncStats,
    User,
)
from clinsync.domain.ports import (
    AuditLogPort,
    DuplicateKeyError,
    InvalidTransitionError,
    NotFoundError,
    RecordStorePort,
    Result,
    StorageError,
    UserStorePort,
)
from clinsync.domain.utils import ensure_utc, to_naive_utc
from clinsync.adapters.storage.memory_adapter import apply_sync_outcome
from clinsync.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = (
    "CREATE SEQUENCE IF NOT EXISTS users_id_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY DEFAULT nextval('users_id_seq'),
        email VARCHAR NOT NULL UNIQUE,
        password_hash VARCHAR NOT NULL,
        role VARCHAR NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP NOT NULL,
        last_login TIMESTAMP,
        CHECK (role IN ('researcher', 'administrator'))
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS patient_records_id_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS patient_records (
        id INTEGER PRIMARY KEY DEFAULT nextval('patient_records_id_seq'),
        patient_external_id VARCHAR NOT NULL UNIQUE,
        first_name VARCHAR NOT NULL,
        last_name VARCHAR NOT NULL,
        date_of_birth DATE,
        gender VARCHAR,
        demographics VARCHAR,
        diagnosis VARCHAR,
        treatment_plan VARCHAR,
        notes VARCHAR,
        sync_status VARCHAR NOT NULL DEFAULT 'pending',
        external_record_id VARCHAR,
        created_by INTEGER,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        CHECK (sync_status IN ('pending', 'synced', 'error')),
        CHECK ((external_record_id IS NOT NULL) = (sync_status = 'synced'))
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS audit_log_id_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id BIGINT PRIMARY KEY DEFAULT nextval('audit_log_id_seq'),
        actor_email VARCHAR NOT NULL,
        action VARCHAR NOT NULL,
        entity_type VARCHAR NOT NULL,
        entity_id VARCHAR NOT NULL,
        entity_label VARCHAR,
        changes VARCHAR,
        reason VARCHAR,
        event_timestamp TIMESTAMP NOT NULL,
        ip_address VARCHAR,
        user_agent VARCHAR
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log(event_timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_patient_records_status ON patient_records(sync_status)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_tokens (
        token VARCHAR PRIMARY KEY,
        user_id INTEGER NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP NOT NULL
    )
    """,
)


class DuckDBAdapter(RecordStorePort, UserStorePort, AuditLogPort):
    """DuckDB implementation of the storage ports.

    Security Impact:
        - Audit trail is append-only
        - Connection path is validated before use
        - Unique keys (patient id, email) are enforced by the schema

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        from clinsync.infrastructure.config_manager import get_database_config

        adapter = DuckDBAdapter(db_config=get_database_config())
        result = adapter.initialize_schema()
        if result.is_success():
            record = adapter.create_record(record_input, created_by=1, now=utc_now())
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None
    ):
        """Initialize DuckDB adapter.

        Parameters:
            db_config: DatabaseConfig from configuration manager (preferred)
            db_path: Path to DuckDB database file (or ':memory:' for in-memory)

        Note:
            If both are provided, db_config takes precedence. If neither is
            provided, an in-memory database is used. The connection is opened
            lazily on the first operation.
        """
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        self._lock = threading.RLock()

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except Exception as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def initialize_schema(self) -> Result[None]:
        """Create tables, sequences and indexes if they do not exist.

        Returns:
            Result[None]: Success or failure result
        """
        try:
            with self._lock:
                conn = self._get_connection()
                for statement in SCHEMA_STATEMENTS:
                    conn.execute(statement)
                self._initialized = True
            logger.info("DuckDB schema initialized")
            return Result.success_result(None)
        except Exception as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    def _ensure_schema(self) -> duckdb.DuckDBPyConnection:
        if not self._initialized:
            result = self.initialize_schema()
            if not result.is_success():
                raise StorageError(result.error or "Schema initialization failed", operation="initialize_schema")
        return self._get_connection()

    def _fetch(self, sql: str, params: Optional[list] = None, operation: str = "query") -> list[dict[str, Any]]:
        """Execute a statement and return rows as dictionaries."""
        with self._lock:
            conn = self._ensure_schema()
            try:
                cursor = conn.execute(sql, params or [])
                if cursor.description is None:
                    return []
                columns = [column[0] for column in cursor.description]
                return [dict(zip(columns, row)) for row in cursor.fetchall()]
            except duckdb.ConstraintException:
                raise
            except duckdb.Error as e:
                raise StorageError(f"DuckDB {operation} failed: {str(e)}", operation=operation)

    def query_health(self) -> bool:
        """Run ``SELECT 1`` to check the connection."""
        return self._fetch("SELECT 1 AS ok", operation="health")[0]["ok"] == 1

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                    logger.info("Closed DuckDB connection")
                finally:
                    self._connection = None
                    self._initialized = False

    # ------------------------------------------------------------------
    # RecordStorePort
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row: dict[str, Any]) -> PatientRecord:
        return PatientRecord.model_validate(row)

    def create_record(self, data: PatientRecordInput, created_by: Optional[int], now: datetime) -> PatientRecord:
        fields = data.business_fields()
        fields["gender"] = data.gender.value if data.gender else None
        columns = list(PATIENT_BUSINESS_FIELDS) + ["sync_status", "created_by", "created_at", "updated_at"]
        values = [fields[name] for name in PATIENT_BUSINESS_FIELDS] + [
            SyncStatus.PENDING.value, created_by, to_naive_utc(now), to_naive_utc(now)
        ]
        placeholders = ", ".join("?" for _ in columns)
        try:
            rows = self._fetch(
                f"INSERT INTO patient_records ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *",
                values,
                operation="create_record",
            )
        except duckdb.ConstraintException as e:
            raise DuplicateKeyError(
                f"Patient ID already exists: {data.patient_external_id}",
                key="patient_external_id",
                value=data.patient_external_id,
            ) from e
        record = self._row_to_record(rows[0])
        logger.debug(f"Created record {record.id} ({record.patient_external_id})")
        return record

    def get_record(self, record_id: int) -> PatientRecord:
        rows = self._fetch("SELECT * FROM patient_records WHERE id = ?", [record_id], operation="get_record")
        if not rows:
            raise NotFoundError(f"Patient record {record_id} not found", entity_type="patient", entity_id=record_id)
        return self._row_to_record(rows[0])

    def list_records(self, status: Optional[SyncStatus] = None) -> list[PatientRecord]:
        sql = "SELECT * FROM patient_records"
        params: list = []
        if status is not None:
            sql += " WHERE sync_status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC, id DESC"
        return [self._row_to_record(row) for row in self._fetch(sql, params, operation="list_records")]

    def update_record_fields(self, record_id: int, data: PatientRecordInput, now: datetime) -> PatientRecord:
        current = self.get_record(record_id)
        fields = data.business_fields()
        fields["gender"] = data.gender.value if data.gender else None
        names = [name for name in PATIENT_BUSINESS_FIELDS if name != "patient_external_id"]
        # Indexed column: only written when it actually changes
        if data.patient_external_id != current.patient_external_id:
            names.insert(0, "patient_external_id")
        assignments = ", ".join(f"{name} = ?" for name in names)
        params = [fields[name] for name in names] + [to_naive_utc(now), record_id]
        try:
            rows = self._fetch(
                f"UPDATE patient_records SET {assignments}, updated_at = ? WHERE id = ? RETURNING *",
                params,
                operation="update_record_fields",
            )
        except duckdb.ConstraintException as e:
            raise DuplicateKeyError(
                f"Patient ID already exists: {data.patient_external_id}",
                key="patient_external_id",
                value=data.patient_external_id,
            ) from e
        return self._row_to_record(rows[0])

    def update_sync_result(self, record_id: int, outcome: SyncAttemptOutcome, now: datetime) -> PatientRecord:
        with self._lock:
            updated = apply_sync_outcome(self.get_record(record_id), outcome, now)
            rows = self._fetch(
                "UPDATE patient_records SET sync_status = ?, external_record_id = ?, updated_at = ? "
                "WHERE id = ? AND sync_status <> 'synced' RETURNING *",
                [updated.sync_status.value, updated.external_record_id, to_naive_utc(now), record_id],
                operation="update_sync_result",
            )
        if not rows:
            raise InvalidTransitionError(f"Record {record_id} is already synced", current=SyncStatus.SYNCED)
        return self._row_to_record(rows[0])

    def mark_pending(self, record_id: int, now: datetime) -> PatientRecord:
        with self._lock:
            record = self.get_record(record_id)
            if record.sync_status != SyncStatus.ERROR:
                raise InvalidTransitionError(
                    f"Only records in error can be requeued (record {record_id} is {record.sync_status.value})",
                    current=record.sync_status,
                    target=SyncStatus.PENDING,
                )
            rows = self._fetch(
                "UPDATE patient_records SET sync_status = 'pending', updated_at = ? "
                "WHERE id = ? AND sync_status = 'error' RETURNING *",
                [to_naive_utc(now), record_id],
                operation="mark_pending",
            )
        return self._row_to_record(rows[0])

    def sync_stats(self) -> SyncStats:
        row = self._fetch(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN sync_status = 'pending' THEN 1 ELSE 0 END), 0) AS pending,
                COALESCE(SUM(CASE WHEN sync_status = 'synced' THEN 1 ELSE 0 END), 0) AS synced,
                COALESCE(SUM(CASE WHEN sync_status = 'error' THEN 1 ELSE 0 END), 0) AS errors
            FROM patient_records
            """,
            operation="sync_stats",
        )[0]
        return SyncStats(**{key: int(value) for key, value in row.items()})

    # ------------------------------------------------------------------
    # UserStorePort
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User.model_validate(row)

    def create_user(self, email: str, password_hash: str, role: UserRole, now: datetime) -> User:
        email = email.strip().lower()
        try:
            rows = self._fetch(
                "INSERT INTO users (email, password_hash, role, is_active, created_at) "
                "VALUES (?, ?, ?, TRUE, ?) RETURNING *",
                [email, password_hash, role.value, to_naive_utc(now)],
                operation="create_user",
            )
        except duckdb.ConstraintException as e:
            raise DuplicateKeyError(f"Email already exists: {email}", key="email", value=email) from e
        return self._row_to_user(rows[0])

    def get_user(self, user_id: int) -> User:
        rows = self._fetch("SELECT * FROM users WHERE id = ?", [user_id], operation="get_user")
        if not rows:
            raise NotFoundError(f"User {user_id} not found", entity_type="user", entity_id=user_id)
        return self._row_to_user(rows[0])

    def find_user_by_email(self, email: str) -> Optional[User]:
        rows = self._fetch(
            "SELECT * FROM users WHERE email = ?", [email.strip().lower()], operation="find_user_by_email"
        )
        return self._row_to_user(rows[0]) if rows else None

    def list_users(self) -> list[User]:
        return [self._row_to_user(row) for row in self._fetch("SELECT * FROM users ORDER BY id", operation="list_users")]

    def set_user_active(self, user_id: int, is_active: bool) -> User:
        return self._update_user(user_id, "is_active = ?", [is_active], operation="set_user_active")

    def record_login(self, user_id: int, when: datetime) -> User:
        return self._update_user(user_id, "last_login = ?", [to_naive_utc(when)], operation="record_login")

    def update_password_hash(self, user_id: int, password_hash: str) -> User:
        return self._update_user(user_id, "password_hash = ?", [password_hash], operation="update_password_hash")

    def _update_user(self, user_id: int, assignment: str, params: list, operation: str) -> User:
        rows = self._fetch(
            f"UPDATE users SET {assignment} WHERE id = ? RETURNING *",
            params + [user_id],
            operation=operation,
        )
        if not rows:
            raise NotFoundError(f"User {user_id} not found", entity_type="user", entity_id=user_id)
        return self._row_to_user(rows[0])

    def save_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        self.get_user(token.user_id)
        self._fetch(
            "INSERT INTO password_reset_tokens (token, user_id, expires_at, used, created_at) VALUES (?, ?, ?, ?, ?)",
            [token.token, token.user_id, to_naive_utc(token.expires_at), token.used, to_naive_utc(token.created_at)],
            operation="save_reset_token",
        )
        return token

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        rows = self._fetch("SELECT * FROM password_reset_tokens WHERE token = ?", [token], operation="get_reset_token")
        return PasswordResetToken.model_validate(rows[0]) if rows else None

    def mark_reset_token_used(self, token: str) -> None:
        self._fetch(
            "UPDATE password_reset_tokens SET used = TRUE WHERE token = ?", [token], operation="mark_reset_token_used"
        )

    # ------------------------------------------------------------------
    # AuditLogPort
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: dict[str, Any]) -> AuditEntry:
        raw_changes = json.loads(row["changes"]) if row.get("changes") else {}
        return AuditEntry(
            id=row["id"],
            actor_email=row["actor_email"],
            action=row["action"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            entity_label=row.get("entity_label"),
            changes={name: FieldChange.model_validate(change) for name, change in raw_changes.items()},
            reason=row.get("reason"),
            timestamp=ensure_utc(row["event_timestamp"]),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    def append(self, entry: AuditEntry) -> AuditEntry:
        changes_json = json.dumps(
            {name: change.model_dump(by_alias=True) for name, change in entry.changes.items()},
            default=str,
        )
        rows = self._fetch(
            """
            INSERT INTO audit_log (
                actor_email, action, entity_type, entity_id, entity_label,
                changes, reason, event_timestamp, ip_address, user_agent
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING *
            """,
            [
                entry.actor_email,
                entry.action.value,
                entry.entity_type.value,
                entry.entity_id,
                entry.entity_label,
                changes_json,
                entry.reason,
                to_naive_utc(entry.timestamp),
                entry.ip_address,
                entry.user_agent,
            ],
            operation="append_audit",
        )
        return self._row_to_entry(rows[0])

    def query(self, filters: Optional[AuditFilters] = None) -> list[AuditEntry]:
        filters = filters or AuditFilters()
        where_clauses = []
        params: list = []

        if filters.action is not None:
            where_clauses.append("action = ?")
            params.append(filters.action.value)
        if filters.actor_email:
            where_clauses.append("contains(lower(actor_email), ?)")
            params.append(filters.actor_email.lower())
        if filters.entity_type is not None:
            where_clauses.append("entity_type = ?")
            params.append(filters.entity_type.value)
        if filters.entity_id is not None:
            where_clauses.append("entity_id = ?")
            params.append(filters.entity_id)
        if filters.date_from is not None:
            where_clauses.append("event_timestamp >= ?")
            params.append(to_naive_utc(filters.date_from))
        if filters.date_to is not None:
            where_clauses.append("event_timestamp <= ?")
            params.append(to_naive_utc(filters.date_to))

        sql = "SELECT * FROM audit_log"
        if where_clauses:
            sql += " WHERE " + " AND ".join(where_clauses)
        sql += " ORDER BY event_timestamp DESC, id DESC"
        if filters.limit is not None:
            sql += " LIMIT ?"
            params.append(filters.limit)
        if filters.offset:
            sql += " OFFSET ?"
            params.append(filters.offset)

        return [self._row_to_entry(row) for row in self._fetch(sql, params, operation="query_audit")]

    def entries(self) -> list[AuditEntry]:
        return [self._row_to_entry(row) for row in self._fetch("SELECT * FROM audit_log ORDER BY id", operation="entries")]

    def count(self) -> int:
        return int(self._fetch("SELECT COUNT(*) AS n FROM audit_log", operation="count_audit")[0]["n"])

    def stats(self, now: datetime) -> AuditStats:
        now_naive = to_naive_utc(now)
        totals = self._fetch(
            """
            SELECT
                COUNT(*) AS total_entries,
                COALESCE(SUM(CASE WHEN event_timestamp > ? THEN 1 ELSE 0 END), 0) AS last_24h,
                COALESCE(SUM(CASE WHEN event_timestamp > ? THEN 1 ELSE 0 END), 0) AS last_7d
            FROM audit_log
            """,
            [now_naive - timedelta(hours=24), now_naive - timedelta(days=7)],
            operation="audit_stats",
        )[0]

        def grouped(column: str) -> dict[str, int]:
            rows = self._fetch(
                f"SELECT {column} AS key, COUNT(*) AS n FROM audit_log GROUP BY {column} ORDER BY {column}",
                operation="audit_stats",
            )
            return {row["key"]: int(row["n"]) for row in rows}

        return AuditStats(
            total_entries=int(totals["total_entries"]),
            actions=grouped("action"),
            users=grouped("actor_email"),
            entity_types=grouped("entity_type"),
            last_24h=int(totals["last_24h"]),
            last_7d=int(totals["last_7d"]),
        )
