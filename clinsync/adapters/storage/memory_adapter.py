"""In-Memory Storage Adapter.

This adapter implements the record store, user store and audit log ports
with plain Python containers. It is injected wherever a throwaway store
is wanted (tests, demos, ``CS_DB_TYPE=memory``); every instance owns its
own data, there is no module-level state.

Architecture:
    - Implements RecordStorePort, UserStorePort and AuditLogPort
    - Thread-safe via a single lock around each operation
    - Same semantics as DuckDBAdapter, including unique keys and status transitions
"""

import logging
from datetime import datetime
from threading import Lock
from typing import Optional

from clinsync.domain.enums import SyncStatus, UserRole
from clinsync.domain.models import (
    AuditEntry,
    AuditFilters,
    Failed,
    PasswordResetToken,
    PatientRecord,
    PatientRecordInput,
    Synced,
    SyncAttemptOutcome,
    User,
)
from clinsync.domain.ports import (
    AuditLogPort,
    DuplicateKeyError,
    InvalidTransitionError,
    NotFoundError,
    RecordStorePort,
    UserStorePort,
)

logger = logging.getLogger(__name__)


def apply_sync_outcome(record: PatientRecord, outcome: SyncAttemptOutcome, now: datetime) -> PatientRecord:
    """Return a copy of ``record`` with a sync outcome applied.

    Raises:
        InvalidTransitionError: If the record is already synced
    """
    if record.sync_status == SyncStatus.SYNCED:
        raise InvalidTransitionError(
            f"Record {record.id} is already synced",
            current=record.sync_status,
            target=SyncStatus.SYNCED if isinstance(outcome, Synced) else SyncStatus.ERROR,
        )
    if isinstance(outcome, Synced):
        update = {
            "sync_status": SyncStatus.SYNCED,
            "external_record_id": outcome.external_record_id,
            "updated_at": now,
        }
    elif isinstance(outcome, Failed):
        update = {"sync_status": SyncStatus.ERROR, "external_record_id": None, "updated_at": now}
    else:
        raise TypeError(f"Unsupported sync outcome: {outcome!r}")
    return PatientRecord.model_validate({**record.model_dump(), **update})


class InMemoryStorageAdapter(RecordStorePort, UserStorePort, AuditLogPort):
    """In-memory implementation of the storage ports.

    Example Usage:
        ```python
        store = InMemoryStorageAdapter()
        record = store.create_record(record_input, created_by=1, now=utc_now())
        store.append(entry)
        ```
    """

    def __init__(self):
        """Initialize empty tables."""
        self._lock = Lock()
        self._records: dict[int, PatientRecord] = {}
        self._users: dict[int, User] = {}
        self._audit: list[AuditEntry] = []
        self._reset_tokens: dict[str, PasswordResetToken] = {}
        self._next_record_id = 1
        self._next_user_id = 1

    # ------------------------------------------------------------------
    # RecordStorePort
    # ------------------------------------------------------------------

    def create_record(self, data: PatientRecordInput, created_by: Optional[int], now: datetime) -> PatientRecord:
        with self._lock:
            self._check_unique_patient_id(data.patient_external_id)
            record = PatientRecord(
                **data.business_fields(),
                id=self._next_record_id,
                sync_status=SyncStatus.PENDING,
                external_record_id=None,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            self._records[record.id] = record
            self._next_record_id += 1
            logger.debug(f"Created record {record.id} ({record.patient_external_id})")
            return record

    def get_record(self, record_id: int) -> PatientRecord:
        with self._lock:
            return self._get_record(record_id)

    def list_records(self, status: Optional[SyncStatus] = None) -> list[PatientRecord]:
        with self._lock:
            records = [r for r in self._records.values() if status is None or r.sync_status == status]
        return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)

    def update_record_fields(self, record_id: int, data: PatientRecordInput, now: datetime) -> PatientRecord:
        with self._lock:
            record = self._get_record(record_id)
            if data.patient_external_id != record.patient_external_id:
                self._check_unique_patient_id(data.patient_external_id)
            updated = PatientRecord.model_validate({
                **record.model_dump(),
                **data.business_fields(),
                "updated_at": now,
            })
            self._records[record_id] = updated
            return updated

    def update_sync_result(self, record_id: int, outcome: SyncAttemptOutcome, now: datetime) -> PatientRecord:
        with self._lock:
            updated = apply_sync_outcome(self._get_record(record_id), outcome, now)
            self._records[record_id] = updated
            return updated

    def mark_pending(self, record_id: int, now: datetime) -> PatientRecord:
        with self._lock:
            record = self._get_record(record_id)
            if record.sync_status != SyncStatus.ERROR:
                raise InvalidTransitionError(
                    f"Only records in error can be requeued (record {record_id} is {record.sync_status.value})",
                    current=record.sync_status,
                    target=SyncStatus.PENDING,
                )
            updated = record.model_copy(update={"sync_status": SyncStatus.PENDING, "updated_at": now})
            self._records[record_id] = updated
            return updated

    def _get_record(self, record_id: int) -> PatientRecord:
        record = self._records.get(record_id)
        if record is None:
            raise NotFoundError(f"Patient record {record_id} not found", entity_type="patient", entity_id=record_id)
        return record

    def _check_unique_patient_id(self, patient_external_id: str) -> None:
        if any(r.patient_external_id == patient_external_id for r in self._records.values()):
            raise DuplicateKeyError(
                f"Patient ID already exists: {patient_external_id}",
                key="patient_external_id",
                value=patient_external_id,
            )

    # ------------------------------------------------------------------
    # UserStorePort
    # ------------------------------------------------------------------

    def create_user(self, email: str, password_hash: str, role: UserRole, now: datetime) -> User:
        email = email.strip().lower()
        with self._lock:
            if any(u.email == email for u in self._users.values()):
                raise DuplicateKeyError(f"Email already exists: {email}", key="email", value=email)
            user = User(
                id=self._next_user_id,
                email=email,
                password_hash=password_hash,
                role=role,
                is_active=True,
                created_at=now,
            )
            self._users[user.id] = user
            self._next_user_id += 1
            return user

    def get_user(self, user_id: int) -> User:
        with self._lock:
            return self._get_user(user_id)

    def find_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._lock:
            return next((u for u in self._users.values() if u.email == email), None)

    def list_users(self) -> list[User]:
        with self._lock:
            return [self._users[user_id] for user_id in sorted(self._users)]

    def set_user_active(self, user_id: int, is_active: bool) -> User:
        return self._update_user(user_id, is_active=is_active)

    def record_login(self, user_id: int, when: datetime) -> User:
        return self._update_user(user_id, last_login=when)

    def update_password_hash(self, user_id: int, password_hash: str) -> User:
        return self._update_user(user_id, password_hash=password_hash)

    def save_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._lock:
            self._get_user(token.user_id)
            self._reset_tokens[token.token] = token
            return token

    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._lock:
            return self._reset_tokens.get(token)

    def mark_reset_token_used(self, token: str) -> None:
        with self._lock:
            stored = self._reset_tokens.get(token)
            if stored is not None:
                self._reset_tokens[token] = stored.model_copy(update={"used": True})

    def _get_user(self, user_id: int) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", entity_type="user", entity_id=user_id)
        return user

    def _update_user(self, user_id: int, **update) -> User:
        with self._lock:
            updated = self._get_user(user_id).model_copy(update=update)
            self._users[user_id] = updated
            return updated

    # ------------------------------------------------------------------
    # AuditLogPort
    # ------------------------------------------------------------------

    def append(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            stored = entry.model_copy(update={"id": len(self._audit) + 1})
            self._audit.append(stored)
            return stored

    def query(self, filters: Optional[AuditFilters] = None) -> list[AuditEntry]:
        filters = filters or AuditFilters()
        with self._lock:
            matched = [e for e in self._audit if filters.matches(e)]
        matched.sort(key=lambda e: (e.timestamp, e.id), reverse=True)
        if filters.offset:
            matched = matched[filters.offset:]
        if filters.limit is not None:
            matched = matched[:filters.limit]
        return matched

    def entries(self) -> list[AuditEntry]:
        with self._lock:
            return list(self._audit)

    def count(self) -> int:
        with self._lock:
            return len(self._audit)
