"""Clinical Data Service - the operations exposed to the API and CLI.

This facade ties the record store, offline cache, sync engine, audit log
and user store together. Every mutating operation writes exactly one
audit entry after the store write succeeds; an operation that fails
validation or hits a unique key leaves no trace in the audit log.

Architecture:
    - Domain service; collaborators are injected (no module-level state)
    - Password hashing and export rendering are delegated to injected ports
"""

import logging
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from clinsync.domain.enums import SyncStatus, UserRole
from clinsync.domain.models import (
    AuditEntry,
    AuditFilters,
    AuditStats,
    BatchSyncSummary,
    CachedRecord,
    Discrepancy,
    PatientRecord,
    PatientRecordInput,
    SyncResult,
    SyncStats,
    User,
    UserCreate,
    describe_validation_errors,
)
from clinsync.domain.ports import (
    AuditLogPort,
    ExportPort,
    InvalidTransitionError,
    NotFoundError,
    OfflineCachePort,
    RecordStorePort,
    UserStorePort,
    ValidationError,
)
from clinsync.domain.services.sync_engine import SyncEngine
from clinsync.domain.utils import utc_now
from clinsync.infrastructure.audit.audit_trail import AuditTrail

logger = logging.getLogger(__name__)


def _always_online() -> bool:
    return True


class ClinicalDataService:
    """Operations on patient records, users and the audit trail.

    Example Usage:
        ```python
        service = ClinicalDataService(
            records=store, users=store, audit_log=store, cache=cache,
            sync_engine=engine, audit_trail=trail, exporter=renderer,
            password_hasher=auth.hash_password,
        )
        record = service.create_patient_record(form_data, actor=current_user)
        result = await service.sync_patient_record(record.id)
        ```
    """

    def __init__(
        self,
        records: RecordStorePort,
        users: UserStorePort,
        audit_log: AuditLogPort,
        cache: OfflineCachePort,
        sync_engine: SyncEngine,
        audit_trail: AuditTrail,
        exporter: Optional[ExportPort] = None,
        password_hasher: Optional[Callable[[str], str]] = None,
        is_online: Callable[[], bool] = _always_online,
        clock: Callable[[], datetime] = utc_now
    ):
        self._records = records
        self._users = users
        self._audit_log = audit_log
        self._cache = cache
        self._engine = sync_engine
        self._trail = audit_trail
        self._exporter = exporter
        self._hash_password = password_hasher
        self._is_online = is_online
        self._clock = clock

    @property
    def sync_engine(self) -> SyncEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Patient records
    # ------------------------------------------------------------------

    def create_patient_record(
        self,
        data: Union[PatientRecordInput, Mapping[str, Any]],
        actor: Optional[User] = None
    ) -> PatientRecord:
        """Create a patient record in ``pending`` state.

        While offline the new record is also captured in the offline cache
        so it can be pushed once connectivity returns.

        Parameters:
            data: Entry form data
            actor: Acting user (owner of the record)

        Returns:
            PatientRecord: The stored record

        Raises:
            ValidationError: If the data is malformed
            DuplicateKeyError: If the patient id already exists
        """
        record_input = self._parse_patient_input(data)
        now = self._clock()
        record = self._records.create_record(record_input, actor.id if actor else None, now)
        self._trail.record_patient_created(record, actor_email=actor.email if actor else None)

        if not self._is_online():
            self._cache.capture(record, now)
            logger.info(f"Offline: captured new record {record.id} in the offline cache")
        return record

    def update_patient_record(
        self,
        record_id: int,
        data: Union[PatientRecordInput, Mapping[str, Any]],
        actor: Optional[User] = None
    ) -> PatientRecord:
        """Edit the business fields of a record that has not been synced.

        Raises:
            ValidationError: If the data is malformed
            NotFoundError: If the record does not exist
            InvalidTransitionError: If the record is already synced or a sync
                attempt on it is in flight
            DuplicateKeyError: If the new patient id belongs to another record
        """
        before = self._records.get_record(record_id)
        if before.sync_status == SyncStatus.SYNCED:
            raise InvalidTransitionError(
                f"Record {record_id} is synced and can no longer be edited",
                current=before.sync_status,
            )
        if self._engine.locks.is_locked(record_id):
            # The attempt in flight submits the stored payload
            raise InvalidTransitionError(
                f"Record {record_id} has a sync attempt in progress",
                current=before.sync_status,
            )
        if isinstance(data, Mapping):
            data = {**before.business_fields(), **data}
        record_input = self._parse_patient_input(data)
        now = self._clock()
        after = self._records.update_record_fields(record_id, record_input, now)
        self._trail.record_patient_updated(before, after, actor_email=actor.email if actor else None)

        if self._cache.get(record_id) is not None:
            self._cache.capture(after, now)
        return after

    def get_patient_record(self, record_id: int) -> PatientRecord:
        return self._records.get_record(record_id)

    def list_patient_records(self, status: Optional[SyncStatus] = None) -> list[PatientRecord]:
        """List records newest first."""
        return self._records.list_records(status=status)

    def sync_stats(self) -> SyncStats:
        return self._records.sync_stats()

    def list_captured(self) -> list[CachedRecord]:
        return self._cache.list_captured()

    @staticmethod
    def _parse_patient_input(data: Union[PatientRecordInput, Mapping[str, Any]]) -> PatientRecordInput:
        if isinstance(data, PatientRecordInput):
            return data
        try:
            return PatientRecordInput.model_validate(dict(data))
        except PydanticValidationError as e:
            errors = describe_validation_errors(e)
            raise ValidationError("Invalid patient record", details={"errors": errors}) from e

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_patient_record(self, record_id: int, actor: Optional[User] = None) -> SyncResult:
        """Sync one record. Raises NotFoundError for unknown ids."""
        return await self._engine.sync_record(record_id, actor_email=actor.email if actor else None)

    async def sync_all_pending(self, actor: Optional[User] = None) -> BatchSyncSummary:
        return await self._engine.sync_all_pending(actor_email=actor.email if actor else None)

    def requeue_patient_record(self, record_id: int, actor: Optional[User] = None) -> PatientRecord:
        return self._engine.requeue(record_id, actor_email=actor.email if actor else None)

    def reconcile(self, repair: bool = False) -> list[Discrepancy]:
        return self._engine.reconcile(repair=repair)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def query_audit_log(self, filters: Optional[AuditFilters] = None) -> list[AuditEntry]:
        """Return matching audit entries, newest first."""
        return self._audit_log.query(filters or AuditFilters())

    def audit_stats(self, now: Optional[datetime] = None) -> AuditStats:
        return self._audit_log.stats(now or self._clock())

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(
        self,
        data: Union[UserCreate, Mapping[str, Any]],
        actor: Optional[User] = None
    ) -> User:
        """Create a user account.

        Raises:
            ValidationError: If email, password or role is invalid
            DuplicateKeyError: If the email already exists
        """
        if self._hash_password is None:
            raise RuntimeError("ClinicalDataService was built without a password hasher")
        if not isinstance(data, UserCreate):
            try:
                data = UserCreate.model_validate(dict(data))
            except PydanticValidationError as e:
                raise ValidationError("Invalid user", details={"errors": describe_validation_errors(e)}) from e

        password_hash = self._hash_password(data.password.get_secret_value())
        user = self._users.create_user(data.email, password_hash, data.role, self._clock())
        self._trail.record_user_created(user, actor_email=actor.email if actor else None)
        return user

    def set_user_active(self, user_id: int, is_active: bool, actor: Optional[User] = None) -> User:
        """Activate or deactivate a user. Setting the current value is a no-op.

        Raises:
            NotFoundError: If the user does not exist
        """
        before = self._users.get_user(user_id)
        if before.is_active == is_active:
            return before
        after = self._users.set_user_active(user_id, is_active)
        self._trail.record_user_status_changed(before, after, actor_email=actor.email if actor else None)
        return after

    def list_users(self) -> list[User]:
        return self._users.list_users()

    def ensure_default_users(self, defaults: list[tuple[str, str, UserRole]]) -> list[User]:
        """Create the given users when no user exists yet (first start)."""
        if self._users.list_users():
            return []
        created = [
            self.create_user(UserCreate(email=email, password=password, role=role))
            for email, password, role in defaults
        ]
        logger.info(f"Seeded {len(created)} default user(s)")
        return created

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export_record_pdf(self, record_id: int) -> tuple[PatientRecord, bytes]:
        """Render one record as PDF. Raises NotFoundError for unknown ids."""
        record = self._records.get_record(record_id)
        return record, self._require_exporter().render_pdf(record)

    def export_records_csv(self) -> str:
        """Render all records as CSV. Raises NotFoundError when there are none."""
        records = self._records.list_records()
        if not records:
            raise NotFoundError("No records found", entity_type="patient")
        return self._require_exporter().render_csv(records)

    def _require_exporter(self) -> ExportPort:
        if self._exporter is None:
            raise RuntimeError("ClinicalDataService was built without an export renderer")
        return self._exporter
