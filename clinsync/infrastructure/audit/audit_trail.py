"""Audit Trail.

This module builds audit entries for state-changing actions on patient
records and users and appends them to the audit log. Each mutating
operation produces exactly one entry holding only the fields that changed.

Security Impact:
    - Creates an immutable trail of who changed what, when and from where
    - Password hashes never appear in entries; password resets are recorded
      without values
    - Entries are append-only for compliance

Architecture:
    - Infrastructure layer component called from domain services
    - Reads actor and client details from the request context
    - Persists through AuditLogPort (in-memory or DuckDB)
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from clinsync.domain.enums import AuditAction, EntityType, SyncStatus
from clinsync.domain.models import (
    AuditEntry,
    FieldChange,
    PATIENT_BUSINESS_FIELDS,
    PatientRecord,
    User,
)
from clinsync.domain.ports import AuditLogPort
from clinsync.domain.services.change_detector import ChangeDetector
from clinsync.domain.utils import utc_now
from clinsync.infrastructure.request_context import get_request_context

logger = logging.getLogger(__name__)

# Fields of a User that are tracked in the audit trail
USER_AUDIT_FIELDS = ("email", "role", "is_active")
SYNC_FIELDS = ("sync_status", "external_record_id")


class AuditTrail:
    """Builds and appends audit entries.

    Example Usage:
        ```python
        trail = AuditTrail(audit_log)
        trail.record_patient_created(record, actor_email="researcher@clinic.com")
        trail.record_sync_success(before, after)
        ```
    """

    def __init__(
        self,
        audit_log: AuditLogPort,
        clock: Callable[[], datetime] = utc_now,
        detector: Optional[ChangeDetector] = None
    ):
        """Initialize audit trail.

        Parameters:
            audit_log: Audit log the entries are appended to
            clock: Source of entry timestamps
            detector: Change detector used to compute field diffs
        """
        self._audit_log = audit_log
        self._clock = clock
        self._detector = detector or ChangeDetector()

    def record(
        self,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: object,
        entity_label: Optional[str],
        changes: dict[str, FieldChange],
        reason: Optional[str] = None,
        actor_email: Optional[str] = None
    ) -> AuditEntry:
        """Build an entry from the request context and append it.

        Parameters:
            action: Audit action kind
            entity_type: Kind of entity affected
            entity_id: Identifier of the entity
            entity_label: Human-readable label of the entity
            changes: Changed fields
            reason: Failure reason, for unsuccessful sync attempts
            actor_email: Acting user (defaults to the request context actor)

        Returns:
            AuditEntry: The appended entry with its assigned id
        """
        context = get_request_context()
        entry = AuditEntry(
            actor_email=actor_email or context.actor_email,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            entity_label=entity_label,
            changes=changes,
            reason=reason,
            timestamp=self._clock(),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        stored = self._audit_log.append(entry)
        logger.info(
            f"Audit {stored.action.value} on {stored.entity_type.value} {stored.entity_id} "
            f"by {stored.actor_email} (entry {stored.id})"
        )
        return stored

    # ------------------------------------------------------------------
    # Patient records
    # ------------------------------------------------------------------

    def record_patient_created(self, record: PatientRecord, actor_email: Optional[str] = None) -> AuditEntry:
        changes = self._detector.diff(
            None,
            record.business_fields(),
            fields=("patient_external_id", "first_name", "last_name", "diagnosis"),
        )
        return self.record(
            AuditAction.CREATE_PATIENT,
            EntityType.PATIENT,
            record.id,
            record.label,
            changes,
            actor_email=actor_email,
        )

    def record_patient_updated(
        self,
        before: PatientRecord,
        after: PatientRecord,
        actor_email: Optional[str] = None
    ) -> Optional[AuditEntry]:
        """Record a field edit. Returns None when nothing changed."""
        changes = self._detector.diff(
            before.business_fields(), after.business_fields(), fields=PATIENT_BUSINESS_FIELDS
        )
        if not changes:
            return None
        return self.record(
            AuditAction.UPDATE_PATIENT,
            EntityType.PATIENT,
            after.id,
            after.label,
            changes,
            actor_email=actor_email,
        )

    def record_sync_success(
        self,
        before: PatientRecord,
        after: PatientRecord,
        actor_email: Optional[str] = None
    ) -> AuditEntry:
        """Record one combined entry for the status and external id change."""
        return self.record(
            AuditAction.SYNC_PATIENT,
            EntityType.PATIENT,
            after.id,
            after.label,
            self._sync_changes(before, after),
            actor_email=actor_email,
        )

    def record_sync_failure(
        self,
        before: PatientRecord,
        after: PatientRecord,
        reason: str,
        actor_email: Optional[str] = None
    ) -> AuditEntry:
        """Record a failed attempt; written even when the status did not change."""
        return self.record(
            AuditAction.SYNC_FAILED,
            EntityType.PATIENT,
            after.id,
            after.label,
            self._sync_changes(before, after),
            reason=reason,
            actor_email=actor_email,
        )

    def record_requeue(
        self,
        before: PatientRecord,
        after: PatientRecord,
        actor_email: Optional[str] = None
    ) -> AuditEntry:
        return self.record(
            AuditAction.REQUEUE_PATIENT,
            EntityType.PATIENT,
            after.id,
            after.label,
            self._sync_changes(before, after),
            actor_email=actor_email,
        )

    def record_reconciled(
        self,
        record: PatientRecord,
        action: AuditAction,
        previous_status: SyncStatus,
        reason: str
    ) -> AuditEntry:
        """Append an entry that was missing for a record's current sync status."""
        changes = {
            "sync_status": FieldChange(from_value=previous_status.value, to_value=record.sync_status.value)
        }
        if record.external_record_id is not None:
            changes["external_record_id"] = FieldChange(from_value=None, to_value=record.external_record_id)
        return self.record(
            action,
            EntityType.PATIENT,
            record.id,
            record.label,
            changes,
            reason=reason,
        )

    def _sync_changes(self, before: PatientRecord, after: PatientRecord) -> dict[str, FieldChange]:
        return self._detector.diff(
            before.model_dump(include=set(SYNC_FIELDS)),
            after.model_dump(include=set(SYNC_FIELDS)),
            fields=SYNC_FIELDS,
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def record_user_created(self, user: User, actor_email: Optional[str] = None) -> AuditEntry:
        changes = self._detector.diff(None, user.public_dict(), fields=USER_AUDIT_FIELDS)
        return self.record(
            AuditAction.CREATE_USER,
            EntityType.USER,
            user.id,
            user.email,
            changes,
            actor_email=actor_email,
        )

    def record_user_status_changed(
        self,
        before: User,
        after: User,
        actor_email: Optional[str] = None
    ) -> AuditEntry:
        changes = self._detector.diff(before.public_dict(), after.public_dict(), fields=("is_active",))
        return self.record(
            AuditAction.TOGGLE_USER_STATUS,
            EntityType.USER,
            after.id,
            after.email,
            changes,
            actor_email=actor_email,
        )

    def record_password_reset(self, user: User) -> AuditEntry:
        # The hash itself is never written to the trail
        return self.record(
            AuditAction.RESET_PASSWORD,
            EntityType.USER,
            user.id,
            user.email,
            {"password": FieldChange(from_value="[REDACTED]", to_value="[REDACTED]")},
            actor_email=user.email,
        )
