"""Domain enumerations for patient records, users and the audit trail.

These values are persisted verbatim (database columns, audit entries, API
payloads), so the string values are part of the stored format.
"""

from enum import Enum


class SyncStatus(str, Enum):
    """Lifecycle state of a patient record relative to REDCap."""
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class UserRole(str, Enum):
    """Roles recognised by the access checks at the API boundary."""
    RESEARCHER = "researcher"
    ADMINISTRATOR = "administrator"


class Gender(str, Enum):
    """Gender values accepted on the patient entry form."""
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    PREFER_NOT_TO_SAY = "prefer_not_to_say"


class EntityType(str, Enum):
    """Kinds of entity an audit entry can describe."""
    PATIENT = "patient"
    USER = "user"


class AuditAction(str, Enum):
    """Known audit actions.

    SYNC_PATIENT and SYNC_FAILED are both written for sync attempts so that
    every attempt is auditable regardless of outcome.
    """
    CREATE_PATIENT = "CREATE_PATIENT"
    UPDATE_PATIENT = "UPDATE_PATIENT"
    SYNC_PATIENT = "SYNC_PATIENT"
    SYNC_FAILED = "SYNC_FAILED"
    REQUEUE_PATIENT = "REQUEUE_PATIENT"
    CREATE_USER = "CREATE_USER"
    TOGGLE_USER_STATUS = "TOGGLE_USER_STATUS"
    RESET_PASSWORD = "RESET_PASSWORD"


# Actions that describe the sync lifecycle of a patient record
SYNC_LIFECYCLE_ACTIONS = frozenset({
    AuditAction.SYNC_PATIENT,
    AuditAction.SYNC_FAILED,
    AuditAction.REQUEUE_PATIENT,
})


class SyncOutcome(str, Enum):
    """Result kinds reported by the sync engine for a single record."""
    SYNCED = "synced"
    FAILED = "failed"
    ALREADY_SYNCED = "already_synced"
    DEFERRED = "deferred"
    SKIPPED = "skipped"
