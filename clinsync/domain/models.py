"""Domain Models for patient records, users and the audit trail.

This module defines the canonical pydantic models that flow between the
record store, the offline cache, the sync engine and the audit log.

Security Impact:
    - Patient fields carry PHI; validation bounds every free-text field
    - Password hashes are excluded from repr and from public dumps
    - Audit entries are frozen once built

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Follows Hexagonal Architecture: adapters translate to and from these models
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
    ValidationError as PydanticValidationError,
)

from clinsync.domain.enums import (
    AuditAction,
    EntityType,
    Gender,
    SyncOutcome,
    SyncStatus,
    UserRole,
)
from clinsync.domain.utils import ensure_utc, utc_now

PATIENT_ID_PATTERN = r"^PAT-\d{6}-[A-Z]{3}$"
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6

# Fields a researcher edits on the entry form, in display order
PATIENT_BUSINESS_FIELDS = (
    "patient_external_id",
    "first_name",
    "last_name",
    "date_of_birth",
    "gender",
    "demographics",
    "diagnosis",
    "treatment_plan",
    "notes",
)


def describe_validation_errors(exc: PydanticValidationError) -> list[dict]:
    """Flatten a pydantic ValidationError into field/message pairs.

    Parameters:
        exc: Error raised by a pydantic model

    Returns:
        list[dict]: One ``{"field": ..., "message": ...}`` item per error
    """
    return [
        {
            "field": ".".join(str(part) for part in error.get("loc", ())) or "__root__",
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]


# ============================================================================
# Patient Records
# ============================================================================

class PatientRecordInput(BaseModel):
    """Data entered for a patient record before the store assigns an id.

    Security Impact: Contains PHI (names, date of birth, clinical notes).
    Every free-text field is length-bounded to keep malformed payloads out
    of storage and out of the REDCap import.

    Parameters:
        patient_external_id: Business identifier in ``PAT-######-AAA`` format
        first_name: Given name (required, at least 2 characters)
        last_name: Family name (required, at least 2 characters)
        date_of_birth: Optional date of birth, never in the future
        gender: Optional gender from the entry form choices
        demographics: Optional free-text demographics (<= 500 chars)
        diagnosis: Optional diagnosis (<= 200 chars)
        treatment_plan: Optional treatment plan (<= 1000 chars)
        notes: Optional notes (<= 500 chars)
    """

    patient_external_id: str = Field(
        ...,
        pattern=PATIENT_ID_PATTERN,
        description="Business identifier (PAT-######-AAA)"
    )
    first_name: str = Field(..., min_length=2, max_length=100, description="Given name")
    last_name: str = Field(..., min_length=2, max_length=100, description="Family name")
    date_of_birth: Optional[date] = Field(None, description="Date of birth")
    gender: Optional[Gender] = Field(None, description="Gender")
    demographics: Optional[str] = Field(None, max_length=500, description="Demographic notes")
    diagnosis: Optional[str] = Field(None, max_length=200, description="Diagnosis")
    treatment_plan: Optional[str] = Field(None, max_length=1000, description="Treatment plan")
    notes: Optional[str] = Field(None, max_length=500, description="Additional notes")

    @field_validator("patient_external_id", mode="before")
    @classmethod
    def strip_patient_external_id(cls, v: Any) -> Any:
        """Trim surrounding whitespace before the format check."""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def validate_required_name(cls, v: Any) -> Any:
        """Reject missing or whitespace-only names.

        Raises:
            ValueError: If the name is empty after trimming
        """
        if v is None:
            raise ValueError("Name is required")
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError("Name is required")
        return v

    @field_validator("demographics", "diagnosis", "treatment_plan", "notes", "gender", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        """Treat empty form fields as absent."""
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("date_of_birth", mode="before")
    @classmethod
    def blank_date_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("date_of_birth")
    @classmethod
    def validate_date_of_birth(cls, v: Optional[date]) -> Optional[date]:
        """Validate that the date of birth is not in the future.

        Raises:
            ValueError: If the date is after today (UTC)
        """
        if v is not None and v > utc_now().date():
            raise ValueError("Date of birth cannot be in the future")
        return v

    def business_fields(self) -> dict[str, Any]:
        """Return the researcher-editable fields as a plain dictionary."""
        return {name: getattr(self, name) for name in PATIENT_BUSINESS_FIELDS}


class PatientRecord(PatientRecordInput):
    """A stored patient record with its sync lifecycle state.

    Invariant: ``external_record_id`` is set if and only if ``sync_status``
    is ``synced``. Records loaded from storage are re-validated against it.

    Parameters:
        id: Identifier assigned by the record store (stable for the record's life)
        sync_status: Lifecycle state relative to REDCap
        external_record_id: REDCap record id, only present once synced
        created_by: Id of the user who entered the record
        created_at: Creation timestamp (UTC)
        updated_at: Last modification timestamp (UTC)
    """

    id: int = Field(..., description="Record store identifier")
    sync_status: SyncStatus = Field(default=SyncStatus.PENDING, description="Sync lifecycle state")
    external_record_id: Optional[str] = Field(None, description="REDCap record id (synced only)")
    created_by: Optional[int] = Field(None, description="Owning user id")
    created_at: datetime = Field(..., description="Creation timestamp (UTC)")
    updated_at: datetime = Field(..., description="Last update timestamp (UTC)")

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def check_external_record_id(self) -> "PatientRecord":
        """Enforce the external id / sync status invariant."""
        has_external_id = self.external_record_id is not None
        if has_external_id != (self.sync_status == SyncStatus.SYNCED):
            raise ValueError(
                "external_record_id must be set if and only if sync_status is 'synced' "
                f"(status={self.sync_status.value}, external_record_id={self.external_record_id!r})"
            )
        return self

    @property
    def label(self) -> str:
        """Human-readable label used in audit entries and exports."""
        return f"{self.patient_external_id} ({self.first_name} {self.last_name})"


@dataclass(frozen=True)
class Synced:
    """Outcome of a sync attempt that REDCap accepted."""
    external_record_id: str


@dataclass(frozen=True)
class Failed:
    """Outcome of a sync attempt that did not complete."""
    reason: str


SyncAttemptOutcome = Union[Synced, Failed]


class CachedRecord(BaseModel):
    """A record mirrored in the offline cache while REDCap is unreachable.

    Parameters:
        record: Snapshot of the patient record at capture time
        cache_status: Queue status of the cached copy
        error: Last failure reason, if the cached copy is in error
        captured_at: First capture time (fixes queue order)
        updated_at: Last time the cached copy changed
    """

    record: PatientRecord
    cache_status: SyncStatus = SyncStatus.PENDING
    error: Optional[str] = None
    captured_at: datetime
    updated_at: datetime

    @field_validator("captured_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def record_id(self) -> int:
        return self.record.id


class SyncStats(BaseModel):
    """Counts of patient records per sync status."""

    total: int = Field(0, description="Total number of records")
    pending: int = Field(0, description="Records waiting to be synced")
    synced: int = Field(0, description="Records accepted by REDCap")
    errors: int = Field(0, description="Records whose last sync attempt failed")

    @classmethod
    def from_records(cls, records: Iterable[PatientRecord]) -> "SyncStats":
        stats = {"total": 0, "pending": 0, "synced": 0, "errors": 0}
        for record in records:
            stats["total"] += 1
            if record.sync_status == SyncStatus.PENDING:
                stats["pending"] += 1
            elif record.sync_status == SyncStatus.SYNCED:
                stats["synced"] += 1
            else:
                stats["errors"] += 1
        return cls(**stats)


class SyncResult(BaseModel):
    """Result of a single-record sync request.

    Parameters:
        record_id: Record store identifier
        outcome: What happened (synced, failed, already_synced, deferred, skipped)
        sync_status: Record status after the request
        external_record_id: REDCap record id when synced
        reason: Failure or skip reason
    """

    record_id: int
    outcome: SyncOutcome
    sync_status: Optional[SyncStatus] = None
    external_record_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == SyncOutcome.SYNCED


class BatchSyncSummary(BaseModel):
    """Summary of a bulk sync over all pending records."""

    attempted: int = Field(0, description="Records submitted to REDCap")
    succeeded: int = Field(0, description="Attempts that ended synced")
    failed: int = Field(0, description="Attempts that ended in error")
    skipped: int = Field(0, description="Records not attempted (offline or already in flight)")
    results: list[SyncResult] = Field(default_factory=list, description="Per-record results")

    @classmethod
    def from_results(cls, results: list[SyncResult]) -> "BatchSyncSummary":
        succeeded = sum(1 for r in results if r.outcome == SyncOutcome.SYNCED)
        failed = sum(1 for r in results if r.outcome == SyncOutcome.FAILED)
        return cls(
            attempted=succeeded + failed,
            succeeded=succeeded,
            failed=failed,
            skipped=len(results) - succeeded - failed,
            results=results,
        )


# ============================================================================
# Users and Authentication
# ============================================================================

class User(BaseModel):
    """An application user.

    Security Impact: ``password_hash`` is a bcrypt hash and is excluded from
    repr and from ``public_dict``. Users are deactivated, never deleted.
    """

    id: int
    email: str
    password_hash: str = Field(..., repr=False)
    role: UserRole
    is_active: bool = True
    created_at: datetime
    last_login: Optional[datetime] = None

    @field_validator("created_at", "last_login")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def public_dict(self) -> dict[str, Any]:
        """Dump the user without the password hash."""
        return self.model_dump(exclude={"password_hash"})


class UserCreate(BaseModel):
    """Input for creating a user from the admin panel."""

    email: str = Field(..., description="Login email (stored lower-cased)")
    password: SecretStr = Field(..., description="Plain password (never logged)")
    role: UserRole = Field(default=UserRole.RESEARCHER, description="Access role")

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: Any) -> Any:
        """Lower-case and validate the email address.

        Raises:
            ValueError: If the address is not a plausible email
        """
        if not isinstance(v, str):
            return v
        v = v.strip().lower()
        if not EMAIL_PATTERN.match(v):
            raise ValueError("A valid email address is required")
        return v

    @field_validator("password")
    @classmethod
    def validate_password_length(cls, v: SecretStr) -> SecretStr:
        if len(v.get_secret_value()) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v


class AuthenticatedUser(BaseModel):
    """Identity returned by a successful login."""

    id: int
    email: str
    role: UserRole
    token: str = Field(..., repr=False)


class PasswordResetToken(BaseModel):
    """Single-use password reset token."""

    token: str = Field(..., repr=False)
    user_id: int
    expires_at: datetime
    used: bool = False
    created_at: datetime

    @field_validator("expires_at", "created_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def is_valid(self, now: datetime) -> bool:
        return not self.used and ensure_utc(now) < self.expires_at


# ============================================================================
# Audit Trail
# ============================================================================

class FieldChange(BaseModel):
    """Before/after pair for one field; ``from`` is None when the field is created."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_value: Optional[Any] = Field(None, alias="from")
    to_value: Optional[Any] = Field(None, alias="to")


class AuditEntry(BaseModel):
    """Immutable record of one state-changing action.

    Parameters:
        id: Monotonically increasing id assigned by the audit log on append
        actor_email: Email of the acting user (``system`` for automatic actions)
        action: Audit action kind
        entity_type: Kind of entity affected
        entity_id: Identifier of the affected entity
        entity_label: Human-readable label of the entity
        changes: Field name to before/after pair, only for fields that changed
        reason: Failure reason for unsuccessful sync attempts
        timestamp: When the action happened (UTC)
        ip_address: Client address of the request, if any
        user_agent: Client user agent of the request, if any
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = Field(None, description="Audit entry id (assigned on append)")
    actor_email: str = Field(..., description="Acting user email")
    action: AuditAction = Field(..., description="Action kind")
    entity_type: EntityType = Field(..., description="Entity kind")
    entity_id: str = Field(..., description="Entity identifier")
    entity_label: Optional[str] = Field(None, description="Entity label")
    changes: dict[str, FieldChange] = Field(default_factory=dict, description="Changed fields")
    reason: Optional[str] = Field(None, description="Failure reason")
    timestamp: datetime = Field(..., description="Event time (UTC)")
    ip_address: Optional[str] = Field(None, description="Client IP address")
    user_agent: Optional[str] = Field(None, description="Client user agent")

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class AuditFilters(BaseModel):
    """Conjunctive filters for audit log queries; every field is optional.

    ``actor_email`` matches case-insensitively as a substring. Date-only
    bounds cover the whole day, so ``date_to=2024-05-01`` includes entries
    written on the first of May.
    """

    action: Optional[AuditAction] = None
    actor_email: Optional[str] = None
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: Optional[int] = Field(None, ge=1)
    offset: int = Field(0, ge=0)

    @field_validator("date_from", "date_to", mode="before")
    @classmethod
    def expand_dates(cls, v: Any, info) -> Any:
        if isinstance(v, str) and len(v.strip()) == 10:
            v = date.fromisoformat(v.strip())
        if isinstance(v, date) and not isinstance(v, datetime):
            bound = time.max if info.field_name == "date_to" else time.min
            return datetime.combine(v, bound)
        return v

    @field_validator("date_from", "date_to")
    @classmethod
    def normalize_bounds(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @field_validator("actor_email", "entity_id", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip() or None
        return v

    def matches(self, entry: AuditEntry) -> bool:
        """Check whether an entry satisfies every filter that is set."""
        if self.action is not None and entry.action != self.action:
            return False
        if self.actor_email and self.actor_email.lower() not in entry.actor_email.lower():
            return False
        if self.entity_type is not None and entry.entity_type != self.entity_type:
            return False
        if self.entity_id is not None and entry.entity_id != self.entity_id:
            return False
        if self.date_from is not None and entry.timestamp < self.date_from:
            return False
        if self.date_to is not None and entry.timestamp > self.date_to:
            return False
        return True


class AuditStats(BaseModel):
    """Aggregate counts over the audit log."""

    total_entries: int = 0
    actions: dict[str, int] = Field(default_factory=dict)
    users: dict[str, int] = Field(default_factory=dict)
    entity_types: dict[str, int] = Field(default_factory=dict)
    last_24h: int = 0
    last_7d: int = 0

    @classmethod
    def from_entries(cls, entries: Iterable[AuditEntry], now: datetime) -> "AuditStats":
        """Compute stats relative to ``now``.

        Parameters:
            entries: Audit entries in any order
            now: Reference time for the 24 hour and 7 day windows
        """
        now = ensure_utc(now)
        day_ago = now - timedelta(hours=24)
        week_ago = now - timedelta(days=7)
        stats = cls()
        for entry in entries:
            stats.total_entries += 1
            stats.actions[entry.action.value] = stats.actions.get(entry.action.value, 0) + 1
            stats.users[entry.actor_email] = stats.users.get(entry.actor_email, 0) + 1
            stats.entity_types[entry.entity_type.value] = stats.entity_types.get(entry.entity_type.value, 0) + 1
            if entry.timestamp > day_ago:
                stats.last_24h += 1
            if entry.timestamp > week_ago:
                stats.last_7d += 1
        return stats


class Discrepancy(BaseModel):
    """A record whose sync status has no matching audit entry."""

    record_id: int
    patient_external_id: str
    sync_status: SyncStatus
    last_audited_action: Optional[AuditAction] = None
    expected_action: AuditAction
    repaired: bool = False
