"""Domain Ports - Abstract Contracts for Clinical Record Sync.

The sync engine and the clinical data service depend only on the ports
below; storage, the offline cache, REDCap and export renderers plug in
behind them. The error hierarchy shared by every layer lives here too.

Security Impact:
    - Record and user stores only accept validated domain models
    - The audit log contract is append-only: there is no update or delete
    - Remote submission reports outcomes through Result, never by raising

Architecture:
    - Adapters (in-memory, DuckDB, REDCap, fpdf2) implement these ports
    - Domain Core is isolated from storage and transport specifics
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, Optional, TypeVar, Union

from clinsync.domain.enums import SyncStatus, UserRole
from clinsync.domain.models import (
    AuditEntry,
    AuditFilters,
    AuditStats,
    AuthenticatedUser,
    CachedRecord,
    PasswordResetToken,
    PatientRecord,
    PatientRecordInput,
    SyncAttemptOutcome,
    SyncStats,
    User,
)

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Remote clients return this from ``submit`` so the sync engine can record
    a failed attempt without relying on exception handling.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (SyncFailure, StorageError, etc.)
        error_details: Additional error context (record_id, status_code, etc.)

    Example:
        ```python
        result = await remote.submit(record)
        if result.is_success():
            external_id = result.value
        else:
            log_error(result.error, result.error_details)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "SyncFailure", "StorageError")
            error_details: Additional context (record_id, status_code, etc.)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class ClinicalSyncError(Exception):
    """Base exception for all clinical sync errors.

    Attributes:
        details: Additional error context safe to return to API callers
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ClinicalSyncError):
    """Raised when input fails validation.

    Surfaced to the caller verbatim and never retried. ``details["errors"]``
    holds one ``{"field", "message"}`` item per problem.
    """


class DuplicateKeyError(ClinicalSyncError):
    """Raised when a unique key (patient id, user email) already exists.

    Attributes:
        key: Name of the unique field
        value: Conflicting value
    """

    def __init__(self, message: str, key: Optional[str] = None, value: Optional[str] = None):
        super().__init__(message, details={"key": key, "value": value})
        self.key = key
        self.value = value


class NotFoundError(ClinicalSyncError):
    """Raised when an entity id does not exist.

    Attributes:
        entity_type: Kind of entity looked up (patient, user, cached_record)
        entity_id: Identifier that was not found
    """

    def __init__(self, message: str, entity_type: Optional[str] = None, entity_id: Optional[object] = None):
        super().__init__(message, details={"entity_type": entity_type, "entity_id": entity_id})
        self.entity_type = entity_type
        self.entity_id = entity_id


class InvalidTransitionError(ClinicalSyncError):
    """Raised when a sync status change is not allowed (e.g. leaving ``synced``).

    Attributes:
        current: Current sync status
        target: Requested sync status
    """

    def __init__(self, message: str, current: Optional[SyncStatus] = None, target: Optional[SyncStatus] = None):
        super().__init__(message, details={
            "current": current.value if current else None,
            "target": target.value if target else None,
        })
        self.current = current
        self.target = target


class SyncFailure(ClinicalSyncError):
    """A sync attempt did not complete.

    Transient and remote-dependent. The engine records it on the record and
    in the audit trail; it is retried only by re-invoking the sync engine.

    Attributes:
        record_id: Record store identifier
        reason: Failure reason
    """

    def __init__(self, message: str, record_id: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message, details={"record_id": record_id, "reason": reason})
        self.record_id = record_id
        self.reason = reason


class AuthError(ClinicalSyncError):
    """Base class for authentication and authorization failures."""


class InvalidCredentials(AuthError):
    """Raised when login fails (unknown email, wrong password, inactive account)."""


class NotAuthenticated(AuthError):
    """Raised when a token is missing, expired, revoked or malformed."""


class PermissionDenied(AuthError):
    """Raised when an authenticated user lacks the required role."""


class StorageError(ClinicalSyncError):
    """Raised when a storage backend operation fails.

    Attributes:
        operation: The storage operation that failed (create, query, etc.)
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.operation = operation


# ============================================================================
# Storage Ports
# ============================================================================

class RecordStorePort(ABC):
    """Abstract contract for patient record storage.

    Creation is append-only; afterwards only business fields (while the
    record is not synced) and the sync result change in place.
    """

    @abstractmethod
    def create_record(self, data: PatientRecordInput, created_by: Optional[int], now: datetime) -> PatientRecord:
        """Create a record in ``pending`` state with no external id.

        Raises:
            DuplicateKeyError: If ``patient_external_id`` already exists
        """

    @abstractmethod
    def get_record(self, record_id: int) -> PatientRecord:
        """Fetch a record.

        Raises:
            NotFoundError: If the id is absent
        """

    @abstractmethod
    def list_records(self, status: Optional[SyncStatus] = None) -> list[PatientRecord]:
        """List records newest first, optionally restricted to one status."""

    @abstractmethod
    def update_record_fields(self, record_id: int, data: PatientRecordInput, now: datetime) -> PatientRecord:
        """Replace the business fields of a record.

        Raises:
            NotFoundError: If the id is absent
            DuplicateKeyError: If the new ``patient_external_id`` belongs to another record
        """

    @abstractmethod
    def update_sync_result(self, record_id: int, outcome: SyncAttemptOutcome, now: datetime) -> PatientRecord:
        """Apply a sync outcome (``Synced`` or ``Failed``).

        Raises:
            NotFoundError: If the id is absent
            InvalidTransitionError: If the record is already synced
        """

    @abstractmethod
    def mark_pending(self, record_id: int, now: datetime) -> PatientRecord:
        """Move an ``error`` record back to ``pending``.

        Raises:
            NotFoundError: If the id is absent
            InvalidTransitionError: If the record is not in ``error``
        """

    def sync_stats(self) -> SyncStats:
        """Count records per sync status."""
        return SyncStats.from_records(self.list_records())


class UserStorePort(ABC):
    """Abstract contract for users and password reset tokens. Users are never deleted."""

    @abstractmethod
    def create_user(self, email: str, password_hash: str, role: UserRole, now: datetime) -> User:
        """Create an active user.

        Raises:
            DuplicateKeyError: If the email already exists
        """

    @abstractmethod
    def get_user(self, user_id: int) -> User:
        """Fetch a user.

        Raises:
            NotFoundError: If the id is absent
        """

    @abstractmethod
    def find_user_by_email(self, email: str) -> Optional[User]:
        """Look up a user by (case-insensitive) email."""

    @abstractmethod
    def list_users(self) -> list[User]:
        """List users in id order."""

    @abstractmethod
    def set_user_active(self, user_id: int, is_active: bool) -> User:
        """Activate or deactivate a user."""

    @abstractmethod
    def record_login(self, user_id: int, when: datetime) -> User:
        """Update ``last_login``."""

    @abstractmethod
    def update_password_hash(self, user_id: int, password_hash: str) -> User:
        """Replace a user's password hash."""

    @abstractmethod
    def save_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        """Persist a new password reset token."""

    @abstractmethod
    def get_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        """Look up a password reset token."""

    @abstractmethod
    def mark_reset_token_used(self, token: str) -> None:
        """Flag a password reset token as consumed."""


class AuditLogPort(ABC):
    """Abstract contract for the append-only audit ledger.

    Security Impact:
        - Entries are immutable once appended; there is no update or delete
        - Ids increase monotonically in insertion order
    """

    @abstractmethod
    def append(self, entry: AuditEntry) -> AuditEntry:
        """Append an entry and return it with its assigned id."""

    @abstractmethod
    def query(self, filters: Optional[AuditFilters] = None) -> list[AuditEntry]:
        """Return matching entries, newest first (ties broken by id, newest first)."""

    @abstractmethod
    def entries(self) -> list[AuditEntry]:
        """Return every entry in insertion order."""

    @abstractmethod
    def count(self) -> int:
        """Number of entries in the log."""

    def stats(self, now: datetime) -> AuditStats:
        """Aggregate counts relative to ``now``."""
        return AuditStats.from_entries(self.entries(), now)


class OfflineCachePort(ABC):
    """Abstract contract for the local mirror used while REDCap is unreachable.

    ``capture`` is idempotent: capturing the same record id twice updates
    the cached copy in place and keeps its original queue position.
    """

    @abstractmethod
    def capture(self, record: PatientRecord, now: datetime) -> CachedRecord:
        """Upsert a record into the cache with status ``pending``."""

    @abstractmethod
    def list_captured(self) -> list[CachedRecord]:
        """Return cached records in capture order."""

    @abstractmethod
    def get(self, record_id: int) -> Optional[CachedRecord]:
        """Return the cached copy of a record, if any."""

    @abstractmethod
    def mark_status(self, record_id: int, status: SyncStatus, now: datetime, error: Optional[str] = None) -> CachedRecord:
        """Update the queue status of a cached record.

        Raises:
            NotFoundError: If the record is not cached
        """

    @abstractmethod
    def purge(self, record_id: int) -> bool:
        """Remove a cached record once REDCap confirmed it. Returns whether it existed."""

    def count(self) -> int:
        return len(self.list_captured())


# ============================================================================
# Collaborator Ports
# ============================================================================

class RemoteSyncPort(ABC):
    """Abstract contract for the remote system of record (REDCap)."""

    @abstractmethod
    async def submit(self, record: PatientRecord) -> Result[str]:
        """Submit a record.

        Returns:
            Result[str]: Success carries the external record id; failure
            carries the reason. Implementations should not raise for
            remote-side failures.
        """

    async def close(self) -> None:
        """Release transport resources."""
        return None


class AuthenticationPort(ABC):
    """Abstract contract for authentication."""

    @abstractmethod
    def login(self, email: str, password: str) -> AuthenticatedUser:
        """Authenticate a user.

        Raises:
            InvalidCredentials: If the email, password or account state is not valid
        """

    @abstractmethod
    def current_user(self, token: Optional[str]) -> User:
        """Resolve the user behind a token.

        Raises:
            NotAuthenticated: If the token is missing, invalid or revoked
        """

    @abstractmethod
    def logout(self, token: str) -> None:
        """Revoke a token."""


class ExportPort(ABC):
    """Abstract contract for record export. Pure formatting, no business logic."""

    @abstractmethod
    def render_pdf(self, record: PatientRecord) -> bytes:
        """Render one record as a PDF document."""

    @abstractmethod
    def render_csv(self, records: list[PatientRecord]) -> str:
        """Render records as CSV text."""
