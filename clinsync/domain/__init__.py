"""Domain layer for Clinical-Sync.

This module contains the core business logic: patient record and audit
models, the ports adapters implement, and the sync engine.
"""

from .models import (
    AuditEntry,
    AuditFilters,
    PatientRecord,
    PatientRecordInput,
    User,
)

__all__ = [
    "AuditEntry",
    "AuditFilters",
    "PatientRecord",
    "PatientRecordInput",
    "User",
]
