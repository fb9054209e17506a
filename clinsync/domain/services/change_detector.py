"""Change Detection Service.

This service detects field-level changes between two snapshots of an
entity so that audit entries capture only the fields that changed.

Security Impact:
    - Compares values that contain PHI; callers choose which fields are compared
    - Secrets (password hashes) are never part of the compared field sets

Architecture:
    - Pure domain service with no infrastructure dependencies
    - Returns domain models (FieldChange) for use by the audit trail
"""

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from clinsync.domain.models import FieldChange

logger = logging.getLogger(__name__)


class ChangeDetector:
    """Service for detecting field-level changes between entity snapshots.

    Values are normalized to JSON-friendly primitives (enum values, ISO
    dates) before comparison, so the resulting changes can be stored and
    returned through the API without further conversion.
    """

    def __init__(self, fields: Optional[Iterable[str]] = None):
        """Initialize change detector.

        Parameters:
            fields: Default field names to compare (None compares every key)
        """
        self.fields = tuple(fields) if fields is not None else None

    @staticmethod
    def normalize_value(value: Any) -> Any:
        """Convert a value to the primitive stored in audit entries.

        Parameters:
            value: Raw field value

        Returns:
            Enum value, ISO-8601 string for dates, or the value unchanged
        """
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return value

    @staticmethod
    def values_equal(old: Any, new: Any) -> bool:
        """Compare two values after normalization.

        Empty strings and None are treated as the same "no value".

        Parameters:
            old: Old value
            new: New value

        Returns:
            True if values are equal, False otherwise
        """
        old = ChangeDetector.normalize_value(old)
        new = ChangeDetector.normalize_value(new)
        if old in (None, "") and new in (None, ""):
            return True
        return old == new

    def diff(
        self,
        before: Optional[Mapping[str, Any]],
        after: Mapping[str, Any],
        fields: Optional[Iterable[str]] = None
    ) -> dict[str, FieldChange]:
        """Detect field-level changes between two snapshots.

        When ``before`` is None the entity is being created: every field
        with a value is reported with ``from`` set to None.

        Parameters:
            before: Previous snapshot, or None for creation
            after: New snapshot
            fields: Field names to compare (defaults to the detector's fields)

        Returns:
            dict[str, FieldChange]: Changed fields in comparison order
        """
        names = tuple(fields) if fields is not None else self.fields
        if names is None:
            names = tuple(after.keys())

        changes: dict[str, FieldChange] = {}
        for name in names:
            new_value = after.get(name)
            if before is None:
                if new_value in (None, ""):
                    continue
                changes[name] = FieldChange(from_value=None, to_value=self.normalize_value(new_value))
                continue

            old_value = before.get(name)
            if not self.values_equal(old_value, new_value):
                changes[name] = FieldChange(
                    from_value=self.normalize_value(old_value),
                    to_value=self.normalize_value(new_value),
                )

        logger.debug(f"Detected {len(changes)} changed field(s)")
        return changes
