"""Domain Utilities - clock and identifier helpers.

Security Impact:
    - No security impact - pure utility functions
"""

import random
import string
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC.

    Storage backends persist naive UTC timestamps, so values read back
    from them come through here before entering domain models.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert a datetime to naive UTC for storage columns without a zone."""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def generate_patient_external_id(now: Optional[datetime] = None, rng: Optional[random.Random] = None) -> str:
    """Generate a business identifier in the ``PAT-######-AAA`` format.

    The six digits are the last six digits of the epoch milliseconds and the
    suffix is three random uppercase letters, matching the identifiers the
    entry form proposes to researchers.

    Parameters:
        now: Time used for the numeric part (defaults to current UTC time)
        rng: Random source for the letter suffix (injectable for tests)

    Returns:
        str: Identifier such as ``PAT-482913-QKD``
    """
    now = now or utc_now()
    rng = rng or random.Random()
    millis = int(now.timestamp() * 1000)
    digits = str(millis)[-6:].zfill(6)
    suffix = "".join(rng.choice(string.ascii_uppercase) for _ in range(3))
    return f"PAT-{digits}-{suffix}"
