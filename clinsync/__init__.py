"""Clinical-Sync: offline-capable clinical data entry with REDCap synchronization.

Researchers enter patient records, records are pushed to REDCap, and every
state change lands in an append-only audit trail.
"""

__version__ = "1.0.0"
