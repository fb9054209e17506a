"""Domain Services.

This package contains domain services that implement business logic
without storage or transport dependencies:

    - change_detector: field-level diffs for audit entries
    - sync_engine: pushes records to REDCap and audits every attempt
    - clinical_data_service: operations exposed to the API and CLI

The sync engine and the clinical data service depend on the audit trail,
so they are imported from their modules rather than re-exported here.
"""

from clinsync.domain.services.change_detector import ChangeDetector

__all__ = ['ChangeDetector']
