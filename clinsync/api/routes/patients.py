"""Patient record and sync endpoints.

Every mutating endpoint goes through ClinicalDataService, which writes the
audit entry; reads never touch the audit log.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Query, status

from clinsync.api.dependencies import CurrentUserDep, ServiceDep
from clinsync.domain.enums import SyncStatus
from clinsync.domain.models import BatchSyncSummary, PatientRecord, SyncResult, SyncStats

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/patients", tags=["patients"])


@router.get("", response_model=list[PatientRecord])
async def list_patients(
    user: CurrentUserDep,
    service: ServiceDep,
    sync_status: Optional[SyncStatus] = Query(None, description="Filter by sync status (pending, synced, error)")
) -> list[PatientRecord]:
    """List patient records, newest first."""
    return service.list_patient_records(status=sync_status)


@router.post("", response_model=PatientRecord, status_code=status.HTTP_201_CREATED)
async def create_patient(
    user: CurrentUserDep,
    service: ServiceDep,
    data: dict[str, Any] = Body(..., description="Entry form fields")
) -> PatientRecord:
    """Create a patient record in ``pending`` state.

    Validation problems answer 400 with one item per field; a patient id
    that already exists answers 409.
    """
    return service.create_patient_record(data, actor=user)


@router.get("/sync-stats", response_model=SyncStats)
async def sync_stats(user: CurrentUserDep, service: ServiceDep) -> SyncStats:
    return service.sync_stats()


@router.post("/sync-all", response_model=BatchSyncSummary)
async def sync_all(user: CurrentUserDep, service: ServiceDep) -> BatchSyncSummary:
    """Attempt every pending record; partial failure does not abort the batch."""
    return await service.sync_all_pending(actor=user)


@router.get("/{record_id}", response_model=PatientRecord)
async def get_patient(record_id: int, user: CurrentUserDep, service: ServiceDep) -> PatientRecord:
    return service.get_patient_record(record_id)


@router.put("/{record_id}", response_model=PatientRecord)
async def update_patient(
    record_id: int,
    user: CurrentUserDep,
    service: ServiceDep,
    data: dict[str, Any] = Body(..., description="Fields to change")
) -> PatientRecord:
    """Edit a record that has not been synced yet (409 once synced)."""
    return service.update_patient_record(record_id, data, actor=user)


@router.post("/{record_id}/sync", response_model=SyncResult)
async def sync_patient(record_id: int, user: CurrentUserDep, service: ServiceDep) -> SyncResult:
    """Sync one record now.

    A failed attempt is not an HTTP error: the result carries outcome
    ``failed`` and the reason, and the record is left in ``error``.
    """
    return await service.sync_patient_record(record_id, actor=user)


@router.post("/{record_id}/requeue", response_model=PatientRecord)
async def requeue_patient(record_id: int, user: CurrentUserDep, service: ServiceDep) -> PatientRecord:
    """Move a record in ``error`` back to ``pending``."""
    return service.requeue_patient_record(record_id, actor=user)
