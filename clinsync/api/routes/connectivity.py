"""Connectivity endpoints.

``PUT /api/connectivity`` lets the client report what it observes (the
browser's online/offline events). Reporting ``online`` after an offline
period runs the reconnect bulk sync before the response is sent.
"""

from fastapi import APIRouter

from clinsync.api.dependencies import ContainerDep, CurrentUserDep
from clinsync.api.models.connectivity import ConnectivityResponse, ConnectivityUpdate
from clinsync.domain.enums import SyncStatus
from clinsync.main import ApplicationContainer

router = APIRouter(prefix="/api", tags=["connectivity"])


def _status(container: ApplicationContainer) -> ConnectivityResponse:
    return ConnectivityResponse(
        **container.monitor.get_status_display(),
        pending_records=len(container.service.list_patient_records(status=SyncStatus.PENDING)),
        offline_cache_size=container.cache.count(),
    )


@router.get("/connectivity", response_model=ConnectivityResponse)
async def get_connectivity(user: CurrentUserDep, container: ContainerDep) -> ConnectivityResponse:
    return _status(container)


@router.put("/connectivity", response_model=ConnectivityResponse)
async def report_connectivity(
    body: ConnectivityUpdate,
    user: CurrentUserDep,
    container: ContainerDep
) -> ConnectivityResponse:
    await container.monitor.report(body.online)
    return _status(container)
