"""Health check endpoint."""

import logging
import time

from fastapi import APIRouter

from clinsync.adapters.storage import DuckDBAdapter
from clinsync.api.dependencies import ContainerDep
from clinsync.api.models.health import DatabaseHealth, HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


def check_database_health(storage) -> DatabaseHealth:
    """Check database connection health.

    Security Impact:
        - Only checks connectivity, no patient data is read
    """
    if not isinstance(storage, DuckDBAdapter):
        return DatabaseHealth(status="connected", type="memory", response_time_ms=None)

    start_time = time.time()
    try:
        storage.query_health()
    except Exception as e:
        logger.warning(f"Database health check failed: {str(e)}")
        return DatabaseHealth(status="disconnected", type="duckdb", response_time_ms=None)
    response_time = (time.time() - start_time) * 1000
    return DatabaseHealth(status="connected", type="duckdb", response_time_ms=round(response_time, 2))


@router.get("/health", response_model=HealthResponse)
async def health_check(container: ContainerDep) -> HealthResponse:
    """Health check endpoint.

    Returns ``unhealthy`` when the database is unreachable and ``degraded``
    when only REDCap is.
    """
    database = check_database_health(container.storage)
    online = container.monitor.is_online

    if database.status == "disconnected":
        overall = "unhealthy"
    elif not online:
        overall = "degraded"
    else:
        overall = "healthy"

    return HealthResponse(
        status=overall,
        database=database,
        connectivity="online" if online else "offline",
        offline_cache_size=container.cache.count(),
    )
