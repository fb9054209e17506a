"""Health check models."""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field

from clinsync.infrastructure.settings import APP_VERSION


class DatabaseHealth(BaseModel):
    """Database health status.

    Attributes:
        status: Connection status
        type: Storage backend (memory or duckdb)
        response_time_ms: Database response time in milliseconds (optional)
    """
    status: Literal["connected", "disconnected"]
    type: str
    response_time_ms: Optional[float] = Field(None, description="Database response time in milliseconds")


class HealthResponse(BaseModel):
    """Health check response.

    ``degraded`` means the API works but REDCap is unreachable; new records
    are captured in the offline cache.
    """
    status: Literal["healthy", "degraded", "unhealthy"]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Current UTC timestamp")
    version: str = Field(default=APP_VERSION, description="Application version")
    database: DatabaseHealth
    connectivity: Literal["online", "offline"]
    offline_cache_size: int = Field(0, description="Records waiting in the offline cache")
