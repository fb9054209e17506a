"""Connectivity models."""

from typing import Optional

from pydantic import BaseModel, Field


class ConnectivityUpdate(BaseModel):
    online: bool = Field(..., description="Whether REDCap is reachable")


class ConnectivityResponse(BaseModel):
    status: str
    is_online: bool
    source: str
    probe_host: Optional[str] = None
    monitoring: bool = False
    last_check: Optional[str] = None
    last_change: Optional[str] = None
    failures: int = 0
    error: Optional[str] = None
    pending_records: int = Field(0, description="Records still pending")
    offline_cache_size: int = Field(0, description="Records waiting in the offline cache")
