"""Audit log response models."""

from pydantic import BaseModel, Field

from clinsync.domain.models import AuditEntry


class PaginationMeta(BaseModel):
    """Pagination metadata.

    Attributes:
        limit: Page size
        offset: Number of entries skipped
        count: Number of entries on this page
    """
    limit: int
    offset: int
    count: int


class AuditLogsResponse(BaseModel):
    """Audit log page, newest first."""
    entries: list[AuditEntry] = Field(default_factory=list)
    pagination: PaginationMeta
