"""Administration endpoints: user management and the audit log.

Every route here requires the ``administrator`` role.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, status
from pydantic import ValidationError as PydanticValidationError

from clinsync.api.dependencies import AdminDep, ServiceDep
from clinsync.api.models.audit import AuditLogsResponse, PaginationMeta
from clinsync.api.models.auth import ToggleStatusRequest, UserCreateRequest, UserResponse
from clinsync.domain.enums import AuditAction, EntityType
from clinsync.domain.models import AuditFilters, AuditStats, describe_validation_errors
from clinsync.domain.ports import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/users", response_model=list[UserResponse])
async def list_users(admin: AdminDep, service: ServiceDep) -> list[UserResponse]:
    return [UserResponse.from_user(user) for user in service.list_users()]


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(body: UserCreateRequest, admin: AdminDep, service: ServiceDep) -> UserResponse:
    """Create a user; 409 if the email is taken."""
    user = service.create_user(body.model_dump(), actor=admin)
    return UserResponse.from_user(user)


@router.put("/users/{user_id}/toggle-status", response_model=UserResponse)
async def toggle_user_status(
    user_id: int,
    body: ToggleStatusRequest,
    admin: AdminDep,
    service: ServiceDep
) -> UserResponse:
    """Activate or deactivate a user (users are never deleted)."""
    user = service.set_user_active(user_id, body.is_active, actor=admin)
    return UserResponse.from_user(user)


@router.get("/audit-logs", response_model=AuditLogsResponse)
async def get_audit_logs(
    admin: AdminDep,
    service: ServiceDep,
    action: Optional[AuditAction] = Query(None, description="Filter by action"),
    user: Optional[str] = Query(None, description="Filter by actor email (case-insensitive substring)"),
    entity_type: Optional[EntityType] = Query(None, description="Filter by entity type"),
    entity_id: Optional[str] = Query(None, description="Filter by entity id"),
    date_from: Optional[str] = Query(None, description="Start date or timestamp (ISO format, inclusive)"),
    date_to: Optional[str] = Query(None, description="End date or timestamp (ISO format, inclusive)"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of entries to return"),
    offset: int = Query(0, ge=0, description="Number of entries to skip"),
) -> AuditLogsResponse:
    """Audit entries matching every filter given, newest first."""
    try:
        filters = AuditFilters(
            action=action,
            actor_email=user,
            entity_type=entity_type,
            entity_id=entity_id,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
    except PydanticValidationError as e:
        raise ValidationError("Invalid audit log filters", details={"errors": describe_validation_errors(e)}) from e

    entries = service.query_audit_log(filters)
    return AuditLogsResponse(
        entries=entries,
        pagination=PaginationMeta(limit=limit, offset=offset, count=len(entries)),
    )


@router.get("/audit-logs/stats", response_model=AuditStats)
async def get_audit_stats(admin: AdminDep, service: ServiceDep) -> AuditStats:
    return service.audit_stats()
