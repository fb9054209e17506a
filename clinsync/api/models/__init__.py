"""API request and response models."""

from clinsync.api.models.audit import AuditLogsResponse, PaginationMeta
from clinsync.api.models.auth import (
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    ToggleStatusRequest,
    UserCreateRequest,
    UserResponse,
)
from clinsync.api.models.connectivity import ConnectivityResponse, ConnectivityUpdate
from clinsync.api.models.health import DatabaseHealth, HealthResponse
