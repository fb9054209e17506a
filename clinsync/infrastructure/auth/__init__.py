"""Authentication and authorization."""

from clinsync.infrastructure.auth.auth_service import AuthenticationService, has_role

__all__ = ["AuthenticationService", "has_role"]
