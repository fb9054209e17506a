"""Dependency injection for the API.

This module provides the FastAPI dependencies: the application container,
the clinical data service, the authentication service and the current user.
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clinsync.domain.enums import UserRole
from clinsync.domain.models import User
from clinsync.domain.services.clinical_data_service import ClinicalDataService
from clinsync.infrastructure.auth import AuthenticationService
from clinsync.infrastructure.connectivity_monitor import ConnectivityMonitor
from clinsync.infrastructure.request_context import update_request_actor
from clinsync.main import ApplicationContainer, build_container

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@lru_cache()
def get_container() -> ApplicationContainer:
    """Get the application container (cached).

    The container is built from environment configuration on first use.
    Tests override this dependency with a container of their own.
    """
    logger.debug("Building application container")
    return build_container()


ContainerDep = Annotated[ApplicationContainer, Depends(get_container)]


def get_service(container: ContainerDep) -> ClinicalDataService:
    return container.service


def get_auth_service(container: ContainerDep) -> AuthenticationService:
    return container.auth


def get_monitor(container: ContainerDep) -> ConnectivityMonitor:
    return container.monitor


ServiceDep = Annotated[ClinicalDataService, Depends(get_service)]
AuthDep = Annotated[AuthenticationService, Depends(get_auth_service)]
MonitorDep = Annotated[ConnectivityMonitor, Depends(get_monitor)]


def get_bearer_token(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)]
) -> Optional[str]:
    return credentials.credentials if credentials else None


TokenDep = Annotated[Optional[str], Depends(get_bearer_token)]


async def get_current_user(auth: AuthDep, token: TokenDep) -> User:
    """Resolve the user behind the bearer token and attach it to the request context.

    Raises:
        NotAuthenticated: If the token is missing, invalid or revoked (mapped to 401)
    """
    user = auth.current_user(token)
    update_request_actor(user.email, user.id)
    return user


CurrentUserDep = Annotated[User, Depends(get_current_user)]


async def require_administrator(user: CurrentUserDep, auth: AuthDep) -> User:
    """Raises PermissionDenied (403) unless the user is an administrator."""
    return auth.require_role(user, UserRole.ADMINISTRATOR)


AdminDep = Annotated[User, Depends(require_administrator)]
