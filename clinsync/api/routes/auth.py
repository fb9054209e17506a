"""Authentication endpoints."""

import logging

from fastapi import APIRouter

from clinsync.api.dependencies import AuthDep, CurrentUserDep, TokenDep
from clinsync.api.models.auth import (
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    UserResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest, auth: AuthDep) -> LoginResponse:
    """Exchange email and password for a bearer token.

    Unknown emails, wrong passwords and inactive accounts all answer 401.
    """
    session = auth.login(body.email, body.password)
    user = auth.current_user(session.token)
    return LoginResponse(token=session.token, user=UserResponse.from_user(user))


@router.get("/me", response_model=UserResponse)
async def me(user: CurrentUserDep) -> UserResponse:
    return UserResponse.from_user(user)


@router.post("/logout", response_model=MessageResponse)
async def logout(user: CurrentUserDep, auth: AuthDep, token: TokenDep) -> MessageResponse:
    """Revoke the bearer token used for this request."""
    auth.logout(token)
    return MessageResponse(message="Logged out")


@router.post("/password-reset/request", response_model=MessageResponse)
async def request_password_reset(body: PasswordResetRequest, auth: AuthDep) -> MessageResponse:
    """Issue a reset token.

    The answer is the same whether or not the email exists. The token is
    delivered out of band and never returned here.
    """
    auth.request_password_reset(body.email)
    return MessageResponse(message="If the account exists, a reset link has been sent")


@router.post("/password-reset/confirm", response_model=MessageResponse)
async def confirm_password_reset(body: PasswordResetConfirm, auth: AuthDep) -> MessageResponse:
    auth.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password updated")
