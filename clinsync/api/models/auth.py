"""Request and response models for authentication and user administration."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from clinsync.domain.enums import UserRole
from clinsync.domain.models import User


class LoginRequest(BaseModel):
    email: str = Field(..., description="Login email")
    password: str = Field(..., description="Password")


class UserResponse(BaseModel):
    """A user without the password hash."""
    id: int
    email: str
    role: UserRole
    is_active: bool
    created_at: datetime
    last_login: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(**user.public_dict())


class LoginResponse(BaseModel):
    token: str = Field(..., description="Bearer access token")
    user: UserResponse


class UserCreateRequest(BaseModel):
    email: str = Field(..., description="Login email")
    password: str = Field(..., description="Initial password (at least 6 characters)")
    role: UserRole = Field(default=UserRole.RESEARCHER, description="Access role")


class ToggleStatusRequest(BaseModel):
    is_active: bool = Field(..., description="New account state")


class PasswordResetRequest(BaseModel):
    email: str = Field(..., description="Account email")


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., description="Reset token")
    new_password: str = Field(..., description="New password (at least 6 characters)")


class MessageResponse(BaseModel):
    message: str
