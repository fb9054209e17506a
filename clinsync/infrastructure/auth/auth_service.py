"""Authentication Service.

Password hashing (bcrypt), JWT access tokens (python-jose, HS256), token
revocation on logout, role checks and single-use password reset tokens.

Security Impact:
    - Passwords are only ever stored as bcrypt hashes
    - Login failures return one generic error; unknown emails, wrong
      passwords and inactive accounts are indistinguishable to the caller
    - Tokens carry a unique ``jti`` so logout can revoke them before expiry
    - A password reset request for an unknown email is silently ignored
"""

import logging
import secrets
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Union

import bcrypt
from jose import JWTError, jwt
from pydantic import SecretStr

from clinsync.domain.enums import UserRole
from clinsync.domain.models import (
    AuthenticatedUser,
    MIN_PASSWORD_LENGTH,
    PasswordResetToken,
    User,
)
from clinsync.domain.ports import (
    AuthenticationPort,
    InvalidCredentials,
    NotAuthenticated,
    PermissionDenied,
    UserStorePort,
    ValidationError,
)
from clinsync.domain.utils import utc_now
from clinsync.infrastructure.audit.audit_trail import AuditTrail

logger = logging.getLogger(__name__)

# bcrypt only uses the first 72 bytes of a password
BCRYPT_MAX_BYTES = 72


def has_role(user: User, roles: Union[UserRole, Iterable[UserRole]]) -> bool:
    """Check whether a user holds one of ``roles``."""
    if isinstance(roles, UserRole):
        roles = (roles,)
    return user.role in tuple(roles)


class AuthenticationService(AuthenticationPort):
    """Login, token verification and password management.

    Parameters:
        users: User store
        audit_trail: Audit trail for password resets
        jwt_secret: Signing secret for access tokens
        algorithm: JWT signing algorithm
        expires_minutes: Access token lifetime
        reset_token_minutes: Password reset token lifetime
        bcrypt_rounds: bcrypt cost factor
        clock: Source of the current time

    Example Usage:
        ```python
        auth = AuthenticationService(store, trail, jwt_secret=SecretStr(secret))
        session = auth.login("admin@clinic.com", "admin123")
        user = auth.current_user(session.token)
        auth.require_role(user, UserRole.ADMINISTRATOR)
        ```
    """

    def __init__(
        self,
        users: UserStorePort,
        audit_trail: AuditTrail,
        jwt_secret: Union[SecretStr, str],
        algorithm: str = "HS256",
        expires_minutes: int = 24 * 60,
        reset_token_minutes: int = 60,
        bcrypt_rounds: int = 12,
        clock: Callable[[], datetime] = utc_now
    ):
        self._users = users
        self._trail = audit_trail
        self._secret = jwt_secret if isinstance(jwt_secret, SecretStr) else SecretStr(jwt_secret)
        self.algorithm = algorithm
        self.expires_minutes = expires_minutes
        self.reset_token_minutes = reset_token_minutes
        self._bcrypt_rounds = bcrypt_rounds
        self._clock = clock
        # jti -> exp (epoch seconds); entries are dropped once the token has expired
        self._revoked: dict[str, int] = {}
        self._revoked_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        """Hash a password using bcrypt."""
        salt = bcrypt.gensalt(rounds=self._bcrypt_rounds)
        return bcrypt.hashpw(password.encode("utf-8")[:BCRYPT_MAX_BYTES], salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8")[:BCRYPT_MAX_BYTES], password_hash.encode("utf-8"))
        except ValueError:
            # Malformed stored hash
            logger.warning("Stored password hash could not be parsed")
            return False

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def create_access_token(self, user: User) -> str:
        now = self._clock()
        claims = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role.value,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(minutes=self.expires_minutes)).timestamp()),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(claims, self._secret.get_secret_value(), algorithm=self.algorithm)

    def decode_token(self, token: str) -> dict:
        """Verify a token's signature and expiry.

        Raises:
            NotAuthenticated: If the token is invalid, expired or revoked
        """
        try:
            claims = jwt.decode(token, self._secret.get_secret_value(), algorithms=[self.algorithm])
        except JWTError as e:
            logger.debug(f"Rejected access token: {type(e).__name__}")
            raise NotAuthenticated("Invalid or expired token") from e
        with self._revoked_lock:
            if claims.get("jti") in self._revoked:
                raise NotAuthenticated("Token has been revoked")
        return claims

    @property
    def revoked_count(self) -> int:
        """Number of revoked tokens that have not expired yet."""
        with self._revoked_lock:
            self._prune_revoked()
            return len(self._revoked)

    def _prune_revoked(self) -> None:
        # Caller holds _revoked_lock
        now = int(self._clock().timestamp())
        for jti in [jti for jti, exp in self._revoked.items() if exp <= now]:
            del self._revoked[jti]

    # ------------------------------------------------------------------
    # AuthenticationPort
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> AuthenticatedUser:
        """Authenticate a user and issue an access token.

        Raises:
            InvalidCredentials: For unknown emails, wrong passwords and inactive accounts
        """
        user = self._users.find_user_by_email(email or "")
        if user is None or not user.is_active or not self.verify_password(password or "", user.password_hash):
            logger.info("Failed login attempt")
            raise InvalidCredentials("Invalid credentials")

        user = self._users.record_login(user.id, self._clock())
        logger.info(f"User {user.id} logged in")
        return AuthenticatedUser(id=user.id, email=user.email, role=user.role, token=self.create_access_token(user))

    def current_user(self, token: Optional[str]) -> User:
        if not token:
            raise NotAuthenticated("Access token required")
        claims = self.decode_token(token)
        user = self._users.find_user_by_email(claims.get("email", ""))
        if user is None or str(user.id) != claims.get("sub") or not user.is_active:
            raise NotAuthenticated("Invalid or expired token")
        return user

    def logout(self, token: str) -> None:
        claims = self.decode_token(token)
        with self._revoked_lock:
            self._revoked[claims["jti"]] = int(claims["exp"])
            self._prune_revoked()
        logger.info(f"User {claims.get('sub')} logged out")

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    @staticmethod
    def has_role(user: User, roles: Union[UserRole, Iterable[UserRole]]) -> bool:
        return has_role(user, roles)

    def require_role(self, user: User, roles: Union[UserRole, Iterable[UserRole]]) -> User:
        """Return ``user`` if it holds one of ``roles``.

        Raises:
            PermissionDenied: Otherwise
        """
        if not self.has_role(user, roles):
            logger.warning(f"User {user.id} denied: role {user.role.value} not permitted")
            raise PermissionDenied("Insufficient permissions")
        return user

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> Optional[PasswordResetToken]:
        """Issue a single-use reset token for an active user.

        Returns:
            The token, or None when the email does not belong to an active user
        """
        user = self._users.find_user_by_email(email or "")
        if user is None or not user.is_active:
            return None
        now = self._clock()
        token = PasswordResetToken(
            token=secrets.token_urlsafe(32),
            user_id=user.id,
            expires_at=now + timedelta(minutes=self.reset_token_minutes),
            created_at=now,
        )
        self._users.save_reset_token(token)
        logger.info(f"Password reset requested for user {user.id}")
        return token

    def reset_password(self, token: str, new_password: str) -> User:
        """Set a new password using a reset token.

        Raises:
            ValidationError: If the password is too short or the token is
                unknown, used or expired
        """
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                details={"errors": [{"field": "new_password", "message": "Password too short"}]},
            )
        stored = self._users.get_reset_token(token)
        if stored is None or not stored.is_valid(self._clock()):
            raise ValidationError("Invalid or expired reset token")

        user = self._users.update_password_hash(stored.user_id, self.hash_password(new_password))
        self._users.mark_reset_token_used(token)
        self._trail.record_password_reset(user)
        return user
