"""Tests for AuthenticationService."""

from datetime import timedelta

import pytest
from jose import jwt

from clinsync.domain.enums import AuditAction, UserRole
from clinsync.domain.models import AuditFilters
from clinsync.domain.ports import InvalidCredentials, NotAuthenticated, PermissionDenied, ValidationError
from clinsync.infrastructure.auth import has_role


@pytest.fixture
def admin(service):
    return service.create_user({"email": "admin@clinic.com", "password": "admin123", "role": "administrator"})


@pytest.fixture
def researcher(service):
    return service.create_user({"email": "researcher@clinic.com", "password": "researcher123"})


class TestPasswords:
    def test_hash_and_verify(self, auth):
        password_hash = auth.hash_password("admin123")
        assert password_hash.startswith("$2")
        assert auth.verify_password("admin123", password_hash)
        assert not auth.verify_password("admin124", password_hash)

    def test_malformed_hash(self, auth):
        assert not auth.verify_password("admin123", "not-a-bcrypt-hash")


class TestLogin:
    """Test suite for login and token verification."""

    def test_login_issues_token(self, auth, admin, store):
        session = auth.login("Admin@Clinic.com", "admin123")

        assert session.email == "admin@clinic.com"
        assert session.role == UserRole.ADMINISTRATOR
        claims = jwt.decode(session.token, "test-secret", algorithms=["HS256"])
        assert claims["sub"] == str(admin.id)
        assert claims["role"] == "administrator"
        assert claims["exp"] - claims["iat"] == 24 * 60 * 60
        assert store.get_user(admin.id).last_login is not None

    @pytest.mark.parametrize("email,password", [
        ("admin@clinic.com", "wrong-password"),
        ("nobody@clinic.com", "admin123"),
        ("", ""),
    ])
    def test_invalid_credentials_are_indistinguishable(self, auth, admin, email, password):
        with pytest.raises(InvalidCredentials) as exc_info:
            auth.login(email, password)
        assert exc_info.value.message == "Invalid credentials"

    def test_inactive_user_cannot_login(self, auth, service, researcher):
        service.set_user_active(researcher.id, False)
        with pytest.raises(InvalidCredentials):
            auth.login("researcher@clinic.com", "researcher123")

    def test_current_user(self, auth, researcher):
        token = auth.login("researcher@clinic.com", "researcher123").token
        assert auth.current_user(token).id == researcher.id

    def test_missing_token(self, auth):
        with pytest.raises(NotAuthenticated) as exc_info:
            auth.current_user(None)
        assert exc_info.value.message == "Access token required"

    def test_tampered_token(self, auth, researcher):
        token = auth.login("researcher@clinic.com", "researcher123").token
        forged = jwt.encode(jwt.get_unverified_claims(token), "other-secret", algorithm="HS256")
        with pytest.raises(NotAuthenticated):
            auth.current_user(forged)

    def test_expired_token(self, auth, researcher):
        auth.expires_minutes = -60
        expired = auth.create_access_token(researcher)
        with pytest.raises(NotAuthenticated):
            auth.current_user(expired)

    def test_deactivated_user_token_rejected(self, auth, service, researcher):
        token = auth.login("researcher@clinic.com", "researcher123").token
        service.set_user_active(researcher.id, False)
        with pytest.raises(NotAuthenticated):
            auth.current_user(token)

    def test_logout_revokes_token(self, auth, researcher):
        token = auth.login("researcher@clinic.com", "researcher123").token
        other = auth.login("researcher@clinic.com", "researcher123").token

        auth.logout(token)

        with pytest.raises(NotAuthenticated):
            auth.current_user(token)
        assert auth.current_user(other).id == researcher.id

    def test_revocations_are_dropped_after_expiry(self, auth, researcher, clock):
        auth.logout(auth.login("researcher@clinic.com", "researcher123").token)
        assert auth.revoked_count == 1

        clock.advance(minutes=auth.expires_minutes, seconds=1)
        assert auth.revoked_count == 0


class TestRoles:
    def test_has_role(self, admin, researcher):
        assert has_role(admin, UserRole.ADMINISTRATOR)
        assert has_role(researcher, [UserRole.RESEARCHER, UserRole.ADMINISTRATOR])
        assert not has_role(researcher, UserRole.ADMINISTRATOR)

    def test_require_role(self, auth, admin, researcher):
        assert auth.require_role(admin, UserRole.ADMINISTRATOR) is admin
        with pytest.raises(PermissionDenied) as exc_info:
            auth.require_role(researcher, UserRole.ADMINISTRATOR)
        assert exc_info.value.message == "Insufficient permissions"


class TestPasswordReset:
    """Test suite for single-use reset tokens."""

    def test_reset_flow(self, auth, researcher, store):
        token = auth.request_password_reset("researcher@clinic.com")

        auth.reset_password(token.token, "new-password")

        assert auth.login("researcher@clinic.com", "new-password")
        with pytest.raises(InvalidCredentials):
            auth.login("researcher@clinic.com", "researcher123")

        entry = store.query(AuditFilters(action=AuditAction.RESET_PASSWORD))[0]
        assert entry.actor_email == "researcher@clinic.com"
        assert entry.changes["password"].to_value == "[REDACTED]"

    def test_token_is_single_use(self, auth, researcher):
        token = auth.request_password_reset("researcher@clinic.com")
        auth.reset_password(token.token, "new-password")
        with pytest.raises(ValidationError):
            auth.reset_password(token.token, "another-password")

    def test_token_expires(self, auth, researcher, clock):
        token = auth.request_password_reset("researcher@clinic.com")
        clock.advance(minutes=61)
        with pytest.raises(ValidationError):
            auth.reset_password(token.token, "new-password")

    def test_unknown_email_is_ignored(self, auth):
        assert auth.request_password_reset("nobody@clinic.com") is None

    def test_short_password(self, auth, researcher):
        token = auth.request_password_reset("researcher@clinic.com")
        with pytest.raises(ValidationError):
            auth.reset_password(token.token, "123")

    def test_unknown_token(self, auth):
        with pytest.raises(ValidationError):
            auth.reset_password("missing-token", "new-password")

    def test_expiry_window(self, auth, researcher, clock):
        token = auth.request_password_reset("researcher@clinic.com")
        assert token.expires_at - token.created_at == timedelta(minutes=60)
