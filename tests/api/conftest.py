"""Fixtures for API tests: an in-memory application behind a TestClient."""

import pytest
from fastapi.testclient import TestClient

from clinsync.adapters.remote import ScriptedRemoteClient
from clinsync.api.dependencies import get_container
from clinsync.api.main import create_app
from clinsync.infrastructure.config_manager import ConfigManager
from clinsync.main import build_container


@pytest.fixture
def scripted():
    """Outcome returned by the scripted REDCap client; None means success."""
    return {"outcome": None}


@pytest.fixture
def container(scripted):
    config = ConfigManager({
        "database": {"db_type": "memory"},
        "security": {"jwt_secret": "test-secret"},
    })
    return build_container(
        config=config,
        remote=ScriptedRemoteClient(
            lambda record: scripted["outcome"](record)
            if callable(scripted["outcome"]) else scripted["outcome"]
        ),
        bcrypt_rounds=4,
    )


@pytest.fixture
def client(container):
    """Test client with the container dependency overridden."""
    app = create_app()
    app.dependency_overrides[get_container] = lambda: container
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _login(client, email: str, password: str) -> dict:
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def admin_headers(client):
    return _login(client, "admin@clinic.com", "admin123")


@pytest.fixture
def researcher_headers(client):
    return _login(client, "researcher@clinic.com", "researcher123")


@pytest.fixture
def login_as(client):
    """Log in with the given credentials and return the auth headers."""
    def login(email: str, password: str) -> dict:
        return _login(client, email, password)
    return login
