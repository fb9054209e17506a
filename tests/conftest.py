"""Shared fixtures for Clinical-Sync tests."""

from datetime import datetime, timedelta, timezone

import pytest

from clinsync.adapters.cache import InMemoryOfflineCache
from clinsync.adapters.export import RecordExportRenderer
from clinsync.adapters.remote import ScriptedRemoteClient
from clinsync.adapters.storage import InMemoryStorageAdapter
from clinsync.domain.models import PatientRecordInput
from clinsync.domain.services.clinical_data_service import ClinicalDataService
from clinsync.domain.services.sync_engine import SyncEngine
from clinsync.infrastructure.audit import AuditTrail
from clinsync.infrastructure.auth import AuthenticationService


class FakeClock:
    """Controllable clock; every call returns the current value."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Connectivity:
    """Mutable online flag handed to the engine and service as ``is_online``."""

    def __init__(self, online: bool = True):
        self.online = online

    def __call__(self) -> bool:
        return self.online


def patient_data(index: int = 0, **overrides) -> dict:
    """Valid entry form data with a unique patient id per index."""
    data = {
        "patient_external_id": f"PAT-{100000 + index:06d}-AAA",
        "first_name": "John",
        "last_name": "Doe",
        "date_of_birth": "1980-04-12",
        "gender": "male",
        "diagnosis": "Type 2 diabetes",
        "treatment_plan": "Metformin 500mg twice daily",
        "notes": "Follow up in 3 months",
    }
    data.update(overrides)
    return data


@pytest.fixture
def clock():
    # Tokens are checked against the wall clock, so start from the current time
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def connectivity():
    return Connectivity()


@pytest.fixture
def store():
    return InMemoryStorageAdapter()


@pytest.fixture
def cache():
    return InMemoryOfflineCache()


@pytest.fixture
def remote():
    return ScriptedRemoteClient()


@pytest.fixture
def trail(store, clock):
    return AuditTrail(store, clock=clock)


@pytest.fixture
def engine(store, cache, remote, trail, connectivity, clock):
    return SyncEngine(
        records=store,
        cache=cache,
        remote=remote,
        audit_log=store,
        audit_trail=trail,
        is_online=connectivity,
        timeout_seconds=1.0,
        clock=clock,
    )


@pytest.fixture
def auth(store, trail, clock):
    return AuthenticationService(
        users=store,
        audit_trail=trail,
        jwt_secret="test-secret",
        bcrypt_rounds=4,
        clock=clock,
    )


@pytest.fixture
def service(store, cache, engine, trail, auth, connectivity, clock):
    return ClinicalDataService(
        records=store,
        users=store,
        audit_log=store,
        cache=cache,
        sync_engine=engine,
        audit_trail=trail,
        exporter=RecordExportRenderer(clock=clock),
        password_hasher=auth.hash_password,
        is_online=connectivity,
        clock=clock,
    )


@pytest.fixture
def make_record(store, clock):
    """Create records straight in the store (no audit entry)."""
    def _make(index: int = 0, **overrides):
        return store.create_record(PatientRecordInput(**patient_data(index, **overrides)), None, clock())
    return _make


@pytest.fixture
def form():
    """The ``patient_data`` builder, for tests that post entry form data."""
    return patient_data
