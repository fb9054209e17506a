"""Contract tests run against both storage adapters."""

from datetime import datetime, timedelta, timezone

import pytest

from clinsync.adapters.storage import DuckDBAdapter, InMemoryStorageAdapter
from clinsync.domain.enums import AuditAction, EntityType, SyncStatus, UserRole
from clinsync.domain.models import (
    AuditEntry,
    AuditFilters,
    Failed,
    FieldChange,
    PasswordResetToken,
    PatientRecordInput,
    Synced,
)
from clinsync.domain.ports import DuplicateKeyError, InvalidTransitionError, NotFoundError, StorageError
from clinsync.infrastructure.config_manager import DatabaseConfig

NOW = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "duckdb"])
def adapter(request):
    if request.param == "memory":
        yield InMemoryStorageAdapter()
        return
    duck = DuckDBAdapter(db_path=":memory:")
    assert duck.initialize_schema().is_success()
    yield duck
    duck.close()


def record_input(form, index=0, **overrides):
    return PatientRecordInput(**form(index, **overrides))


def audit_entry(action=AuditAction.CREATE_PATIENT, actor="researcher@clinic.com", entity_id="1", minutes=0):
    return AuditEntry(
        actor_email=actor,
        action=action,
        entity_type=EntityType.PATIENT,
        entity_id=entity_id,
        entity_label="PAT-100000-AAA (John Doe)",
        changes={"first_name": FieldChange(from_value=None, to_value="John")},
        timestamp=NOW + timedelta(minutes=minutes),
        ip_address="10.0.0.5",
    )


class TestRecordStore:
    """Test suite for the record store contract."""

    def test_create_and_get(self, adapter, form):
        record = adapter.create_record(record_input(form), created_by=3, now=NOW)

        assert record.id >= 1
        assert record.sync_status == SyncStatus.PENDING
        assert record.external_record_id is None
        assert record.created_by == 3
        assert record.created_at == NOW

        fetched = adapter.get_record(record.id)
        assert fetched == record
        assert fetched.gender.value == "male"

    def test_ids_are_unique(self, adapter, form):
        first = adapter.create_record(record_input(form, 0), None, NOW)
        second = adapter.create_record(record_input(form, 1), None, NOW)
        assert first.id != second.id

    def test_duplicate_patient_id(self, adapter, form):
        adapter.create_record(record_input(form), None, NOW)
        with pytest.raises(DuplicateKeyError) as exc_info:
            adapter.create_record(record_input(form, first_name="Jane"), None, NOW)
        assert exc_info.value.value == "PAT-100000-AAA"
        assert len(adapter.list_records()) == 1

    def test_get_unknown(self, adapter):
        with pytest.raises(NotFoundError):
            adapter.get_record(404)

    def test_list_newest_first_with_filter(self, adapter, form):
        older = adapter.create_record(record_input(form, 0), None, NOW)
        newer = adapter.create_record(record_input(form, 1), None, NOW + timedelta(minutes=5))
        adapter.update_sync_result(older.id, Failed("boom"), NOW)

        assert [r.id for r in adapter.list_records()] == [newer.id, older.id]
        assert [r.id for r in adapter.list_records(status=SyncStatus.ERROR)] == [older.id]
        stats = adapter.sync_stats()
        assert (stats.total, stats.pending, stats.synced, stats.errors) == (2, 1, 0, 1)

    def test_update_fields(self, adapter, form):
        record = adapter.create_record(record_input(form), None, NOW)
        later = NOW + timedelta(hours=1)

        updated = adapter.update_record_fields(record.id, record_input(form, diagnosis="Asthma"), later)

        assert updated.diagnosis == "Asthma"
        assert updated.updated_at == later
        assert updated.created_at == NOW

    def test_update_to_taken_patient_id(self, adapter, form):
        adapter.create_record(record_input(form, 0), None, NOW)
        other = adapter.create_record(record_input(form, 1), None, NOW)
        with pytest.raises(DuplicateKeyError):
            adapter.update_record_fields(other.id, record_input(form, 0), NOW)

    def test_sync_lifecycle(self, adapter, form):
        record = adapter.create_record(record_input(form), None, NOW)

        failed = adapter.update_sync_result(record.id, Failed("timeout"), NOW)
        assert failed.sync_status == SyncStatus.ERROR
        assert failed.external_record_id is None

        pending = adapter.create_record(record_input(form, 1), None, NOW)
        with pytest.raises(InvalidTransitionError):
            adapter.mark_pending(pending.id, NOW)

        requeued = adapter.mark_pending(record.id, NOW)
        assert requeued.sync_status == SyncStatus.PENDING

        synced = adapter.update_sync_result(record.id, Synced("REDCAP_5"), NOW)
        assert synced.sync_status == SyncStatus.SYNCED
        assert synced.external_record_id == "REDCAP_5"

        with pytest.raises(InvalidTransitionError):
            adapter.update_sync_result(record.id, Failed("late failure"), NOW)
        assert adapter.get_record(record.id).external_record_id == "REDCAP_5"


class TestUserStore:
    """Test suite for the user store contract."""

    def test_create_and_find(self, adapter):
        user = adapter.create_user("Admin@Clinic.com", "hash", UserRole.ADMINISTRATOR, NOW)

        assert user.email == "admin@clinic.com"
        assert user.is_active
        assert adapter.find_user_by_email("ADMIN@clinic.com").id == user.id
        assert adapter.find_user_by_email("nobody@clinic.com") is None
        assert adapter.get_user(user.id).role == UserRole.ADMINISTRATOR

    def test_duplicate_email(self, adapter):
        adapter.create_user("admin@clinic.com", "hash", UserRole.ADMINISTRATOR, NOW)
        with pytest.raises(DuplicateKeyError):
            adapter.create_user("admin@clinic.com", "other", UserRole.RESEARCHER, NOW)

    def test_updates(self, adapter):
        user = adapter.create_user("r@clinic.com", "hash", UserRole.RESEARCHER, NOW)

        assert not adapter.set_user_active(user.id, False).is_active
        assert adapter.record_login(user.id, NOW).last_login == NOW
        assert adapter.update_password_hash(user.id, "new-hash").password_hash == "new-hash"
        assert [u.id for u in adapter.list_users()] == [user.id]

        with pytest.raises(NotFoundError):
            adapter.set_user_active(999, True)

    def test_reset_tokens(self, adapter):
        user = adapter.create_user("r@clinic.com", "hash", UserRole.RESEARCHER, NOW)
        token = PasswordResetToken(token="abc", user_id=user.id, expires_at=NOW + timedelta(hours=1), created_at=NOW)

        adapter.save_reset_token(token)
        assert adapter.get_reset_token("abc").user_id == user.id
        assert adapter.get_reset_token("missing") is None

        adapter.mark_reset_token_used("abc")
        assert adapter.get_reset_token("abc").used


class TestAuditLog:
    """Test suite for the audit log contract."""

    def test_append_assigns_increasing_ids(self, adapter):
        first = adapter.append(audit_entry())
        second = adapter.append(audit_entry())
        assert second.id > first.id
        assert adapter.count() == 2

    def test_round_trip_preserves_changes(self, adapter):
        adapter.append(audit_entry())
        entry = adapter.entries()[0]
        assert entry.changes["first_name"].to_value == "John"
        assert entry.timestamp == NOW
        assert entry.ip_address == "10.0.0.5"

    def test_query_newest_first_and_filters(self, adapter):
        adapter.append(audit_entry(minutes=0))
        adapter.append(audit_entry(AuditAction.SYNC_FAILED, actor="admin@clinic.com", minutes=10))
        adapter.append(audit_entry(AuditAction.SYNC_PATIENT, actor="admin@clinic.com", entity_id="2", minutes=20))

        assert [e.action for e in adapter.query()] == [
            AuditAction.SYNC_PATIENT, AuditAction.SYNC_FAILED, AuditAction.CREATE_PATIENT
        ]
        assert len(adapter.query(AuditFilters(actor_email="ADMIN"))) == 2
        assert len(adapter.query(AuditFilters(actor_email="admin", entity_id="1"))) == 1
        assert len(adapter.query(AuditFilters(date_from=NOW + timedelta(minutes=5)))) == 2
        assert len(adapter.query(AuditFilters(date_to="2024-05-01"))) == 3
        assert adapter.query(AuditFilters(date_to="2024-04-30")) == []

    def test_query_limit_and_offset(self, adapter):
        for minute in range(5):
            adapter.append(audit_entry(minutes=minute))
        page = adapter.query(AuditFilters(limit=2, offset=1))
        assert [e.timestamp for e in page] == [NOW + timedelta(minutes=3), NOW + timedelta(minutes=2)]

    def test_same_timestamp_ordered_by_id(self, adapter):
        first = adapter.append(audit_entry())
        second = adapter.append(audit_entry())
        assert [e.id for e in adapter.query()] == [second.id, first.id]

    def test_stats(self, adapter):
        adapter.append(audit_entry(minutes=0))
        adapter.append(audit_entry(AuditAction.SYNC_PATIENT, actor="admin@clinic.com", minutes=-60 * 24 * 3))
        stats = adapter.stats(NOW + timedelta(hours=1))
        assert stats.total_entries == 2
        assert stats.last_24h == 1
        assert stats.last_7d == 2
        assert stats.users == {"researcher@clinic.com": 1, "admin@clinic.com": 1}
        assert stats.entity_types == {"patient": 2}


class TestDuckDBAdapter:
    """DuckDB-specific behavior."""

    def test_rejects_other_db_type(self):
        with pytest.raises(StorageError):
            DuckDBAdapter(db_config=DatabaseConfig(db_type="memory"))

    def test_rejects_missing_directory(self, tmp_path):
        with pytest.raises(StorageError):
            DuckDBAdapter(db_path=str(tmp_path / "missing" / "clinsync.duckdb"))

    def test_persists_across_connections(self, tmp_path, form):
        db_path = str(tmp_path / "clinsync.duckdb")
        adapter = DuckDBAdapter(db_path=db_path)
        adapter.initialize_schema()
        record = adapter.create_record(record_input(form), None, NOW)
        adapter.append(audit_entry(entity_id=str(record.id)))
        adapter.close()

        reopened = DuckDBAdapter(db_config=DatabaseConfig(db_type="duckdb", db_path=db_path))
        reopened.initialize_schema()
        assert reopened.get_record(record.id).patient_external_id == "PAT-100000-AAA"
        assert reopened.count() == 1
        assert reopened.query_health()
        reopened.close()
