"""Unit tests for domain models and utilities."""

import random
from datetime import date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from clinsync.domain.enums import AuditAction, EntityType, SyncOutcome, SyncStatus
from clinsync.domain.models import (
    AuditEntry,
    AuditFilters,
    AuditStats,
    BatchSyncSummary,
    PatientRecord,
    PatientRecordInput,
    SyncResult,
    UserCreate,
    describe_validation_errors,
)
from clinsync.domain.utils import ensure_utc, generate_patient_external_id, to_naive_utc


class TestPatientRecordInput:
    """Test suite for entry form validation."""

    def test_valid_input(self, form):
        record = PatientRecordInput(**form())
        assert record.patient_external_id == "PAT-100000-AAA"
        assert record.date_of_birth == date(1980, 4, 12)
        assert record.gender.value == "male"

    @pytest.mark.parametrize("patient_id", ["PAT-12345-ABC", "PAT-123456-abc", "pat-123456-ABC", "123456", ""])
    def test_rejects_malformed_patient_id(self, form, patient_id):
        with pytest.raises(PydanticValidationError):
            PatientRecordInput(**form(patient_external_id=patient_id))

    def test_patient_id_is_trimmed(self, form):
        record = PatientRecordInput(**form(patient_external_id="  PAT-482913-QKD "))
        assert record.patient_external_id == "PAT-482913-QKD"

    @pytest.mark.parametrize("name", ["", "   ", "J", None])
    def test_rejects_missing_or_short_first_name(self, form, name):
        with pytest.raises(PydanticValidationError) as exc_info:
            PatientRecordInput(**form(first_name=name))
        fields = [item["field"] for item in describe_validation_errors(exc_info.value)]
        assert fields == ["first_name"]

    def test_rejects_future_date_of_birth(self, form):
        tomorrow = (datetime.now(timezone.utc) + timedelta(days=2)).date()
        with pytest.raises(PydanticValidationError) as exc_info:
            PatientRecordInput(**form(date_of_birth=tomorrow.isoformat()))
        assert "future" in str(exc_info.value)

    def test_blank_optional_fields_become_none(self, form):
        record = PatientRecordInput(**form(date_of_birth="", gender="", diagnosis="  ", notes=""))
        assert record.date_of_birth is None
        assert record.gender is None
        assert record.diagnosis is None
        assert record.notes is None

    def test_rejects_overlong_free_text(self, form):
        with pytest.raises(PydanticValidationError):
            PatientRecordInput(**form(diagnosis="x" * 201))

    def test_reports_every_invalid_field(self, form):
        with pytest.raises(PydanticValidationError) as exc_info:
            PatientRecordInput(**form(patient_external_id="bad", last_name=""))
        fields = {item["field"] for item in describe_validation_errors(exc_info.value)}
        assert fields == {"patient_external_id", "last_name"}


class TestPatientRecord:
    """Test suite for the external id / sync status invariant."""

    def _record(self, form, **overrides) -> dict:
        now = datetime(2024, 5, 1, tzinfo=timezone.utc)
        return {**form(), "id": 1, "created_at": now, "updated_at": now, **overrides}

    def test_pending_without_external_id(self, form):
        record = PatientRecord(**self._record(form))
        assert record.sync_status == SyncStatus.PENDING
        assert record.external_record_id is None

    def test_synced_requires_external_id(self, form):
        with pytest.raises(PydanticValidationError):
            PatientRecord(**self._record(form, sync_status="synced"))

    def test_error_rejects_external_id(self, form):
        with pytest.raises(PydanticValidationError):
            PatientRecord(**self._record(form, sync_status="error", external_record_id="REDCAP_1"))

    def test_naive_timestamps_are_utc(self, form):
        record = PatientRecord(**self._record(form, created_at=datetime(2024, 5, 1, 9, 0)))
        assert record.created_at.tzinfo == timezone.utc

    def test_label(self, form):
        assert PatientRecord(**self._record(form)).label == "PAT-100000-AAA (John Doe)"


class TestUserCreate:
    """Test suite for user input validation."""

    def test_email_is_lower_cased(self):
        user = UserCreate(email="  Jane@Clinic.COM ", password="secret1")
        assert user.email == "jane@clinic.com"

    def test_rejects_invalid_email(self):
        with pytest.raises(PydanticValidationError):
            UserCreate(email="not-an-email", password="secret1")

    def test_rejects_short_password(self):
        with pytest.raises(PydanticValidationError):
            UserCreate(email="jane@clinic.com", password="12345")

    def test_password_is_not_in_repr(self):
        user = UserCreate(email="jane@clinic.com", password="secret1")
        assert "secret1" not in repr(user)


class TestAuditFilters:
    """Test suite for audit filter date handling."""

    def test_date_only_bounds_cover_whole_day(self):
        filters = AuditFilters(date_from="2024-05-01", date_to="2024-05-01")
        assert filters.date_from == datetime(2024, 5, 1, 0, 0, tzinfo=timezone.utc)
        assert filters.date_to.date() == date(2024, 5, 1)
        assert filters.date_to.hour == 23

    def test_matches_is_conjunctive(self):
        entry = AuditEntry(
            actor_email="Researcher@Clinic.com",
            action=AuditAction.CREATE_PATIENT,
            entity_type=EntityType.PATIENT,
            entity_id="1",
            timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        )
        assert AuditFilters(actor_email="researcher").matches(entry)
        assert AuditFilters(action=AuditAction.CREATE_PATIENT, entity_id="1").matches(entry)
        assert not AuditFilters(action=AuditAction.CREATE_PATIENT, entity_id="2").matches(entry)
        assert not AuditFilters(date_from="2024-05-02").matches(entry)

    def test_blank_text_filters_are_ignored(self):
        filters = AuditFilters(actor_email="  ", entity_id="")
        assert filters.actor_email is None
        assert filters.entity_id is None


class TestSummaries:
    """Test suite for aggregate models."""

    def test_batch_summary_counts(self):
        results = [
            SyncResult(record_id=1, outcome=SyncOutcome.SYNCED, external_record_id="R1"),
            SyncResult(record_id=2, outcome=SyncOutcome.FAILED, reason="boom"),
            SyncResult(record_id=3, outcome=SyncOutcome.SKIPPED, reason="offline"),
        ]
        summary = BatchSyncSummary.from_results(results)
        assert (summary.attempted, summary.succeeded, summary.failed, summary.skipped) == (2, 1, 1, 1)

    def test_audit_stats_windows(self):
        now = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)

        def entry(hours_ago, action, actor):
            return AuditEntry(
                actor_email=actor,
                action=action,
                entity_type=EntityType.PATIENT,
                entity_id="1",
                timestamp=now - timedelta(hours=hours_ago),
            )

        stats = AuditStats.from_entries([
            entry(1, AuditAction.CREATE_PATIENT, "a@clinic.com"),
            entry(30, AuditAction.SYNC_PATIENT, "a@clinic.com"),
            entry(24 * 10, AuditAction.SYNC_FAILED, "b@clinic.com"),
        ], now)
        assert stats.total_entries == 3
        assert stats.last_24h == 1
        assert stats.last_7d == 2
        assert stats.users == {"a@clinic.com": 2, "b@clinic.com": 1}
        assert stats.actions["SYNC_FAILED"] == 1


class TestUtils:
    """Test suite for domain utilities."""

    def test_generated_patient_id_format(self):
        now = datetime(2024, 5, 1, 9, 0, 0, 482_000, tzinfo=timezone.utc)
        patient_id = generate_patient_external_id(now, random.Random(7))
        PatientRecordInput(patient_external_id=patient_id, first_name="Jo", last_name="Doe")
        assert patient_id.startswith(f"PAT-{str(int(now.timestamp() * 1000))[-6:]}-")

    def test_utc_conversion(self):
        aware = datetime(2024, 5, 1, 11, 0, tzinfo=timezone(timedelta(hours=2)))
        assert ensure_utc(aware) == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
        assert to_naive_utc(aware) == datetime(2024, 5, 1, 9, 0)
        assert ensure_utc(None) is None
