"""Tests for the REDCap clients."""

import json
from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest
from pydantic import SecretStr

from clinsync.adapters.remote import RedcapClient, ScriptedRemoteClient
from clinsync.adapters.remote.redcap_client import record_to_redcap_payload
from clinsync.domain.models import PatientRecord
from clinsync.domain.ports import Result

API_URL = "https://redcap.example.org/api/"
NOW = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def record(form):
    return PatientRecord(**form(), id=12, created_at=NOW, updated_at=NOW)


def client_with(handler) -> RedcapClient:
    return RedcapClient(API_URL, SecretStr("super-secret-token"), transport=httpx.MockTransport(handler))


class TestRecordPayload:
    def test_flat_payload(self, record):
        payload = record_to_redcap_payload(record)
        assert payload["record_id"] == "PAT-100000-AAA"
        assert payload["date_of_birth"] == "1980-04-12"
        assert payload["gender"] == "male"
        assert payload["demographics"] == ""
        assert "id" not in payload


class TestRedcapClient:
    """Test suite for RedcapClient against a mocked transport."""

    async def test_successful_import(self, record):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["form"] = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            seen["url"] = str(request.url)
            return httpx.Response(200, json=["REDCAP-17,PAT-100000-AAA"])

        client = client_with(handler)
        result = await client.submit(record)
        await client.close()

        assert result.is_success()
        assert result.value == "REDCAP-17"
        assert seen["url"] == API_URL
        form = seen["form"]
        assert form["token"] == "super-secret-token"
        assert form["content"] == "record"
        assert form["forceAutoNumber"] == "true"
        assert json.loads(form["data"])[0]["last_name"] == "Doe"

    async def test_count_response_falls_back_to_patient_id(self, record):
        client = client_with(lambda request: httpx.Response(200, json={"count": 1}))
        result = await client.submit(record)
        assert result.value == "PAT-100000-AAA"

    async def test_http_error_is_failure(self, record):
        client = client_with(lambda request: httpx.Response(403, json={"error": "You do not have permissions"}))

        result = await client.submit(record)

        assert result.is_failure()
        assert result.error_type == "SyncFailure"
        assert result.error == "REDCap error 403: You do not have permissions"
        assert result.error_details["status_code"] == 403

    async def test_connection_error_is_failure(self, record):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await client_with(handler).submit(record)

        assert result.is_failure()
        assert result.error.startswith("REDCap unreachable")

    async def test_timeout_is_failure(self, record):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        result = await client_with(handler).submit(record)

        assert result.is_failure()
        assert "timed out" in result.error

    async def test_unparseable_body_is_failure(self, record):
        result = await client_with(lambda request: httpx.Response(200, text="<html>")).submit(record)
        assert result.is_failure()
        assert result.error == "REDCap response did not contain a record id"

    def test_token_is_not_in_repr(self):
        client = RedcapClient(API_URL, SecretStr("super-secret-token"))
        assert "super-secret-token" not in repr(vars(client))


class TestScriptedRemoteClient:
    """Test suite for the scripted client."""

    async def test_default_success(self, record):
        client = ScriptedRemoteClient()
        result = await client.submit(record)
        assert result.value.startswith("REDCAP_")
        assert result.value.endswith("_12")
        assert list(client.submissions) == [record]

    async def test_scripted_outcomes(self, record):
        assert (await ScriptedRemoteClient("R-1").submit(record)).value == "R-1"

        failure = Result.failure_result("REDCap error 500", error_type="SyncFailure")
        assert (await ScriptedRemoteClient(failure).submit(record)).is_failure()

        with pytest.raises(ConnectionError):
            await ScriptedRemoteClient(ConnectionError("down")).submit(record)

        per_record = ScriptedRemoteClient(lambda r: f"R-{r.id}")
        assert (await per_record.submit(record)).value == "R-12"

    async def test_submission_history_is_bounded(self, record):
        client = ScriptedRemoteClient(history_size=3)
        for record_id in range(1, 6):
            await client.submit(record.model_copy(update={"id": record_id}))

        assert [r.id for r in client.submissions] == [3, 4, 5]
