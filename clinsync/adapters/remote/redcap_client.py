"""REDCap Remote Clients.

``RedcapClient`` submits patient records to a REDCap project through the
record import API. ``ScriptedRemoteClient`` is a stand-in with scripted
outcomes, used when no REDCap endpoint is configured and in tests.

Security Impact:
    - The API token is held as SecretStr and never logged
    - Only the record's business fields are sent; internal ids stay local
    - Remote failures are returned as Result failures, never raised

Architecture:
    - Implements RemoteSyncPort
    - httpx.AsyncClient is created lazily and reused across submissions
"""

import asyncio
import json
import logging
import time
from collections import deque
from typing import Callable, Deque, Optional, Union

import httpx
from pydantic import SecretStr

from clinsync.domain.models import PatientRecord
from clinsync.domain.ports import RemoteSyncPort, Result

logger = logging.getLogger(__name__)


def record_to_redcap_payload(record: PatientRecord) -> dict[str, str]:
    """Flatten a record into REDCap's flat import format.

    Empty optional fields are sent as empty strings, which REDCap treats as blank.
    """
    return {
        "record_id": record.patient_external_id,
        "first_name": record.first_name,
        "last_name": record.last_name,
        "date_of_birth": record.date_of_birth.isoformat() if record.date_of_birth else "",
        "gender": record.gender.value if record.gender else "",
        "demographics": record.demographics or "",
        "diagnosis": record.diagnosis or "",
        "treatment_plan": record.treatment_plan or "",
        "notes": record.notes or "",
    }


class RedcapClient(RemoteSyncPort):
    """Client for the REDCap record import API.

    Parameters:
        api_url: REDCap API endpoint (``https://redcap.example.org/api/``)
        api_token: Project API token
        timeout_seconds: HTTP timeout for one request
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)

    Example Usage:
        ```python
        client = RedcapClient(api_url, SecretStr(token))
        result = await client.submit(record)
        if result.is_success():
            print(f"REDCap id: {result.value}")
        await client.close()
        ```
    """

    def __init__(
        self,
        api_url: str,
        api_token: SecretStr,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_url = api_url
        self._api_token = api_token
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"Accept": "application/json"},
                timeout=self.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def submit(self, record: PatientRecord) -> Result[str]:
        """Import one record and return the id REDCap assigned to it.

        Returns:
            Result[str]: Success with the REDCap record id, or a failure
            whose ``error`` is the reason recorded on the record
        """
        form = {
            "token": self._api_token.get_secret_value(),
            "content": "record",
            "action": "import",
            "format": "json",
            "type": "flat",
            "overwriteBehavior": "normal",
            "forceAutoNumber": "true",
            "returnContent": "auto_ids",
            "returnFormat": "json",
            "data": json.dumps([record_to_redcap_payload(record)]),
        }
        client = await self.get_client()
        try:
            response = await client.post(self.api_url, data=form)
        except httpx.TimeoutException as e:
            logger.warning(f"REDCap request timed out for record {record.id}")
            return Result.failure_result(f"REDCap request timed out: {e}", error_type="SyncFailure")
        except httpx.HTTPError as e:
            logger.warning(f"REDCap request failed for record {record.id}: {type(e).__name__}")
            return Result.failure_result(f"REDCap unreachable: {e}", error_type="SyncFailure")

        if response.status_code >= 400:
            reason = self._error_message(response)
            logger.warning(f"REDCap rejected record {record.id}: HTTP {response.status_code}")
            return Result.failure_result(
                f"REDCap error {response.status_code}: {reason}",
                error_type="SyncFailure",
                error_details={"status_code": response.status_code},
            )

        external_id = self._parse_auto_id(response, record)
        if not external_id:
            return Result.failure_result(
                "REDCap response did not contain a record id",
                error_type="SyncFailure",
                error_details={"status_code": response.status_code},
            )
        logger.info(f"REDCap accepted record {record.id} as {external_id}")
        return Result.success_result(external_id)

    @staticmethod
    def _parse_auto_id(response: httpx.Response, record: PatientRecord) -> Optional[str]:
        # returnContent=auto_ids answers with ["<new id>,<submitted id>"]
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, list) and body:
            first = str(body[0])
            return first.split(",", 1)[0].strip() or None
        if isinstance(body, dict) and body.get("count"):
            return record.patient_external_id
        return None

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or "no response body"
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return str(body)[:200]


ScriptedOutcome = Union[str, Exception, Result, None]

DEFAULT_HISTORY_SIZE = 1000


class ScriptedRemoteClient(RemoteSyncPort):
    """Remote client with scripted outcomes.

    With no script every submission succeeds with a ``REDCAP_<ms>_<id>``
    id. A script maps each record to an outcome: a string is the external
    id, an exception is raised from ``submit``, a Result is returned as is.

    Parameters:
        outcome: Callable ``(record) -> outcome``, or a fixed outcome
        latency: Seconds to wait before answering (simulates a slow endpoint)
        history_size: Most recent submissions kept in ``submissions``
    """

    def __init__(
        self,
        outcome: Union[Callable[[PatientRecord], ScriptedOutcome], ScriptedOutcome] = None,
        latency: float = 0.0,
        history_size: int = DEFAULT_HISTORY_SIZE
    ):
        self._outcome = outcome
        self.latency = latency
        self.submissions: Deque[PatientRecord] = deque(maxlen=history_size)

    async def submit(self, record: PatientRecord) -> Result[str]:
        self.submissions.append(record)
        if self.latency:
            await asyncio.sleep(self.latency)

        outcome = self._outcome(record) if callable(self._outcome) else self._outcome
        if outcome is None:
            outcome = f"REDCAP_{int(time.time() * 1000)}_{record.id}"
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, Result):
            return outcome
        return Result.success_result(str(outcome))
