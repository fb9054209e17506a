"""Sync Engine - pushes patient records to REDCap.

The engine moves records through their sync lifecycle:

    pending -> synced   (REDCap accepted the record)
    pending -> error    (attempt failed or timed out)
    error   -> pending  (deliberate requeue)
    error   -> synced / error  (direct retry of a failed record)

Nothing is retried automatically. A retry is always a deliberate call:
a manual "Sync Now", or the bulk sync the application runs when the
connectivity monitor reports that the network came back.

Durability ordering for every attempt:
    1. record store status update
    2. audit entry append
    3. offline cache purge / status mark

A crash between 1 and 2 leaves a record whose status has no matching
audit entry. ``reconcile`` detects that state and can append the missing
entry. The cache is last because it is a mirror and can be rebuilt.

Architecture:
    - Domain service; depends only on ports, guardrails and the audit trail
    - Single asyncio event loop; remote submissions are the suspension points
    - Per-record RecordLockRegistry guard; no global lock
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from clinsync.domain.enums import (
    AuditAction,
    EntityType,
    SYNC_LIFECYCLE_ACTIONS,
    SyncOutcome,
    SyncStatus,
)
from clinsync.domain.guardrails import RecordLockRegistry
from clinsync.domain.models import (
    AuditFilters,
    BatchSyncSummary,
    Discrepancy,
    Failed,
    PatientRecord,
    Synced,
    SyncAttemptOutcome,
    SyncResult,
)
from clinsync.domain.ports import (
    AuditLogPort,
    InvalidTransitionError,
    OfflineCachePort,
    RecordStorePort,
    RemoteSyncPort,
)
from clinsync.domain.utils import utc_now
from clinsync.infrastructure.audit.audit_trail import AuditTrail

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"
RECONCILE_REASON = "reconciled: audit entry missing for current sync status"


def _always_online() -> bool:
    return True


class SyncEngine:
    """Synchronizes patient records with the remote system of record.

    Example Usage:
        ```python
        engine = SyncEngine(records, cache, remote, audit_log, audit_trail,
                            is_online=lambda: monitor.is_online)

        result = await engine.sync_record(record_id)
        summary = await engine.sync_all_pending()
        ```
    """

    def __init__(
        self,
        records: RecordStorePort,
        cache: OfflineCachePort,
        remote: RemoteSyncPort,
        audit_log: AuditLogPort,
        audit_trail: AuditTrail,
        is_online: Callable[[], bool] = _always_online,
        locks: Optional[RecordLockRegistry] = None,
        timeout_seconds: float = 30.0,
        max_concurrency: int = 5,
        clock: Callable[[], datetime] = utc_now
    ):
        """Initialize sync engine.

        Parameters:
            records: Record store holding the authoritative sync status
            cache: Offline cache mirroring records while REDCap is unreachable
            remote: REDCap client
            audit_log: Audit log (read by ``reconcile``)
            audit_trail: Builds and appends audit entries
            is_online: Returns the current connectivity state
            locks: Per-record in-flight guard
            timeout_seconds: Attempts running longer fail with reason ``timeout``
            max_concurrency: Upper bound on concurrent attempts during bulk sync
            clock: Source of timestamps
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self._records = records
        self._cache = cache
        self._remote = remote
        self._audit_log = audit_log
        self._trail = audit_trail
        self._is_online = is_online
        self._locks = locks or RecordLockRegistry()
        self.timeout_seconds = timeout_seconds
        self.max_concurrency = max_concurrency
        self._clock = clock

    @property
    def locks(self) -> RecordLockRegistry:
        return self._locks

    # ------------------------------------------------------------------
    # Single-record sync
    # ------------------------------------------------------------------

    async def sync_record(self, record_id: int, actor_email: Optional[str] = None) -> SyncResult:
        """Attempt to push one record to REDCap.

        A record that is already synced is left alone and produces no audit
        entry. While offline the attempt is deferred: the record is captured
        in the offline cache, and a record in ``error`` is first requeued
        so the reconnect sync picks it up. If another attempt
        on the same record is in flight, this call waits for it and then
        reports the record's state instead of submitting it a second time.

        Parameters:
            record_id: Record store identifier
            actor_email: Acting user (defaults to the request context actor)

        Returns:
            SyncResult: Outcome of the request

        Raises:
            NotFoundError: If the record does not exist
        """
        record = self._records.get_record(record_id)
        if record.sync_status == SyncStatus.SYNCED:
            return self._already_synced(record)

        if not self._is_online():
            if self._locks.is_locked(record_id):
                return SyncResult(
                    record_id=record.id,
                    outcome=SyncOutcome.SKIPPED,
                    sync_status=record.sync_status,
                    reason="sync already in progress",
                )
            if record.sync_status == SyncStatus.ERROR:
                # Bulk sync only picks up pending records
                record = self.requeue(record_id, actor_email=actor_email)
            self._cache.capture(record, self._clock())
            logger.info(f"Offline: deferred sync of record {record_id} to the offline cache")
            return SyncResult(
                record_id=record.id,
                outcome=SyncOutcome.DEFERRED,
                sync_status=record.sync_status,
                reason="offline",
            )

        waited = self._locks.is_locked(record_id)
        async with self._locks.hold(record_id):
            record = self._records.get_record(record_id)
            if record.sync_status == SyncStatus.SYNCED:
                return self._already_synced(record)
            if waited and record.sync_status == SyncStatus.ERROR:
                # The attempt we waited on just failed; report it rather than retrying
                return SyncResult(
                    record_id=record.id,
                    outcome=SyncOutcome.SKIPPED,
                    sync_status=record.sync_status,
                    reason="concurrent attempt failed",
                )
            return await self._attempt(record, actor_email)

    # ------------------------------------------------------------------
    # Bulk sync
    # ------------------------------------------------------------------

    async def sync_all_pending(self, actor_email: Optional[str] = None) -> BatchSyncSummary:
        """Attempt every ``pending`` record independently.

        Partial failure does not abort the batch; each attempt is audited
        on its own. Records with an attempt already in flight are skipped.
        While offline nothing is attempted and every pending record is
        reported as skipped.

        Parameters:
            actor_email: Acting user (defaults to the request context actor)

        Returns:
            BatchSyncSummary: Counts of succeeded, failed and skipped records
        """
        pending = self._records.list_records(status=SyncStatus.PENDING)
        if not pending:
            return BatchSyncSummary()

        if not self._is_online():
            logger.info(f"Offline: bulk sync skipped {len(pending)} pending record(s)")
            return BatchSyncSummary.from_results([
                SyncResult(
                    record_id=record.id,
                    outcome=SyncOutcome.SKIPPED,
                    sync_status=record.sync_status,
                    reason="offline",
                )
                for record in pending
            ])

        logger.info(f"Bulk sync started for {len(pending)} pending record(s)")
        semaphore = asyncio.Semaphore(self.max_concurrency)
        outcomes = await asyncio.gather(
            *(self._sync_pending(record, semaphore, actor_email) for record in pending),
            return_exceptions=True,
        )

        results: list[SyncResult] = []
        for record, outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(f"Bulk sync of record {record.id} raised: {outcome}", exc_info=outcome)
                results.append(SyncResult(
                    record_id=record.id,
                    outcome=SyncOutcome.SKIPPED,
                    sync_status=record.sync_status,
                    reason=str(outcome) or type(outcome).__name__,
                ))
            else:
                results.append(outcome)

        summary = BatchSyncSummary.from_results(results)
        logger.info(
            f"Bulk sync finished: {summary.succeeded} succeeded, "
            f"{summary.failed} failed, {summary.skipped} skipped"
        )
        return summary

    async def _sync_pending(
        self,
        record: PatientRecord,
        semaphore: asyncio.Semaphore,
        actor_email: Optional[str]
    ) -> SyncResult:
        async with semaphore:
            if self._locks.is_locked(record.id):
                return SyncResult(
                    record_id=record.id,
                    outcome=SyncOutcome.SKIPPED,
                    sync_status=record.sync_status,
                    reason="sync already in progress",
                )
            async with self._locks.hold(record.id):
                current = self._records.get_record(record.id)
                if current.sync_status != SyncStatus.PENDING:
                    return SyncResult(
                        record_id=current.id,
                        outcome=SyncOutcome.SKIPPED,
                        sync_status=current.sync_status,
                        external_record_id=current.external_record_id,
                        reason=f"status changed to {current.sync_status.value}",
                    )
                return await self._attempt(current, actor_email)

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    async def _attempt(self, record: PatientRecord, actor_email: Optional[str]) -> SyncResult:
        """Submit a record and apply the outcome. Caller holds the record's guard."""
        outcome = await self._submit(record)
        now = self._clock()
        updated = self._records.update_sync_result(record.id, outcome, now)

        if isinstance(outcome, Synced):
            self._trail.record_sync_success(record, updated, actor_email=actor_email)
            self._cache.purge(record.id)
            logger.info(f"Record {record.id} synced as {outcome.external_record_id}")
            return SyncResult(
                record_id=updated.id,
                outcome=SyncOutcome.SYNCED,
                sync_status=updated.sync_status,
                external_record_id=updated.external_record_id,
            )

        self._trail.record_sync_failure(record, updated, outcome.reason, actor_email=actor_email)
        if self._cache.get(record.id) is not None:
            self._cache.mark_status(record.id, SyncStatus.ERROR, now, error=outcome.reason)
        logger.warning(f"Record {record.id} sync failed: {outcome.reason}")
        return SyncResult(
            record_id=updated.id,
            outcome=SyncOutcome.FAILED,
            sync_status=updated.sync_status,
            reason=outcome.reason,
        )

    async def _submit(self, record: PatientRecord) -> SyncAttemptOutcome:
        try:
            result = await asyncio.wait_for(self._remote.submit(record), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Record {record.id} submission exceeded {self.timeout_seconds}s")
            return Failed(TIMEOUT_REASON)
        except Exception as e:
            # Remote clients report failures through Result; anything raised is recorded as a failure
            logger.error(f"Remote client raised for record {record.id}: {e}", exc_info=True)
            return Failed(str(e) or type(e).__name__)

        if result.is_success() and result.value:
            return Synced(str(result.value))
        return Failed(result.error or "remote system returned no record id")

    def _already_synced(self, record: PatientRecord) -> SyncResult:
        return SyncResult(
            record_id=record.id,
            outcome=SyncOutcome.ALREADY_SYNCED,
            sync_status=record.sync_status,
            external_record_id=record.external_record_id,
        )

    # ------------------------------------------------------------------
    # Requeue and reconciliation
    # ------------------------------------------------------------------

    def requeue(self, record_id: int, actor_email: Optional[str] = None) -> PatientRecord:
        """Move an ``error`` record back to ``pending`` so bulk sync picks it up.

        Raises:
            NotFoundError: If the record does not exist
            InvalidTransitionError: If the record is not in ``error`` or is being synced
        """
        record = self._records.get_record(record_id)
        if self._locks.is_locked(record_id):
            raise InvalidTransitionError(
                f"Record {record_id} has a sync attempt in progress",
                current=record.sync_status,
                target=SyncStatus.PENDING,
            )
        updated = self._records.mark_pending(record_id, self._clock())
        self._trail.record_requeue(record, updated, actor_email=actor_email)
        cached = self._cache.get(record_id)
        if cached is not None:
            self._cache.capture(updated, self._clock())
        return updated

    def reconcile(self, repair: bool = False) -> list[Discrepancy]:
        """Find records whose sync status has no matching audit entry.

        For each record the latest sync lifecycle entry is compared with
        the current status: ``synced`` expects SYNC_PATIENT, ``error``
        expects SYNC_FAILED, and ``pending`` expects either no lifecycle
        entry yet or REQUEUE_PATIENT.

        Parameters:
            repair: Append the missing entry for each discrepancy

        Returns:
            list[Discrepancy]: One item per inconsistent record
        """
        latest: dict[str, tuple[AuditAction, Optional[str]]] = {}
        for entry in self._audit_log.query(AuditFilters(entity_type=EntityType.PATIENT)):
            if entry.action not in SYNC_LIFECYCLE_ACTIONS or entry.entity_id in latest:
                continue
            status_change = entry.changes.get("sync_status")
            latest[entry.entity_id] = (entry.action, status_change.to_value if status_change else None)

        discrepancies: list[Discrepancy] = []
        for record in self._records.list_records():
            if self._locks.is_locked(record.id):
                continue
            last_action, last_status = latest.get(str(record.id), (None, None))
            expected = self._expected_action(record.sync_status, last_action)
            if expected is None:
                continue

            discrepancy = Discrepancy(
                record_id=record.id,
                patient_external_id=record.patient_external_id,
                sync_status=record.sync_status,
                last_audited_action=last_action,
                expected_action=expected,
            )
            if repair:
                previous = SyncStatus(last_status) if last_status else SyncStatus.PENDING
                if previous == record.sync_status:
                    previous = SyncStatus.PENDING if record.sync_status != SyncStatus.PENDING else SyncStatus.ERROR
                self._trail.record_reconciled(record, expected, previous, RECONCILE_REASON)
                discrepancy = discrepancy.model_copy(update={"repaired": True})
            logger.warning(
                f"Reconcile: record {record.id} is {record.sync_status.value} but last audited action "
                f"is {last_action.value if last_action else 'none'}"
                f"{' (repaired)' if discrepancy.repaired else ''}"
            )
            discrepancies.append(discrepancy)
        return discrepancies

    @staticmethod
    def _expected_action(status: SyncStatus, last_action: Optional[AuditAction]) -> Optional[AuditAction]:
        """Return the action that should be on record, or None if consistent."""
        if status == SyncStatus.SYNCED:
            return None if last_action == AuditAction.SYNC_PATIENT else AuditAction.SYNC_PATIENT
        if status == SyncStatus.ERROR:
            return None if last_action == AuditAction.SYNC_FAILED else AuditAction.SYNC_FAILED
        if last_action in (None, AuditAction.REQUEUE_PATIENT):
            return None
        return AuditAction.REQUEUE_PATIENT
