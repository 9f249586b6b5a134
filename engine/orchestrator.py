"""
ETL state machine orchestration

Composes the locking, retry, checksum and audit services into the file/run
lifecycle used by workers:

    create_etl_file -> create_etl_run -> start_processing -> complete_parsing
        -> start_validation -> complete_validation -> [approve] -> start_loading
        -> complete_loading

A run and its file move together; any step may end in ``handle_run_failure``.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from datetime import datetime, timedelta
import logging
import time
import uuid

from core.exceptions import DuplicateKeyError, ETLException, RecordNotFoundError
from engine.audit import AuditLogger
from engine.checksum import ChecksumService
from engine.loaders.fact_loader import IdempotentUpsertEngine
from engine.locking import LOCKED_TABLES, Mutation, OptimisticLockingService
from engine.retry import RetryService, is_retryable
from engine.state_model import PROCESSING_STATES, coerce_state, is_valid_transition
from engine.store.base import RecordStore, TableLike, asc, desc, eq, in_, jsonable, lt
from models import TABLE_MODELS
from models.base import ETLState, LogLevel, RecordTable
from schemas.engine import LockingErrorCode, LockingOptions, LockingResult, StateMachineConfig
from schemas.retry import (
    DeadLetterQueueRecord,
    DuplicateDetectionResult,
    FailureHandlingResult,
    ReprocessingDecision,
    ReprocessingOptions,
    RetryQueueResult,
    RetryStats,
)
from schemas.state import (
    ETLFileCreate,
    ETLFileRecord,
    ETLRunRecord,
    SafeTransitionRequest,
    StateHistoryEntry,
    StateTransitionRequest,
    StateTransitionResult,
)

logger = logging.getLogger(__name__)

RunProcessor = Callable[[ETLRunRecord], Awaitable[Any]]


def _columns(table: RecordTable) -> frozenset:
    return frozenset(TABLE_MODELS[table].__table__.columns.keys())


class ETLStateMachineService:
    """
    Entry point of the engine.

    Transition failures come back as ``StateTransitionResult`` values; only
    lookups of missing records and failure bookkeeping raise.
    """

    def __init__(
        self,
        store: RecordStore,
        config: Optional[StateMachineConfig] = None,
        worker_id: Optional[str] = None
    ):
        self.store = store
        self.config = config or StateMachineConfig()
        self.worker_id = worker_id or f"worker-{uuid.uuid4()}"

        self.locking = OptimisticLockingService(store, self.config.locking)
        self.audit = AuditLogger(store)
        self.retry = RetryService(store, self.config.retry, self.locking)
        self.checksum = ChecksumService(
            store,
            self.locking,
            self.audit,
            reprocess_after_days=self.config.duplicate_reprocess_after_days,
        )

    # ------------------------------------------------------------------
    # Files and runs
    # ------------------------------------------------------------------

    async def create_etl_file(self, data: ETLFileCreate, file_id: Optional[str] = None) -> ETLFileRecord:
        """Register an uploaded file in state ``uploaded``"""
        now = datetime.utcnow()
        entry = StateHistoryEntry(
            state=ETLState.UPLOADED,
            timestamp=now,
            actor=data.uploaded_by,
            message="File uploaded",
        )
        row = await self.store.insert(RecordTable.ETL_FILE, {
            "id": file_id or str(uuid.uuid4()),
            "organization_id": data.organization_id,
            "filename": data.filename,
            "filepath": data.filepath,
            "file_size": data.file_size,
            "mime_type": data.mime_type,
            "checksum": data.checksum,
            "current_state": ETLState.UPLOADED.value,
            "state_history": [entry.to_json()],
            "uploaded_at": now,
            "uploaded_by": data.uploaded_by,
            "extra_metadata": data.extra_metadata,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        })

        await self.audit.log_event(
            organization_id=data.organization_id,
            action="file_created",
            message=f"File {data.filename} uploaded",
            file_id=row["id"],
            state=ETLState.UPLOADED,
            user_id=data.uploaded_by,
            details={"checksum": data.checksum, "file_size": data.file_size},
        )
        logger.info(
            f"Registered file {data.filename}",
            extra={"organization_id": data.organization_id, "file_id": row["id"]}
        )
        return ETLFileRecord.model_validate(row)

    async def create_etl_run(
        self,
        file_id: str,
        started_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ETLRunRecord:
        """
        Open the next run of a file.

        Run numbers are per file and start at 1; two workers racing for the
        same number are separated by the unique (file_id, run_number) index.
        """
        file = await self.store.get(RecordTable.ETL_FILE, file_id)
        if file is None:
            raise RecordNotFoundError(
                f"File {file_id} not found",
                context={"table": RecordTable.ETL_FILE.value, "record_id": file_id}
            )

        attempts = self.config.locking.max_retries + 1
        for attempt in range(attempts):
            latest = await self.store.query(
                RecordTable.ETL_RUN,
                [eq("file_id", file_id)],
                order_by=[desc("run_number")],
                limit=1,
            )
            run_number = latest[0]["run_number"] + 1 if latest else 1
            now = datetime.utcnow()
            entry = StateHistoryEntry(
                state=ETLState.UPLOADED,
                timestamp=now,
                actor=started_by,
                message=f"Run {run_number} started",
            )
            try:
                row = await self.store.insert(RecordTable.ETL_RUN, {
                    "id": f"run-{uuid.uuid4()}",
                    "file_id": file_id,
                    "organization_id": file["organization_id"],
                    "run_number": run_number,
                    "current_state": ETLState.UPLOADED.value,
                    "state_history": [entry.to_json()],
                    "started_at": now,
                    "retry_count": 0,
                    "extra_metadata": metadata or {},
                    "version": 1,
                    "created_at": now,
                    "updated_at": now,
                })
            except DuplicateKeyError:
                if attempt == attempts - 1:
                    raise
                logger.debug(f"Run number {run_number} of file {file_id} taken, retrying")
                continue

            logger.info(
                f"Created run {run_number}",
                extra={"organization_id": file["organization_id"], "file_id": file_id, "run_id": row["id"]}
            )
            return ETLRunRecord.model_validate(row)

    async def get_etl_file(self, file_id: str) -> Optional[ETLFileRecord]:
        row = await self.store.get(RecordTable.ETL_FILE, file_id)
        return ETLFileRecord.model_validate(row) if row else None

    async def get_etl_run(self, run_id: str) -> Optional[ETLRunRecord]:
        row = await self.store.get(RecordTable.ETL_RUN, run_id)
        return ETLRunRecord.model_validate(row) if row else None

    async def get_file_runs(self, file_id: str) -> List[ETLRunRecord]:
        rows = await self.store.query(
            RecordTable.ETL_RUN, [eq("file_id", file_id)], order_by=[asc("run_number")]
        )
        return [ETLRunRecord.model_validate(row) for row in rows]

    async def _require_run(self, run_id: str) -> Dict[str, Any]:
        run = await self.store.get(RecordTable.ETL_RUN, run_id)
        if run is None:
            raise RecordNotFoundError(
                f"Run {run_id} not found",
                context={"table": RecordTable.ETL_RUN.value, "record_id": run_id}
            )
        return run

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _targets(self, request: StateTransitionRequest) -> List[Tuple[RecordTable, str]]:
        # The run is the primary record when both are given
        targets = []
        if request.run_id:
            targets.append((RecordTable.ETL_RUN, request.run_id))
        if request.file_id:
            targets.append((RecordTable.ETL_FILE, request.file_id))
        return targets

    @staticmethod
    def _failed_result(
        code: LockingErrorCode,
        error: str,
        previous_state: Optional[ETLState] = None
    ) -> StateTransitionResult:
        return StateTransitionResult(
            success=False,
            previous_state=previous_state,
            current_state=previous_state,
            error=error,
            error_code=code.value,
        )

    async def transition_state(self, request: StateTransitionRequest) -> StateTransitionResult:
        """
        Move a run and/or its file to ``request.to_state``.

        Every target is checked against the transition table before anything
        is written; an illegal pair is rejected without touching the store.
        Each record is then written with ``safe_state_transition``. Records
        are not updated atomically together: if the second write fails the
        first one stands and the failure is reported.
        """
        started = time.monotonic()
        session_id = request.session_id or self.worker_id
        to_state = request.to_state

        rows = []
        for table, record_id in self._targets(request):
            row = await self.store.get(table, record_id)
            if row is None:
                return self._failed_result(
                    LockingErrorCode.RECORD_NOT_FOUND, f"{table.value} {record_id} not found"
                )
            rows.append((table, row))

        primary_state = coerce_state(rows[0][1]["current_state"])
        previous_state = request.from_state or primary_state

        for table, row in rows:
            from_state = request.from_state or row["current_state"]
            if not is_valid_transition(from_state, to_state):
                result = self._failed_result(
                    LockingErrorCode.INVALID_TRANSITION,
                    f"Invalid state transition for {table.value} {row['id']}: "
                    f"{getattr(from_state, 'value', from_state)} -> {to_state.value}",
                    primary_state,
                )
                result.log_id = await self._audit_transition(request, result, session_id, started)
                return result

        versions = {}
        for table, row in rows:
            columns = _columns(table)
            locked = await self.locking.safe_state_transition(SafeTransitionRequest(
                table=table,
                record_id=row["id"],
                from_state=request.from_state or row["current_state"],
                to_state=to_state,
                session_id=session_id,
                actor=request.user_id,
                message=request.message,
                metadata=request.metadata,
                patch={k: v for k, v in request.patch.items() if k in columns},
            ))
            if not locked.success:
                if versions:
                    logger.error(
                        f"Partial transition to {to_state.value}: {table.value} {row['id']} "
                        f"failed after its companion record moved: {locked.error}"
                    )
                result = self._failed_result(locked.error_code, locked.error, primary_state)
                result.run_version = versions.get(RecordTable.ETL_RUN)
                result.file_version = versions.get(RecordTable.ETL_FILE)
                result.log_id = await self._audit_transition(request, result, session_id, started)
                return result
            versions[table] = locked.current_version

        result = StateTransitionResult(
            success=True,
            previous_state=previous_state,
            current_state=to_state,
            run_version=versions.get(RecordTable.ETL_RUN),
            file_version=versions.get(RecordTable.ETL_FILE),
        )
        result.log_id = await self._audit_transition(request, result, session_id, started)
        return result

    async def _audit_transition(
        self,
        request: StateTransitionRequest,
        result: StateTransitionResult,
        session_id: str,
        started: float
    ) -> Optional[str]:
        details = {**(request.metadata or {}), "session_id": session_id}
        if result.file_version is not None:
            details["file_version"] = result.file_version
        if result.run_version is not None:
            details["run_version"] = result.run_version
        if not result.success:
            details["error_code"] = result.error_code

        return await self.audit.log_event(
            organization_id=request.organization_id,
            action="state_transition",
            message=(
                request.message or f"State changed to {request.to_state.value}"
                if result.success else result.error
            ),
            level=LogLevel.INFO if result.success else LogLevel.WARNING,
            file_id=request.file_id,
            run_id=request.run_id,
            details=details,
            state=request.to_state if result.success else result.current_state,
            previous_state=result.previous_state,
            user_id=request.user_id,
            success=result.success,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def _step(
        self,
        run_id: str,
        to_state: ETLState,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        message: Optional[str] = None,
        patch: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> StateTransitionResult:
        run = await self._require_run(run_id)
        return await self.transition_state(StateTransitionRequest(
            organization_id=run["organization_id"],
            to_state=to_state,
            file_id=run["file_id"],
            run_id=run_id,
            user_id=user_id,
            session_id=session_id,
            message=message,
            metadata=metadata,
            patch=patch or {},
        ))

    async def start_processing(self, run_id: str, session_id: Optional[str] = None) -> StateTransitionResult:
        """Claim the run for ``session_id`` and enter parsing"""
        return await self._step(
            run_id, ETLState.PARSING, session_id, message="Processing started", patch={"error_message": None}
        )

    async def complete_parsing(
        self,
        run_id: str,
        records_total: int,
        session_id: Optional[str] = None
    ) -> StateTransitionResult:
        return await self._step(
            run_id,
            ETLState.PARSED,
            session_id,
            message=f"Parsing completed: {records_total} records found",
            patch={"records_total": records_total},
        )

    async def start_validation(self, run_id: str, session_id: Optional[str] = None) -> StateTransitionResult:
        return await self._step(run_id, ETLState.VALIDATING, session_id, message="Validation started")

    async def complete_validation(
        self,
        run_id: str,
        records_processed: int,
        records_failed: int,
        session_id: Optional[str] = None
    ) -> StateTransitionResult:
        """
        Enter validated, then route on ``require_approval``:
        awaiting_approval when approval is required, loading otherwise.
        """
        validated = await self._step(
            run_id,
            ETLState.VALIDATED,
            session_id,
            message=f"Validation completed: {records_processed} processed, {records_failed} failed",
            patch={"records_processed": records_processed, "records_failed": records_failed},
        )
        if not validated.success:
            return validated

        if self.config.require_approval:
            return await self._step(
                run_id, ETLState.AWAITING_APPROVAL, session_id, message="Waiting for approval"
            )
        return await self._step(run_id, ETLState.LOADING, session_id, message="Loading started")

    async def approve(self, run_id: str, user_id: str, message: Optional[str] = None) -> StateTransitionResult:
        return await self._step(
            run_id,
            ETLState.APPROVED,
            user_id=user_id,
            message=message or f"Approved by {user_id}",
            patch={"approved_by": user_id},
        )

    async def start_loading(self, run_id: str, session_id: Optional[str] = None) -> StateTransitionResult:
        return await self._step(run_id, ETLState.LOADING, session_id, message="Loading started")

    async def complete_loading(
        self,
        run_id: str,
        records_loaded: Optional[int] = None,
        session_id: Optional[str] = None
    ) -> StateTransitionResult:
        patch = {"next_retry_at": None}
        if records_loaded is not None:
            patch["records_processed"] = records_loaded
        return await self._step(
            run_id, ETLState.LOADED, session_id, message="Load completed", patch=patch
        )

    async def cancel(
        self,
        run_id: str,
        user_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> StateTransitionResult:
        return await self._step(
            run_id,
            ETLState.CANCELLED,
            user_id=user_id,
            message=reason or "Cancelled",
            patch={"next_retry_at": None},
        )

    # ------------------------------------------------------------------
    # Failures and retries
    # ------------------------------------------------------------------

    async def handle_run_failure(
        self,
        run_id: str,
        error_message: str,
        error_details: Optional[Dict[str, Any]] = None,
        is_transient: bool = True,
        session_id: Optional[str] = None
    ) -> FailureHandlingResult:
        """
        Record a failed run and schedule its retry or dead-letter it.

        The transition is made on behalf of the session holding the run
        unless ``session_id`` is given.

        Raises:
            RecordNotFoundError: If the run does not exist
            ETLException: If the run cannot be moved to failed
        """
        run = await self._require_run(run_id)
        state = run["current_state"]

        if state != ETLState.FAILED.value:
            result = await self._step(
                run_id,
                ETLState.FAILED,
                session_id or run.get("processing_by"),
                message=error_message,
                patch={"error_message": error_message, "error_details": jsonable(error_details)},
                metadata={"is_transient": is_transient},
            )
            if not result.success:
                LockingResult.failure(
                    LockingErrorCode(result.error_code),
                    result.error,
                    details={"from_state": state, "to_state": ETLState.FAILED.value},
                ).raise_for_error()

        return await self.retry.handle_failure(run_id, error_message, error_details, is_transient)

    async def process_retry_queue(
        self,
        processor: RunProcessor,
        organization_id: Optional[str] = None
    ) -> RetryQueueResult:
        """
        Re-enter parsing for every retry-ready run and hand it to ``processor``.

        The processor drives the run onward with this service's ``worker_id``
        as session. Any exception it raises is classified and recorded as a
        run failure.
        """
        summary = RetryQueueResult()
        for run in await self.retry.get_retry_ready_runs(organization_id):
            summary.picked_up += 1
            started = await self._step(
                run.id,
                ETLState.PARSING,
                self.worker_id,
                message=f"Retry {run.retry_count} started",
                patch={"next_retry_at": None},
            )
            if not started.success:
                # Usually another worker got there first
                summary.skipped += 1
                summary.errors.append({"run_id": run.id, "error": started.error or "transition failed"})
                continue

            try:
                await processor(await self.get_etl_run(run.id))
                summary.processed += 1
            except Exception as e:
                error_type = self.retry.classify_error(e)
                logger.error(
                    f"Retry of run {run.id} failed ({error_type.value}): {e}",
                    extra={"organization_id": run.organization_id, "run_id": run.id}
                )
                summary.failed += 1
                summary.errors.append({"run_id": run.id, "error": str(e)})
                try:
                    await self.handle_run_failure(
                        run.id,
                        str(e),
                        {"error_type": error_type.value, "exception": type(e).__name__},
                        is_transient=is_retryable(error_type),
                        session_id=self.worker_id,
                    )
                except ETLException as failure_error:
                    # The processor may have moved the run somewhere it cannot fail from
                    logger.error(
                        f"Could not record failure of run {run.id}: {failure_error.message}",
                        extra={"organization_id": run.organization_id, "run_id": run.id}
                    )
                    summary.errors.append({"run_id": run.id, "error": failure_error.message})

        if summary.picked_up:
            logger.info(
                f"Retry queue: {summary.processed} processed, {summary.failed} failed, "
                f"{summary.skipped} skipped"
            )
        return summary

    async def release_stale_runs(self) -> List[str]:
        """Fail runs whose processing session outlived ``stale_run_timeout_ms``"""
        cutoff = datetime.utcnow() - timedelta(milliseconds=self.config.stale_run_timeout_ms)
        stale = await self.store.query(
            RecordTable.ETL_RUN,
            [
                in_("current_state", [s.value for s in PROCESSING_STATES]),
                lt("processing_started_at", cutoff),
            ],
        )

        released = []
        for run in stale:
            try:
                await self.handle_run_failure(
                    run["id"],
                    "Processing timeout - stale session detected",
                    {
                        "processing_by": run["processing_by"],
                        "processing_started_at": run["processing_started_at"],
                        "state": run["current_state"],
                    },
                    is_transient=True,
                )
                released.append(run["id"])
            except ETLException as e:
                logger.error(f"Failed to release stale run {run['id']}: {e.message}")

        if released:
            logger.warning(f"Released {len(released)} stale runs")
        return released

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    async def update_with_lock(
        self,
        table: TableLike,
        record_id: str,
        mutation: Mutation,
        options: Optional[LockingOptions] = None
    ) -> LockingResult:
        return await self.locking.update_with_lock(table, record_id, mutation, options)

    async def with_lock(
        self,
        table: TableLike,
        record_id: str,
        operation: Callable[[], Awaitable[Any]],
        ttl_ms: Optional[int] = None
    ) -> LockingResult:
        return await self.locking.with_lock(table, record_id, operation, ttl_ms)

    async def release_expired_locks(self) -> Dict[str, int]:
        return {table.value: await self.locking.release_expired_locks(table) for table in LOCKED_TABLES}

    async def clear_stale_processing_sessions(self) -> Dict[str, int]:
        """
        Clear abandoned sessions on records outside the processing states.

        A run stuck in parsing, validating or loading keeps its session so
        ``release_stale_runs`` can still find it and fail it.
        """
        idle_states = [s.value for s in ETLState if s not in PROCESSING_STATES]
        return {
            table.value: await self.locking.clear_stale_processing_sessions(table, states=idle_states)
            for table in LOCKED_TABLES
        }

    async def get_locking_stats(self, organization_id: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        return {
            table.value: await self.locking.get_concurrency_stats(table, organization_id)
            for table in LOCKED_TABLES
        }

    # ------------------------------------------------------------------
    # Retry and dead-letter queue
    # ------------------------------------------------------------------

    async def get_retry_ready_runs(self, organization_id: Optional[str] = None) -> List[ETLRunRecord]:
        return await self.retry.get_retry_ready_runs(organization_id)

    async def clear_retry_schedule(self, run_id: str) -> LockingResult:
        return await self.retry.clear_retry_schedule(run_id)

    async def get_dead_letter_queue_entries(
        self,
        organization_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[DeadLetterQueueRecord]:
        return await self.retry.get_dead_letter_queue_entries(organization_id, limit, offset)

    async def mark_for_retry(self, entry_id: str, retry_after: Optional[datetime] = None) -> DeadLetterQueueRecord:
        return await self.retry.mark_for_retry(entry_id, retry_after)

    async def remove_from_dead_letter_queue(self, entry_id: str) -> bool:
        return await self.retry.remove_from_dead_letter_queue(entry_id)

    async def process_marked_dlq_entries(self) -> int:
        return await self.retry.process_marked_dlq_entries()

    async def cleanup_old_dlq_entries(self, older_than_days: Optional[int] = None) -> int:
        return await self.retry.cleanup_old_dlq_entries(
            self.config.dlq_retention_days if older_than_days is None else older_than_days
        )

    async def get_retry_stats(self, organization_id: Optional[str] = None) -> RetryStats:
        return await self.retry.get_retry_stats(organization_id)

    # ------------------------------------------------------------------
    # Checksums
    # ------------------------------------------------------------------

    def calculate_checksum(self, data: Union[bytes, str], algorithm: Optional[str] = None) -> str:
        return self.checksum.calculate_checksum(data, algorithm)

    async def calculate_file_checksum(self, path: str, algorithm: Optional[str] = None) -> str:
        return await self.checksum.calculate_file_checksum(path, algorithm)

    async def find_duplicate_file(
        self,
        checksum: str,
        organization_id: str,
        exclude_id: Optional[str] = None
    ) -> DuplicateDetectionResult:
        return await self.checksum.check_for_duplicate(checksum, organization_id, exclude_id)

    async def handle_forced_reprocessing(
        self,
        checksum: str,
        organization_id: str,
        options: ReprocessingOptions
    ) -> ReprocessingDecision:
        return await self.checksum.handle_forced_reprocessing(checksum, organization_id, options)

    async def get_checksum_history(self, checksum: str, organization_id: str) -> List[ETLFileRecord]:
        return await self.checksum.get_checksum_history(checksum, organization_id)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def create_upsert_engine(self, run: ETLRunRecord) -> IdempotentUpsertEngine:
        """Fact loader bound to the run's organization and source file"""
        return IdempotentUpsertEngine(self.store, run.organization_id, file_id=run.file_id, run_id=run.id)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def get_audit_trail(
        self,
        organization_id: str,
        file_id: Optional[str] = None,
        run_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        return await self.audit.get_audit_trail(
            organization_id, file_id=file_id, run_id=run_id, limit=limit, offset=offset
        )

    async def cleanup_old_audit_records(
        self,
        organization_id: Optional[str] = None,
        retain_days: Optional[int] = None,
        dry_run: bool = False
    ) -> int:
        return await self.audit.cleanup_old_audit_records(
            organization_id,
            self.config.audit_retention_days if retain_days is None else retain_days,
            dry_run,
        )
