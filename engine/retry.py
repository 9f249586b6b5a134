"""
Retry scheduling, error classification and the dead-letter queue

Failed runs either get a retry slot (``next_retry_at``) with exponential
backoff or are quarantined in ``etl_dead_letter_queue``:

    retry_count >= max_retries  -> dead-letter (max_retries_exceeded=True)
    non-transient failure       -> dead-letter (max_retries_exceeded=False)
    otherwise                   -> retry at now + backoff(retry_count)
"""

from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, TypeVar
from datetime import datetime, timedelta
import asyncio
import logging
import math
import random
import uuid

from core.exceptions import (
    InvalidTransitionError,
    NonRetryableError,
    RateLimitError,
    RecordNotFoundError,
    ResourceExhaustedError,
    RetryableError,
    TimeoutFailure,
)
from engine.locking import OptimisticLockingService
from engine.state_model import is_valid_transition
from engine.store.base import RecordStore, asc, desc, eq, gt, jsonable, lt, lte
from models.base import ETLState, RecordTable
from schemas.engine import LockingResult, RetryPolicy
from schemas.retry import DeadLetterQueueRecord, ErrorType, FailureHandlingResult, RetryStats
from schemas.state import ETLRunRecord, StateHistoryEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERROR_TYPES: FrozenSet[ErrorType] = frozenset({
    ErrorType.TRANSIENT,
    ErrorType.RATE_LIMITED,
    ErrorType.RESOURCE,
})

# Message fragments, checked in order; first match wins
_MESSAGE_RULES = (
    (ErrorType.TRANSIENT, ("network", "timeout", "timed out", "connection", "econnreset",
                           "enotfound", "temporary", "temporarily")),
    (ErrorType.RATE_LIMITED, ("rate limit", "too many requests", "429")),
    (ErrorType.RESOURCE, ("memory", "disk space", "pool exhausted", "resource", "lock timeout")),
    (ErrorType.PERMANENT, ("validation", "schema", "constraint", "foreign key", "parse",
                           "invalid data", "malformed")),
)


def classify_error(error: Any) -> ErrorType:
    """
    Classify an exception (or message) for the retry decision.

    The exception hierarchy decides first; message heuristics cover foreign
    exceptions. Unknown errors are treated as transient.
    """
    if isinstance(error, RateLimitError):
        return ErrorType.RATE_LIMITED
    if isinstance(error, ResourceExhaustedError) or isinstance(error, MemoryError):
        return ErrorType.RESOURCE
    if isinstance(error, RetryableError):
        return ErrorType.TRANSIENT
    if isinstance(error, (NonRetryableError, InvalidTransitionError)):
        return ErrorType.PERMANENT
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorType.TRANSIENT

    message = str(error).lower()
    for error_type, fragments in _MESSAGE_RULES:
        if any(fragment in message for fragment in fragments):
            return error_type
    return ErrorType.TRANSIENT


def is_retryable(error_type: ErrorType) -> bool:
    return error_type in RETRYABLE_ERROR_TYPES


def calculate_backoff_delay(attempt: int, policy: Optional[RetryPolicy] = None) -> int:
    """
    Milliseconds to wait before retry number ``attempt`` (0-based).

    ``min(initial * multiplier ** attempt, max)``, then, with jitter enabled,
    shifted by up to +/- ``jitter_max_percentage`` and clamped to
    ``[0, max_delay_ms]``.
    """
    policy = policy or RetryPolicy()
    delay = min(
        policy.initial_delay_ms * (policy.backoff_multiplier ** attempt),
        policy.max_delay_ms,
    )

    if policy.jitter_enabled:
        jitter_pct = policy.jitter_max_percentage / 100
        delay += delay * jitter_pct * (random.random() - 0.5) * 2
        delay = max(0, delay)

    return math.floor(min(delay, policy.max_delay_ms))


class RetryService:
    """
    Failure handling for ETL runs.

    Run mutations go through the optimistic locking service so every change
    bumps the run's version.
    """

    def __init__(
        self,
        store: RecordStore,
        policy: Optional[RetryPolicy] = None,
        locking: Optional[OptimisticLockingService] = None
    ):
        self.store = store
        self.policy = policy or RetryPolicy()
        self.locking = locking or OptimisticLockingService(store)

    def calculate_backoff_delay(self, attempt: int) -> int:
        return calculate_backoff_delay(attempt, self.policy)

    def classify_error(self, error: Any) -> ErrorType:
        return classify_error(error)

    def is_retryable(self, error_type: ErrorType) -> bool:
        return is_retryable(error_type)

    async def _get_run(self, run_id: str) -> Dict[str, Any]:
        run = await self.store.get(RecordTable.ETL_RUN, run_id)
        if run is None:
            raise RecordNotFoundError(
                f"Run {run_id} not found",
                context={"table": RecordTable.ETL_RUN.value, "record_id": run_id}
            )
        return run

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def handle_failure(
        self,
        run_id: str,
        error_message: str,
        error_details: Optional[Dict[str, Any]] = None,
        is_transient: bool = True
    ) -> FailureHandlingResult:
        """
        Decide between a scheduled retry and the dead-letter queue.

        Raises:
            RecordNotFoundError: If the run does not exist
            ConcurrencyError: If the run update cannot be applied
        """
        run = await self._get_run(run_id)
        retry_count = run.get("retry_count") or 0
        details = jsonable(error_details)
        log_extra = {"organization_id": run["organization_id"], "run_id": run_id}

        if retry_count >= self.policy.max_retries or not is_transient:
            exceeded = retry_count >= self.policy.max_retries
            # The entry is only written once the run update has gone through
            result = await self.locking.update_with_lock(RecordTable.ETL_RUN, run_id, {
                "error_message": error_message,
                "error_details": details,
                "next_retry_at": None,
            })
            result.raise_for_error()
            entry_id = await self.add_to_dead_letter_queue(
                run_id, error_message, error_details, max_retries_exceeded=exceeded
            )

            logger.error(
                f"Run moved to dead-letter queue "
                f"({'max retries exceeded' if exceeded else 'non-transient failure'}): {error_message}",
                extra=log_extra
            )
            return FailureHandlingResult(
                should_retry=False,
                retry_count=retry_count,
                dead_letter_queue_id=entry_id,
                max_retries_exceeded=exceeded,
                error_message=error_message,
            )

        delay_ms = self.calculate_backoff_delay(retry_count)
        next_retry_at = datetime.utcnow() + timedelta(milliseconds=delay_ms)

        result = await self.locking.update_with_lock(
            RecordTable.ETL_RUN,
            run_id,
            lambda row: {
                "retry_count": (row.get("retry_count") or 0) + 1,
                "next_retry_at": next_retry_at,
                "error_message": error_message,
                "error_details": details,
            },
        )
        result.raise_for_error()

        logger.warning(
            f"Retry {retry_count + 1}/{self.policy.max_retries} scheduled in {delay_ms}ms: {error_message}",
            extra=log_extra
        )
        return FailureHandlingResult(
            should_retry=True,
            retry_count=result.data["retry_count"],
            next_retry_at=next_retry_at,
            delay_ms=delay_ms,
            error_message=error_message,
        )

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
        timeout_ms: Optional[int] = None
    ) -> T:
        """
        Run ``operation`` in-process, retrying retryable failures with backoff.

        With ``timeout_ms`` each attempt is cancelled after that long and
        counts as a TimeoutFailure. The last error is re-raised once retries
        are exhausted or a non-retryable failure occurs.
        """
        attempt = 0
        while True:
            try:
                if timeout_ms is None:
                    return await operation()
                try:
                    return await asyncio.wait_for(operation(), timeout_ms / 1000)
                except asyncio.TimeoutError as e:
                    raise TimeoutFailure(
                        f"{description} timed out after {timeout_ms}ms",
                        context={"timeout_ms": timeout_ms, "attempt": attempt + 1},
                        original_exception=e,
                    )
            except Exception as e:
                error_type = self.classify_error(e)
                if not self.is_retryable(error_type) or attempt >= self.policy.max_retries:
                    logger.error(f"{description} failed after {attempt + 1} attempts ({error_type.value}): {e}")
                    raise

                delay_ms = self.calculate_backoff_delay(attempt)
                if isinstance(e, RateLimitError) and e.retry_after:
                    delay_ms = max(delay_ms, e.retry_after * 1000)
                logger.warning(
                    f"{description} failed ({error_type.value}), retrying in {delay_ms}ms "
                    f"(attempt {attempt + 1}/{self.policy.max_retries}): {e}"
                )
                await asyncio.sleep(delay_ms / 1000)
                attempt += 1

    async def get_retry_ready_runs(
        self,
        organization_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[ETLRunRecord]:
        """Failed runs whose retry time has come, earliest first"""
        now = now or datetime.utcnow()
        conditions = [eq("current_state", ETLState.FAILED.value), lte("next_retry_at", now)]
        if organization_id:
            conditions.append(eq("organization_id", organization_id))

        rows = await self.store.query(RecordTable.ETL_RUN, conditions, order_by=[asc("next_retry_at")])
        return [ETLRunRecord.model_validate(row) for row in rows]

    async def clear_retry_schedule(self, run_id: str) -> LockingResult:
        return await self.locking.update_with_lock(RecordTable.ETL_RUN, run_id, {"next_retry_at": None})

    # ------------------------------------------------------------------
    # Dead-letter queue
    # ------------------------------------------------------------------

    async def add_to_dead_letter_queue(
        self,
        run_id: str,
        error_message: str,
        error_details: Optional[Dict[str, Any]] = None,
        max_retries_exceeded: bool = False
    ) -> str:
        run = await self._get_run(run_id)
        entry_id = str(uuid.uuid4())
        now = datetime.utcnow()

        await self.store.insert(RecordTable.DEAD_LETTER_QUEUE, {
            "id": entry_id,
            "run_id": run_id,
            "file_id": run.get("file_id"),
            "organization_id": run["organization_id"],
            "error_message": error_message,
            "error_details": jsonable(error_details),
            "max_retries_exceeded": max_retries_exceeded,
            "marked_for_retry": False,
            "retry_after": None,
            "created_at": now,
            "updated_at": now,
        })
        return entry_id

    async def get_dead_letter_queue_entries(
        self,
        organization_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[DeadLetterQueueRecord]:
        conditions = [eq("organization_id", organization_id)] if organization_id else []
        rows = await self.store.query(
            RecordTable.DEAD_LETTER_QUEUE,
            conditions,
            order_by=[desc("created_at")],
            limit=limit,
            offset=offset,
        )
        return [DeadLetterQueueRecord.model_validate(row) for row in rows]

    async def mark_for_retry(
        self,
        entry_id: str,
        retry_after: Optional[datetime] = None
    ) -> DeadLetterQueueRecord:
        """Flag an entry for promotion; the run itself is untouched"""
        now = datetime.utcnow()
        updated = await self.store.update_where(
            RecordTable.DEAD_LETTER_QUEUE,
            [eq("id", entry_id)],
            {"marked_for_retry": True, "retry_after": retry_after or now, "updated_at": now},
        )
        if not updated:
            raise RecordNotFoundError(
                f"Dead-letter entry {entry_id} not found",
                context={"table": RecordTable.DEAD_LETTER_QUEUE.value, "record_id": entry_id}
            )
        return DeadLetterQueueRecord.model_validate(updated[0])

    async def remove_from_dead_letter_queue(self, entry_id: str) -> bool:
        deleted = await self.store.delete(RecordTable.DEAD_LETTER_QUEUE, [eq("id", entry_id)])
        return deleted > 0

    def _requeue_patch(self, row: Dict[str, Any], entry_id: str, now: datetime) -> Dict[str, Any]:
        patch = {"retry_count": 0, "next_retry_at": now}
        if row["current_state"] != ETLState.FAILED.value:
            entry = StateHistoryEntry(
                state=ETLState.FAILED,
                timestamp=now,
                actor="dead_letter_queue",
                message="Requeued from dead-letter queue",
                metadata={"from_state": row["current_state"], "dead_letter_queue_id": entry_id},
            )
            patch["current_state"] = ETLState.FAILED.value
            patch["failed_at"] = now
            patch["state_history"] = list(row.get("state_history") or []) + [entry.to_json()]
        return patch

    async def process_marked_dlq_entries(self, now: Optional[datetime] = None) -> int:
        """
        Promote due, marked entries back to the retry schedule.

        Each run is reset to ``retry_count=0`` with ``next_retry_at=now`` in
        state ``failed`` and the entry is deleted.

        Returns:
            Number of entries promoted
        """
        now = now or datetime.utcnow()
        entries = await self.store.query(
            RecordTable.DEAD_LETTER_QUEUE,
            [eq("marked_for_retry", True), lte("retry_after", now)],
            order_by=[asc("retry_after")],
        )

        promoted = 0
        for entry in entries:
            run = await self.store.get(RecordTable.ETL_RUN, entry["run_id"])
            if run is None:
                logger.warning(f"Dropping dead-letter entry {entry['id']}: run {entry['run_id']} no longer exists")
                await self.remove_from_dead_letter_queue(entry["id"])
                continue

            state = run["current_state"]
            if state != ETLState.FAILED.value and not is_valid_transition(state, ETLState.FAILED):
                logger.warning(
                    f"Cannot requeue run {run['id']} from state {state}",
                    extra={"organization_id": run["organization_id"], "run_id": run["id"]}
                )
                continue

            result = await self.locking.update_with_lock(
                RecordTable.ETL_RUN,
                run["id"],
                lambda row: self._requeue_patch(row, entry["id"], now),
            )
            if not result.success:
                logger.error(f"Failed to requeue run {run['id']}: {result.error}")
                continue

            await self.remove_from_dead_letter_queue(entry["id"])
            promoted += 1

        if promoted:
            logger.info(f"Promoted {promoted} dead-letter entries to the retry schedule")
        return promoted

    async def cleanup_old_dlq_entries(self, older_than_days: int = 30) -> int:
        """Delete old entries that are not marked for retry"""
        cutoff = datetime.utcnow() - timedelta(days=older_than_days)
        deleted = await self.store.delete(
            RecordTable.DEAD_LETTER_QUEUE,
            [eq("marked_for_retry", False), lt("created_at", cutoff)],
        )
        if deleted:
            logger.info(f"Deleted {deleted} dead-letter entries older than {older_than_days} days")
        return deleted

    async def get_retry_stats(self, organization_id: Optional[str] = None) -> RetryStats:
        scope = [eq("organization_id", organization_id)] if organization_id else []
        now = datetime.utcnow()
        failed = [*scope, eq("current_state", ETLState.FAILED.value)]

        return RetryStats(
            failed_runs=await self.store.count(RecordTable.ETL_RUN, failed),
            pending_retries=await self.store.count(RecordTable.ETL_RUN, [*failed, gt("next_retry_at", now)]),
            ready_for_retry=await self.store.count(RecordTable.ETL_RUN, [*failed, lte("next_retry_at", now)]),
            dead_letter_entries=await self.store.count(RecordTable.DEAD_LETTER_QUEUE, scope),
            marked_for_retry=await self.store.count(
                RecordTable.DEAD_LETTER_QUEUE, [*scope, eq("marked_for_retry", True)]
            ),
            max_retries_exceeded=await self.store.count(
                RecordTable.DEAD_LETTER_QUEUE, [*scope, eq("max_retries_exceeded", True)]
            ),
        )
