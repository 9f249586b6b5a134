"""
Optimistic locking, advisory record locks and processing-session tracking

Three independent mechanisms share the ``etl_file`` / ``etl_run`` rows:

- ``version``: compare-and-swap counter; every versioned mutation goes
  through ``update_with_lock`` or ``safe_state_transition``
- ``locked_by`` / ``lock_expires_at``: cooperative TTL lock
- ``processing_by`` / ``processing_started_at``: which worker session is
  driving a processing state; abandoned after ``processing_timeout_ms``

Lock and session fields are advisory metadata and do not bump ``version``.
"""

from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
import asyncio
import logging
import uuid

from core.exceptions import StoreError
from engine.state_model import PROCESSING_STATES, is_valid_transition, milestone_field
from engine.store.base import RecordStore, TableLike, as_table, eq, in_, is_null, lt, not_null
from models.base import RecordTable
from schemas.engine import LockingErrorCode, LockingOptions, LockingResult
from schemas.state import SafeTransitionRequest, StateHistoryEntry

logger = logging.getLogger(__name__)

Mutation = Union[Dict[str, Any], Callable[[Dict[str, Any]], Dict[str, Any]]]

_CLEARED_LOCK = {"locked_by": None, "locked_at": None, "lock_expires_at": None}
_CLEARED_SESSION = {"processing_by": None, "processing_started_at": None}

# Tables carrying version, lock and session columns
LOCKED_TABLES = (RecordTable.ETL_FILE, RecordTable.ETL_RUN)


def _elapsed_ms(since: datetime, now: datetime) -> float:
    return (now - since).total_seconds() * 1000


class OptimisticLockingService:
    """
    Version-checked updates with bounded conflict retries.

    A conflicting writer re-reads the record and reapplies its mutation after
    ``retry_delay_ms * backoff_multiplier ** attempt`` milliseconds. Store
    failures other than a version mismatch are returned immediately.
    """

    def __init__(self, store: RecordStore, options: Optional[LockingOptions] = None):
        self.store = store
        self.options = options or LockingOptions()

    def _resolve(self, options: Optional[LockingOptions]) -> LockingOptions:
        return options or self.options

    async def _backoff(self, opts: LockingOptions, attempt: int):
        if attempt < opts.max_retries:
            await asyncio.sleep(opts.conflict_delay_ms(attempt) / 1000)

    @staticmethod
    def _not_found(table: TableLike, record_id: str, attempt: int = 0) -> LockingResult:
        return LockingResult.failure(
            LockingErrorCode.RECORD_NOT_FOUND,
            "Record not found",
            retry_attempt=attempt,
            details={"table": as_table(table).value, "record_id": record_id},
        )

    @staticmethod
    def _store_failure(error: StoreError, action: str, attempt: int = 0) -> LockingResult:
        return LockingResult.failure(
            LockingErrorCode.STORE_ERROR,
            f"{action}: {error.message}",
            retry_attempt=attempt,
            details=dict(error.context),
        )

    # ------------------------------------------------------------------
    # Versioned updates
    # ------------------------------------------------------------------

    async def update_with_lock(
        self,
        table: TableLike,
        record_id: str,
        mutation: Mutation,
        options: Optional[LockingOptions] = None
    ) -> LockingResult:
        """
        Apply ``mutation`` under optimistic concurrency control.

        Args:
            table: Target table
            record_id: Primary key
            mutation: Patch dict, or a callable computing the patch from the
                freshly read row (re-invoked on every retry)
            options: Overrides for this call

        Returns:
            LockingResult with the updated row in ``data``
        """
        opts = self._resolve(options)
        last_error = None
        current_version = None

        for attempt in range(opts.max_retries + 1):
            try:
                row = await self.store.get(table, record_id)
            except StoreError as e:
                return self._store_failure(e, "Failed to fetch record", attempt)
            if row is None:
                return self._not_found(table, record_id, attempt)

            current_version = row["version"]
            patch = mutation(row) if callable(mutation) else mutation
            patch = dict(patch or {})
            patch["version"] = current_version + 1
            patch["updated_at"] = datetime.utcnow()

            try:
                updated = await self.store.conditional_update(table, record_id, current_version, patch)
            except StoreError as e:
                return self._store_failure(e, "Update failed", attempt)

            if updated is not None:
                return LockingResult(
                    success=True,
                    data=updated,
                    current_version=updated["version"],
                    retry_attempt=attempt,
                )

            last_error = (
                f"Version conflict: expected {current_version}, "
                f"record was modified by another process"
            )
            logger.debug(
                f"Version conflict on {as_table(table).value}/{record_id} (attempt {attempt + 1})"
            )
            await self._backoff(opts, attempt)

        logger.warning(
            f"Giving up on {as_table(table).value}/{record_id} after {opts.max_retries} retries"
        )
        return LockingResult.failure(
            LockingErrorCode.MAX_RETRIES_EXCEEDED,
            f"Max retries ({opts.max_retries}) exceeded. Last error: {last_error}",
            current_version=current_version,
            retry_attempt=opts.max_retries,
            details={"last_error": last_error},
        )

    async def get_record_version(self, table: TableLike, record_id: str) -> Optional[int]:
        row = await self.store.get(table, record_id)
        return row["version"] if row else None

    async def increment_counter(
        self,
        table: TableLike,
        record_id: str,
        field: str,
        by: int = 1,
        options: Optional[LockingOptions] = None
    ) -> LockingResult:
        """Atomically add ``by`` to an integer column"""
        return await self.update_with_lock(
            table,
            record_id,
            lambda row: {field: (row.get(field) or 0) + by},
            options,
        )

    # ------------------------------------------------------------------
    # Advisory TTL locks
    # ------------------------------------------------------------------

    async def lock_record(
        self,
        table: TableLike,
        record_id: str,
        ttl_ms: Optional[int] = None,
        lock_id: Optional[str] = None
    ) -> LockingResult:
        """
        Claim the record for ``ttl_ms``.

        Succeeds when nobody holds the lock or the current holder's lock has
        expired; otherwise reports ALREADY_LOCKED with the holder's id.
        """
        ttl_ms = ttl_ms or self.options.lock_ttl_ms
        lock_id = lock_id or f"lock-{uuid.uuid4()}"
        now = datetime.utcnow()
        claim = {
            "locked_by": lock_id,
            "locked_at": now,
            "lock_expires_at": now + timedelta(milliseconds=ttl_ms),
        }

        try:
            claimed = await self.store.update_where(
                table, [eq("id", record_id), is_null("locked_by")], claim
            )
            if not claimed:
                row = await self.store.get(table, record_id)
                if row is None:
                    return self._not_found(table, record_id)

                expires = row.get("lock_expires_at")
                if expires is not None and expires < now:
                    # Take over an expired lock, guarded on the previous holder
                    claimed = await self.store.update_where(
                        table,
                        [
                            eq("id", record_id),
                            eq("locked_by", row["locked_by"]),
                            lt("lock_expires_at", now),
                        ],
                        claim,
                    )
                    if claimed:
                        logger.info(
                            f"Took over expired lock {row['locked_by']} on "
                            f"{as_table(table).value}/{record_id}"
                        )
                if not claimed:
                    return LockingResult.failure(
                        LockingErrorCode.ALREADY_LOCKED,
                        f"Record is already locked by {row.get('locked_by')}",
                        session_id=row.get("locked_by"),
                        current_version=row.get("version"),
                        details={"lock_expires_at": str(row.get("lock_expires_at"))},
                    )
        except StoreError as e:
            return self._store_failure(e, "Failed to lock record")

        row = claimed[0]
        return LockingResult(
            success=True,
            data=row,
            current_version=row.get("version"),
            session_id=lock_id,
        )

    async def release_lock(self, table: TableLike, record_id: str, lock_id: str) -> LockingResult:
        """Release a lock; only its owner may do so"""
        try:
            released = await self.store.update_where(
                table, [eq("id", record_id), eq("locked_by", lock_id)], dict(_CLEARED_LOCK)
            )
            if not released:
                row = await self.store.get(table, record_id)
                if row is None:
                    return self._not_found(table, record_id)
                return LockingResult.failure(
                    LockingErrorCode.NOT_LOCK_OWNER,
                    "Lock not found or not owned by the specified lock ID",
                    session_id=row.get("locked_by"),
                )
        except StoreError as e:
            return self._store_failure(e, "Failed to release lock")

        return LockingResult(success=True, data=released[0], session_id=lock_id)

    async def release_expired_locks(self, table: TableLike) -> int:
        """Clear every lock whose TTL has elapsed; returns how many"""
        now = datetime.utcnow()
        released = await self.store.update_where(
            table,
            [not_null("locked_by"), lt("lock_expires_at", now)],
            dict(_CLEARED_LOCK),
        )
        if released:
            logger.info(f"Released {len(released)} expired locks on {as_table(table).value}")
        return len(released)

    async def _release_quietly(self, table: TableLike, record_id: str, lock_id: str):
        try:
            result = await self.release_lock(table, record_id, lock_id)
        except Exception as e:
            logger.error(f"Failed to release lock {lock_id} on {record_id}: {e}")
            return
        if not result.success:
            logger.warning(f"Lock {lock_id} on {record_id} was not released: {result.error}")

    @asynccontextmanager
    async def hold_lock(
        self,
        table: TableLike,
        record_id: str,
        ttl_ms: Optional[int] = None,
        lock_id: Optional[str] = None
    ):
        """
        Scoped lock acquisition.

        Raises AlreadyLockedError / RecordNotFoundError when the lock cannot
        be acquired. The lock is released on exit, even on error.
        """
        acquired = await self.lock_record(table, record_id, ttl_ms, lock_id)
        acquired.raise_for_error()
        try:
            yield acquired
        finally:
            await self._release_quietly(table, record_id, acquired.session_id)

    async def with_lock(
        self,
        table: TableLike,
        record_id: str,
        operation: Callable[[], Awaitable[Any]],
        ttl_ms: Optional[int] = None
    ) -> LockingResult:
        """
        Run ``operation`` while holding the record lock.

        A failed acquisition is returned as a result; exceptions raised by
        ``operation`` propagate after the lock is released.
        """
        acquired = await self.lock_record(table, record_id, ttl_ms)
        if not acquired.success:
            return acquired

        try:
            value = await operation()
        finally:
            await self._release_quietly(table, record_id, acquired.session_id)

        return LockingResult(
            success=True,
            data=value,
            current_version=acquired.current_version,
            session_id=acquired.session_id,
        )

    # ------------------------------------------------------------------
    # Processing sessions
    # ------------------------------------------------------------------

    def is_processing_session_active(
        self,
        record: Dict[str, Any],
        timeout_ms: Optional[int] = None
    ) -> bool:
        started = record.get("processing_started_at")
        if not started:
            return False
        timeout_ms = timeout_ms or self.options.processing_timeout_ms
        return _elapsed_ms(started, datetime.utcnow()) < timeout_ms

    def _is_stale(self, record: Dict[str, Any], timeout_ms: int) -> bool:
        started = record.get("processing_started_at")
        if not record.get("processing_by") or not started:
            return False
        return _elapsed_ms(started, datetime.utcnow()) > timeout_ms

    async def check_for_stale_processing(
        self,
        table: TableLike,
        record_id: str,
        options: Optional[LockingOptions] = None
    ) -> LockingResult:
        opts = self._resolve(options)
        try:
            row = await self.store.get(table, record_id)
        except StoreError as e:
            return self._store_failure(e, "Failed to check processing status")
        if row is None or not self._is_stale(row, opts.processing_timeout_ms):
            return LockingResult(success=True)

        elapsed = int(_elapsed_ms(row["processing_started_at"], datetime.utcnow()))
        return LockingResult.failure(
            LockingErrorCode.STALE_PROCESSING,
            f"Processing session is stale. Started {elapsed}ms ago by {row['processing_by']}",
            is_stale_processing=True,
            session_id=row["processing_by"],
            current_version=row.get("version"),
            details={"processing_started_at": row["processing_started_at"].isoformat()},
        )

    async def clear_stale_processing_sessions(
        self,
        table: TableLike,
        timeout_ms: Optional[int] = None,
        states: Optional[Iterable[str]] = None
    ) -> int:
        """
        Bulk-release sessions older than ``timeout_ms``; returns how many.

        ``states`` restricts the sweep to records whose ``current_state`` is
        one of the given values.
        """
        timeout_ms = timeout_ms or self.options.processing_timeout_ms
        cutoff = datetime.utcnow() - timedelta(milliseconds=timeout_ms)
        conditions = [not_null("processing_by"), lt("processing_started_at", cutoff)]
        if states is not None:
            conditions.append(in_("current_state", list(states)))
        cleared = await self.store.update_where(
            table,
            conditions,
            dict(_CLEARED_SESSION),
        )
        if cleared:
            logger.info(
                f"Cleared {len(cleared)} stale processing sessions on {as_table(table).value}"
            )
        return len(cleared)

    async def release_processing_session(
        self,
        table: TableLike,
        record_id: str,
        session_id: str
    ) -> LockingResult:
        try:
            released = await self.store.update_where(
                table,
                [eq("id", record_id), eq("processing_by", session_id)],
                dict(_CLEARED_SESSION),
            )
        except StoreError as e:
            return self._store_failure(e, "Failed to release processing session")
        if not released:
            return LockingResult.failure(
                LockingErrorCode.NOT_LOCK_OWNER,
                "Processing session not found or not owned by the specified session ID",
                session_id=session_id,
            )
        return LockingResult(success=True, data=released[0], session_id=session_id)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _transition_patch(
        self,
        row: Dict[str, Any],
        request: SafeTransitionRequest,
        now: datetime
    ) -> Dict[str, Any]:
        to_state = request.to_state
        entry = StateHistoryEntry(
            state=to_state,
            timestamp=now,
            actor=request.actor or request.session_id,
            message=request.message,
            metadata={
                **(request.metadata or {}),
                "from_state": row["current_state"],
                "session_id": request.session_id,
            },
        )

        patch = dict(request.patch)
        patch["current_state"] = to_state.value
        patch["state_history"] = list(row.get("state_history") or []) + [entry.to_json()]

        # Sessions are held only while a processing state is active
        if to_state in PROCESSING_STATES:
            patch["processing_by"] = request.session_id
            patch["processing_started_at"] = now
        else:
            patch.update(_CLEARED_SESSION)

        field = milestone_field(to_state, request.table)
        if field:
            patch[field] = now
        return patch

    async def safe_state_transition(
        self,
        request: SafeTransitionRequest,
        options: Optional[LockingOptions] = None
    ) -> LockingResult:
        """
        Move one record from ``request.from_state`` to ``request.to_state``.

        Steps (each attempt re-reads the record):
        1. Stale sessions held by others are overridden with a warning
        2. An active session held by another worker refuses the transition
        3. The stored state must equal ``from_state`` and the pair must be
           in the transition table
        4. Version-conditioned write of state, history entry, milestone and
           session claim; conflicts retry under the locking backoff
        """
        opts = self._resolve(options)
        table = request.table
        record_id = request.record_id

        stale = await self.check_for_stale_processing(table, record_id, opts)
        if stale.error_code == LockingErrorCode.STORE_ERROR:
            return stale
        if stale.is_stale_processing and stale.session_id != request.session_id:
            logger.warning(
                f"Overriding stale processing session {stale.session_id} on "
                f"{table.value}/{record_id}: {stale.error}"
            )

        last_error = None
        current_version = None

        for attempt in range(opts.max_retries + 1):
            try:
                row = await self.store.get(table, record_id)
            except StoreError as e:
                return self._store_failure(e, "Failed to fetch record", attempt)
            if row is None:
                return self._not_found(table, record_id, attempt)

            current_version = row["version"]
            holder = row.get("processing_by")
            if (
                holder
                and holder != request.session_id
                and self.is_processing_session_active(row, opts.processing_timeout_ms)
            ):
                return LockingResult.failure(
                    LockingErrorCode.SESSION_ACTIVE,
                    f"Record is being processed by another session: {holder}",
                    session_id=holder,
                    current_version=current_version,
                    retry_attempt=attempt,
                )

            current_state = row["current_state"]
            if current_state != request.from_state.value or not is_valid_transition(
                current_state, request.to_state
            ):
                return LockingResult.failure(
                    LockingErrorCode.INVALID_TRANSITION,
                    f"Invalid state transition from {current_state} to {request.to_state.value}",
                    current_version=current_version,
                    retry_attempt=attempt,
                    details={
                        "from_state": current_state,
                        "to_state": request.to_state.value,
                        "expected_state": request.from_state.value,
                    },
                )

            if request.expected_version is not None and current_version != request.expected_version:
                return LockingResult.failure(
                    LockingErrorCode.VERSION_CONFLICT,
                    f"Version conflict: expected {request.expected_version}, found {current_version}",
                    current_version=current_version,
                    retry_attempt=attempt,
                )

            now = datetime.utcnow()
            patch = self._transition_patch(row, request, now)
            patch["version"] = current_version + 1
            patch["updated_at"] = now

            try:
                updated = await self.store.conditional_update(table, record_id, current_version, patch)
            except StoreError as e:
                return self._store_failure(e, "State transition failed", attempt)

            if updated is not None:
                logger.info(
                    f"{table.value}/{record_id}: {current_state} -> {request.to_state.value} "
                    f"(version {updated['version']})"
                )
                return LockingResult(
                    success=True,
                    data=updated,
                    current_version=updated["version"],
                    retry_attempt=attempt,
                    session_id=request.session_id,
                    is_stale_processing=stale.is_stale_processing,
                )

            last_error = "Version conflict during state transition. Record was modified by another process."
            await self._backoff(opts, attempt)

        return LockingResult.failure(
            LockingErrorCode.MAX_RETRIES_EXCEEDED,
            f"Max retries ({opts.max_retries}) exceeded. Last error: {last_error}",
            current_version=current_version,
            retry_attempt=opts.max_retries,
            details={"last_error": last_error},
        )

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def get_concurrency_stats(
        self,
        table: TableLike,
        organization_id: Optional[str] = None
    ) -> Dict[str, int]:
        conditions = [eq("organization_id", organization_id)] if organization_id else []
        rows = await self.store.query(table, conditions)

        now = datetime.utcnow()
        timeout_ms = self.options.processing_timeout_ms
        stats = {
            "total_records": len(rows),
            "active_processing_sessions": 0,
            "stale_sessions": 0,
            "active_locks": 0,
            "expired_locks": 0,
        }
        for row in rows:
            started = row.get("processing_started_at")
            if row.get("processing_by") and started:
                if _elapsed_ms(started, now) < timeout_ms:
                    stats["active_processing_sessions"] += 1
                else:
                    stats["stale_sessions"] += 1
            if row.get("locked_by"):
                expires = row.get("lock_expires_at")
                if expires and expires > now:
                    stats["active_locks"] += 1
                else:
                    stats["expired_locks"] += 1
        return stats

