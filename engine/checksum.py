"""
Content checksums and duplicate upload detection
"""

from typing import List, Optional, Union
from datetime import datetime, timedelta
import asyncio
import hashlib
import logging
import uuid

from engine.audit import AuditLogger
from engine.locking import OptimisticLockingService
from engine.store.base import RecordStore, desc, eq, lt, ne
from models.base import ETLState, LogLevel, RecordTable
from schemas.engine import LockingResult
from schemas.retry import DuplicateDetectionResult, ReprocessingDecision, ReprocessingOptions
from schemas.state import ETLFileRecord

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("sha256", "md5")
CHUNK_SIZE = 64 * 1024

# Prior state of the most recent duplicate -> reprocessing decision
REPROCESSABLE_STATES = frozenset({ETLState.FAILED, ETLState.CANCELLED})
COMPLETED_STATES = frozenset({ETLState.LOADED, ETLState.APPROVED})


def _hasher(algorithm: str):
    algorithm = algorithm.lower()
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported checksum algorithm: {algorithm}")
    return hashlib.new(algorithm)


def calculate_checksum(data: Union[bytes, str], algorithm: str = "sha256") -> str:
    """Hex digest of ``data`` (strings are hashed as UTF-8)"""
    hasher = _hasher(algorithm)
    hasher.update(data.encode("utf-8") if isinstance(data, str) else data)
    return hasher.hexdigest()


def _hash_file(path: str, algorithm: str) -> str:
    hasher = _hasher(algorithm)
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class ChecksumService:
    """
    Duplicate detection by content checksum.

    Reprocessing policy, evaluated against the most recent upload with the
    same checksum in the organization:
    - allowed when it ended failed or cancelled
    - allowed when it was uploaded more than ``reprocess_after_days`` ago
    - blocked when it was loaded or approved
    - allowed otherwise (the earlier upload may be stuck)
    """

    def __init__(
        self,
        store: RecordStore,
        locking: Optional[OptimisticLockingService] = None,
        audit: Optional[AuditLogger] = None,
        default_algorithm: str = "sha256",
        reprocess_after_days: int = 30
    ):
        self.store = store
        self.locking = locking or OptimisticLockingService(store)
        self.audit = audit or AuditLogger(store)
        self.default_algorithm = default_algorithm
        self.reprocess_after_days = reprocess_after_days

    def calculate_checksum(self, data: Union[bytes, str], algorithm: Optional[str] = None) -> str:
        return calculate_checksum(data, algorithm or self.default_algorithm)

    async def calculate_file_checksum(self, path: str, algorithm: Optional[str] = None) -> str:
        """Hash a file in chunks without blocking the event loop"""
        return await asyncio.to_thread(_hash_file, path, algorithm or self.default_algorithm)

    def should_allow_reprocessing(self, existing: ETLFileRecord, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        if existing.current_state in REPROCESSABLE_STATES:
            return True
        if existing.uploaded_at < now - timedelta(days=self.reprocess_after_days):
            return True
        if existing.current_state in COMPLETED_STATES:
            return False
        return True

    async def check_for_duplicate(
        self,
        checksum: str,
        organization_id: str,
        exclude_id: Optional[str] = None
    ) -> DuplicateDetectionResult:
        matches = await self.get_checksum_history(checksum, organization_id, exclude_id)
        if not matches:
            return DuplicateDetectionResult(
                is_duplicate=False,
                allow_reprocessing=True,
                reason="No duplicate files found",
            )

        latest = matches[0]
        allowed = self.should_allow_reprocessing(latest)
        return DuplicateDetectionResult(
            is_duplicate=True,
            allow_reprocessing=allowed,
            existing_file_id=latest.id,
            existing_filename=latest.filename,
            existing_state=latest.current_state,
            existing_uploaded_at=latest.uploaded_at,
            duplicate_count=len(matches),
            reason=(
                "Duplicate found but reprocessing allowed"
                if allowed else "Duplicate found - reprocessing blocked"
            ),
        )

    async def handle_forced_reprocessing(
        self,
        checksum: str,
        organization_id: str,
        options: ReprocessingOptions
    ) -> ReprocessingDecision:
        """
        Override a duplicate block on behalf of ``options.user_id``.

        The duplicate lookup always runs; only its block decision is
        overridden, and the override is recorded.
        """
        if not options.force:
            return ReprocessingDecision(allowed=False, reason="Forced reprocessing not requested")

        duplicate = await self.check_for_duplicate(checksum, organization_id)
        if not duplicate.is_duplicate:
            return ReprocessingDecision(allowed=True, reason="No duplicate found - processing normally")

        record_id = f"reprocess-{uuid.uuid4()}"
        reason = options.reason or "Manual forced reprocessing"
        await self.store.insert(RecordTable.REPROCESSING_LOG, {
            "id": record_id,
            "original_file_id": duplicate.existing_file_id,
            "checksum": checksum,
            "organization_id": organization_id,
            "forced_by": options.user_id,
            "reason": reason,
            "skip_validation": options.skip_validation,
            "created_at": datetime.utcnow(),
        })

        logger.warning(
            f"Forced reprocessing of checksum {checksum[:12]} by {options.user_id}",
            extra={"organization_id": organization_id, "file_id": duplicate.existing_file_id}
        )
        await self.audit.log_event(
            organization_id=organization_id,
            action="checksum_processing",
            message="Forced reprocessing initiated for duplicate file",
            level=LogLevel.WARNING,
            file_id=duplicate.existing_file_id,
            user_id=options.user_id,
            details={
                "original_file_id": duplicate.existing_file_id,
                "checksum": checksum,
                "reason": options.reason,
                "was_blocked": not duplicate.allow_reprocessing,
            },
        )

        return ReprocessingDecision(
            allowed=True,
            reason="Forced reprocessing approved",
            original_file_id=duplicate.existing_file_id,
            reprocessing_record_id=record_id,
        )

    async def get_checksum_history(
        self,
        checksum: str,
        organization_id: str,
        exclude_id: Optional[str] = None
    ) -> List[ETLFileRecord]:
        """Files sharing ``checksum`` in the organization, newest upload first"""
        conditions = [eq("checksum", checksum), eq("organization_id", organization_id)]
        if exclude_id:
            conditions.append(ne("id", exclude_id))
        rows = await self.store.query(
            RecordTable.ETL_FILE,
            conditions,
            order_by=[desc("uploaded_at")],
        )
        return [ETLFileRecord.model_validate(row) for row in rows]

    async def update_file_checksum(
        self,
        file_id: str,
        new_checksum: str,
        user_id: Optional[str] = None,
        reason: str = "File content updated"
    ) -> LockingResult:
        """Replace a file's checksum under optimistic locking"""
        previous = {}

        def mutation(row):
            previous["checksum"] = row["checksum"]
            return {"checksum": new_checksum}

        result = await self.locking.update_with_lock(RecordTable.ETL_FILE, file_id, mutation)
        if result.success:
            await self.audit.log_event(
                organization_id=result.data["organization_id"],
                action="checksum_processing",
                message="File checksum updated",
                file_id=file_id,
                user_id=user_id,
                details={
                    "old_checksum": previous.get("checksum"),
                    "new_checksum": new_checksum,
                    "reason": reason,
                },
            )
        return result

    async def cleanup_old_reprocessing_records(
        self,
        organization_id: str,
        days_to_keep: int = 90
    ) -> int:
        cutoff = datetime.utcnow() - timedelta(days=days_to_keep)
        deleted = await self.store.delete(
            RecordTable.REPROCESSING_LOG,
            [eq("organization_id", organization_id), lt("created_at", cutoff)],
        )
        logger.info(f"Deleted {deleted} reprocessing records older than {days_to_keep} days")
        return deleted
