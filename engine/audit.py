"""
Audit trail writer for ``etl_run_log``

Audit writes never fail the operation being audited: store errors are
reported on the application logger and the call returns None.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta
import logging
import uuid

from engine.store.base import RecordStore, desc, eq, jsonable, lt
from models.base import ETLState, LogLevel, RecordTable

logger = logging.getLogger(__name__)


def _value(state: Optional[ETLState]) -> Optional[str]:
    return getattr(state, "value", state)


class AuditLogger:
    """Append-only writer and reader for engine audit entries"""

    def __init__(self, store: RecordStore):
        self.store = store

    async def log_event(
        self,
        organization_id: str,
        action: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        file_id: Optional[str] = None,
        run_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        state: Optional[ETLState] = None,
        previous_state: Optional[ETLState] = None,
        user_id: Optional[str] = None,
        success: Optional[bool] = None,
        duration_ms: Optional[int] = None
    ) -> Optional[str]:
        """
        Insert one audit entry.

        Returns:
            The entry id, or None when the write failed
        """
        entry_id = str(uuid.uuid4())
        try:
            await self.store.insert(RecordTable.RUN_LOG, {
                "id": entry_id,
                "organization_id": organization_id,
                "file_id": file_id,
                "run_id": run_id,
                "timestamp": datetime.utcnow(),
                "level": LogLevel(level).value,
                "action": action,
                "message": message,
                "details": jsonable(details),
                "state": _value(state),
                "previous_state": _value(previous_state),
                "user_id": user_id,
                "success": success,
                "duration_ms": duration_ms,
            })
        except Exception as e:
            logger.error(
                f"Failed to write audit entry '{action}': {e}",
                extra={"organization_id": organization_id, "file_id": file_id, "run_id": run_id}
            )
            return None
        return entry_id

    async def get_audit_trail(
        self,
        organization_id: str,
        file_id: Optional[str] = None,
        run_id: Optional[str] = None,
        action: Optional[str] = None,
        level: Optional[LogLevel] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Entries for an organization, newest first"""
        conditions = [eq("organization_id", organization_id)]
        if file_id:
            conditions.append(eq("file_id", file_id))
        if run_id:
            conditions.append(eq("run_id", run_id))
        if action:
            conditions.append(eq("action", action))
        if level:
            conditions.append(eq("level", LogLevel(level).value))

        return await self.store.query(
            RecordTable.RUN_LOG,
            conditions,
            order_by=[desc("timestamp")],
            limit=limit,
            offset=offset,
        )

    async def cleanup_old_audit_records(
        self,
        organization_id: Optional[str] = None,
        retain_days: int = 90,
        dry_run: bool = False
    ) -> int:
        """
        Delete entries older than ``retain_days``.

        With ``dry_run`` only counts what would be deleted.
        """
        cutoff = datetime.utcnow() - timedelta(days=retain_days)
        conditions = [lt("timestamp", cutoff)]
        if organization_id:
            conditions.append(eq("organization_id", organization_id))

        if dry_run:
            return await self.store.count(RecordTable.RUN_LOG, conditions)

        deleted = await self.store.delete(RecordTable.RUN_LOG, conditions)
        logger.info(f"Deleted {deleted} audit entries older than {retain_days} days")
        return deleted
