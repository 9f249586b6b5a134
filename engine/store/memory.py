"""
Process-local record store

Keeps one dictionary per table. Every call yields to the event loop once
before touching data, so concurrent callers interleave the way they would
against a real database, while each operation itself stays atomic.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
from datetime import datetime
import asyncio
import copy
from core.exceptions import DuplicateKeyError, StoreError
from engine.store.base import (
    Condition,
    Op,
    Order,
    RecordStore,
    Row,
    TableLike,
    as_table,
)
from models import TABLE_MODELS
from models.base import RecordTable


def _matches(row: Row, condition: Condition) -> bool:
    """Evaluate one condition with SQL NULL semantics"""
    value = row.get(condition.field)

    if condition.op == Op.IS_NULL:
        return value is None
    if condition.op == Op.NOT_NULL:
        return value is not None
    if value is None:
        return False
    if condition.op == Op.IN:
        return value in condition.value
    if condition.value is None:
        return False
    if condition.op == Op.EQ:
        return value == condition.value
    if condition.op == Op.NE:
        return value != condition.value
    if condition.op == Op.LT:
        return value < condition.value
    if condition.op == Op.LTE:
        return value <= condition.value
    if condition.op == Op.GT:
        return value > condition.value
    if condition.op == Op.GTE:
        return value >= condition.value
    raise StoreError(f"Unsupported operator: {condition.op}")


def _sort_key(value: Any) -> Tuple[int, Any]:
    # NULLs sort last ascending, first descending (PostgreSQL default)
    return (1, 0) if value is None else (0, value)


class InMemoryStore(RecordStore):
    """
    Dictionary-backed RecordStore.

    Unique keys mirror the relational schema so duplicate handling behaves
    the same as against the database.
    """

    UNIQUE_KEYS: Dict[RecordTable, Tuple[str, ...]] = {
        RecordTable.ETL_RUN: ("file_id", "run_number"),
        RecordTable.FACT_LOAD_DEVIATION: ("organization_id", "natural_key"),
    }

    def __init__(self):
        self._tables: Dict[RecordTable, Dict[str, Row]] = {table: {} for table in RecordTable}

    def _rows(self, table: TableLike) -> Dict[str, Row]:
        return self._tables[as_table(table)]

    def _select(self, table: TableLike, conditions: Optional[Sequence[Condition]]) -> List[Row]:
        conditions = conditions or []
        return [
            row for row in self._rows(table).values()
            if all(_matches(row, c) for c in conditions)
        ]

    def _with_defaults(self, table: RecordTable, row: Row) -> Row:
        """Fill omitted columns from the ORM column defaults"""
        filled = {}
        for column in TABLE_MODELS[table].__table__.columns:
            if column.name in row:
                filled[column.name] = row[column.name]
            elif column.default is None:
                filled[column.name] = None
            elif column.default.is_callable:
                filled[column.name] = column.default.arg(None)
            else:
                filled[column.name] = column.default.arg
        return filled

    def _check_unique(self, table: RecordTable, row: Row, ignore_id: Optional[str] = None):
        fields = self.UNIQUE_KEYS.get(table)
        if not fields:
            return
        key = tuple(row.get(f) for f in fields)
        if any(v is None for v in key):
            return
        for existing in self._rows(table).values():
            if existing["id"] == ignore_id:
                continue
            if tuple(existing.get(f) for f in fields) == key:
                raise DuplicateKeyError(
                    f"Duplicate key for {table.value}",
                    context={"table": table.value, "unique_key": dict(zip(fields, key))}
                )

    async def get(self, table: TableLike, record_id: str) -> Optional[Row]:
        await asyncio.sleep(0)
        row = self._rows(table).get(record_id)
        return copy.deepcopy(row) if row is not None else None

    async def conditional_update(
        self,
        table: TableLike,
        record_id: str,
        expected_version: int,
        patch: Row
    ) -> Optional[Row]:
        await asyncio.sleep(0)
        table = as_table(table)
        row = self._rows(table).get(record_id)
        if row is None or row.get("version") != expected_version:
            return None

        updated = {**row, **copy.deepcopy(patch)}
        self._check_unique(table, updated, ignore_id=record_id)
        self._rows(table)[record_id] = updated
        return copy.deepcopy(updated)

    async def update_where(
        self,
        table: TableLike,
        conditions: Sequence[Condition],
        patch: Row
    ) -> List[Row]:
        await asyncio.sleep(0)
        table = as_table(table)
        updated = []
        for row in self._select(table, conditions):
            row.update(copy.deepcopy(patch))
            updated.append(copy.deepcopy(row))
        return updated

    async def insert(self, table: TableLike, row: Row) -> Row:
        await asyncio.sleep(0)
        table = as_table(table)
        if not row.get("id"):
            raise StoreError("Rows require an id", context={"table": table.value})
        if row["id"] in self._rows(table):
            raise DuplicateKeyError(
                f"Duplicate primary key for {table.value}",
                context={"table": table.value, "unique_key": {"id": row["id"]}}
            )

        stored = self._with_defaults(table, copy.deepcopy(row))
        self._check_unique(table, stored)
        self._rows(table)[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def delete(self, table: TableLike, conditions: Sequence[Condition]) -> int:
        await asyncio.sleep(0)
        rows = self._rows(table)
        doomed = [row["id"] for row in self._select(table, conditions)]
        for record_id in doomed:
            del rows[record_id]
        return len(doomed)

    async def query(
        self,
        table: TableLike,
        conditions: Optional[Sequence[Condition]] = None,
        order_by: Optional[Sequence[Order]] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Row]:
        await asyncio.sleep(0)
        rows = self._select(table, conditions)

        # Stable sorts applied last-key-first give multi-column ordering
        for order in reversed(order_by or []):
            rows.sort(key=lambda r: _sort_key(r.get(order.field)), reverse=order.descending)

        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def count(
        self,
        table: TableLike,
        conditions: Optional[Sequence[Condition]] = None
    ) -> int:
        await asyncio.sleep(0)
        return len(self._select(table, conditions))

    def snapshot(self, table: TableLike) -> List[Row]:
        """Synchronous copy of a table's rows (debugging and tests)"""
        return copy.deepcopy(list(self._rows(table).values()))

    def touch(self, table: TableLike, record_id: str, **fields):
        """Overwrite fields without versioning, e.g. to age a timestamp"""
        row = self._rows(table)[record_id]
        row.update(fields)
        if "updated_at" not in fields:
            row["updated_at"] = datetime.utcnow()
