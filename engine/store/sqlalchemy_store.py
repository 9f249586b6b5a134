"""
Record store over SQLAlchemy async (PostgreSQL via asyncpg in production)
"""

from typing import List, Optional, Sequence
from sqlalchemy import Table, and_, delete, func, insert, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from core.exceptions import DatabaseConnectionError, DeadlockError, DuplicateKeyError, StoreError
from engine.store.base import Condition, Op, Order, RecordStore, Row, TableLike, as_table
from models import TABLE_MODELS
import logging

logger = logging.getLogger(__name__)


class SQLAlchemyStore(RecordStore):
    """
    RecordStore backed by a relational database.

    Each call opens a short-lived session and commits before returning, so
    no transaction spans an engine-level await.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    def _table(self, table: TableLike) -> Table:
        return TABLE_MODELS[as_table(table)].__table__

    def _clause(self, table: Table, condition: Condition):
        column = table.c[condition.field]
        op = condition.op

        if op == Op.EQ:
            return column == condition.value
        if op == Op.NE:
            return column != condition.value
        if op == Op.LT:
            return column < condition.value
        if op == Op.LTE:
            return column <= condition.value
        if op == Op.GT:
            return column > condition.value
        if op == Op.GTE:
            return column >= condition.value
        if op == Op.IS_NULL:
            return column.is_(None)
        if op == Op.NOT_NULL:
            return column.is_not(None)
        if op == Op.IN:
            return column.in_(list(condition.value))
        raise StoreError(f"Unsupported operator: {op}")

    def _where(self, table: Table, conditions: Optional[Sequence[Condition]]):
        clauses = [self._clause(table, c) for c in conditions or []]
        return and_(*clauses) if clauses else None

    def _translate(self, error: SQLAlchemyError, operation: str, table: Table) -> Exception:
        """Map driver errors onto the engine's exception hierarchy"""
        context = {"operation": operation, "table": table.name}

        if isinstance(error, IntegrityError):
            return DuplicateKeyError(f"Unique constraint violated on {table.name}", context, error)

        message = str(error).lower()
        if "deadlock" in message:
            return DeadlockError(f"Deadlock on {table.name}", context, error)
        if isinstance(error, OperationalError) or (
            isinstance(error, DBAPIError) and error.connection_invalidated
        ):
            return DatabaseConnectionError(f"Database unavailable during {operation}", context, error)
        return StoreError(f"{operation} on {table.name} failed: {error}", context, error)

    async def _fetch_one(self, session: AsyncSession, table: Table, record_id: str) -> Optional[Row]:
        result = await session.execute(select(table).where(table.c.id == record_id))
        row = result.mappings().first()
        return dict(row) if row is not None else None

    async def get(self, table: TableLike, record_id: str) -> Optional[Row]:
        t = self._table(table)
        try:
            async with self.session_factory() as session:
                return await self._fetch_one(session, t, record_id)
        except SQLAlchemyError as e:
            raise self._translate(e, "GET", t)

    async def conditional_update(
        self,
        table: TableLike,
        record_id: str,
        expected_version: int,
        patch: Row
    ) -> Optional[Row]:
        t = self._table(table)
        stmt = (
            update(t)
            .where(t.c.id == record_id, t.c.version == expected_version)
            .values(**patch)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                if result.rowcount == 0:
                    await session.rollback()
                    return None
                row = await self._fetch_one(session, t, record_id)
                await session.commit()
                return row
        except SQLAlchemyError as e:
            raise self._translate(e, "UPDATE", t)

    async def update_where(
        self,
        table: TableLike,
        conditions: Sequence[Condition],
        patch: Row
    ) -> List[Row]:
        t = self._table(table)
        stmt = update(t).values(**patch).returning(t.c.id)
        where = self._where(t, conditions)
        if where is not None:
            stmt = stmt.where(where)
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                ids = [r[0] for r in result.all()]
                rows = []
                if ids:
                    fetched = await session.execute(select(t).where(t.c.id.in_(ids)))
                    rows = [dict(r) for r in fetched.mappings().all()]
                await session.commit()
                return rows
        except SQLAlchemyError as e:
            raise self._translate(e, "UPDATE", t)

    async def insert(self, table: TableLike, row: Row) -> Row:
        t = self._table(table)
        try:
            async with self.session_factory() as session:
                await session.execute(insert(t).values(**row))
                stored = await self._fetch_one(session, t, row["id"])
                await session.commit()
                return stored
        except SQLAlchemyError as e:
            raise self._translate(e, "INSERT", t)

    async def delete(self, table: TableLike, conditions: Sequence[Condition]) -> int:
        t = self._table(table)
        stmt = delete(t)
        where = self._where(t, conditions)
        if where is not None:
            stmt = stmt.where(where)
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            raise self._translate(e, "DELETE", t)

    async def query(
        self,
        table: TableLike,
        conditions: Optional[Sequence[Condition]] = None,
        order_by: Optional[Sequence[Order]] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Row]:
        t = self._table(table)
        stmt = select(t)
        where = self._where(t, conditions)
        if where is not None:
            stmt = stmt.where(where)
        for order in order_by or []:
            column = t.c[order.field]
            stmt = stmt.order_by(column.desc() if order.descending else column.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return [dict(r) for r in result.mappings().all()]
        except SQLAlchemyError as e:
            raise self._translate(e, "QUERY", t)

    async def count(
        self,
        table: TableLike,
        conditions: Optional[Sequence[Condition]] = None
    ) -> int:
        t = self._table(table)
        stmt = select(func.count()).select_from(t)
        where = self._where(t, conditions)
        if where is not None:
            stmt = stmt.where(where)
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return result.scalar_one()
        except SQLAlchemyError as e:
            raise self._translate(e, "QUERY", t)

    async def close(self):
        engine = self.session_factory.kw.get("bind")
        if engine is not None:
            await engine.dispose()
            logger.info("Database engine disposed")
