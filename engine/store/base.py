"""
Persistent store contract used by every engine service

Rows travel as plain dictionaries keyed by column name. The only concurrency
primitive the engine relies on is ``conditional_update``: a compare-and-swap
on the ``version`` column.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
from pydantic import TypeAdapter
from models.base import RecordTable

TableLike = Union[RecordTable, str]
Row = Dict[str, Any]


class Op(str, Enum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    IS_NULL = "is_null"
    NOT_NULL = "not_null"
    IN = "in"


@dataclass(frozen=True)
class Condition:
    """``field <op> value``; conditions in a list are AND-ed"""
    field: str
    op: Op
    value: Any = None


@dataclass(frozen=True)
class Order:
    field: str
    descending: bool = False


def eq(field: str, value: Any) -> Condition:
    return Condition(field, Op.EQ, value)


def ne(field: str, value: Any) -> Condition:
    return Condition(field, Op.NE, value)


def lt(field: str, value: Any) -> Condition:
    return Condition(field, Op.LT, value)


def lte(field: str, value: Any) -> Condition:
    return Condition(field, Op.LTE, value)


def gt(field: str, value: Any) -> Condition:
    return Condition(field, Op.GT, value)


def gte(field: str, value: Any) -> Condition:
    return Condition(field, Op.GTE, value)


def is_null(field: str) -> Condition:
    return Condition(field, Op.IS_NULL)


def not_null(field: str) -> Condition:
    return Condition(field, Op.NOT_NULL)


def in_(field: str, values: Iterable[Any]) -> Condition:
    return Condition(field, Op.IN, tuple(values))


def asc(field: str) -> Order:
    return Order(field)


def desc(field: str) -> Order:
    return Order(field, descending=True)


def as_table(table: TableLike) -> RecordTable:
    return table if isinstance(table, RecordTable) else RecordTable(table)


_ANY = TypeAdapter(Any)


def jsonable(value: Any) -> Any:
    """Convert a value for a JSON column (datetimes to ISO strings, models to dicts)"""
    if value is None:
        return None
    return _ANY.dump_python(value, mode="json")


class RecordStore(ABC):
    """
    Abstract persistent store.

    Implementations:
    - SQLAlchemyStore: relational database through SQLAlchemy async
    - InMemoryStore: process-local dictionaries, for tests and embedding

    Contract:
    - ``conditional_update`` writes only when the stored version equals
      ``expected_version`` and returns None when zero rows matched
    - ``insert`` raises DuplicateKeyError on unique key violations
    - every other store failure surfaces as StoreError
    """

    @abstractmethod
    async def get(self, table: TableLike, record_id: str) -> Optional[Row]:
        """Fetch one row by primary key"""
        pass

    @abstractmethod
    async def conditional_update(
        self,
        table: TableLike,
        record_id: str,
        expected_version: int,
        patch: Row
    ) -> Optional[Row]:
        """
        Apply ``patch`` iff ``version == expected_version``.

        Returns:
            The updated row, or None when the version did not match
            (or the row no longer exists)
        """
        pass

    @abstractmethod
    async def update_where(
        self,
        table: TableLike,
        conditions: Sequence[Condition],
        patch: Row
    ) -> List[Row]:
        """Apply ``patch`` to every matching row and return the updated rows"""
        pass

    @abstractmethod
    async def insert(self, table: TableLike, row: Row) -> Row:
        """Insert a row (column defaults applied) and return it"""
        pass

    @abstractmethod
    async def delete(self, table: TableLike, conditions: Sequence[Condition]) -> int:
        """Delete matching rows, returning how many were removed"""
        pass

    @abstractmethod
    async def query(
        self,
        table: TableLike,
        conditions: Optional[Sequence[Condition]] = None,
        order_by: Optional[Sequence[Order]] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Row]:
        pass

    @abstractmethod
    async def count(
        self,
        table: TableLike,
        conditions: Optional[Sequence[Condition]] = None
    ) -> int:
        pass

    async def close(self):
        """Release underlying resources"""
        pass
