"""
Record store abstraction and implementations
"""

from engine.store.base import (
    Condition,
    Op,
    Order,
    RecordStore,
    asc,
    desc,
    eq,
    gt,
    gte,
    in_,
    is_null,
    lt,
    lte,
    ne,
    not_null,
)
from engine.store.memory import InMemoryStore
from engine.store.sqlalchemy_store import SQLAlchemyStore

__all__ = [
    "Condition",
    "Op",
    "Order",
    "RecordStore",
    "InMemoryStore",
    "SQLAlchemyStore",
    "asc",
    "desc",
    "eq",
    "gt",
    "gte",
    "in_",
    "is_null",
    "lt",
    "lte",
    "ne",
    "not_null",
]
