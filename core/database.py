"""
Database engine and record store construction with SQLAlchemy async
"""

from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_session_factory(database_url: Optional[str] = None, **engine_kwargs) -> async_sessionmaker:
    """
    Build an engine and its session factory.

    The record store opens one short session per call, so the engine keeps
    a connection pool (pre-pinged, since maintenance workers sit idle
    between sweeps).
    """
    url = database_url or settings.DATABASE_URL
    engine_kwargs.setdefault("echo", settings.ENVIRONMENT == "development")
    if not url.startswith("sqlite"):
        engine_kwargs.setdefault("pool_size", settings.DB_POOL_SIZE)
        engine_kwargs.setdefault("pool_pre_ping", True)

    engine = create_async_engine(url, **engine_kwargs)
    logger.info(f"Database engine created for {engine.url.render_as_string(hide_password=True)}")

    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


def get_store(database_url: Optional[str] = None):
    """Build the record store used by the engine services"""
    from engine.store.sqlalchemy_store import SQLAlchemyStore

    return SQLAlchemyStore(create_session_factory(database_url))
