"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from datetime import date
from core.database import create_session_factory
from engine.orchestrator import ETLStateMachineService
from engine.store.memory import InMemoryStore
from engine.store.sqlalchemy_store import SQLAlchemyStore
from models import Base
from models.base import RecordTable
from schemas.engine import LockingOptions, RetryPolicy, StateMachineConfig
from schemas.loading import DimensionIds, LoadDeviationRecord, ResolvedDimension
from schemas.state import ETLFileCreate

ORG_ID = "org-1"


@pytest.fixture
def store():
    """Fresh in-memory store per test"""
    return InMemoryStore()


@pytest.fixture
def engine_config():
    """Engine configuration without sleeps or randomness"""
    return StateMachineConfig(
        locking=LockingOptions(max_retries=5, retry_delay_ms=0),
        retry=RetryPolicy(max_retries=3, initial_delay_ms=1_000, jitter_enabled=False),
    )


@pytest.fixture
def service(store, engine_config):
    return ETLStateMachineService(store, engine_config, worker_id="worker-test")


@pytest.fixture
def file_create():
    return ETLFileCreate(
        organization_id=ORG_ID,
        filename="desvio_carregamento.csv",
        checksum="a" * 64,
        file_size=2048,
        mime_type="text/csv",
        uploaded_by="user-1",
    )


@pytest.fixture
def make_run(store):
    """Insert a bare run row in the given state"""

    async def _make(run_id="run-1", state="failed", **fields):
        row = {
            "id": run_id,
            "file_id": "file-1",
            "organization_id": ORG_ID,
            "run_number": fields.pop("run_number", 1),
            "current_state": state,
            "state_history": [],
            "version": 1,
        }
        row.update(fields)
        return await store.insert(RecordTable.ETL_RUN, row)

    return _make


@pytest.fixture
def deviation_record():
    return LoadDeviationRecord(
        reference_date=date(2024, 3, 1),
        equipment="EQ-1",
        location="CURRAL-5",
        diet="DIETA-A",
        shift="MANHA",
        kg_planned=1500.0,
        kg_real=1450.0,
    )


@pytest.fixture
def resolved_dimensions():
    return DimensionIds(
        location=ResolvedDimension(id="loc-5"),
        diet=ResolvedDimension(id="diet-a"),
        equipment=ResolvedDimension(id="eq-1"),
    )


@pytest_asyncio.fixture(scope="function")
async def sqlite_store(tmp_path):
    """SQLAlchemyStore over a throwaway SQLite database"""
    session_factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}", echo=False)
    engine = session_factory.kw["bind"]

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield SQLAlchemyStore(session_factory)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
