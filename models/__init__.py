"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (ETLState, LogLevel, RecordTable)
    etl_file: Uploaded files, their lifecycle state and lock fields
    etl_run: Processing attempts per file with retry bookkeeping
    run_log: Append-only audit trail
    dead_letter: Dead-letter queue for terminally failed runs
    reprocessing_log: Forced reprocessing audit records
    fact_load_deviation: Fact table loaded by the idempotent upsert engine

Database Schema:
    All models inherit from the Base declarative class. JSON columns use
    JSONB on PostgreSQL and plain JSON elsewhere.

Usage:
    from models import ETLFile, ETLRun, DeadLetterQueueEntry
    from models.base import ETLState, RecordTable

Relationships:
    - ETLFile → ETLRun (one-to-many, owned)
    - DeadLetterQueueEntry → ETLRun (weak reference by run_id)
    - FactLoadDeviation → ETLFile (lineage by source_file_id)
"""

from models.base import Base, ETLState, LogLevel, RecordTable
from models.etl_file import ETLFile
from models.etl_run import ETLRun
from models.run_log import ETLRunLog
from models.dead_letter import DeadLetterQueueEntry
from models.reprocessing_log import ReprocessingRecord
from models.fact_load_deviation import FactLoadDeviation

# Record store table name -> ORM model
TABLE_MODELS = {
    RecordTable.ETL_FILE: ETLFile,
    RecordTable.ETL_RUN: ETLRun,
    RecordTable.RUN_LOG: ETLRunLog,
    RecordTable.DEAD_LETTER_QUEUE: DeadLetterQueueEntry,
    RecordTable.REPROCESSING_LOG: ReprocessingRecord,
    RecordTable.FACT_LOAD_DEVIATION: FactLoadDeviation,
}

__all__ = [
    "Base",
    "ETLState",
    "LogLevel",
    "RecordTable",
    "ETLFile",
    "ETLRun",
    "ETLRunLog",
    "DeadLetterQueueEntry",
    "ReprocessingRecord",
    "FactLoadDeviation",
    "TABLE_MODELS",
]
