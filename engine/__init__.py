"""
ETL state machine, concurrency control and retry engine.

This package contains the services that drive uploaded files through their
processing lifecycle:

Modules:
    state_model: Transition table, processing states and milestone columns
    locking: Optimistic locking, advisory TTL locks and processing sessions
    retry: Error classification, exponential backoff and the dead-letter queue
    checksum: Content checksums and duplicate upload detection
    audit: Audit trail written to etl_run_log
    orchestrator: ETLStateMachineService composing the services above
    scheduler: APScheduler maintenance jobs

Subpackages:
    store: RecordStore contract with in-memory and SQLAlchemy implementations
    loaders: Idempotent fact upserts keyed by natural key

Architecture:
    Every versioned mutation of a file or run is a compare-and-swap on its
    ``version`` column. Conflicting writers re-read and retry with backoff;
    exactly one of several concurrent writers of the same version wins.

    Failed runs are retried with exponential backoff and jitter until
    ``max_retries`` is reached; permanent failures and exhausted runs are
    moved to the dead-letter queue.

Usage:
    from core.database import get_store
    from engine.orchestrator import ETLStateMachineService
    from schemas.engine import StateMachineConfig

Example:
    service = ETLStateMachineService(get_store(), StateMachineConfig(require_approval=True))

    file = await service.create_etl_file(ETLFileCreate(
        organization_id="org-1", filename="loads.csv", checksum=digest
    ))
    run = await service.create_etl_run(file.id)
    await service.start_processing(run.id, session_id="worker-1")

Error Handling:
    Transitions and locking operations return structured results. Exceptions
    from core.exceptions are raised for missing records and can be obtained
    from any LockingResult with raise_for_error().
"""

__all__ = [
    "ETLStateMachineService",
    "OptimisticLockingService",
    "RetryService",
    "ChecksumService",
    "AuditLogger",
    "IdempotentUpsertEngine",
    "MaintenanceScheduler",
]
