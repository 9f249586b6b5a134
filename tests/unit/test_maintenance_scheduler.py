import pytest
from unittest.mock import AsyncMock, patch
from engine.scheduler import MaintenanceScheduler


@pytest.mark.asyncio
async def test_scheduler_initialization():
    service = AsyncMock()
    scheduler = MaintenanceScheduler(service=service, interval_minutes=10)

    assert scheduler.scheduler is not None
    assert scheduler.service is service
    assert scheduler.interval_minutes == 10


@pytest.mark.asyncio
async def test_scheduler_registers_jobs():
    scheduler = MaintenanceScheduler(service=AsyncMock())

    with patch.object(scheduler.scheduler, "start") as mock_start:
        scheduler.start()

    mock_start.assert_called_once()
    job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
    assert job_ids == {"release_locks", "stale_runs", "dead_letter", "audit_retention"}


@pytest.mark.asyncio
async def test_job_execution_calls_service():
    service = AsyncMock()
    service.release_expired_locks.return_value = {"etl_file": 1, "etl_run": 0}
    service.clear_stale_processing_sessions.return_value = {"etl_file": 0, "etl_run": 2}
    service.process_marked_dlq_entries.return_value = 1
    service.cleanup_old_dlq_entries.return_value = 0
    service.release_stale_runs.return_value = ["run-1"]
    service.cleanup_old_audit_records.return_value = 5

    scheduler = MaintenanceScheduler(service=service)
    await scheduler.release_locks_job()
    await scheduler.stale_runs_job()
    await scheduler.dead_letter_job()
    await scheduler.audit_retention_job()

    service.release_expired_locks.assert_awaited_once()
    service.clear_stale_processing_sessions.assert_awaited_once()
    service.release_stale_runs.assert_awaited_once()
    service.process_marked_dlq_entries.assert_awaited_once()
    service.cleanup_old_dlq_entries.assert_awaited_once()
    service.cleanup_old_audit_records.assert_awaited_once()


@pytest.mark.asyncio
async def test_job_failure_is_logged_not_raised():
    service = AsyncMock()
    service.release_stale_runs.side_effect = RuntimeError("database unavailable")

    scheduler = MaintenanceScheduler(service=service)
    await scheduler.stale_runs_job()

    service.release_stale_runs.assert_awaited_once()
