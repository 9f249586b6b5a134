"""
Integration tests for the file/run lifecycle orchestrated by ETLStateMachineService
"""

import pytest
from datetime import datetime, timedelta
from core.exceptions import RecordNotFoundError, ValidationError
from engine.orchestrator import ETLStateMachineService
from engine.scheduler import MaintenanceScheduler
from models.base import ETLState, RecordTable
from schemas.engine import StateMachineConfig
from schemas.state import StateTransitionRequest


async def _new_run(service, file_create):
    file = await service.create_etl_file(file_create, file_id="file-1")
    run = await service.create_etl_run(file.id, started_by="user-1")
    return file, run


async def _drive_to_validated(service, run_id, session_id=None):
    assert (await service.start_processing(run_id, session_id)).success
    assert (await service.complete_parsing(run_id, 120, session_id)).success
    assert (await service.start_validation(run_id, session_id)).success
    return await service.complete_validation(run_id, 118, 2, session_id)


class TestFilesAndRuns:

    @pytest.mark.asyncio
    async def test_create_file_and_runs(self, service, file_create):
        file = await service.create_etl_file(file_create, file_id="file-1")

        assert file.current_state == ETLState.UPLOADED
        assert file.version == 1
        assert file.state_history[0].actor == "user-1"

        first = await service.create_etl_run(file.id)
        second = await service.create_etl_run(file.id)
        assert (first.run_number, second.run_number) == (1, 2)
        assert first.id.startswith("run-")
        assert [r.id for r in await service.get_file_runs(file.id)] == [first.id, second.id]

        trail = await service.get_audit_trail("org-1", file_id="file-1")
        assert [entry["action"] for entry in trail] == ["file_created"]

    @pytest.mark.asyncio
    async def test_run_for_unknown_file(self, service):
        with pytest.raises(RecordNotFoundError):
            await service.create_etl_run("missing")

    @pytest.mark.asyncio
    async def test_lookups_of_missing_records(self, service):
        assert await service.get_etl_file("missing") is None
        assert await service.get_etl_run("missing") is None


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_happy_path(self, service, file_create):
        file, run = await _new_run(service, file_create)

        loading = await _drive_to_validated(service, run.id)
        assert loading.success
        assert loading.current_state == ETLState.LOADING

        loaded = await service.complete_loading(run.id, records_loaded=118)
        assert loaded.success
        assert loaded.previous_state == ETLState.LOADING

        run = await service.get_etl_run(run.id)
        file = await service.get_etl_file(file.id)
        assert run.current_state == ETLState.LOADED
        assert file.current_state == ETLState.LOADED
        assert run.records_total == 120
        assert run.records_processed == 118
        assert run.records_failed == 2
        assert run.completed_at is not None
        assert file.loaded_at is not None
        assert run.processing_by is None
        assert [h.state for h in run.state_history] == [
            "uploaded", "parsing", "parsed", "validating", "validated", "loading", "loaded",
        ]
        assert file.version == run.version == 7

        transitions = await service.audit.get_audit_trail("org-1", run_id=run.id, action="state_transition")
        assert len(transitions) == 6
        assert all(entry["success"] for entry in transitions)

    @pytest.mark.asyncio
    async def test_approval_flow(self, store, engine_config, file_create):
        config = engine_config.model_copy(update={"require_approval": True})
        service = ETLStateMachineService(store, config, worker_id="worker-test")
        file, run = await _new_run(service, file_create)

        waiting = await _drive_to_validated(service, run.id)
        assert waiting.current_state == ETLState.AWAITING_APPROVAL

        approved = await service.approve(run.id, "manager-1")
        assert approved.success
        file = await service.get_etl_file(file.id)
        assert file.approved_by == "manager-1"
        assert file.approved_at is not None

        assert (await service.start_loading(run.id)).success
        assert (await service.complete_loading(run.id)).success

    @pytest.mark.asyncio
    async def test_illegal_transition_is_rejected_and_audited(self, service, file_create):
        file, run = await _new_run(service, file_create)

        result = await service.complete_loading(run.id)

        assert not result.success
        assert result.error_code == "invalid_transition"
        assert result.current_state == ETLState.UPLOADED
        assert (await service.get_etl_run(run.id)).version == 1
        assert (await service.get_etl_file(file.id)).version == 1

        entries = await service.audit.get_audit_trail("org-1", run_id=run.id, action="state_transition")
        assert entries[0]["success"] is False
        assert entries[0]["level"] == "warning"

    @pytest.mark.asyncio
    async def test_session_held_by_another_worker(self, service, file_create):
        file, run = await _new_run(service, file_create)
        assert (await service.start_processing(run.id, "session-a")).success

        result = await service.complete_parsing(run.id, 10, "session-b")

        assert not result.success
        assert result.error_code == "session_active"
        assert (await service.get_etl_run(run.id)).current_state == ETLState.PARSING

    @pytest.mark.asyncio
    async def test_expected_from_state(self, service, file_create):
        file, run = await _new_run(service, file_create)

        result = await service.transition_state(StateTransitionRequest(
            organization_id="org-1",
            run_id=run.id,
            from_state=ETLState.PARSED,
            to_state=ETLState.VALIDATING,
        ))

        assert not result.success
        assert result.error_code == "invalid_transition"

    @pytest.mark.asyncio
    async def test_file_only_transition(self, service, file_create):
        file = await service.create_etl_file(file_create, file_id="file-1")

        result = await service.transition_state(StateTransitionRequest(
            organization_id="org-1",
            file_id=file.id,
            to_state=ETLState.CANCELLED,
            user_id="user-1",
        ))

        assert result.success
        assert result.file_version == 2
        assert result.run_version is None

    @pytest.mark.asyncio
    async def test_unknown_record(self, service):
        result = await service.transition_state(StateTransitionRequest(
            organization_id="org-1", run_id="missing", to_state=ETLState.PARSING
        ))

        assert not result.success
        assert result.error_code == "record_not_found"

    @pytest.mark.asyncio
    async def test_cancel_and_restart(self, service, file_create):
        file, run = await _new_run(service, file_create)

        assert (await service.cancel(run.id, user_id="user-1", reason="Wrong file")).success
        restarted = await service.start_processing(run.id)

        assert restarted.success
        assert restarted.previous_state == ETLState.CANCELLED


class TestFailures:

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, service, file_create):
        file, run = await _new_run(service, file_create)
        await service.start_processing(run.id, "session-a")

        result = await service.handle_run_failure(run.id, "Connection timeout", {"attempt": 1})

        assert result.should_retry
        assert result.delay_ms == 1000
        run = await service.get_etl_run(run.id)
        file = await service.get_etl_file(file.id)
        assert run.current_state == ETLState.FAILED
        assert file.current_state == ETLState.FAILED
        assert run.error_message == "Connection timeout"
        assert run.processing_by is None
        assert run.retry_count == 1

    @pytest.mark.asyncio
    async def test_non_transient_failure_dead_letters(self, service, file_create):
        file, run = await _new_run(service, file_create)
        await service.start_processing(run.id)

        result = await service.handle_run_failure(run.id, "Unknown column", is_transient=False)

        assert not result.should_retry
        entries = await service.get_dead_letter_queue_entries("org-1")
        assert [e.id for e in entries] == [result.dead_letter_queue_id]

    @pytest.mark.asyncio
    async def test_failure_of_unknown_run(self, service):
        with pytest.raises(RecordNotFoundError):
            await service.handle_run_failure("missing", "boom")

    @pytest.mark.asyncio
    async def test_retry_queue_success(self, service, store, file_create):
        file, run = await _new_run(service, file_create)
        await service.start_processing(run.id)
        await service.handle_run_failure(run.id, "Connection timeout")
        store.touch(RecordTable.ETL_RUN, run.id, next_retry_at=datetime.utcnow() - timedelta(seconds=1))

        async def processor(retried):
            assert retried.current_state == ETLState.PARSING
            assert retried.processing_by == service.worker_id
            await service.complete_parsing(retried.id, 10)
            await service.start_validation(retried.id)
            await service.complete_validation(retried.id, 10, 0)
            await service.complete_loading(retried.id, 10)

        summary = await service.process_retry_queue(processor, "org-1")

        assert (summary.picked_up, summary.processed, summary.failed) == (1, 1, 0)
        run = await service.get_etl_run(run.id)
        assert run.current_state == ETLState.LOADED
        assert run.next_retry_at is None

    @pytest.mark.asyncio
    async def test_retry_queue_routes_permanent_errors(self, service, store, file_create):
        file, run = await _new_run(service, file_create)
        await service.start_processing(run.id)
        await service.handle_run_failure(run.id, "Connection timeout")
        store.touch(RecordTable.ETL_RUN, run.id, next_retry_at=datetime.utcnow() - timedelta(seconds=1))

        async def processor(retried):
            raise ValidationError("Column 'kg_previsto' missing")

        summary = await service.process_retry_queue(processor)

        assert (summary.picked_up, summary.processed, summary.failed) == (1, 0, 1)
        assert summary.errors[0]["run_id"] == run.id
        assert (await service.get_etl_run(run.id)).current_state == ETLState.FAILED
        assert len(await service.get_dead_letter_queue_entries("org-1")) == 1
        assert await service.get_retry_ready_runs("org-1") == []

    @pytest.mark.asyncio
    async def test_retry_queue_continues_when_failure_cannot_be_recorded(self, store, engine_config, file_create):
        config = engine_config.model_copy(update={"require_approval": True})
        service = ETLStateMachineService(store, config, worker_id="worker-test")
        runs = []
        for file_id, checksum in (("file-1", "a" * 64), ("file-2", "b" * 64)):
            file = await service.create_etl_file(file_create.model_copy(update={"checksum": checksum}), file_id=file_id)
            run = await service.create_etl_run(file.id)
            await service.start_processing(run.id)
            await service.handle_run_failure(run.id, "Connection timeout")
            runs.append(run)
        first, second = runs
        store.touch(RecordTable.ETL_RUN, first.id, next_retry_at=datetime.utcnow() - timedelta(seconds=2))
        store.touch(RecordTable.ETL_RUN, second.id, next_retry_at=datetime.utcnow() - timedelta(seconds=1))

        async def processor(retried):
            await service.complete_parsing(retried.id, 10)
            await service.start_validation(retried.id)
            await service.complete_validation(retried.id, 10, 0)
            if retried.id == first.id:
                raise RuntimeError("Connection reset after validation")

        summary = await service.process_retry_queue(processor)

        assert (summary.picked_up, summary.processed, summary.failed) == (2, 1, 1)
        assert [e["run_id"] for e in summary.errors] == [first.id, first.id]
        assert (await service.get_etl_run(first.id)).current_state == ETLState.AWAITING_APPROVAL
        assert (await service.get_etl_run(second.id)).current_state == ETLState.AWAITING_APPROVAL

    @pytest.mark.asyncio
    async def test_release_stale_runs(self, service, store, file_create):
        file, run = await _new_run(service, file_create)
        await service.start_processing(run.id, "crashed-worker")

        assert await service.release_stale_runs() == []

        stale_since = datetime.utcnow() - timedelta(hours=1)
        store.touch(RecordTable.ETL_RUN, run.id, processing_started_at=stale_since)
        store.touch(RecordTable.ETL_FILE, file.id, processing_started_at=stale_since)

        assert await service.release_stale_runs() == [run.id]
        run = await service.get_etl_run(run.id)
        assert run.current_state == ETLState.FAILED
        assert run.error_message == "Processing timeout - stale session detected"
        assert run.retry_count == 1

    @pytest.mark.asyncio
    async def test_scheduler_sweeps_fail_a_crashed_run(self, service, store, file_create):
        """The session sweep runs first and must leave the stale run for the stale-run sweep"""
        file, run = await _new_run(service, file_create)
        await service.start_processing(run.id, "crashed-worker")
        stale_since = datetime.utcnow() - timedelta(hours=1)
        store.touch(RecordTable.ETL_RUN, run.id, processing_started_at=stale_since)
        store.touch(RecordTable.ETL_FILE, file.id, processing_started_at=stale_since)
        scheduler = MaintenanceScheduler(service=service)

        assert await service.clear_stale_processing_sessions() == {"etl_file": 0, "etl_run": 0}
        await scheduler.release_locks_job()
        await scheduler.stale_runs_job()

        run = await service.get_etl_run(run.id)
        file = await service.get_etl_file(file.id)
        assert run.current_state == ETLState.FAILED
        assert file.current_state == ETLState.FAILED
        assert run.processing_by is None
        assert run.retry_count == 1

    @pytest.mark.asyncio
    async def test_session_sweep_clears_idle_records(self, service, store, file_create):
        file, run = await _new_run(service, file_create)
        store.touch(
            RecordTable.ETL_RUN, run.id,
            processing_by="old-session",
            processing_started_at=datetime.utcnow() - timedelta(hours=1),
        )

        assert await service.clear_stale_processing_sessions() == {"etl_file": 0, "etl_run": 1}
        assert (await service.get_etl_run(run.id)).processing_by is None


class TestMaintenance:

    @pytest.mark.asyncio
    async def test_release_expired_locks_reports_per_table(self, service, store, file_create):
        file, run = await _new_run(service, file_create)
        await service.locking.lock_record(RecordTable.ETL_RUN, run.id)
        store.touch(RecordTable.ETL_RUN, run.id, lock_expires_at=datetime.utcnow() - timedelta(seconds=1))

        assert await service.release_expired_locks() == {"etl_file": 0, "etl_run": 1}

    @pytest.mark.asyncio
    async def test_with_lock_and_locking_stats(self, service, file_create):
        file, run = await _new_run(service, file_create)

        async def operation():
            return await service.update_with_lock(RecordTable.ETL_RUN, run.id, {"records_total": 5})

        outcome = await service.with_lock(RecordTable.ETL_RUN, run.id, operation)
        assert outcome.success
        assert outcome.data.current_version == 2

        stats = await service.get_locking_stats("org-1")
        assert stats["etl_run"]["active_locks"] == 0
        assert stats["etl_file"]["total_records"] == 1

    @pytest.mark.asyncio
    async def test_cleanup_old_audit_records(self, service, store, file_create):
        await service.create_etl_file(file_create, file_id="file-1")
        entry = store.snapshot(RecordTable.RUN_LOG)[0]
        store.touch(RecordTable.RUN_LOG, entry["id"], timestamp=datetime.utcnow() - timedelta(days=200))

        assert await service.cleanup_old_audit_records("org-1", dry_run=True) == 1
        assert await service.cleanup_old_audit_records("org-1") == 1
        assert store.snapshot(RecordTable.RUN_LOG) == []

    @pytest.mark.asyncio
    async def test_upsert_engine_is_bound_to_run(self, service, file_create, deviation_record, resolved_dimensions):
        file, run = await _new_run(service, file_create)

        engine = service.create_upsert_engine(run)
        await engine.upsert(deviation_record, resolved_dimensions)

        assert engine.organization_id == "org-1"
        assert len(await engine.get_records_by_file_id(file.id)) == 1
