"""
Integration tests for the idempotent fact upsert
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, patch
from pydantic import ValidationError as PydanticValidationError
from core.exceptions import DataFormatError, DuplicateKeyError
from engine.loaders import DimensionResolver, IdempotentUpsertEngine, RecordValidator
from models.base import RecordTable
from schemas.loading import (
    DimensionIds,
    InvalidRecord,
    LoadDeviationRecord,
    PendingDimension,
    ResolvedDimension,
    UpsertOperation,
    ValidRecord,
)

NATURAL_KEY = "2024-03-01|EQ-1|CURRAL-5|MANHA"


class CsvRowValidator(RecordValidator):
    """Maps raw column names onto LoadDeviationRecord"""

    def validate(self, raw):
        try:
            record = LoadDeviationRecord(
                reference_date=raw.get("data"),
                equipment=raw.get("equipamento") or "",
                location=raw.get("curral") or "",
                diet=raw.get("dieta"),
                shift=raw.get("turno"),
                kg_planned=raw.get("previsto_kg"),
                kg_real=raw.get("realizado_kg"),
            )
        except PydanticValidationError as e:
            return InvalidRecord(errors=[err["msg"] for err in e.errors()])

        warnings = ["Shift missing"] if record.shift is None else []
        return ValidRecord(data=record, warnings=warnings)


class MappingOnlyValidator(CsvRowValidator):
    """Rejects rows that are not column mappings"""

    def validate(self, raw):
        if not isinstance(raw, dict):
            raise DataFormatError(f"Expected a mapping, got {type(raw).__name__}")
        return super().validate(raw)


class KnownLocationsResolver(DimensionResolver):
    """Resolves registered locations, everything else stays pending"""

    LOCATIONS = {"CURRAL-5": "loc-5", "CURRAL-6": "loc-6"}

    async def resolve(self, organization_id, record):
        location_id = self.LOCATIONS.get(record.location)
        location = (
            ResolvedDimension(id=location_id) if location_id
            else PendingDimension(placeholder_key=record.location)
        )
        return DimensionIds(location=location, equipment=ResolvedDimension(id=record.equipment.lower()))


@pytest.fixture
def upsert_engine(store):
    return IdempotentUpsertEngine(store, "org-1", file_id="file-1", run_id="run-1")


def _raw(**overrides):
    row = {
        "data": "2024-03-01",
        "equipamento": "EQ-1",
        "curral": "CURRAL-5",
        "dieta": "DIETA-A",
        "turno": "MANHA",
        "previsto_kg": 1500,
        "realizado_kg": 1450,
    }
    row.update(overrides)
    return row


class TestUpsert:

    @pytest.mark.asyncio
    async def test_insert_then_skip_then_update(self, upsert_engine, store, deviation_record, resolved_dimensions):
        inserted = await upsert_engine.upsert(deviation_record, resolved_dimensions)
        assert inserted.operation == UpsertOperation.INSERT
        assert inserted.natural_key == NATURAL_KEY

        row = store.snapshot(RecordTable.FACT_LOAD_DEVIATION)[0]
        assert row["deviation_amount"] == -50.0
        assert row["deviation_pct"] == -3.33
        assert row["location_id"] == "loc-5"
        assert row["source_file_id"] == "file-1"

        replay = await upsert_engine.upsert(deviation_record, resolved_dimensions)
        assert replay.operation == UpsertOperation.SKIP
        assert replay.record_id == inserted.record_id

        corrected = deviation_record.model_copy(update={"kg_real": 1480.0})
        updated = await upsert_engine.upsert(corrected, resolved_dimensions)
        assert updated.operation == UpsertOperation.UPDATE
        assert updated.record_id == inserted.record_id
        assert set(updated.changed_fields) == {"kg_real", "deviation_amount", "deviation_pct"}

        rows = store.snapshot(RecordTable.FACT_LOAD_DEVIATION)
        assert len(rows) == 1
        assert rows[0]["natural_key"] == NATURAL_KEY
        assert rows[0]["kg_real"] == 1480.0

    @pytest.mark.asyncio
    async def test_missing_shift_uses_null_token(self, upsert_engine, deviation_record, resolved_dimensions):
        record = deviation_record.model_copy(update={"shift": None})
        result = await upsert_engine.upsert(record, resolved_dimensions)

        assert result.natural_key == "2024-03-01|EQ-1|CURRAL-5|NULL"

    @pytest.mark.asyncio
    async def test_pending_dimensions(self, upsert_engine, store, deviation_record):
        dimensions = DimensionIds(
            location=PendingDimension(placeholder_key="CURRAL-5"),
            diet=PendingDimension(placeholder_key="DIETA-A"),
        )

        result = await upsert_engine.upsert(deviation_record, dimensions)

        assert result.operation == UpsertOperation.INSERT
        assert result.warnings == [
            "Location not found - using pending dimension",
            "Diet not found - using pending dimension",
        ]
        row = store.snapshot(RecordTable.FACT_LOAD_DEVIATION)[0]
        assert row["location_id"] == "pending-CURRAL-5"
        assert row["equipment_id"] is None

    @pytest.mark.asyncio
    async def test_resolving_a_pending_dimension_updates(self, upsert_engine, deviation_record, resolved_dimensions):
        pending = resolved_dimensions.model_copy(update={"location": PendingDimension(placeholder_key="CURRAL-5")})
        await upsert_engine.upsert(deviation_record, pending)

        result = await upsert_engine.upsert(deviation_record, resolved_dimensions)

        assert result.operation == UpsertOperation.UPDATE
        assert result.changed_fields == ["location_id"]

    @pytest.mark.asyncio
    async def test_invalid_record_is_not_loaded(self, upsert_engine, store):
        result = await upsert_engine.upsert_validated(
            InvalidRecord(errors=["kg_planned is required", "bad date"]), None
        )

        assert result.operation == UpsertOperation.FAILED
        assert result.error == "Validation failed: kg_planned is required; bad date"
        assert store.snapshot(RecordTable.FACT_LOAD_DEVIATION) == []

    @pytest.mark.asyncio
    async def test_concurrent_insert_race(self, store, deviation_record, resolved_dimensions):
        """Two loaders racing on one key end with a single row"""
        first = IdempotentUpsertEngine(store, "org-1", file_id="file-1")
        second = IdempotentUpsertEngine(store, "org-1", file_id="file-1")

        results = await asyncio.gather(
            first.upsert(deviation_record, resolved_dimensions),
            second.upsert(deviation_record, resolved_dimensions),
        )

        operations = sorted(r.operation.value for r in results)
        assert operations == ["insert", "skip"]
        assert len(store.snapshot(RecordTable.FACT_LOAD_DEVIATION)) == 1

    @pytest.mark.asyncio
    async def test_organizations_are_isolated(self, store, deviation_record, resolved_dimensions):
        await IdempotentUpsertEngine(store, "org-1").upsert(deviation_record, resolved_dimensions)
        result = await IdempotentUpsertEngine(store, "org-2").upsert(deviation_record, resolved_dimensions)

        assert result.operation == UpsertOperation.INSERT
        assert len(store.snapshot(RecordTable.FACT_LOAD_DEVIATION)) == 2

    @pytest.mark.asyncio
    async def test_duplicate_without_row_fails_the_record(self, upsert_engine, store, deviation_record, resolved_dimensions):
        with patch.object(store, "insert", AsyncMock(side_effect=DuplicateKeyError("duplicate natural_key"))):
            result = await upsert_engine.upsert(deviation_record, resolved_dimensions)

        assert result.operation == UpsertOperation.FAILED
        assert result.error == f"Record {NATURAL_KEY}: Duplicate key reported but no row found"

    @pytest.mark.asyncio
    async def test_row_deleted_before_update_fails_the_record(self, upsert_engine, store, deviation_record, resolved_dimensions):
        await upsert_engine.upsert(deviation_record, resolved_dimensions)
        corrected = deviation_record.model_copy(update={"kg_real": 1480.0})

        with patch.object(store, "update_where", AsyncMock(return_value=[])):
            result = await upsert_engine.upsert(corrected, resolved_dimensions)

        assert result.operation == UpsertOperation.FAILED
        assert result.error == f"Record {NATURAL_KEY}: Row disappeared before update"


class TestBatch:

    @pytest.mark.asyncio
    async def test_upsert_batch_counters(self, upsert_engine, deviation_record, resolved_dimensions):
        pending = DimensionIds(location=PendingDimension(placeholder_key="CURRAL-9"))
        other = deviation_record.model_copy(update={"location": "CURRAL-9"})

        batch = await upsert_engine.upsert_batch([
            (deviation_record, resolved_dimensions),
            (deviation_record, resolved_dimensions),
            (other, pending),
            (InvalidRecord(errors=["bad"]), None),
        ])

        assert (batch.total, batch.inserted, batch.skipped, batch.failed) == (4, 2, 1, 1)
        assert batch.pending_dimensions == 1

    @pytest.mark.asyncio
    async def test_load_records_keeps_order(self, upsert_engine):
        rows = [
            _raw(),
            _raw(equipamento="   "),
            _raw(curral="CURRAL-9", turno=None),
            _raw(realizado_kg=1500),
        ]

        batch = await upsert_engine.load_records(rows, CsvRowValidator(), KnownLocationsResolver())

        assert [r.operation for r in batch.results] == [
            UpsertOperation.INSERT,
            UpsertOperation.FAILED,
            UpsertOperation.INSERT,
            UpsertOperation.UPDATE,
        ]
        assert batch.results[1].error.startswith("Validation failed")
        assert "Shift missing" in batch.results[2].warnings
        assert "Location not found - using pending dimension" in batch.results[2].warnings
        assert batch.pending_dimensions == 1

    @pytest.mark.asyncio
    async def test_unreadable_row_is_reported_not_raised(self, upsert_engine):
        batch = await upsert_engine.load_records(
            [["2024-03-01", "EQ-1"], _raw()], MappingOnlyValidator(), KnownLocationsResolver()
        )

        assert [r.operation for r in batch.results] == [UpsertOperation.FAILED, UpsertOperation.INSERT]
        assert batch.results[0].error == "Validation failed: Expected a mapping, got list"
        assert batch.failed == 1

    @pytest.mark.asyncio
    async def test_replaying_a_file_is_a_no_op(self, upsert_engine):
        rows = [_raw(), _raw(curral="CURRAL-6"), _raw(turno="TARDE")]
        validator, resolver = CsvRowValidator(), KnownLocationsResolver()

        first = await upsert_engine.load_records(rows, validator, resolver)
        second = await upsert_engine.load_records(rows, validator, resolver)

        assert first.inserted == 3
        assert second.skipped == 3
        assert await upsert_engine.get_record_count() == 3


class TestLookups:

    @pytest.mark.asyncio
    async def test_lookup_verify_and_delete(self, upsert_engine, deviation_record, resolved_dimensions):
        await upsert_engine.upsert(deviation_record, resolved_dimensions)
        missing_key = "2024-03-02|EQ-1|CURRAL-5|MANHA"

        found = await upsert_engine.get_records_by_natural_keys([NATURAL_KEY, missing_key])
        assert [r["natural_key"] for r in found] == [NATURAL_KEY]
        assert await upsert_engine.get_records_by_natural_keys([]) == []

        integrity = await upsert_engine.verify_batch_integrity([NATURAL_KEY, missing_key])
        assert integrity == {
            "total_expected": 2,
            "total_found": 1,
            "missing_keys": [missing_key],
            "is_complete": False,
        }

        assert len(await upsert_engine.get_records_by_file_id("file-1")) == 1
        assert await upsert_engine.delete_records_by_file_id("file-1") == 1
        assert await upsert_engine.get_record_count() == 0
