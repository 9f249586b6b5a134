"""
Load deviation facts into fato_desvio_carregamento with idempotent upserts
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
import logging
import uuid

from core.exceptions import DataFormatError, DuplicateKeyError, ETLException, UpsertError
from engine.store.base import RecordStore, asc, eq, in_
from models.base import RecordTable
from schemas.loading import (
    BatchUpsertResult,
    DimensionIds,
    InvalidRecord,
    LoadDeviationRecord,
    UpsertOperation,
    UpsertResult,
    ValidRecord,
    ValidationOutcome,
)

logger = logging.getLogger(__name__)

NULL_TOKEN = "NULL"
KEY_SEPARATOR = "|"

# A difference in any of these turns a replay into an update
TRACKED_FIELDS = (
    "kg_planned",
    "kg_real",
    "deviation_amount",
    "deviation_pct",
    "shift",
    "location_id",
    "diet_id",
    "equipment_id",
    "source_file_id",
)


def round_half_away_from_zero(value: float, places: int = 2) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def compute_deviation(planned: float, actual: float) -> Tuple[float, float]:
    """
    Returns:
        (deviation_amount, deviation_pct), both rounded to 2 places.
        The percentage is 0 when nothing was planned.
    """
    amount = actual - planned
    pct = amount / planned * 100 if planned > 0 else 0.0
    return round_half_away_from_zero(amount), round_half_away_from_zero(pct)


def build_natural_key(
    reference_date: Union[date, str],
    equipment: str,
    location: str,
    shift: Optional[str] = None
) -> str:
    """``date|equipment|location|shift`` with a missing shift as ``NULL``"""
    day = reference_date.isoformat() if isinstance(reference_date, date) else str(reference_date)
    return KEY_SEPARATOR.join([day, equipment, location, shift or NULL_TOKEN])


class RecordValidator(ABC):
    """
    Field-level validation of a raw parsed row.

    Field problems come back as InvalidRecord; a row that cannot be read at
    all may raise DataFormatError instead.
    """

    @abstractmethod
    def validate(self, raw: Dict[str, Any]) -> ValidationOutcome:
        pass


class DimensionResolver(ABC):
    """
    Maps business names to dimension ids.

    Unknown names resolve to PendingDimension placeholders instead of
    failing the load.
    """

    @abstractmethod
    async def resolve(self, organization_id: str, record: LoadDeviationRecord) -> DimensionIds:
        pass


class IdempotentUpsertEngine:
    """
    Insert, update or skip fact rows by natural key.

    Decision per record, keyed by (organization_id, natural_key):
    - no row: insert with a new id
    - row exists and a tracked field differs: update in place
    - row exists and nothing differs: skip

    Replaying the same cleaned file is therefore a no-op. The natural key of
    an existing row is never rewritten.
    """

    def __init__(
        self,
        store: RecordStore,
        organization_id: str,
        file_id: Optional[str] = None,
        run_id: Optional[str] = None
    ):
        self.store = store
        self.organization_id = organization_id
        self.file_id = file_id
        self.run_id = run_id

    @property
    def _log_extra(self) -> Dict[str, Any]:
        return {"organization_id": self.organization_id, "file_id": self.file_id, "run_id": self.run_id}

    def _fact_values(self, data: LoadDeviationRecord, dimensions: DimensionIds) -> Dict[str, Any]:
        deviation_amount, deviation_pct = compute_deviation(data.kg_planned, data.kg_real)
        return {
            "reference_date": data.reference_date,
            "shift": data.shift,
            "location_id": dimensions.location.storage_value(),
            "diet_id": dimensions.diet.storage_value() if dimensions.diet else None,
            "equipment_id": dimensions.equipment.storage_value() if dimensions.equipment else None,
            "kg_planned": data.kg_planned,
            "kg_real": data.kg_real,
            "deviation_amount": deviation_amount,
            "deviation_pct": deviation_pct,
            "source_file_id": self.file_id,
        }

    async def find_existing(self, natural_key: str) -> Optional[Dict[str, Any]]:
        rows = await self.store.query(
            RecordTable.FACT_LOAD_DEVIATION,
            [eq("organization_id", self.organization_id), eq("natural_key", natural_key)],
            limit=1,
        )
        return rows[0] if rows else None

    async def _update_if_changed(
        self,
        existing: Dict[str, Any],
        values: Dict[str, Any],
        natural_key: str,
        warnings: List[str]
    ) -> UpsertResult:
        changed = [f for f in TRACKED_FIELDS if existing.get(f) != values[f]]
        if not changed:
            return UpsertResult(
                operation=UpsertOperation.SKIP,
                natural_key=natural_key,
                record_id=existing["id"],
                warnings=warnings,
            )

        patch = {f: values[f] for f in TRACKED_FIELDS}
        patch["updated_at"] = datetime.utcnow()
        updated = await self.store.update_where(RecordTable.FACT_LOAD_DEVIATION, [eq("id", existing["id"])], patch)
        if not updated:
            raise UpsertError(
                "Row disappeared before update",
                context={"natural_key": natural_key, "organization_id": self.organization_id},
            )
        logger.debug(f"Updated {natural_key}: {', '.join(changed)}", extra=self._log_extra)
        return UpsertResult(
            operation=UpsertOperation.UPDATE,
            natural_key=natural_key,
            record_id=existing["id"],
            changed_fields=changed,
            warnings=warnings,
        )

    async def upsert(self, data: LoadDeviationRecord, dimensions: DimensionIds) -> UpsertResult:
        """
        Apply one cleaned record.

        Store failures are reported as a FAILED result so a batch can go on.
        """
        natural_key = build_natural_key(data.reference_date, data.equipment, data.location, data.shift)
        warnings = [f"{name.capitalize()} not found - using pending dimension" for name in dimensions.pending()]

        try:
            values = self._fact_values(data, dimensions)
            existing = await self.find_existing(natural_key)

            if existing is None:
                now = datetime.utcnow()
                try:
                    row = await self.store.insert(RecordTable.FACT_LOAD_DEVIATION, {
                        "id": str(uuid.uuid4()),
                        "organization_id": self.organization_id,
                        "natural_key": natural_key,
                        **values,
                        "created_at": now,
                        "updated_at": now,
                    })
                    return UpsertResult(
                        operation=UpsertOperation.INSERT,
                        natural_key=natural_key,
                        record_id=row["id"],
                        warnings=warnings,
                    )
                except DuplicateKeyError as e:
                    # A concurrent loader inserted the key first
                    existing = await self.find_existing(natural_key)
                    if existing is None:
                        raise UpsertError(
                            "Duplicate key reported but no row found",
                            context={"natural_key": natural_key, "organization_id": self.organization_id},
                            original_exception=e,
                        )
                    logger.info(f"Insert race on {natural_key}, comparing instead", extra=self._log_extra)

            return await self._update_if_changed(existing, values, natural_key, warnings)

        except ETLException as e:
            logger.error(f"Upsert failed for {natural_key}: {e.message}", extra=self._log_extra)
            return UpsertResult(
                operation=UpsertOperation.FAILED,
                natural_key=natural_key,
                warnings=warnings,
                error=f"Record {natural_key}: {e.message}",
            )

    async def upsert_validated(
        self,
        outcome: ValidationOutcome,
        dimensions: Optional[DimensionIds]
    ) -> UpsertResult:
        if isinstance(outcome, InvalidRecord):
            return UpsertResult(
                operation=UpsertOperation.FAILED,
                warnings=list(outcome.warnings),
                error=f"Validation failed: {'; '.join(outcome.errors)}",
            )
        result = await self.upsert(outcome.data, dimensions)
        result.warnings = [*outcome.warnings, *result.warnings]
        return result

    async def upsert_batch(
        self,
        items: Iterable[Tuple[Union[ValidationOutcome, LoadDeviationRecord], DimensionIds]]
    ) -> BatchUpsertResult:
        """Upsert record by record and aggregate the outcome counters"""
        batch = BatchUpsertResult()
        for record, dimensions in items:
            if isinstance(record, LoadDeviationRecord):
                result = await self.upsert(record, dimensions)
            else:
                result = await self.upsert_validated(record, dimensions)
            batch.add(result, has_pending=dimensions is not None and dimensions.has_pending)

        self._log_summary(batch)
        return batch

    async def load_records(
        self,
        raw_records: Iterable[Dict[str, Any]],
        validator: RecordValidator,
        resolver: DimensionResolver
    ) -> BatchUpsertResult:
        """Validate, resolve dimensions and upsert raw rows in order"""
        batch = BatchUpsertResult()
        for raw in raw_records:
            try:
                outcome = validator.validate(raw)
            except DataFormatError as e:
                logger.warning(f"Unreadable row: {e.message}", extra=self._log_extra)
                outcome = InvalidRecord(errors=[e.message])
            dimensions = None
            if isinstance(outcome, ValidRecord):
                dimensions = await resolver.resolve(self.organization_id, outcome.data)
            result = await self.upsert_validated(outcome, dimensions)
            batch.add(result, has_pending=dimensions is not None and dimensions.has_pending)

        self._log_summary(batch)
        return batch

    def _log_summary(self, batch: BatchUpsertResult):
        logger.info(
            f"Batch upsert: {batch.inserted} inserted, {batch.updated} updated, "
            f"{batch.skipped} skipped, {batch.failed} failed "
            f"({batch.pending_dimensions} with pending dimensions)",
            extra=self._log_extra
        )

    async def get_records_by_natural_keys(self, natural_keys: List[str]) -> List[Dict[str, Any]]:
        if not natural_keys:
            return []
        return await self.store.query(
            RecordTable.FACT_LOAD_DEVIATION,
            [eq("organization_id", self.organization_id), in_("natural_key", natural_keys)],
        )

    async def get_records_by_file_id(self, file_id: str) -> List[Dict[str, Any]]:
        return await self.store.query(
            RecordTable.FACT_LOAD_DEVIATION,
            [eq("organization_id", self.organization_id), eq("source_file_id", file_id)],
            order_by=[asc("created_at")],
        )

    async def delete_records_by_file_id(self, file_id: str) -> int:
        """Remove the facts loaded from a file before reprocessing it"""
        deleted = await self.store.delete(
            RecordTable.FACT_LOAD_DEVIATION,
            [eq("organization_id", self.organization_id), eq("source_file_id", file_id)],
        )
        logger.info(f"Deleted {deleted} facts loaded from file {file_id}", extra=self._log_extra)
        return deleted

    async def verify_batch_integrity(self, natural_keys: List[str]) -> Dict[str, Any]:
        found = await self.get_records_by_natural_keys(natural_keys)
        found_keys = {r["natural_key"] for r in found}
        missing = [k for k in natural_keys if k not in found_keys]
        return {
            "total_expected": len(natural_keys),
            "total_found": len(found),
            "missing_keys": missing,
            "is_complete": not missing,
        }

    async def get_record_count(self, organization_id: Optional[str] = None) -> int:
        return await self.store.count(
            RecordTable.FACT_LOAD_DEVIATION,
            [eq("organization_id", organization_id or self.organization_id)],
        )
