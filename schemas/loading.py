"""
Schemas for the idempotent fact load

Validation results and dimension references are small tagged variants:
callers must branch on the concrete type before reading the payload.
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Union
from datetime import date
from enum import Enum

PENDING_PREFIX = "pending-"


class LoadDeviationRecord(BaseModel):
    """
    Cleaned business record for ``fato_desvio_carregamento``.

    Names are business names; ids come from dimension resolution.
    """

    reference_date: date
    equipment: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    diet: Optional[str] = None
    shift: Optional[str] = None
    kg_planned: float
    kg_real: float

    @validator("equipment", "location")
    def strip_required_names(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Name cannot be empty after stripping")
        return v

    @validator("diet", "shift")
    def strip_optional_names(cls, v):
        """Trim business names, treat blanks as missing"""
        if v is None:
            return v
        v = v.strip()
        return v or None


class ResolvedDimension(BaseModel):
    """Dimension resolved to a stable id"""
    id: str

    class Config:
        frozen = True

    @property
    def is_pending(self) -> bool:
        return False

    def storage_value(self) -> str:
        return self.id


class PendingDimension(BaseModel):
    """Dimension not yet registered; stored under a provisional placeholder"""
    placeholder_key: str

    class Config:
        frozen = True

    @property
    def is_pending(self) -> bool:
        return True

    def storage_value(self) -> str:
        return f"{PENDING_PREFIX}{self.placeholder_key}"


DimensionRef = Union[ResolvedDimension, PendingDimension]


def dimension_from_storage(value: Optional[str]) -> Optional[DimensionRef]:
    """Rebuild a tagged reference from a stored column value"""
    if value is None:
        return None
    if value.startswith(PENDING_PREFIX):
        return PendingDimension(placeholder_key=value[len(PENDING_PREFIX):])
    return ResolvedDimension(id=value)


class DimensionIds(BaseModel):
    """Dimension references for one record"""

    location: DimensionRef
    diet: Optional[DimensionRef] = None
    equipment: Optional[DimensionRef] = None

    def pending(self) -> List[str]:
        """Names of the dimensions still pending"""
        refs = {"location": self.location, "diet": self.diet, "equipment": self.equipment}
        return [name for name, ref in refs.items() if ref is not None and ref.is_pending]

    @property
    def has_pending(self) -> bool:
        return bool(self.pending())


class ValidRecord(BaseModel):
    """Validation passed; ``data`` is ready to load"""
    data: LoadDeviationRecord
    warnings: List[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return True


class InvalidRecord(BaseModel):
    """Validation failed; the record must not be loaded"""
    errors: List[str]
    warnings: List[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return False


ValidationOutcome = Union[ValidRecord, InvalidRecord]


class UpsertOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    SKIP = "skip"
    FAILED = "failed"


class UpsertResult(BaseModel):
    """Outcome of a single upsert"""

    operation: UpsertOperation
    natural_key: Optional[str] = None
    record_id: Optional[str] = None
    changed_fields: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.operation != UpsertOperation.FAILED


class BatchUpsertResult(BaseModel):
    """Aggregated counters of a batch upsert"""

    total: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    pending_dimensions: int = 0
    results: List[UpsertResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    def add(self, result: UpsertResult, has_pending: bool = False):
        self.total += 1
        self.results.append(result)
        if result.operation == UpsertOperation.INSERT:
            self.inserted += 1
        elif result.operation == UpsertOperation.UPDATE:
            self.updated += 1
        elif result.operation == UpsertOperation.SKIP:
            self.skipped += 1
        else:
            self.failed += 1
            if result.error:
                self.errors.append(result.error)
        if has_pending and result.success:
            self.pending_dimensions += 1
