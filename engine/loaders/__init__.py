"""
Fact loaders with idempotent upsert operations
"""

from engine.loaders.fact_loader import (
    DimensionResolver,
    IdempotentUpsertEngine,
    RecordValidator,
    build_natural_key,
    compute_deviation,
)

__all__ = [
    "DimensionResolver",
    "IdempotentUpsertEngine",
    "RecordValidator",
    "build_natural_key",
    "compute_deviation",
]
