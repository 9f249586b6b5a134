from sqlalchemy import Column, String, Float, Date, DateTime, Index
from datetime import datetime
from models.base import Base


class FactLoadDeviation(Base):
    """
    Loaded business row: planned versus actual feed load per shift.

    Natural Key:
    - reference_date|equipment|location|shift (shift defaults to "NULL")
    - Unique per organization; used to collapse repeated loads

    Lifecycle:
    - Inserted on first load of a natural key
    - Updated in place when a tracked field changes, otherwise skipped
    - Deleted only by reprocessing cleanup (by source_file_id)

    Dimension columns hold either a resolved id or a "pending-" placeholder.
    """
    __tablename__ = "fato_desvio_carregamento"

    id = Column(String(64), primary_key=True)
    organization_id = Column(String(64), nullable=False)
    natural_key = Column(String(500), nullable=False)

    # Business dimensions
    reference_date = Column(Date, nullable=False, index=True)
    shift = Column(String(50), nullable=True)
    location_id = Column(String(128), nullable=False)
    diet_id = Column(String(128), nullable=True)
    equipment_id = Column(String(128), nullable=True)

    # Measures
    kg_planned = Column(Float, nullable=False)
    kg_real = Column(Float, nullable=False)
    deviation_amount = Column(Float, nullable=False)
    deviation_pct = Column(Float, nullable=False)

    # Lineage
    source_file_id = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_fact_org_natural_key", "organization_id", "natural_key", unique=True),
    )
