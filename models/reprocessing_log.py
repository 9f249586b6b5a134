from sqlalchemy import Column, String, DateTime, Text, Boolean, Index
from datetime import datetime
from models.base import Base


class ReprocessingRecord(Base):
    """
    Audit record of a forced reprocessing that overrode a duplicate block.
    """
    __tablename__ = "etl_reprocessing_log"

    id = Column(String(64), primary_key=True)
    original_file_id = Column(String(64), nullable=False, index=True)
    checksum = Column(String(128), nullable=False)
    organization_id = Column(String(64), nullable=False)

    forced_by = Column(String(64), nullable=False)
    reason = Column(Text, nullable=True)
    skip_validation = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_reprocessing_org_created", "organization_id", "created_at"),
    )
