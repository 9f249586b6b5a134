from sqlalchemy import Column, String, Integer, DateTime, Text, Index, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, JSONType, ETLState


class ETLRun(Base):
    """
    One processing attempt against a file.

    Purpose:
    - A file may have several runs (retries, manual restarts)
    - Retry bookkeeping (retry_count, next_retry_at) for the scheduler poll
    - Record counters for monitoring
    """
    __tablename__ = "etl_run"

    id = Column(String(64), primary_key=True)
    file_id = Column(String(64), ForeignKey("etl_file.id"), nullable=False, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    run_number = Column(Integer, nullable=False)

    # Lifecycle
    current_state = Column(String(32), nullable=False, default=ETLState.UPLOADED.value, index=True)
    state_history = Column(JSONType, nullable=False, default=list)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    # Statistics
    records_total = Column(Integer, nullable=True)
    records_processed = Column(Integer, nullable=True)
    records_failed = Column(Integer, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    # Retry scheduling
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True, index=True)

    # Flexible metadata
    extra_metadata = Column(JSONType, nullable=True)

    # Concurrency control
    version = Column(Integer, nullable=False, default=1)
    locked_by = Column(String(128), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    lock_expires_at = Column(DateTime, nullable=True, index=True)
    processing_by = Column(String(128), nullable=True)
    processing_started_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    file = relationship("ETLFile", back_populates="runs")

    # Indexes
    __table_args__ = (
        Index("idx_etl_run_file_number", "file_id", "run_number", unique=True),
        Index("idx_etl_run_retry_poll", "current_state", "next_retry_at"),
    )
