from sqlalchemy import Column, String, DateTime, Text, Boolean, Index
from datetime import datetime
from models.base import Base, JSONType


class DeadLetterQueueEntry(Base):
    """
    Terminal failure record for a run.

    Purpose:
    - Quarantine runs that exhausted retries or failed permanently
    - Manual promotion back to the retry schedule (marked_for_retry)

    Design:
    - run_id is a weak reference; the entry never owns the run
    - Only entries not marked for retry are pruned by retention cleanup
    """
    __tablename__ = "etl_dead_letter_queue"

    id = Column(String(64), primary_key=True)
    run_id = Column(String(64), nullable=False, index=True)
    file_id = Column(String(64), nullable=True, index=True)
    organization_id = Column(String(64), nullable=False, index=True)

    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    max_retries_exceeded = Column(Boolean, nullable=False, default=False)
    marked_for_retry = Column(Boolean, nullable=False, default=False, index=True)
    retry_after = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_dlq_marked_retry_after", "marked_for_retry", "retry_after"),
    )
