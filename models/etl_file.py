from sqlalchemy import Column, String, BigInteger, Integer, DateTime, Text, Index
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, JSONType, ETLState


class ETLFile(Base):
    """
    One uploaded artifact and its lifecycle.

    Purpose:
    - Single source of truth for the file's current state
    - Append-only state history (audit of every transition)
    - Duplicate detection by content checksum

    Concurrency:
    - version: optimistic locking counter, +1 on every successful mutation
    - locked_by / locked_at / lock_expires_at: advisory pessimistic lock with TTL
    - processing_by / processing_started_at: processing session claim,
      considered stale once older than the configured timeout
    """
    __tablename__ = "etl_file"

    id = Column(String(64), primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)

    # File identification
    filename = Column(String(500), nullable=False)
    filepath = Column(String(1024), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    mime_type = Column(String(100), nullable=True)
    checksum = Column(String(128), nullable=False)

    # Lifecycle
    current_state = Column(String(32), nullable=False, default=ETLState.UPLOADED.value, index=True)
    state_history = Column(JSONType, nullable=False, default=list)

    # Milestones
    uploaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    uploaded_by = Column(String(64), nullable=True)
    parsed_at = Column(DateTime, nullable=True)
    validated_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(String(64), nullable=True)
    loaded_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)

    # Flexible metadata
    extra_metadata = Column(JSONType, nullable=True)

    # Concurrency control
    version = Column(Integer, nullable=False, default=1)
    locked_by = Column(String(128), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    lock_expires_at = Column(DateTime, nullable=True, index=True)
    processing_by = Column(String(128), nullable=True)
    processing_started_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    runs = relationship("ETLRun", back_populates="file", cascade="all, delete-orphan")

    # Not unique: forced reprocessing re-uploads the same content
    __table_args__ = (
        Index("idx_etl_file_org_checksum", "organization_id", "checksum"),
        Index("idx_etl_file_org_uploaded", "organization_id", "uploaded_at"),
    )
