from sqlalchemy import Column, String, Integer, DateTime, Text, Boolean, Index
from datetime import datetime
from models.base import Base, JSONType, LogLevel


class ETLRunLog(Base):
    """
    Append-only audit trail of engine operations.

    Rows are never updated; old rows are only pruned by retention cleanup.
    """
    __tablename__ = "etl_run_log"

    id = Column(String(64), primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    file_id = Column(String(64), nullable=True, index=True)
    run_id = Column(String(64), nullable=True, index=True)

    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    level = Column(String(16), nullable=False, default=LogLevel.INFO.value)
    action = Column(String(100), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSONType, nullable=True)

    # Transition context
    state = Column(String(32), nullable=True)
    previous_state = Column(String(32), nullable=True)
    user_id = Column(String(64), nullable=True)

    # Outcome
    success = Column(Boolean, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_run_log_org_timestamp", "organization_id", "timestamp"),
        Index("idx_run_log_action", "action", "timestamp"),
    )
