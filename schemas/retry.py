"""
Schemas for failure handling, the dead-letter queue and duplicate detection
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum
from models.base import ETLState


class ErrorType(str, Enum):
    """Failure classification driving the retry decision"""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMITED = "rate_limited"
    RESOURCE = "resource"


class FailureHandlingResult(BaseModel):
    """
    Outcome of ``handle_failure``.

    Exactly one of ``next_retry_at`` / ``dead_letter_queue_id`` is set.
    """

    should_retry: bool
    retry_count: int
    next_retry_at: Optional[datetime] = None
    delay_ms: Optional[int] = None
    dead_letter_queue_id: Optional[str] = None
    max_retries_exceeded: bool = False
    error_message: Optional[str] = None


class DeadLetterQueueRecord(BaseModel):
    """Typed view of an ``etl_dead_letter_queue`` row"""

    id: str
    run_id: str
    file_id: Optional[str] = None
    organization_id: str
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    max_retries_exceeded: bool = False
    marked_for_retry: bool = False
    retry_after: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RetryStats(BaseModel):
    """Retry and dead-letter counters for monitoring"""

    failed_runs: int = 0
    pending_retries: int = 0
    ready_for_retry: int = 0
    dead_letter_entries: int = 0
    marked_for_retry: int = 0
    max_retries_exceeded: int = 0


class DuplicateDetectionResult(BaseModel):
    """Duplicate lookup against the most recent file with the same checksum"""

    is_duplicate: bool
    allow_reprocessing: bool = True
    existing_file_id: Optional[str] = None
    existing_filename: Optional[str] = None
    existing_state: Optional[ETLState] = None
    existing_uploaded_at: Optional[datetime] = None
    duplicate_count: int = 0
    reason: Optional[str] = None


class ReprocessingDecision(BaseModel):
    """Outcome of a forced reprocessing request"""

    allowed: bool
    reason: str
    original_file_id: Optional[str] = None
    reprocessing_record_id: Optional[str] = None


class ReprocessingOptions(BaseModel):
    """Actor and reason recorded when a duplicate block is overridden"""

    user_id: str = Field(..., min_length=1)
    reason: Optional[str] = None
    force: bool = True
    skip_validation: bool = False


class RetryQueueResult(BaseModel):
    """Outcome of one pass over the retry queue"""

    picked_up: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = Field(default_factory=list)
