"""
Pydantic schemas for lifecycle records and state transitions
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import ETLState, RecordTable


class StateHistoryEntry(BaseModel):
    """
    One immutable entry of a record's state history.

    Entries are appended on every transition and never rewritten.
    Stored as JSON inside the ``state_history`` column.
    """

    state: ETLState
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    actor: Optional[str] = None
    message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    class Config:
        frozen = True
        use_enum_values = True

    def to_json(self) -> Dict[str, Any]:
        """Serialize for storage (ISO timestamps, no empty fields)"""
        return self.model_dump(mode="json", exclude_none=True)


class ETLFileCreate(BaseModel):
    """Schema for registering an uploaded file"""

    organization_id: str = Field(..., min_length=1, max_length=64)
    filename: str = Field(..., min_length=1, max_length=500)
    checksum: str = Field(..., min_length=1, max_length=128)
    filepath: Optional[str] = Field(None, max_length=1024)
    file_size: Optional[int] = Field(None, ge=0)
    mime_type: Optional[str] = Field(None, max_length=100)
    uploaded_by: Optional[str] = None
    extra_metadata: Optional[Dict[str, Any]] = Field(default_factory=dict, alias="metadata")

    @validator("filename")
    def clean_filename(cls, v):
        """Strip surrounding whitespace"""
        v = v.strip()
        if not v:
            raise ValueError("Filename cannot be empty after stripping")
        return v

    @validator("extra_metadata", pre=True)
    def clean_extra_metadata(cls, v):
        """Ensure metadata is a dict"""
        if not isinstance(v, dict):
            return {}
        return v

    class Config:
        populate_by_name = True


class ETLFileRecord(BaseModel):
    """Typed view of an ``etl_file`` row"""

    id: str
    organization_id: str
    filename: str
    filepath: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    checksum: str
    current_state: ETLState
    state_history: List[StateHistoryEntry] = Field(default_factory=list)
    version: int

    uploaded_at: datetime
    uploaded_by: Optional[str] = None
    parsed_at: Optional[datetime] = None
    validated_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    loaded_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    extra_metadata: Optional[Dict[str, Any]] = None

    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    lock_expires_at: Optional[datetime] = None
    processing_by: Optional[str] = None
    processing_started_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @validator("state_history", pre=True)
    def default_history(cls, v):
        return v or []

    class Config:
        from_attributes = True


class ETLRunRecord(BaseModel):
    """Typed view of an ``etl_run`` row"""

    id: str
    file_id: str
    organization_id: str
    run_number: int
    current_state: ETLState
    state_history: List[StateHistoryEntry] = Field(default_factory=list)
    version: int

    started_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    records_total: Optional[int] = None
    records_processed: Optional[int] = None
    records_failed: Optional[int] = None

    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    extra_metadata: Optional[Dict[str, Any]] = None

    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    lock_expires_at: Optional[datetime] = None
    processing_by: Optional[str] = None
    processing_started_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @validator("state_history", pre=True)
    def default_history(cls, v):
        return v or []

    class Config:
        from_attributes = True


class SafeTransitionRequest(BaseModel):
    """
    Low-level transition of a single record, executed by the locking service.

    ``from_state`` must equal the stored state at write time. ``patch`` carries
    extra columns written together with the state change (error message,
    counters, approver, ...).
    """

    table: RecordTable
    record_id: str
    from_state: ETLState
    to_state: ETLState
    session_id: str
    expected_version: Optional[int] = None
    actor: Optional[str] = None
    message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    patch: Dict[str, Any] = Field(default_factory=dict)


class StateTransitionRequest(BaseModel):
    """
    Orchestrated transition of a file and/or one of its runs.

    At least one of ``file_id`` / ``run_id`` is required. When ``from_state``
    is omitted the current state of the primary record is used.
    """

    organization_id: str
    to_state: ETLState
    file_id: Optional[str] = None
    run_id: Optional[str] = None
    from_state: Optional[ETLState] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    patch: Dict[str, Any] = Field(default_factory=dict)

    @validator("run_id", always=True)
    def require_target(cls, v, values):
        if not v and not values.get("file_id"):
            raise ValueError("file_id or run_id is required")
        return v


class StateTransitionResult(BaseModel):
    """Outcome of ``transition_state``; failures are reported, never raised"""

    success: bool
    previous_state: Optional[ETLState] = None
    current_state: Optional[ETLState] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    file_version: Optional[int] = None
    run_version: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    log_id: Optional[str] = None
