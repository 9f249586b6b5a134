"""
Engine configuration structs and the structured locking result
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from enum import Enum
from core.exceptions import (
    AlreadyLockedError,
    InvalidTransitionError,
    MaxRetriesExceededError,
    RecordNotFoundError,
    StaleProcessingSessionError,
    StoreError,
    VersionConflictError,
)


class LockingOptions(BaseModel):
    """Optimistic locking and lock/session timeouts"""

    max_retries: int = Field(3, ge=0)
    retry_delay_ms: int = Field(100, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1)
    processing_timeout_ms: int = Field(300_000, gt=0)
    lock_ttl_ms: int = Field(30_000, gt=0)

    @classmethod
    def from_settings(cls, settings) -> "LockingOptions":
        return cls(
            max_retries=settings.LOCK_MAX_RETRIES,
            retry_delay_ms=settings.LOCK_RETRY_DELAY_MS,
            backoff_multiplier=settings.LOCK_BACKOFF_MULTIPLIER,
            processing_timeout_ms=settings.PROCESSING_TIMEOUT_MS,
            lock_ttl_ms=settings.LOCK_TTL_MS,
        )

    def conflict_delay_ms(self, attempt: int) -> float:
        """Delay before re-reading after the given conflicting attempt"""
        return self.retry_delay_ms * (self.backoff_multiplier ** attempt)


class RetryPolicy(BaseModel):
    """Backoff policy for failed runs"""

    max_retries: int = Field(3, ge=0)
    initial_delay_ms: int = Field(1_000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1)
    max_delay_ms: int = Field(300_000, ge=0)
    jitter_enabled: bool = True
    jitter_max_percentage: float = Field(25.0, ge=0, le=100)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.MAX_RETRIES,
            initial_delay_ms=settings.RETRY_INITIAL_DELAY_MS,
            backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
            jitter_enabled=settings.RETRY_JITTER_ENABLED,
            jitter_max_percentage=settings.RETRY_JITTER_PCT,
        )


class StateMachineConfig(BaseModel):
    """Top-level engine configuration passed to ``ETLStateMachineService``"""

    require_approval: bool = False
    stale_run_timeout_ms: int = Field(600_000, gt=0)
    duplicate_reprocess_after_days: int = Field(30, ge=0)
    dlq_retention_days: int = Field(30, ge=0)
    audit_retention_days: int = Field(90, ge=0)
    locking: LockingOptions = Field(default_factory=LockingOptions)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @classmethod
    def from_settings(cls, settings) -> "StateMachineConfig":
        return cls(
            require_approval=settings.REQUIRE_APPROVAL,
            stale_run_timeout_ms=settings.STALE_RUN_TIMEOUT_MS,
            duplicate_reprocess_after_days=settings.DUPLICATE_REPROCESS_AFTER_DAYS,
            dlq_retention_days=settings.DLQ_RETENTION_DAYS,
            audit_retention_days=settings.AUDIT_RETENTION_DAYS,
            locking=LockingOptions.from_settings(settings),
            retry=RetryPolicy.from_settings(settings),
        )


class LockingErrorCode(str, Enum):
    """Failure categories reported by the locking service"""
    RECORD_NOT_FOUND = "record_not_found"
    VERSION_CONFLICT = "version_conflict"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    ALREADY_LOCKED = "already_locked"
    NOT_LOCK_OWNER = "not_lock_owner"
    SESSION_ACTIVE = "session_active"
    STALE_PROCESSING = "stale_processing"
    INVALID_TRANSITION = "invalid_transition"
    STORE_ERROR = "store_error"


class LockingResult(BaseModel):
    """
    Structured outcome of every locking operation.

    Failures are returned, not raised; callers that prefer exceptions call
    ``raise_for_error()``.
    """

    success: bool
    data: Optional[Any] = None
    current_version: Optional[int] = None
    retry_attempt: int = 0
    error: Optional[str] = None
    error_code: Optional[LockingErrorCode] = None
    session_id: Optional[str] = None
    is_stale_processing: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failure(cls, code: LockingErrorCode, error: str, **kwargs) -> "LockingResult":
        return cls(success=False, error_code=code, error=error, **kwargs)

    def raise_for_error(self) -> "LockingResult":
        """Raise the matching exception for a failed result"""
        if self.success:
            return self

        context = dict(self.details)
        if self.current_version is not None:
            context["current_version"] = self.current_version
        if self.session_id:
            context["session_id"] = self.session_id

        code = self.error_code
        if code == LockingErrorCode.RECORD_NOT_FOUND:
            raise RecordNotFoundError(self.error, context)
        if code == LockingErrorCode.VERSION_CONFLICT:
            raise VersionConflictError(self.error, context)
        if code == LockingErrorCode.MAX_RETRIES_EXCEEDED:
            raise MaxRetriesExceededError(self.error, context.pop("last_error", None), context)
        if code in (
            LockingErrorCode.ALREADY_LOCKED,
            LockingErrorCode.NOT_LOCK_OWNER,
            LockingErrorCode.SESSION_ACTIVE,
        ):
            raise AlreadyLockedError(self.error, context)
        if code == LockingErrorCode.STALE_PROCESSING:
            raise StaleProcessingSessionError(self.error, context)
        if code == LockingErrorCode.INVALID_TRANSITION:
            raise InvalidTransitionError(
                context.pop("from_state", "unknown"),
                context.pop("to_state", "unknown"),
                self.error,
                context,
            )
        raise StoreError(self.error or "Locking operation failed", context)
