"""
Custom exceptions for the ETL state engine with structured error context.

Every exception carries a context dictionary so that failures can be logged
and persisted (audit log, dead-letter queue) without losing detail.

Exception Hierarchy:
    ETLException (base)
    ├── StateMachineError
    │   ├── InvalidTransitionError
    │   ├── RecordNotFoundError
    │   └── ConcurrencyError
    │       ├── VersionConflictError
    │       ├── MaxRetriesExceededError
    │       ├── AlreadyLockedError
    │       └── StaleProcessingSessionError
    ├── StoreError
    │   └── DuplicateKeyError
    ├── LoadError
    │   └── UpsertError
    └── RetryableError / NonRetryableError
        ├── TransientFailure (network, database, timeout, rate limit, resources)
        └── NonTransientFailure (validation, parsing, data format)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class ETLException(Exception):
    """
    Base exception for all engine errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (record ids, states, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# State Machine Errors
# ============================================================================

class StateMachineError(ETLException):
    """Base exception for lifecycle and concurrency failures."""
    pass


class InvalidTransitionError(StateMachineError):
    """
    Raised when a transition is not listed in the transition table, or when
    the record is not in the state the caller expected.

    Caller error: never retried.
    """

    def __init__(
        self,
        from_state: str,
        to_state: str,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.from_state = str(getattr(from_state, "value", from_state))
        self.to_state = str(getattr(to_state, "value", to_state))
        context = dict(context or {})
        context.update({"from_state": self.from_state, "to_state": self.to_state})
        super().__init__(
            message or f"Invalid state transition from {self.from_state} to {self.to_state}",
            context
        )


class RecordNotFoundError(StateMachineError):
    """
    Raised when a file, run or queue entry does not exist.

    Context should include:
        - table: Table that was queried
        - record_id: Identifier that was looked up
    """
    pass


class ConcurrencyError(StateMachineError):
    """Base exception for conflicts between concurrent callers."""
    pass


class VersionConflictError(ConcurrencyError):
    """
    A conditional write matched zero rows because another writer bumped the
    version first. Retriable under the local locking policy.
    """
    pass


class MaxRetriesExceededError(ConcurrencyError):
    """
    Version conflicts persisted past the configured number of attempts.

    Attributes:
        last_error: Message of the last conflict observed
    """

    def __init__(
        self,
        message: str,
        last_error: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, context)
        self.last_error = last_error
        if last_error:
            self.context["last_error"] = last_error


class AlreadyLockedError(ConcurrencyError):
    """
    The record is claimed by another owner (pessimistic lock or an active
    processing session). Callers may retry later.
    """
    pass


class StaleProcessingSessionError(ConcurrencyError):
    """
    The processing session holding the record exceeded its timeout.

    Context should include:
        - session_id: The abandoned session
        - processing_started_at: When the session claimed the record
    """
    pass


# ============================================================================
# Store Errors
# ============================================================================

class StoreError(ETLException):
    """
    Exception raised when the persistent store fails.

    Context should include:
        - operation: Store operation (GET, UPDATE, INSERT, DELETE, QUERY)
        - table: Name of the table
    """
    pass


class DuplicateKeyError(StoreError):
    """
    An insert violated a unique constraint.

    Context should include:
        - table: Name of the table
        - unique_key: Fields of the violated constraint
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for data loading failures."""
    pass


class UpsertError(LoadError):
    """
    Exception raised when an upsert cannot be applied.

    Context should include:
        - natural_key: Natural key of the record
        - organization_id: Owning organization
    """
    pass


# ============================================================================
# Retry Strategy Classes
# ============================================================================

class RetryableError(ETLException):
    """
    Base for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting
    - Temporary database connection issues
    - Resource exhaustion
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(ETLException):
    """
    Base for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Validation failures
    - Parsing failures
    - Invalid data format
    """
    pass


class TransientFailure(RetryableError):
    """Failure eligible for backoff retry and, eventually, the dead-letter queue."""
    pass


class NonTransientFailure(NonRetryableError):
    """Failure routed straight to the dead-letter queue."""
    pass


# ============================================================================
# Specific Transient Failures
# ============================================================================

class NetworkError(TransientFailure):
    """Network-related errors that should be retried."""
    pass


class TimeoutFailure(TransientFailure):
    """Operation timed out."""
    pass


class DatabaseConnectionError(TransientFailure, StoreError):
    """Database connection errors that should be retried."""
    pass


class DeadlockError(TransientFailure, StoreError):
    """Database deadlock errors that should be retried."""
    pass


class RateLimitError(TransientFailure):
    """Rate limiting errors that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class ResourceExhaustedError(TransientFailure):
    """Memory, disk space or connection pool exhaustion."""
    pass


# ============================================================================
# Specific Non-Transient Failures
# ============================================================================

class ValidationError(NonTransientFailure):
    """
    Exception raised when record validation fails.

    Context should include:
        - field_name: Name of the field that failed validation
        - field_value: Value that failed validation
        - validation_rule: The validation rule that was violated
    """
    pass


class ParsingError(NonTransientFailure):
    """
    Exception raised when an uploaded file cannot be parsed.

    Context should include:
        - file_id: The file being parsed
        - line_number: Line number where error occurred (if applicable)
    """
    pass


class DataFormatError(NonTransientFailure):
    """Data format errors that should not be retried."""
    pass
