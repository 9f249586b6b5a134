"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models used at the engine's seams:

Schemas:
    state: State history entries, file/run records, transition requests/results
    engine: Configuration structs (LockingOptions, RetryPolicy,
            StateMachineConfig) and the structured LockingResult
    retry: Failure handling results, dead-letter entries, duplicate detection
    loading: Fact records, dimension references, validation outcomes,
             upsert results

Usage:
    from schemas.state import StateTransitionRequest, StateHistoryEntry
    from schemas.engine import LockingOptions, RetryPolicy
    from schemas.loading import ValidRecord, ResolvedDimension

Example:
    request = StateTransitionRequest(
        organization_id="org-1",
        file_id="file-1",
        to_state=ETLState.PARSING,
        user_id="worker-7",
    )

Validation:
    Records read from the store are validated into typed views
    (ETLFileRecord, ETLRunRecord, DeadLetterQueueRecord) so that timestamps
    stored as strings and enum values stored as text come back typed.
"""

__all__ = [
    "StateHistoryEntry",
    "ETLFileCreate",
    "ETLFileRecord",
    "ETLRunRecord",
    "SafeTransitionRequest",
    "StateTransitionRequest",
    "StateTransitionResult",
    "LockingOptions",
    "RetryPolicy",
    "StateMachineConfig",
    "LockingResult",
    "LockingErrorCode",
    "ErrorType",
    "FailureHandlingResult",
    "DeadLetterQueueRecord",
    "RetryStats",
    "RetryQueueResult",
    "DuplicateDetectionResult",
    "ReprocessingOptions",
    "ReprocessingDecision",
    "LoadDeviationRecord",
    "ResolvedDimension",
    "PendingDimension",
    "DimensionIds",
    "ValidRecord",
    "InvalidRecord",
    "UpsertOperation",
    "UpsertResult",
    "BatchUpsertResult",
]
