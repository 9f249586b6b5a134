"""
Core utilities and configuration for the ETL state engine.

This package provides foundational components used throughout the engine:

Modules:
    config: Application configuration and environment variable management
    database: Database engine, session factory and store construction
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import get_store
    from core.exceptions import InvalidTransitionError, TransientFailure
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Build the store and a service on top of it
    store = get_store()
    service = ETLStateMachineService(store)
"""

__all__ = [
    "settings",
    "create_session_factory",
    "get_store",
    "setup_logging",
    # Exceptions
    "ETLException",
    "StateMachineError",
    "InvalidTransitionError",
    "RecordNotFoundError",
    "ConcurrencyError",
    "VersionConflictError",
    "MaxRetriesExceededError",
    "AlreadyLockedError",
    "StaleProcessingSessionError",
    "StoreError",
    "DuplicateKeyError",
    "LoadError",
    "UpsertError",
    "RetryableError",
    "NonRetryableError",
    "TransientFailure",
    "NonTransientFailure",
    "NetworkError",
    "TimeoutFailure",
    "DatabaseConnectionError",
    "DeadlockError",
    "RateLimitError",
    "ResourceExhaustedError",
    "ValidationError",
    "ParsingError",
    "DataFormatError",
]
