"""
Error Recovery Module

Provides error classification, retry decisions and backoff scheduling for
the transaction engine.
"""

from .errors import (
    ErrorCategory,
    ErrorContext,
    RecoveryAction,
    RecoverableError,
    UnrecoverableError,
    NetworkError,
    RateLimitError,
    TransactionTimeoutError,
    TransactionRevertedError,
    InsufficientFundsError,
    UserRejectedError,
    classify,
    classify_error,
    is_retryable,
    get_user_friendly_error,
    get_recovery_action,
    format_error_for_display,
)
from .strategies import (
    RetryConfig,
    RetryStrategy,
    backoff_delay,
)

__all__ = [
    # Errors
    "ErrorCategory",
    "ErrorContext",
    "RecoveryAction",
    "RecoverableError",
    "UnrecoverableError",
    "NetworkError",
    "RateLimitError",
    "TransactionTimeoutError",
    "TransactionRevertedError",
    "InsufficientFundsError",
    "UserRejectedError",
    # Classification
    "classify",
    "classify_error",
    "is_retryable",
    "get_user_friendly_error",
    "get_recovery_action",
    "format_error_for_display",
    # Strategies
    "RetryConfig",
    "RetryStrategy",
    "backoff_delay",
]
