"""
Error Recovery

Error taxonomy and retry policy shared by the recurring order engine.
"""

from .errors import (
    ActivityLogError,
    ErrorCategory,
    ErrorContext,
    ErrorKind,
    OrderNotFoundError,
    OrderOwnershipError,
    QuoteUnavailableError,
    RecoverableError,
    RecurringOrderError,
    StoreError,
    SubmissionFailedError,
    UnrecoverableError,
    UnsupportedTokenError,
    classify_error,
)
from .retry import RetryExhausted, RetryPolicy, describe_error, retry_async

__all__ = [
    # Errors
    "ActivityLogError",
    "ErrorCategory",
    "ErrorContext",
    "ErrorKind",
    "OrderNotFoundError",
    "OrderOwnershipError",
    "QuoteUnavailableError",
    "RecoverableError",
    "RecurringOrderError",
    "StoreError",
    "SubmissionFailedError",
    "UnrecoverableError",
    "UnsupportedTokenError",
    "classify_error",
    # Retry
    "RetryExhausted",
    "RetryPolicy",
    "describe_error",
    "retry_async",
]
