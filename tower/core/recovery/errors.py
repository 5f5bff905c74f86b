"""
Error Classification

Error taxonomy for recurring order execution. Each order-level failure carries
an ErrorKind that ends up in the Failed execution record; store and logging
failures are kept apart from swap failures so operators can tell a broken
schedule from an ordinary failed swap.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Kinds of failure an order cycle can end with."""

    UNSUPPORTED_TOKEN = "UnsupportedToken"
    QUOTE_UNAVAILABLE = "QuoteUnavailable"
    SUBMISSION_FAILED = "SubmissionFailed"
    STORE_ERROR = "StoreError"
    LOGGING_ERROR = "LoggingError"
    UNEXPECTED = "Unexpected"


class ErrorCategory(str, Enum):
    """Transport-level categories used to annotate failure messages."""

    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    AUTHENTICATION = "authentication"
    TRANSACTION_REVERTED = "transaction_reverted"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Classification of a raw exception."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    recoverable: bool = True


class RecurringOrderError(Exception):
    """Base class for errors raised while managing or executing recurring orders."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def describe(self) -> str:
        """Text stored on Failed executions."""
        return f"{self.kind.value}: {self.message}"


class UnsupportedTokenError(RecurringOrderError):
    """Token is not in the supported set; never retried."""

    kind = ErrorKind.UNSUPPORTED_TOKEN

    def __init__(self, symbol: str):
        super().__init__(f"token {symbol} is not supported")
        self.symbol = symbol


class QuoteUnavailableError(RecurringOrderError):
    """Quote provider kept failing or timing out."""

    kind = ErrorKind.QUOTE_UNAVAILABLE


class SubmissionFailedError(RecurringOrderError):
    """Transaction submitter kept failing or timing out."""

    kind = ErrorKind.SUBMISSION_FAILED


class StoreError(RecurringOrderError):
    """The order store could not be read or written."""

    kind = ErrorKind.STORE_ERROR


class ActivityLogError(RecurringOrderError):
    """Activity log write failed. Advisory only."""

    kind = ErrorKind.LOGGING_ERROR


class OrderNotFoundError(RecurringOrderError):
    """No order with the given id."""

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class OrderOwnershipError(RecurringOrderError):
    """Requesting wallet does not own the order."""


class RecoverableError(Exception):
    """Raised by collaborators for failures worth retrying."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        super().__init__(message)
        self.message = message
        self.category = category


class UnrecoverableError(Exception):
    """Raised by collaborators for failures that retrying cannot fix.

    Retrying stops at the first UnrecoverableError.
    """

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        super().__init__(message)
        self.message = message
        self.category = category


def classify_error(error: BaseException) -> ErrorContext:
    """
    Classify an exception and return its error context.

    Explicit RecoverableError / UnrecoverableError markers win; anything else
    is classified from its type and message.
    """
    if isinstance(error, RecoverableError):
        return ErrorContext(category=error.category, recoverable=True)
    if isinstance(error, UnrecoverableError):
        return ErrorContext(category=error.category, recoverable=False)

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorContext(category=ErrorCategory.TIMEOUT, recoverable=True)

    message = str(error).lower()

    if any(p in message for p in ("rate limit", "too many requests", "429", "throttl")):
        return ErrorContext(category=ErrorCategory.RATE_LIMIT, recoverable=True)

    if any(p in message for p in ("timeout", "timed out", "deadline")):
        return ErrorContext(category=ErrorCategory.TIMEOUT, recoverable=True)

    if any(p in message for p in ("connection", "network", "unreachable", "refused", "dns", "socket")):
        return ErrorContext(category=ErrorCategory.NETWORK, recoverable=True)

    if any(p in message for p in ("unauthorized", "forbidden", "signature", "401", "403")):
        return ErrorContext(category=ErrorCategory.AUTHENTICATION, recoverable=True)

    if any(p in message for p in ("insufficient", "not enough", "exceeds balance")):
        return ErrorContext(category=ErrorCategory.INSUFFICIENT_FUNDS, recoverable=True)

    if any(p in message for p in ("revert", "out of gas")):
        return ErrorContext(category=ErrorCategory.TRANSACTION_REVERTED, recoverable=True)

    # Default to unknown but recoverable (safer to retry)
    return ErrorContext(category=ErrorCategory.UNKNOWN, recoverable=True)
