"""
Recurring Orders Module

Scheduled execution of recurring token swaps: models, schedule math, the
per-order executor, the run engine and the order management service.
"""

from .models import (
    Activity,
    ActivityStatus,
    EngineConfig,
    Execution,
    ExecutionStatus,
    Frequency,
    OrderOutcome,
    OrderState,
    OrderType,
    Quote,
    RecurringOrder,
    RunSummary,
    SubmissionResult,
)
from .scheduler import RecurringScheduler
from .tokens import TokenRegistry
from .executor import AlertSink, OrderExecutor, idempotency_key
from .engine import RecurringOrderEngine
from .service import CancelResult, RecurringOrderService

__all__ = [
    # Models
    "Activity",
    "ActivityStatus",
    "EngineConfig",
    "Execution",
    "ExecutionStatus",
    "Frequency",
    "OrderOutcome",
    "OrderState",
    "OrderType",
    "Quote",
    "RecurringOrder",
    "RunSummary",
    "SubmissionResult",
    # Service classes
    "AlertSink",
    "CancelResult",
    "OrderExecutor",
    "RecurringOrderEngine",
    "RecurringOrderService",
    "RecurringScheduler",
    "TokenRegistry",
    "idempotency_key",
]
