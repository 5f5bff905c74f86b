"""
Background Workers

Workers for scheduled and background tasks.
"""

from .recurring_order_worker import (
    build_engine,
    get_submitter,
    run_recurring_orders_loop,
    run_recurring_orders_once,
)

__all__ = [
    "build_engine",
    "get_submitter",
    "run_recurring_orders_loop",
    "run_recurring_orders_once",
]
