"""
Order store and activity logger interfaces.

Every mutation the engine makes goes through one of these single-row
operations; implementations must apply each atomically so that two engine
instances never both act on the same due cycle.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Protocol, runtime_checkable

from ..core.recurring.models import (
    ActivityStatus,
    Execution,
    ExecutionStatus,
    RecurringOrder,
)


@runtime_checkable
class OrderStore(Protocol):
    """Durable collection of recurring orders and their execution history."""

    async def fetch_due(self, now: datetime, limit: int) -> List[RecurringOrder]:
        """Active orders with next_execution_date <= now, oldest-due first."""
        ...

    async def get_order(self, order_id: str) -> Optional[RecurringOrder]:
        ...

    async def list_orders(self, wallet_address: str, active_only: bool = True) -> List[RecurringOrder]:
        """Orders for a wallet, newest first."""
        ...

    async def insert_order(self, order: RecurringOrder) -> RecurringOrder:
        ...

    async def claim_order(
        self,
        order_id: str,
        expected_next_execution: datetime,
        lease_until: datetime,
        cycle_at: Optional[datetime] = None,
    ) -> Optional[RecurringOrder]:
        """Conditionally move an active order's due time to `lease_until`.

        Succeeds only while the order is active and its next_execution_date
        still equals `expected_next_execution`. The claimed order carries
        `claimed_cycle_at` (`cycle_at`, defaulting to the expected due time)
        until the next advance, so a cycle re-claimed after its lease lapsed
        keeps its identity. Returns None when another run got there first or
        the order was cancelled.
        """
        ...

    async def write_execution(
        self,
        order_id: str,
        wallet_address: str,
        amount: Decimal,
        source_token: str,
        target_token: str,
        status: ExecutionStatus = ExecutionStatus.PENDING,
        tx_ref: Optional[str] = None,
        error: Optional[str] = None,
        execution_date: Optional[datetime] = None,
        cycle_key: Optional[str] = None,
    ) -> Execution:
        ...

    async def find_execution(self, order_id: str, cycle_key: str) -> Optional[Execution]:
        """The execution already written for one due cycle, if any."""
        ...

    async def finalize_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        tx_ref: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Execution:
        """Resolve a Pending execution. Terminal records are never changed."""
        ...

    async def advance_order(
        self,
        order_id: str,
        next_execution_date: datetime,
        increment_count: bool = True,
        deactivate: bool = False,
        consecutive_failures: Optional[int] = None,
    ) -> RecurringOrder:
        """Set the next due time and clear the claimed cycle; never re-activates an order."""
        ...

    async def deactivate(self, order_id: str) -> bool:
        """Set is_active=False. Returns False when it already was inactive."""
        ...

    async def list_executions(
        self,
        order_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Execution]:
        """Execution history, most recent first."""
        ...

    async def acquire_run_lock(self, owner: str, now: datetime, ttl_seconds: float) -> bool:
        ...

    async def release_run_lock(self, owner: str) -> None:
        ...


@runtime_checkable
class ActivityLogger(Protocol):
    """Records human-facing audit events."""

    async def log_activity(
        self,
        wallet_address: str,
        activity_type: str,
        source_token: str,
        target_token: Optional[str],
        amount: Decimal,
        status: ActivityStatus,
        tx_ref: Optional[str] = None,
    ) -> None:
        ...
