"""
In-memory order store.

Backs tests and local dry runs. A single asyncio.Lock serializes every
operation, which gives the same single-row atomicity the Supabase store gets
from conditional updates.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from ..core.recovery import StoreError
from ..core.recurring.models import (
    Activity,
    ActivityStatus,
    Execution,
    ExecutionStatus,
    RecurringOrder,
    utcnow,
)


class InMemoryOrderStore:
    """OrderStore and ActivityLogger kept in process memory."""

    def __init__(self, network_name: str = "Arc") -> None:
        self._orders: Dict[str, RecurringOrder] = {}
        self._executions: Dict[str, Execution] = {}
        self.activities: List[Activity] = []
        self._run_lock: Optional[Tuple[str, datetime]] = None
        self._lock = asyncio.Lock()
        self._network_name = network_name

    # ---------------------------
    # Orders
    # ---------------------------
    async def fetch_due(self, now: datetime, limit: int) -> List[RecurringOrder]:
        async with self._lock:
            due = [
                o for o in self._orders.values()
                if o.is_active and o.next_execution_date <= now
            ]
            due.sort(key=lambda o: (o.next_execution_date, o.created_at, o.id))
            return [copy.deepcopy(o) for o in due[:limit]]

    async def get_order(self, order_id: str) -> Optional[RecurringOrder]:
        async with self._lock:
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order else None

    async def list_orders(self, wallet_address: str, active_only: bool = True) -> List[RecurringOrder]:
        async with self._lock:
            wallet = wallet_address.lower()
            orders = [
                o for o in self._orders.values()
                if o.wallet_address.lower() == wallet and (o.is_active or not active_only)
            ]
            orders.sort(key=lambda o: o.created_at, reverse=True)
            return [copy.deepcopy(o) for o in orders]

    async def insert_order(self, order: RecurringOrder) -> RecurringOrder:
        async with self._lock:
            if not order.id:
                order.id = str(uuid.uuid4())
            if order.id in self._orders:
                raise StoreError(f"Order {order.id} already exists")
            self._orders[order.id] = copy.deepcopy(order)
            return copy.deepcopy(order)

    async def claim_order(
        self,
        order_id: str,
        expected_next_execution: datetime,
        lease_until: datetime,
        cycle_at: Optional[datetime] = None,
    ) -> Optional[RecurringOrder]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or not order.is_active:
                return None
            if order.next_execution_date != expected_next_execution:
                return None
            order.next_execution_date = lease_until
            order.claimed_cycle_at = cycle_at or expected_next_execution
            order.updated_at = utcnow()
            return copy.deepcopy(order)

    async def advance_order(
        self,
        order_id: str,
        next_execution_date: datetime,
        increment_count: bool = True,
        deactivate: bool = False,
        consecutive_failures: Optional[int] = None,
    ) -> RecurringOrder:
        async with self._lock:
            order = self._require(order_id)
            order.next_execution_date = next_execution_date
            order.claimed_cycle_at = None
            if increment_count:
                order.execution_count += 1
            if deactivate:
                order.is_active = False
            if consecutive_failures is not None:
                order.consecutive_failures = consecutive_failures
            order.updated_at = utcnow()
            return copy.deepcopy(order)

    async def deactivate(self, order_id: str) -> bool:
        async with self._lock:
            order = self._require(order_id)
            if not order.is_active:
                return False
            order.is_active = False
            order.updated_at = utcnow()
            return True

    # ---------------------------
    # Executions
    # ---------------------------
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
        async with self._lock:
            now = utcnow()
            execution = Execution(
                id=str(uuid.uuid4()),
                recurring_order_id=order_id,
                wallet_address=wallet_address,
                execution_date=execution_date or now,
                amount=amount,
                source_token=source_token,
                target_token=target_token,
                status=status,
                transaction_hash=tx_ref,
                error_message=error,
                cycle_key=cycle_key,
                created_at=now,
                updated_at=now,
            )
            self._executions[execution.id] = execution
            return copy.deepcopy(execution)

    async def find_execution(self, order_id: str, cycle_key: str) -> Optional[Execution]:
        async with self._lock:
            for execution in self._executions.values():
                if execution.recurring_order_id == order_id and execution.cycle_key == cycle_key:
                    return copy.deepcopy(execution)
            return None

    async def finalize_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        tx_ref: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Execution:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                raise StoreError(f"Execution {execution_id} not found")
            if execution.status.is_terminal:
                raise StoreError(f"Execution {execution_id} is already {execution.status.value}")
            execution.status = status
            execution.transaction_hash = tx_ref
            execution.error_message = error
            execution.updated_at = utcnow()
            return copy.deepcopy(execution)

    async def list_executions(
        self,
        order_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Execution]:
        async with self._lock:
            rows = list(self._executions.values())
            if order_id is not None:
                rows = [e for e in rows if e.recurring_order_id == order_id]
            if wallet_address is not None:
                wallet = wallet_address.lower()
                rows = [e for e in rows if e.wallet_address.lower() == wallet]
            rows.sort(key=lambda e: e.execution_date, reverse=True)
            if limit is not None:
                rows = rows[:limit]
            return [copy.deepcopy(e) for e in rows]

    # ---------------------------
    # Run lease
    # ---------------------------
    async def acquire_run_lock(self, owner: str, now: datetime, ttl_seconds: float) -> bool:
        async with self._lock:
            if self._run_lock is not None:
                holder, expires_at = self._run_lock
                if holder != owner and expires_at > now:
                    return False
            self._run_lock = (owner, now + timedelta(seconds=ttl_seconds))
            return True

    async def release_run_lock(self, owner: str) -> None:
        async with self._lock:
            if self._run_lock is not None and self._run_lock[0] == owner:
                self._run_lock = None

    # ---------------------------
    # Activity log
    # ---------------------------
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
        self.activities.append(
            Activity(
                wallet_address=wallet_address,
                type=activity_type,
                source_token=source_token,
                target_token=target_token,
                amount=amount,
                status=status,
                network_name=self._network_name,
                transaction_hash=tx_ref,
            )
        )

    def _require(self, order_id: str) -> RecurringOrder:
        order = self._orders.get(order_id)
        if order is None:
            raise StoreError(f"Order {order_id} not found")
        return order
