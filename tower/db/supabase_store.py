"""
Supabase-backed order store and activity logger.

Every engine mutation maps onto one PostgREST request. The claim and the run
lease are conditional PATCHes: the filters carry the expected state, so an
empty result means another writer got there first.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..core.recovery import ActivityLogError, StoreError
from ..core.recurring.models import (
    Activity,
    ActivityStatus,
    Execution,
    ExecutionStatus,
    RecurringOrder,
    format_timestamp,
    utcnow,
)
from .supabase_client import SupabaseClient, SupabaseError, SupabaseQueryError

logger = logging.getLogger(__name__)

ORDERS_TABLE = "recurring_orders"
EXECUTIONS_TABLE = "recurring_order_executions"
ACTIVITIES_TABLE = "activities"
RUN_LOCKS_TABLE = "recurring_order_run_locks"
RUN_LOCK_NAME = "recurring-orders"
ADVANCE_ATTEMPTS = 3


def _eq(value: Any) -> str:
    return f"eq.{value}"


class SupabaseOrderStore:
    """OrderStore over the recurring_orders / recurring_order_executions tables."""

    def __init__(self, client: SupabaseClient, lock_name: str = RUN_LOCK_NAME):
        self.client = client
        self.lock_name = lock_name

    async def _call(self, description: str, coro) -> Any:
        try:
            return await coro
        except SupabaseError as e:
            raise StoreError(f"{description}: {e}") from e

    # ---------------------------
    # Orders
    # ---------------------------
    async def fetch_due(self, now: datetime, limit: int) -> List[RecurringOrder]:
        rows = await self._call(
            "fetch due orders",
            self.client.select(
                ORDERS_TABLE,
                {
                    "is_active": "is.true",
                    "next_execution_date": f"lte.{format_timestamp(now)}",
                },
                order="next_execution_date.asc,created_at.asc",
                limit=limit,
            ),
        )
        return [RecurringOrder.from_record(row) for row in rows]

    async def get_order(self, order_id: str) -> Optional[RecurringOrder]:
        rows = await self._call(
            f"get order {order_id}",
            self.client.select(ORDERS_TABLE, {"id": _eq(order_id)}, limit=1),
        )
        return RecurringOrder.from_record(rows[0]) if rows else None

    async def list_orders(self, wallet_address: str, active_only: bool = True) -> List[RecurringOrder]:
        filters = {"wallet_address": f"ilike.{wallet_address}"}
        if active_only:
            filters["is_active"] = "is.true"
        rows = await self._call(
            f"list orders for {wallet_address}",
            self.client.select(ORDERS_TABLE, filters, order="created_at.desc"),
        )
        return [RecurringOrder.from_record(row) for row in rows]

    async def insert_order(self, order: RecurringOrder) -> RecurringOrder:
        record = order.to_record()
        if not record["id"]:
            # Let the database assign the uuid
            record.pop("id")
        row = await self._call("insert order", self.client.insert(ORDERS_TABLE, record))
        return RecurringOrder.from_record(row)

    async def claim_order(
        self,
        order_id: str,
        expected_next_execution: datetime,
        lease_until: datetime,
        cycle_at: Optional[datetime] = None,
    ) -> Optional[RecurringOrder]:
        rows = await self._call(
            f"claim order {order_id}",
            self.client.update(
                ORDERS_TABLE,
                {
                    "next_execution_date": format_timestamp(lease_until),
                    "claimed_cycle_at": format_timestamp(cycle_at or expected_next_execution),
                    "updated_at": format_timestamp(utcnow()),
                },
                {
                    "id": _eq(order_id),
                    "is_active": "is.true",
                    "next_execution_date": _eq(format_timestamp(expected_next_execution)),
                },
            ),
        )
        return RecurringOrder.from_record(rows[0]) if rows else None

    async def advance_order(
        self,
        order_id: str,
        next_execution_date: datetime,
        increment_count: bool = True,
        deactivate: bool = False,
        consecutive_failures: Optional[int] = None,
    ) -> RecurringOrder:
        # PostgREST has no in-place increment, so the new count is written
        # conditionally on the count we read; a lost race re-reads and retries.
        for _ in range(ADVANCE_ATTEMPTS):
            current = await self.get_order(order_id)
            if current is None:
                raise StoreError(f"Order {order_id} not found")

            values: Dict[str, Any] = {
                "next_execution_date": format_timestamp(next_execution_date),
                "claimed_cycle_at": None,
                "updated_at": format_timestamp(utcnow()),
            }
            filters = {"id": _eq(order_id)}
            if increment_count:
                values["execution_count"] = current.execution_count + 1
                filters["execution_count"] = _eq(current.execution_count)
            if deactivate:
                values["is_active"] = False
            if consecutive_failures is not None:
                values["consecutive_failures"] = consecutive_failures

            rows = await self._call(
                f"advance order {order_id}",
                self.client.update(ORDERS_TABLE, values, filters),
            )
            if rows:
                return RecurringOrder.from_record(rows[0])
            logger.info(f"Order {order_id} changed while advancing, re-reading")

        raise StoreError(f"Order {order_id} kept changing while advancing")

    async def deactivate(self, order_id: str) -> bool:
        rows = await self._call(
            f"deactivate order {order_id}",
            self.client.update(
                ORDERS_TABLE,
                {"is_active": False, "updated_at": format_timestamp(utcnow())},
                {"id": _eq(order_id), "is_active": "is.true"},
            ),
        )
        if rows:
            return True
        if await self.get_order(order_id) is None:
            raise StoreError(f"Order {order_id} not found")
        return False

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
        now = utcnow()
        row = await self._call(
            f"write execution for {order_id}",
            self.client.insert(
                EXECUTIONS_TABLE,
                {
                    "recurring_order_id": order_id,
                    "wallet_address": wallet_address,
                    "execution_date": format_timestamp(execution_date or now),
                    "amount": str(amount),
                    "source_token": source_token,
                    "target_token": target_token,
                    "status": status.value,
                    "transaction_hash": tx_ref,
                    "error_message": error,
                    "cycle_key": cycle_key,
                },
            ),
        )
        return Execution.from_record(row)

    async def find_execution(self, order_id: str, cycle_key: str) -> Optional[Execution]:
        rows = await self._call(
            f"find execution for {order_id}",
            self.client.select(
                EXECUTIONS_TABLE,
                {"recurring_order_id": _eq(order_id), "cycle_key": _eq(cycle_key)},
                order="created_at.asc",
                limit=1,
            ),
        )
        return Execution.from_record(rows[0]) if rows else None

    async def finalize_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        tx_ref: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Execution:
        rows = await self._call(
            f"finalize execution {execution_id}",
            self.client.update(
                EXECUTIONS_TABLE,
                {
                    "status": status.value,
                    "transaction_hash": tx_ref,
                    "error_message": error,
                    "updated_at": format_timestamp(utcnow()),
                },
                {
                    "id": _eq(execution_id),
                    "status": _eq(ExecutionStatus.PENDING.value),
                },
            ),
        )
        if not rows:
            raise StoreError(f"Execution {execution_id} is missing or already final")
        return Execution.from_record(rows[0])

    async def list_executions(
        self,
        order_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Execution]:
        filters: Dict[str, str] = {}
        if order_id is not None:
            filters["recurring_order_id"] = _eq(order_id)
        if wallet_address is not None:
            filters["wallet_address"] = f"ilike.{wallet_address}"
        rows = await self._call(
            "list executions",
            self.client.select(
                EXECUTIONS_TABLE,
                filters,
                order="execution_date.desc",
                limit=limit,
            ),
        )
        return [Execution.from_record(row) for row in rows]

    # ---------------------------
    # Run lease
    # ---------------------------
    async def acquire_run_lock(self, owner: str, now: datetime, ttl_seconds: float) -> bool:
        expires_at = format_timestamp(now + timedelta(seconds=ttl_seconds))
        values = {"owner": owner, "expires_at": expires_at}

        # Take over an expired lease, or refresh our own
        rows = await self._call(
            "acquire run lock",
            self.client.update(
                RUN_LOCKS_TABLE,
                values,
                {
                    "name": _eq(self.lock_name),
                    "or": f"(expires_at.lt.{format_timestamp(now)},owner.eq.{owner})",
                },
            ),
        )
        if rows:
            return True

        try:
            await self.client.insert(RUN_LOCKS_TABLE, {"name": self.lock_name, **values})
        except SupabaseQueryError as e:
            if e.status_code == 409:
                return False
            raise StoreError(f"acquire run lock: {e}") from e
        except SupabaseError as e:
            raise StoreError(f"acquire run lock: {e}") from e
        return True

    async def release_run_lock(self, owner: str) -> None:
        await self._call(
            "release run lock",
            self.client.delete(
                RUN_LOCKS_TABLE,
                {"name": _eq(self.lock_name), "owner": _eq(owner)},
            ),
        )


class SupabaseActivityLogger:
    """ActivityLogger writing to the activities table."""

    def __init__(self, client: SupabaseClient, network_name: str = "Arc"):
        self.client = client
        self.network_name = network_name

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
        activity = Activity(
            wallet_address=wallet_address,
            type=activity_type,
            source_token=source_token,
            target_token=target_token,
            amount=amount,
            status=status,
            network_name=self.network_name,
            transaction_hash=tx_ref,
        )
        try:
            await self.client.insert(ACTIVITIES_TABLE, activity.to_record())
        except SupabaseError as e:
            raise ActivityLogError(f"log activity {activity_type}: {e}") from e
        logger.debug(f"Logged activity {activity_type} for {wallet_address}")
