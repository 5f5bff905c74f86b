"""
Recurring Order Service

High-level service for creating, listing and cancelling recurring orders.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from ..recovery import OrderNotFoundError, OrderOwnershipError
from .models import (
    ActivityStatus,
    Execution,
    Frequency,
    OrderType,
    RecurringOrder,
    utcnow,
)
from .scheduler import RecurringScheduler
from .tokens import TokenRegistry

logger = logging.getLogger(__name__)


@dataclass
class CancelResult:
    """Outcome of a cancellation request."""
    order: RecurringOrder
    already_cancelled: bool = False


class RecurringOrderService:
    """
    Service for managing recurring orders.

    Provides high-level operations for:
    - Creating orders with validation
    - Listing orders and execution history
    - Cancelling orders (idempotent)
    """

    def __init__(
        self,
        store: Any,
        tokens: TokenRegistry,
        activity_logger: Optional[Any] = None,
        min_amount: Decimal = Decimal("0"),
    ):
        """
        Initialize the service.

        Args:
            store: OrderStore implementation
            tokens: Supported tokens and their decimals
            activity_logger: Optional ActivityLogger for Created/Cancelled activities
            min_amount: Smallest accepted order amount
        """
        self._store = store
        self._tokens = tokens
        self._activity = activity_logger
        self._min_amount = min_amount

    # =========================================================================
    # Orders
    # =========================================================================

    async def create_order(
        self,
        wallet_address: str,
        order_type: Any,
        source_token: str,
        target_token: str,
        amount: Any,
        frequency: Any,
        end_date: Optional[datetime] = None,
        signature: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RecurringOrder:
        """
        Create a new active recurring order.

        The first execution is one frequency interval after creation.

        Raises:
            ValueError: If the order parameters are invalid
            UnsupportedTokenError: If either token is not supported
        """
        if not wallet_address:
            raise ValueError("Wallet address is required")

        try:
            parsed_type = order_type if isinstance(order_type, OrderType) else OrderType(str(order_type).lower())
        except ValueError:
            raise ValueError(f"Unknown order type: {order_type}") from None

        parsed_frequency = Frequency.parse(frequency)
        if parsed_frequency is None:
            raise ValueError(f"Unknown frequency: {frequency}")

        source = (source_token or "").upper()
        target = (target_token or "").upper()
        if source == target:
            raise ValueError("Source and target tokens must differ")
        self._tokens.require_supported(source, target)

        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {amount}") from None
        if not value.is_finite():
            raise ValueError(f"Invalid amount: {amount}")
        value = self._tokens.quantize(source, value)
        if value <= 0:
            raise ValueError("Amount must be positive")
        if value < self._min_amount:
            raise ValueError(f"Amount must be at least {self._min_amount}")

        now = now or utcnow()
        next_execution = RecurringScheduler.get_next_execution(parsed_frequency, now)
        if end_date is not None and end_date < next_execution:
            raise ValueError("End date is before the first execution")

        order = RecurringOrder(
            id=str(uuid.uuid4()),
            wallet_address=wallet_address,
            order_type=parsed_type,
            source_token=source,
            target_token=target,
            amount=value,
            frequency=parsed_frequency.value,
            start_date=now,
            next_execution_date=next_execution,
            end_date=end_date,
            is_active=True,
            execution_count=0,
            signature=signature,
            created_at=now,
            updated_at=now,
        )
        created = await self._store.insert_order(order)
        logger.info(
            f"Created recurring order {created.id}: {created.order_label} {value} {source} -> {target} "
            f"({RecurringScheduler.format_schedule_description(parsed_frequency)})"
        )

        await self._log_activity(created, f"{created.order_label} Created", value)
        return created

    async def get_order(self, order_id: str) -> Optional[RecurringOrder]:
        return await self._store.get_order(order_id)

    async def list_orders(self, wallet_address: str, active_only: bool = True) -> List[RecurringOrder]:
        """List a wallet's orders, newest first."""
        return await self._store.list_orders(wallet_address, active_only=active_only)

    async def cancel_order(self, order_id: str, wallet_address: str) -> CancelResult:
        """
        Cancel an order.

        Cancelling an already-inactive order is a no-op that reports
        already_cancelled and writes no activity. A failed activity write
        never undoes the cancellation.

        Raises:
            OrderNotFoundError: If the order does not exist
            OrderOwnershipError: If the wallet does not own the order
        """
        order = await self._store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if order.wallet_address.lower() != (wallet_address or "").lower():
            raise OrderOwnershipError(f"Order {order_id} does not belong to {wallet_address}")

        if not order.is_active:
            return CancelResult(order=order, already_cancelled=True)

        changed = await self._store.deactivate(order_id)
        order.is_active = False
        if not changed:
            # Lost a race with another cancellation or the engine's deactivation
            return CancelResult(order=order, already_cancelled=True)

        logger.info(f"Cancelled recurring order {order_id}")
        await self._log_activity(order, f"{order.order_label} Cancelled", Decimal("0"))
        return CancelResult(order=order)

    # =========================================================================
    # Execution history
    # =========================================================================

    async def get_order_executions(self, order_id: str, limit: Optional[int] = None) -> List[Execution]:
        return await self._store.list_executions(order_id=order_id, limit=limit)

    async def get_wallet_executions(self, wallet_address: str, limit: Optional[int] = None) -> List[Execution]:
        return await self._store.list_executions(wallet_address=wallet_address, limit=limit)

    async def _log_activity(self, order: RecurringOrder, activity_type: str, amount: Decimal) -> None:
        if self._activity is None:
            return
        try:
            await self._activity.log_activity(
                order.wallet_address.lower(),
                activity_type,
                order.source_token,
                order.target_token,
                amount,
                ActivityStatus.SUCCESSFUL,
            )
        except Exception as e:
            logger.warning(f"Failed to log '{activity_type}' activity for order {order.id}: {e}")
