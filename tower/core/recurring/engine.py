"""
Recurring Order Engine

One Run: take the run lease, fetch the due set (oldest-due first, capped),
claim and execute each order, and report a RunSummary.

Orders are processed strictly in due order when concurrency is 1. With a
higher concurrency, orders are grouped into per-wallet lanes that run in
parallel under a semaphore; each lane stays sequential, so two orders for the
same wallet are never submitted at the same time.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from ...logging_config import run_context
from .executor import AlertSink, Clock, OrderExecutor, Sleep
from .models import EngineConfig, OrderOutcome, OrderState, RecurringOrder, RunSummary, utcnow
from .tokens import TokenRegistry

logger = logging.getLogger(__name__)
_slog = structlog.stdlib.get_logger("recurring.engine")


class RecurringOrderEngine:
    """
    Scheduled execution engine for recurring orders.

    Holds no state across runs: every run re-reads the due set from the store.
    """

    def __init__(
        self,
        store: Any,
        quote_provider: Any,
        submitter: Any,
        tokens: TokenRegistry,
        activity_logger: Optional[Any] = None,
        config: Optional[EngineConfig] = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
        alert_sink: Optional[AlertSink] = None,
    ):
        """
        Initialize the engine.

        Args:
            store: OrderStore implementation
            quote_provider: QuoteProvider used for every order
            submitter: TransactionSubmitter used for every order
            tokens: Supported tokens and their decimals
            activity_logger: Optional ActivityLogger for "Executed" activities
            config: Engine tunables (defaults when omitted)
            clock: Returns the current aware UTC time
            sleep: Awaitable sleep used between retries
            alert_sink: Receives store-consistency alerts
        """
        self.instance_id = f"engine-{uuid.uuid4().hex[:12]}"
        self._store = store
        self._config = config or EngineConfig()
        self._clock = clock
        self._executor = OrderExecutor(
            store=store,
            quote_provider=quote_provider,
            submitter=submitter,
            tokens=tokens,
            config=self._config,
            activity_logger=activity_logger,
            clock=clock,
            sleep=sleep,
            alert_sink=alert_sink,
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    async def run(self) -> RunSummary:
        """Execute one run and return its summary. Never raises for order-level failures."""
        started_at = self._clock()
        summary = RunSummary(run_id=uuid.uuid4().hex, started_at=started_at)
        with run_context(summary.run_id, self.instance_id):
            return await self._run(summary, started_at)

    async def _run(self, summary: RunSummary, started_at: datetime) -> RunSummary:
        _slog.info(
            "recurring_run_started",
            max_orders=self._config.max_orders_per_run,
            concurrency=self._config.concurrency,
        )

        if self._config.use_run_lock:
            try:
                acquired = await self._store.acquire_run_lock(
                    self.instance_id, started_at, self._config.run_lock_ttl_seconds
                )
            except Exception as e:
                logger.error(f"Could not acquire run lock: {e}")
                summary.errors.append(f"run lock: {e}")
                summary.skipped_reason = "run_lock_error"
                return self._close(summary)
            if not acquired:
                logger.info("Another run holds the run lock, skipping this run")
                summary.skipped_reason = "run_locked"
                return self._close(summary)

        try:
            await self._process_due(summary, started_at)
        finally:
            if self._config.use_run_lock:
                try:
                    await self._store.release_run_lock(self.instance_id)
                except Exception as e:
                    logger.warning(f"Failed to release run lock: {e}")

        return self._close(summary)

    async def _process_due(self, summary: RunSummary, now: datetime) -> None:
        try:
            due = await self._store.fetch_due(now, self._config.max_orders_per_run)
        except Exception as e:
            logger.error(f"Failed to fetch due orders: {e}")
            summary.errors.append(f"fetch due orders: {e}")
            return

        summary.due_count = len(due)
        if not due:
            logger.info("No due recurring orders")
            return
        logger.info(f"Processing {len(due)} due recurring order(s)")

        deadline = self._deadline()
        if self._config.concurrency <= 1:
            for order in due:
                if self._past(deadline):
                    summary.deferred += 1
                    continue
                summary.record(await self._process_one(order))
            return

        lanes: "OrderedDict[str, List[RecurringOrder]]" = OrderedDict()
        for order in due:
            lanes.setdefault(order.wallet_address.lower(), []).append(order)

        semaphore = asyncio.Semaphore(self._config.concurrency)
        results: Dict[str, OrderOutcome] = {}

        async def run_lane(orders: List[RecurringOrder]) -> None:
            async with semaphore:
                for order in orders:
                    if self._past(deadline):
                        summary.deferred += 1
                        continue
                    results[order.id] = await self._process_one(order)

        await asyncio.gather(*(run_lane(orders) for orders in lanes.values()))

        # Record in due order so the summary reads the same as a sequential run
        for order in due:
            if order.id in results:
                summary.record(results[order.id])

    async def _process_one(self, order: RecurringOrder) -> OrderOutcome:
        """Claim and execute one order. Faults never escape into the batch."""
        due_time = order.next_execution_date
        # A lapsed claim is picked up again under its original cycle
        cycle_at = order.claimed_cycle_at or due_time
        try:
            lease_until = self._clock() + timedelta(seconds=self._config.claim_ttl_seconds)
            claimed = await self._store.claim_order(order.id, due_time, lease_until, cycle_at=cycle_at)
        except Exception as e:
            logger.error(f"Failed to claim order {order.id}: {e}")
            return OrderOutcome(
                order_id=order.id,
                wallet_address=order.wallet_address,
                state=OrderState.FAILED,
                error_kind="StoreError",
                error_message=f"StoreError: could not claim order: {e}",
                amount=order.amount,
                source_token=order.source_token,
                store_error=True,
            )

        if claimed is None:
            logger.info(f"Order {order.id} was claimed elsewhere or cancelled, skipping")
            return OrderOutcome(
                order_id=order.id,
                wallet_address=order.wallet_address,
                state=OrderState.DUE,
                claimed=False,
                amount=order.amount,
                source_token=order.source_token,
            )

        try:
            return await self._executor.execute(claimed, claimed.claimed_cycle_at or cycle_at)
        except Exception as e:
            logger.exception(f"Unhandled error processing order {order.id}: {e}")
            return OrderOutcome(
                order_id=order.id,
                wallet_address=order.wallet_address,
                state=OrderState.FAILED,
                error_kind="Unexpected",
                error_message=f"Unexpected: {e}",
                amount=order.amount,
                source_token=order.source_token,
            )

    def _deadline(self) -> Optional[float]:
        if self._config.run_timeout_seconds is None:
            return None
        return time.monotonic() + self._config.run_timeout_seconds

    @staticmethod
    def _past(deadline: Optional[float]) -> bool:
        return deadline is not None and time.monotonic() >= deadline

    def _close(self, summary: RunSummary) -> RunSummary:
        summary.ended_at = self._clock()
        if summary.deferred:
            logger.warning(f"Run deadline reached, {summary.deferred} order(s) left due")
        if summary.store_errors:
            logger.critical(
                f"Run {summary.run_id} finished with {summary.store_errors} store error(s); "
                "schedules may be inconsistent"
            )
        _slog.info(
            "recurring_run_summary",
            due=summary.due_count,
            processed=summary.processed,
            succeeded=summary.succeeded,
            failed=summary.failed,
            skipped=summary.skipped,
            deferred=summary.deferred,
            store_errors=summary.store_errors,
            total_volume=str(summary.total_volume),
            duration_ms=round(summary.duration_seconds * 1000, 1),
            avg_order_ms=round(summary.average_order_seconds * 1000, 1),
            skipped_reason=summary.skipped_reason,
        )
        return summary
