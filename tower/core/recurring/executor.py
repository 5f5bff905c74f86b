"""
Recurring Order Executor

Runs one claimed due order through its state machine:

    DUE -> QUOTING -> SUBMITTING -> CONFIRMED
                 \\           \\
                  +-----------+--> FAILED

Exactly one Execution record is written per due cycle. Retries happen inside
the QUOTING and SUBMITTING phases and never produce extra records. Whatever
the outcome, the order's schedule is advanced from the time of processing.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from ..recovery import (
    QuoteUnavailableError,
    RecurringOrderError,
    RetryExhausted,
    RetryPolicy,
    SubmissionFailedError,
    UnsupportedTokenError,
    describe_error,
    retry_async,
)
from .models import (
    ActivityStatus,
    EngineConfig,
    Execution,
    ExecutionStatus,
    OrderOutcome,
    OrderState,
    Quote,
    RecurringOrder,
    SubmissionResult,
    utcnow,
)
from .scheduler import RecurringScheduler
from .tokens import TokenRegistry

logger = logging.getLogger(__name__)
_slog = structlog.stdlib.get_logger("recurring.executor")

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[Any]]


def idempotency_key(order_id: str, due_time: datetime) -> str:
    """Deterministic request id for one due cycle of one order."""
    return hashlib.sha256(f"{order_id}:{due_time.isoformat()}".encode()).hexdigest()


def retry_policy_for(config: EngineConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.max_attempts,
        initial_delay_seconds=config.retry_initial_delay_seconds,
        backoff_multiplier=config.retry_backoff_multiplier,
    )


def _attempts(count: int) -> str:
    return "1 attempt" if count == 1 else f"{count} attempts"


class AlertSink:
    """Operator alert channel for schedule-consistency failures.

    These are distinct from ordinary swap failures: an order may have been
    executed while its due time did not advance, or an execution may be left
    Pending. The default sink logs at CRITICAL on the `tower.alerts` logger.
    """

    def __init__(self, logger_name: str = "tower.alerts"):
        self._logger = logging.getLogger(logger_name)
        self._slog = structlog.stdlib.get_logger(logger_name)

    def store_inconsistency(self, order_id: str, operation: str, error: BaseException, **context: Any) -> None:
        self._logger.critical(
            f"Store inconsistency on order {order_id} during {operation}: {error}"
        )
        self._slog.critical(
            "recurring_store_inconsistency",
            order_id=order_id,
            operation=operation,
            error=str(error),
            **context,
        )


class OrderExecutor:
    """
    Executes one due cycle of a recurring order.

    Responsibilities:
    1. Write the Execution record (Pending, or Failed for unsupported tokens)
    2. Get a quote, retrying with backoff
    3. Submit the swap with a per-cycle idempotency key, retrying with backoff
    4. Finalize the Execution record
    5. Advance the schedule and update failure tracking
    6. Log the activity (best-effort)
    """

    def __init__(
        self,
        store: Any,
        quote_provider: Any,
        submitter: Any,
        tokens: TokenRegistry,
        config: EngineConfig,
        activity_logger: Optional[Any] = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
        alert_sink: Optional[AlertSink] = None,
    ):
        self._store = store
        self._quotes = quote_provider
        self._submitter = submitter
        self._tokens = tokens
        self._config = config
        self._activity = activity_logger
        self._clock = clock
        self._sleep = sleep
        self._alerts = alert_sink or AlertSink()
        self._policy = retry_policy_for(config)

    async def execute(self, order: RecurringOrder, due_time: datetime) -> OrderOutcome:
        """
        Process one claimed order.

        Args:
            order: The claimed order (fresh from the claim)
            due_time: Due time of the claimed cycle; keys the submission and
                the Execution record

        Returns:
            OrderOutcome describing the terminal state. Never raises for
            order-level failures.
        """
        _start = time.perf_counter()
        outcome = OrderOutcome(
            order_id=order.id,
            wallet_address=order.wallet_address,
            state=OrderState.DUE,
            amount=order.amount,
            source_token=order.source_token,
        )
        self._transition(outcome, OrderState.DUE)
        key = idempotency_key(order.id, due_time)

        try:
            existing = await self._store.find_execution(order.id, key)
        except Exception as e:
            return self._abort(order, outcome, "find_execution", e, _start)

        if existing is not None and existing.status.is_terminal:
            # Cycle already settled by an earlier run whose advance never landed
            self._resume_settled(outcome, existing)
            return await self._finish(order, outcome, _start, log_activity=False)

        # Unsupported tokens fail the cycle without a quote attempt
        try:
            self._tokens.require_supported(order.source_token, order.target_token)
        except UnsupportedTokenError as e:
            await self._record_direct_failure(order, outcome, e, due_time, key)
            return await self._finish(order, outcome, _start)

        amount = self._tokens.quantize(order.source_token, order.amount)
        outcome.amount = amount

        if existing is not None:
            # Pending from an interrupted run; the same key makes resubmission a no-op
            logger.info(f"Resuming pending execution {existing.id} for order {order.id}")
            outcome.resumed = True
            execution = existing
        else:
            try:
                execution = await self._store.write_execution(
                    order.id,
                    order.wallet_address,
                    amount,
                    order.source_token,
                    order.target_token,
                    status=ExecutionStatus.PENDING,
                    execution_date=self._clock(),
                    cycle_key=key,
                )
            except Exception as e:
                # Nothing was attempted; the claim lease expires and the cycle is picked up again
                return self._abort(order, outcome, "write_execution", e, _start)

        outcome.execution_id = execution.id

        try:
            quote = await self._quote(order, outcome, amount)
            result = await self._submit(order, outcome, quote, key)
            outcome.tx_ref = result.tx_ref
            self._transition(outcome, OrderState.CONFIRMED)
        except RecurringOrderError as e:
            self._fail(outcome, e)
        except Exception as e:
            logger.exception(f"Unexpected error executing order {order.id}: {e}")
            self._fail(outcome, RecurringOrderError(str(e) or type(e).__name__))

        await self._finalize(order, outcome)
        return await self._finish(order, outcome, _start)

    # ---------------------------
    # Phases
    # ---------------------------
    async def _quote(self, order: RecurringOrder, outcome: OrderOutcome, amount: Decimal) -> Quote:
        self._transition(outcome, OrderState.QUOTING)
        try:
            return await retry_async(
                lambda: self._quotes.get_quote(order.source_token, order.target_token, amount),
                self._policy,
                timeout=self._config.api_call_timeout_seconds,
                sleep=self._sleep,
                operation_name=f"Quote for order {order.id}",
            )
        except RetryExhausted as e:
            raise QuoteUnavailableError(
                f"{describe_error(e.last_error)} after {_attempts(e.attempts)}"
            ) from e

    async def _submit(
        self,
        order: RecurringOrder,
        outcome: OrderOutcome,
        quote: Quote,
        key: str,
    ) -> SubmissionResult:
        self._transition(outcome, OrderState.SUBMITTING)
        outcome.submitted_at = self._clock()
        try:
            result = await retry_async(
                lambda: self._submitter.submit(order.wallet_address, quote, key),
                self._policy,
                timeout=self._config.order_execution_timeout_seconds,
                sleep=self._sleep,
                operation_name=f"Submission for order {order.id}",
            )
        except RetryExhausted as e:
            raise SubmissionFailedError(
                f"{describe_error(e.last_error)} after {_attempts(e.attempts)}"
            ) from e
        if not result or not result.tx_ref:
            raise SubmissionFailedError("submitter returned no transaction reference")
        return result

    # ---------------------------
    # Recording
    # ---------------------------
    def _fail(self, outcome: OrderOutcome, error: RecurringOrderError) -> None:
        outcome.error_kind = error.kind.value
        outcome.error_message = error.describe()
        self._transition(outcome, OrderState.FAILED)

    def _abort(
        self,
        order: RecurringOrder,
        outcome: OrderOutcome,
        operation: str,
        error: BaseException,
        started: float,
    ) -> OrderOutcome:
        """Give up on the cycle before anything was submitted. The schedule is left claimed."""
        self._alerts.store_inconsistency(order.id, operation, error)
        outcome.state = OrderState.FAILED
        outcome.store_error = True
        outcome.error_kind = "StoreError"
        outcome.error_message = f"StoreError: {operation} failed: {error}"
        outcome.duration_seconds = time.perf_counter() - started
        self._log_completed(outcome)
        return outcome

    def _resume_settled(self, outcome: OrderOutcome, execution: Execution) -> None:
        logger.info(
            f"Order {outcome.order_id} cycle already {execution.status.value} "
            f"in execution {execution.id}, advancing only"
        )
        outcome.resumed = True
        outcome.execution_id = execution.id
        outcome.amount = execution.amount
        if execution.status == ExecutionStatus.SUCCESSFUL:
            outcome.tx_ref = execution.transaction_hash
            self._transition(outcome, OrderState.CONFIRMED)
        else:
            outcome.error_message = execution.error_message
            if execution.error_message:
                outcome.error_kind = execution.error_message.split(":", 1)[0]
            self._transition(outcome, OrderState.FAILED)

    async def _record_direct_failure(
        self,
        order: RecurringOrder,
        outcome: OrderOutcome,
        error: RecurringOrderError,
        due_time: datetime,
        key: str,
    ) -> None:
        self._fail(outcome, error)
        try:
            execution = await self._store.write_execution(
                order.id,
                order.wallet_address,
                order.amount,
                order.source_token,
                order.target_token,
                status=ExecutionStatus.FAILED,
                error=outcome.error_message,
                execution_date=self._clock(),
                cycle_key=key,
            )
            outcome.execution_id = execution.id
        except Exception as e:
            self._alerts.store_inconsistency(order.id, "write_execution", e, due_time=due_time.isoformat())
            outcome.store_error = True

    async def _finalize(self, order: RecurringOrder, outcome: OrderOutcome) -> None:
        confirmed = outcome.state == OrderState.CONFIRMED
        try:
            await self._store.finalize_execution(
                outcome.execution_id,
                ExecutionStatus.SUCCESSFUL if confirmed else ExecutionStatus.FAILED,
                tx_ref=outcome.tx_ref,
                error=None if confirmed else outcome.error_message,
            )
        except Exception as e:
            self._alerts.store_inconsistency(
                order.id,
                "finalize_execution",
                e,
                execution_id=outcome.execution_id,
                tx_ref=outcome.tx_ref,
            )
            outcome.store_error = True

    async def _finish(
        self,
        order: RecurringOrder,
        outcome: OrderOutcome,
        started: float,
        log_activity: bool = True,
    ) -> OrderOutcome:
        """Advance the schedule, log the activity and close out the outcome."""
        await self._advance(order, outcome)
        if log_activity:
            await self._log_activity(order, outcome)
        outcome.duration_seconds = time.perf_counter() - started
        self._log_completed(outcome)
        return outcome

    async def _advance(self, order: RecurringOrder, outcome: OrderOutcome) -> None:
        processed_at = self._clock()
        next_execution = RecurringScheduler.get_next_execution(order.frequency, processed_at)

        if outcome.state == OrderState.CONFIRMED:
            failures = 0
        else:
            failures = order.consecutive_failures + 1

        deactivate = False
        if order.end_date is not None and next_execution > order.end_date:
            deactivate = True
            logger.info(f"Order {order.id} reached its end date, deactivating")
        max_failures = self._config.max_consecutive_failures
        if max_failures and failures >= max_failures:
            deactivate = True
            logger.warning(f"Order {order.id} failed {failures} cycles in a row, deactivating")

        try:
            await self._store.advance_order(
                order.id,
                next_execution,
                increment_count=True,
                deactivate=deactivate,
                consecutive_failures=failures,
            )
        except Exception as e:
            self._alerts.store_inconsistency(
                order.id,
                "advance_order",
                e,
                next_execution_date=next_execution.isoformat(),
                state=outcome.state.value,
            )
            outcome.store_error = True
            return

        outcome.next_execution_date = next_execution
        outcome.deactivated = deactivate

    async def _log_activity(self, order: RecurringOrder, outcome: OrderOutcome) -> None:
        if self._activity is None:
            return
        status = ActivityStatus.SUCCESSFUL if outcome.state == OrderState.CONFIRMED else ActivityStatus.FAILED
        try:
            await self._activity.log_activity(
                order.wallet_address.lower(),
                f"{order.order_label} Executed",
                order.source_token,
                order.target_token,
                outcome.amount,
                status,
                tx_ref=outcome.tx_ref,
            )
        except Exception as e:
            logger.warning(f"Failed to log activity for order {order.id}: {e}")

    # ---------------------------
    # Logging
    # ---------------------------
    def _transition(self, outcome: OrderOutcome, state: OrderState) -> None:
        outcome.state = state
        _slog.debug("recurring_order_state", order_id=outcome.order_id, state=state.value)

    def _log_completed(self, outcome: OrderOutcome) -> None:
        fields: Dict[str, Any] = {
            "order_id": outcome.order_id,
            "wallet_address": outcome.wallet_address,
            "state": outcome.state.value,
            "duration_ms": round(outcome.duration_seconds * 1000, 1),
            "store_error": outcome.store_error,
        }
        if outcome.state == OrderState.CONFIRMED:
            _slog.info("recurring_order_completed", tx_ref=outcome.tx_ref, amount=str(outcome.amount), **fields)
        else:
            logger.warning(f"Order {outcome.order_id} failed: {outcome.error_message}")
            _slog.warning("recurring_order_failed", error_kind=outcome.error_kind, **fields)
