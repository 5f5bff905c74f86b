"""
Tests for the Recurring Order Engine

Covers a full run against the in-memory store: one execution per due cycle,
schedule advancement, batching, retries, concurrency and failure handling.
"""

import asyncio
import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, call

import structlog

from tower.core.recovery import StoreError
from tower.core.recurring import (
    ActivityStatus,
    EngineConfig,
    ExecutionStatus,
    OrderType,
    Quote,
    SubmissionResult,
    idempotency_key,
)
from tower.providers.stub_submitter import StubTransactionSubmitter


class RecordingSubmitter:
    """Submitter that records overlap per wallet."""

    def __init__(self, delay: float = 0.01):
        self.delay = delay
        self.active = {}
        self.max_per_wallet = {}
        self.active_total = 0
        self.max_total = 0
        self.calls = []

    async def submit(self, wallet_address, quote, idempotency_key):
        wallet = wallet_address.lower()
        self.active[wallet] = self.active.get(wallet, 0) + 1
        self.max_per_wallet[wallet] = max(self.max_per_wallet.get(wallet, 0), self.active[wallet])
        self.active_total += 1
        self.max_total = max(self.max_total, self.active_total)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active[wallet] -= 1
            self.active_total -= 1
        self.calls.append(wallet)
        return SubmissionResult(tx_ref="0x" + idempotency_key[:16])


class SlowStubSubmitter(StubTransactionSubmitter):
    """Stub submitter that yields to the event loop before submitting."""

    async def submit(self, wallet_address, quote, idempotency_key):
        await asyncio.sleep(0.01)
        return await super().submit(wallet_address, quote, idempotency_key)


# =============================================================================
# Successful runs
# =============================================================================


class TestSuccessfulRun:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_due_order_executes_once(self, store, add_order, make_engine, now):
        """A due order produces exactly one Successful execution with a tx reference."""
        order = await add_order()
        due = order.next_execution_date

        summary = await make_engine().run()

        assert summary.due_count == 1
        assert summary.processed == 1
        assert summary.succeeded == 1
        assert summary.failed == 0

        executions = await store.list_executions(order_id=order.id)
        assert len(executions) == 1
        execution = executions[0]
        assert execution.status == ExecutionStatus.SUCCESSFUL
        assert execution.transaction_hash == StubTransactionSubmitter.tx_ref_for(
            idempotency_key(order.id, due)
        )
        assert execution.error_message is None

    @pytest.mark.asyncio
    async def test_weekly_advances_from_processing_time(self, store, add_order, make_engine, now):
        """Weekly orders advance to now + 7 days, not previous due time + 7 days."""
        order = await add_order(next_execution_date=now - timedelta(days=3))

        await make_engine().run()

        updated = await store.get_order(order.id)
        assert updated.next_execution_date == now + timedelta(days=7)
        assert updated.execution_count == 1
        assert updated.is_active is True

    @pytest.mark.asyncio
    async def test_summary_volume(self, add_order, make_engine):
        """Total and per-token volume sum successful amounts."""
        await add_order(amount=Decimal("10"))
        await add_order(amount=Decimal("2.5"))
        await add_order(source_token="EURC", amount=Decimal("4"))

        summary = await make_engine().run()

        assert summary.succeeded == 3
        assert summary.total_volume == Decimal("16.5")
        assert summary.volume_by_token["USDC"] == Decimal("12.5")
        assert summary.volume_by_token["EURC"] == Decimal("4")
        assert summary.to_dict()["totalVolume"].startswith("16.5")

    @pytest.mark.asyncio
    async def test_no_due_orders(self, store, add_order, make_engine, now):
        """Orders not yet due are left alone."""
        order = await add_order(next_execution_date=now + timedelta(hours=1))

        summary = await make_engine().run()

        assert summary.due_count == 0
        assert summary.processed == 0
        assert (await store.get_order(order.id)).execution_count == 0

    @pytest.mark.asyncio
    async def test_processes_in_due_order(self, add_order, make_engine, now):
        """Sequential runs submit oldest-due first."""
        await add_order(wallet_address="0xbbb", next_execution_date=now - timedelta(minutes=5))
        await add_order(wallet_address="0xaaa", next_execution_date=now - timedelta(minutes=30))
        await add_order(wallet_address="0xccc", next_execution_date=now - timedelta(minutes=1))

        submitter = AsyncMock()
        submitter.submit.side_effect = lambda wallet, quote, key: SubmissionResult(tx_ref="0x" + key[:8])

        await make_engine(submitter=submitter).run()

        wallets = [c.args[0] for c in submitter.submit.await_args_list]
        assert wallets == ["0xaaa", "0xbbb", "0xccc"]

    @pytest.mark.asyncio
    async def test_logs_executed_activity(self, store, add_order, make_engine, wallet):
        """Each execution logs a 'Recurring <Type> Executed' activity."""
        await add_order(order_type=OrderType.SELL)

        await make_engine().run()

        assert len(store.activities) == 1
        activity = store.activities[0]
        assert activity.type == "Recurring Sell Executed"
        assert activity.status == ActivityStatus.SUCCESSFUL
        assert activity.wallet_address == wallet.lower()
        assert activity.transaction_hash is not None
        assert activity.network_name == "Arc"

    @pytest.mark.asyncio
    async def test_activity_log_failure_is_advisory(self, store, add_order, make_engine):
        """A failing activity logger never fails the order."""
        order = await add_order()
        activity_logger = AsyncMock()
        activity_logger.log_activity.side_effect = RuntimeError("activities table unavailable")

        summary = await make_engine(activity_logger=activity_logger).run()

        assert summary.succeeded == 1
        executions = await store.list_executions(order_id=order.id)
        assert executions[0].status == ExecutionStatus.SUCCESSFUL

    @pytest.mark.asyncio
    async def test_run_identifiers_bound_to_logs(self, add_order, make_engine):
        """Log lines emitted during a run carry its run_id and instance_id."""
        await add_order()
        seen = []

        class ContextCapturingSubmitter(StubTransactionSubmitter):
            async def submit(self, wallet_address, quote, idempotency_key):
                seen.append(structlog.contextvars.get_contextvars())
                return await super().submit(wallet_address, quote, idempotency_key)

        engine = make_engine(submitter=ContextCapturingSubmitter())
        summary = await engine.run()

        assert seen == [{"run_id": summary.run_id, "instance_id": engine.instance_id}]
        assert "run_id" not in structlog.contextvars.get_contextvars()


# =============================================================================
# Schedule lifecycle
# =============================================================================


class TestScheduleLifecycle:
    """Tests for end dates, batching and failure tracking."""

    @pytest.mark.asyncio
    async def test_end_date_deactivates(self, store, add_order, make_engine, clock, now):
        """An order whose next due time passes its end date becomes inactive."""
        order = await add_order(end_date=now + timedelta(days=1))

        summary = await make_engine().run()

        updated = await store.get_order(order.id)
        assert updated.is_active is False
        assert summary.outcomes[0].deactivated is True

        # Never selected again
        clock.advance(days=30)
        later = await make_engine().run()
        assert later.due_count == 0
        assert len(await store.list_executions(order_id=order.id)) == 1

    @pytest.mark.asyncio
    async def test_batch_cap_takes_earliest_due(self, store, add_order, make_engine, now):
        """With 150 due and a cap of 100, the 100 earliest run and 50 stay untouched."""
        orders = []
        for i in range(150):
            orders.append(await add_order(next_execution_date=now - timedelta(minutes=200 - i)))

        summary = await make_engine(config=EngineConfig(max_orders_per_run=100)).run()

        assert summary.due_count == 100
        assert summary.processed == 100

        for original in orders[:100]:
            updated = await store.get_order(original.id)
            assert updated.execution_count == 1
            assert updated.next_execution_date == now + timedelta(days=7)

        for original in orders[100:]:
            updated = await store.get_order(original.id)
            assert updated.execution_count == 0
            assert updated.next_execution_date == original.next_execution_date

        assert len(await store.fetch_due(now, 1000)) == 50

    @pytest.mark.asyncio
    async def test_consecutive_failures_deactivate(self, store, add_order, make_engine, quote_provider):
        """Reaching the consecutive failure limit deactivates the order."""
        order = await add_order(consecutive_failures=4)
        quote_provider.get_quote.side_effect = RuntimeError("no liquidity")

        summary = await make_engine().run()

        updated = await store.get_order(order.id)
        assert updated.consecutive_failures == 5
        assert updated.is_active is False
        assert summary.outcomes[0].deactivated is True

    @pytest.mark.asyncio
    async def test_consecutive_failure_limit_disabled(self, store, add_order, make_engine, quote_provider):
        """A limit of 0 never deactivates."""
        order = await add_order(consecutive_failures=10)
        quote_provider.get_quote.side_effect = RuntimeError("no liquidity")

        await make_engine(config=EngineConfig(max_consecutive_failures=0)).run()

        updated = await store.get_order(order.id)
        assert updated.consecutive_failures == 11
        assert updated.is_active is True

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, store, add_order, make_engine):
        order = await add_order(consecutive_failures=3)

        await make_engine().run()

        assert (await store.get_order(order.id)).consecutive_failures == 0


# =============================================================================
# Failures and retries
# =============================================================================


class TestFailures:
    """Tests for failed cycles."""

    @pytest.mark.asyncio
    async def test_quote_timeouts_exhaust_attempts(
        self, store, add_order, make_engine, quote_provider, submitter, sleep, now
    ):
        """Three quote timeouts yield one QuoteUnavailable execution and the schedule still advances."""
        order = await add_order()
        quote_provider.get_quote.side_effect = asyncio.TimeoutError()

        summary = await make_engine().run()

        assert quote_provider.get_quote.await_count == 3
        assert sleep.await_args_list == [call(1.0), call(2.0)]
        assert submitter.broadcast_count == 0

        executions = await store.list_executions(order_id=order.id)
        assert len(executions) == 1
        assert executions[0].status == ExecutionStatus.FAILED
        assert executions[0].error_message == "QuoteUnavailable: timed out after 3 attempts"

        updated = await store.get_order(order.id)
        assert updated.next_execution_date == now + timedelta(days=7)
        assert updated.execution_count == 1
        assert summary.failed == 1
        assert summary.outcomes[0].error_kind == "QuoteUnavailable"

    @pytest.mark.asyncio
    async def test_slow_quote_times_out(self, store, add_order, make_engine, quote_provider):
        """A quote slower than the API timeout counts as a failed attempt."""
        order = await add_order()

        async def slow_quote(*args):
            await asyncio.sleep(1)

        quote_provider.get_quote.side_effect = slow_quote
        config = EngineConfig(api_call_timeout_seconds=0.01)

        await make_engine(config=config).run()

        executions = await store.list_executions(order_id=order.id)
        assert len(executions) == 1
        assert executions[0].error_message.startswith("QuoteUnavailable: timed out")

    @pytest.mark.asyncio
    async def test_submission_retries_reuse_idempotency_key(self, store, add_order, make_engine):
        """Submission retries carry the same key and still produce a single execution."""
        order = await add_order()
        due = order.next_execution_date
        submitter = AsyncMock()
        submitter.submit.side_effect = [
            ConnectionError("rpc connection reset"),
            SubmissionResult(tx_ref="0xabc"),
        ]

        summary = await make_engine(submitter=submitter).run()

        assert summary.succeeded == 1
        keys = {c.args[2] for c in submitter.submit.await_args_list}
        assert keys == {idempotency_key(order.id, due)}

        executions = await store.list_executions(order_id=order.id)
        assert len(executions) == 1
        assert executions[0].transaction_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_submission_failed_after_attempts(self, store, add_order, make_engine, now):
        order = await add_order()
        submitter = AsyncMock()
        submitter.submit.side_effect = RuntimeError("nonce too low")

        summary = await make_engine(submitter=submitter).run()

        assert submitter.submit.await_count == 3
        executions = await store.list_executions(order_id=order.id)
        assert len(executions) == 1
        assert executions[0].status == ExecutionStatus.FAILED
        assert executions[0].error_message.startswith("SubmissionFailed: nonce too low")
        assert (await store.get_order(order.id)).next_execution_date == now + timedelta(days=7)
        assert summary.failed == 1

    @pytest.mark.asyncio
    async def test_unsupported_token_fails_without_quote(self, store, add_order, make_engine, quote_provider, now):
        """Unsupported tokens fail the cycle directly, with no quote attempt."""
        order = await add_order(source_token="DOGE")

        summary = await make_engine().run()

        quote_provider.get_quote.assert_not_awaited()
        executions = await store.list_executions(order_id=order.id)
        assert len(executions) == 1
        assert executions[0].status == ExecutionStatus.FAILED
        assert executions[0].error_message == "UnsupportedToken: token DOGE is not supported"
        assert (await store.get_order(order.id)).next_execution_date == now + timedelta(days=7)
        assert summary.failed == 1

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, store, add_order, make_engine, quote_provider):
        """One order failing does not stop the rest of the batch."""
        good_one = await add_order(source_token="USDC")
        bad = await add_order(source_token="EURC")
        good_two = await add_order(source_token="USDT")

        async def get_quote(source_token, target_token, amount):
            if source_token == "EURC":
                raise ValueError("pair not listed")
            return Quote(source_token, target_token, amount, amount)

        quote_provider.get_quote.side_effect = get_quote

        summary = await make_engine().run()

        assert summary.processed == 3
        assert summary.succeeded == 2
        assert summary.failed == 1
        assert (await store.list_executions(order_id=bad.id))[0].status == ExecutionStatus.FAILED
        for order in (good_one, good_two):
            assert (await store.list_executions(order_id=order.id))[0].status == ExecutionStatus.SUCCESSFUL

    @pytest.mark.asyncio
    async def test_claim_store_error_is_isolated(self, store, add_order, make_engine):
        first = await add_order()
        second = await add_order(next_execution_date=first.next_execution_date + timedelta(minutes=1))
        real_claim = store.claim_order

        async def flaky_claim(order_id, expected, lease_until, cycle_at=None):
            if order_id == first.id:
                raise StoreError("connection reset")
            return await real_claim(order_id, expected, lease_until, cycle_at=cycle_at)

        store.claim_order = flaky_claim

        summary = await make_engine().run()

        assert summary.store_errors == 1
        assert summary.succeeded == 1
        assert len(await store.list_executions(order_id=second.id)) == 1


# =============================================================================
# Store consistency
# =============================================================================


class TestStoreErrors:
    """Tests for store failures, which are alerted on rather than treated as swap failures."""

    @pytest.mark.asyncio
    async def test_fetch_failure_recorded(self, store, make_engine):
        store.fetch_due = AsyncMock(side_effect=StoreError("fetch due orders: timeout"))

        summary = await make_engine().run()

        assert summary.processed == 0
        assert any("timeout" in e for e in summary.errors)

    @pytest.mark.asyncio
    async def test_advance_failure_alerts(self, store, add_order, make_engine):
        """An executed order whose schedule did not advance raises an alert."""
        order = await add_order()
        store.advance_order = AsyncMock(side_effect=StoreError("advance order: db down"))
        alert_sink = MagicMock()

        summary = await make_engine(alert_sink=alert_sink).run()

        alert_sink.store_inconsistency.assert_called_once()
        args = alert_sink.store_inconsistency.call_args.args
        assert args[0] == order.id
        assert args[1] == "advance_order"
        assert summary.store_errors == 1
        assert summary.succeeded == 0
        assert summary.outcomes[0].store_error is True

        # The swap itself went through
        executions = await store.list_executions(order_id=order.id)
        assert executions[0].status == ExecutionStatus.SUCCESSFUL

    @pytest.mark.asyncio
    async def test_advance_failure_does_not_resubmit_cycle(
        self, store, add_order, make_engine, submitter, clock
    ):
        """Once the claim lapses, the next run settles the same cycle without a second swap."""
        order = await add_order()
        real_advance = store.advance_order
        attempts = []

        async def advance_failing_once(*args, **kwargs):
            attempts.append(args)
            if len(attempts) == 1:
                raise StoreError("advance order: db down")
            return await real_advance(*args, **kwargs)

        store.advance_order = advance_failing_once

        first = await make_engine(alert_sink=MagicMock()).run()
        assert first.store_errors == 1

        clock.advance(seconds=EngineConfig().claim_ttl_seconds + 1)
        second = await make_engine().run()

        assert submitter.broadcast_count == 1
        executions = await store.list_executions(order_id=order.id)
        assert [e.status for e in executions] == [ExecutionStatus.SUCCESSFUL]

        outcome = second.outcomes[0]
        assert outcome.resumed is True
        assert outcome.succeeded is True
        assert outcome.tx_ref == executions[0].transaction_hash

        updated = await store.get_order(order.id)
        assert updated.execution_count == 1
        assert updated.claimed_cycle_at is None
        assert updated.next_execution_date == clock.now + timedelta(days=7)
        assert len(store.activities) == 1

    @pytest.mark.asyncio
    async def test_interrupted_cycle_resumes_pending_execution(
        self, store, add_order, make_engine, submitter, now
    ):
        """A Pending execution left by a dead run is finished under the same key."""
        order = await add_order()
        due = order.next_execution_date
        key = idempotency_key(order.id, due)
        await store.claim_order(order.id, due, now - timedelta(seconds=1))
        pending = await store.write_execution(
            order.id, order.wallet_address, order.amount, "USDC", "QTM", cycle_key=key
        )
        # The dead run got as far as broadcasting
        await submitter.submit(order.wallet_address, Quote("USDC", "QTM", order.amount, order.amount), key)

        summary = await make_engine().run()

        assert summary.succeeded == 1
        assert summary.outcomes[0].resumed is True
        assert submitter.broadcast_count == 1
        executions = await store.list_executions(order_id=order.id)
        assert [e.id for e in executions] == [pending.id]
        assert executions[0].status == ExecutionStatus.SUCCESSFUL
        assert executions[0].transaction_hash == StubTransactionSubmitter.tx_ref_for(key)
        assert (await store.get_order(order.id)).execution_count == 1

    @pytest.mark.asyncio
    async def test_pending_write_failure_aborts_order(self, store, add_order, make_engine, submitter, now):
        """If the execution record cannot be written, nothing is submitted."""
        order = await add_order()
        store.write_execution = AsyncMock(side_effect=StoreError("insert failed"))
        alert_sink = MagicMock()

        summary = await make_engine(alert_sink=alert_sink).run()

        assert submitter.broadcast_count == 0
        assert alert_sink.store_inconsistency.call_args.args[1] == "write_execution"
        assert summary.store_errors == 1
        updated = await store.get_order(order.id)
        assert updated.execution_count == 0
        assert updated.next_execution_date > now


# =============================================================================
# Concurrency and overlapping runs
# =============================================================================


class TestConcurrency:
    """Tests for bounded concurrency, claims and the run lease."""

    @pytest.mark.asyncio
    async def test_same_wallet_never_concurrent(self, add_order, make_engine, now):
        """With concurrency > 1, different wallets overlap but one wallet never does."""
        for i, wallet in enumerate(["0xaaa", "0xbbb", "0xaaa", "0xbbb"]):
            await add_order(wallet_address=wallet, next_execution_date=now - timedelta(minutes=10 - i))
        submitter = RecordingSubmitter()

        summary = await make_engine(submitter=submitter, config=EngineConfig(concurrency=4)).run()

        assert summary.succeeded == 4
        assert submitter.max_per_wallet == {"0xaaa": 1, "0xbbb": 1}
        assert submitter.max_total == 2

    @pytest.mark.asyncio
    async def test_sequential_by_default(self, add_order, make_engine):
        for wallet in ["0xaaa", "0xbbb", "0xccc"]:
            await add_order(wallet_address=wallet)
        submitter = RecordingSubmitter()

        await make_engine(submitter=submitter).run()

        assert submitter.max_total == 1

    @pytest.mark.asyncio
    async def test_overlapping_runs_execute_each_order_once(self, store, add_order, make_engine, now):
        """Two engines racing over one store never execute the same due cycle twice."""
        orders = [
            await add_order(next_execution_date=now - timedelta(minutes=10 - i))
            for i in range(5)
        ]
        submitter = SlowStubSubmitter()
        config = EngineConfig(use_run_lock=False)

        first, second = await asyncio.gather(
            make_engine(submitter=submitter, config=config).run(),
            make_engine(submitter=submitter, config=config).run(),
        )

        for order in orders:
            assert len(await store.list_executions(order_id=order.id)) == 1
        assert first.processed + second.processed == 5
        assert first.succeeded + second.succeeded == 5
        assert submitter.broadcast_count == 5

    @pytest.mark.asyncio
    async def test_lost_claim_is_skipped(self, store, add_order, make_engine):
        """A run working from a stale snapshot skips orders another run already took."""
        order = await add_order()
        snapshot = await store.fetch_due(order.next_execution_date, 100)

        await make_engine().run()

        store.fetch_due = AsyncMock(return_value=snapshot)
        summary = await make_engine().run()

        assert summary.skipped == 1
        assert summary.processed == 0
        assert len(await store.list_executions(order_id=order.id)) == 1

    @pytest.mark.asyncio
    async def test_cancel_mid_run_prevents_execution(self, store, add_order, make_engine, quote_provider, now):
        """An order cancelled after selection is not executed."""
        order = await add_order()
        snapshot = await store.fetch_due(now, 100)
        await store.deactivate(order.id)
        store.fetch_due = AsyncMock(return_value=snapshot)

        summary = await make_engine().run()

        assert summary.skipped == 1
        quote_provider.get_quote.assert_not_awaited()
        assert await store.list_executions(order_id=order.id) == []
        updated = await store.get_order(order.id)
        assert updated.is_active is False
        assert updated.execution_count == 0

    @pytest.mark.asyncio
    async def test_run_lock_held_skips_run(self, store, add_order, make_engine, now):
        order = await add_order()
        assert await store.acquire_run_lock("engine-elsewhere", now, 900)

        summary = await make_engine().run()

        assert summary.skipped_reason == "run_locked"
        assert summary.processed == 0
        assert await store.list_executions(order_id=order.id) == []

        await store.release_run_lock("engine-elsewhere")
        summary = await make_engine().run()
        assert summary.processed == 1

    @pytest.mark.asyncio
    async def test_run_lock_released_after_run(self, store, add_order, make_engine, now):
        await add_order()

        await make_engine().run()

        assert await store.acquire_run_lock("next-engine", now, 900) is True

    @pytest.mark.asyncio
    async def test_run_deadline_defers_remaining(self, store, add_order, make_engine):
        """Orders not started before the run deadline stay due."""
        orders = [await add_order(), await add_order()]

        summary = await make_engine(config=EngineConfig(run_timeout_seconds=0)).run()

        assert summary.deferred == 2
        assert summary.processed == 0
        for order in orders:
            updated = await store.get_order(order.id)
            assert updated.next_execution_date == order.next_execution_date
