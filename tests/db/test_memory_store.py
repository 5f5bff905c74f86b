"""
Tests for the in-memory order store.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tower.config import Settings
from tower.core.recovery import StoreError
from tower.core.recurring import ExecutionStatus, OrderType, RecurringOrder
from tower.db.factory import get_activity_logger, get_order_store, reset_stores
from tower.db.memory_store import InMemoryOrderStore
from tower.db.store import ActivityLogger, OrderStore

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_order(**overrides) -> RecurringOrder:
    values = dict(
        id="",
        wallet_address="0xAbC",
        order_type=OrderType.BUY,
        source_token="USDC",
        target_token="QTM",
        amount=Decimal("10"),
        frequency="daily",
        start_date=NOW - timedelta(days=1),
        next_execution_date=NOW - timedelta(minutes=5),
        created_at=NOW - timedelta(days=1),
    )
    values.update(overrides)
    return RecurringOrder(**values)


@pytest.fixture
def store():
    return InMemoryOrderStore()


class TestOrders:
    @pytest.mark.asyncio
    async def test_insert_assigns_id(self, store):
        order = await store.insert_order(make_order())
        assert order.id
        assert (await store.get_order(order.id)).id == order.id

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store):
        await store.insert_order(make_order(id="dup"))
        with pytest.raises(StoreError):
            await store.insert_order(make_order(id="dup"))

    @pytest.mark.asyncio
    async def test_fetch_due_filters_and_orders(self, store):
        late = await store.insert_order(make_order(next_execution_date=NOW - timedelta(minutes=1)))
        early = await store.insert_order(make_order(next_execution_date=NOW - timedelta(hours=2)))
        await store.insert_order(make_order(next_execution_date=NOW + timedelta(minutes=1)))
        await store.insert_order(make_order(is_active=False))

        due = await store.fetch_due(NOW, 10)

        assert [o.id for o in due] == [early.id, late.id]
        assert [o.id for o in await store.fetch_due(NOW, 1)] == [early.id]

    @pytest.mark.asyncio
    async def test_returns_copies(self, store):
        order = await store.insert_order(make_order())
        fetched = await store.get_order(order.id)
        fetched.is_active = False
        assert (await store.get_order(order.id)).is_active is True

    @pytest.mark.asyncio
    async def test_claim_is_conditional(self, store):
        order = await store.insert_order(make_order())
        lease = NOW + timedelta(minutes=5)

        claimed = await store.claim_order(order.id, order.next_execution_date, lease)
        again = await store.claim_order(order.id, order.next_execution_date, lease)

        assert claimed.next_execution_date == lease
        assert again is None

    @pytest.mark.asyncio
    async def test_claim_keeps_cycle_until_advance(self, store):
        order = await store.insert_order(make_order())
        due = order.next_execution_date
        lease = NOW + timedelta(minutes=5)

        claimed = await store.claim_order(order.id, due, lease)
        reclaimed = await store.claim_order(order.id, lease, lease + timedelta(minutes=5), cycle_at=due)
        advanced = await store.advance_order(order.id, NOW + timedelta(days=1))

        assert claimed.claimed_cycle_at == due
        assert reclaimed.claimed_cycle_at == due
        assert advanced.claimed_cycle_at is None

    @pytest.mark.asyncio
    async def test_claim_skips_inactive(self, store):
        order = await store.insert_order(make_order())
        await store.deactivate(order.id)
        assert await store.claim_order(order.id, order.next_execution_date, NOW) is None

    @pytest.mark.asyncio
    async def test_advance(self, store):
        order = await store.insert_order(make_order())

        updated = await store.advance_order(
            order.id, NOW + timedelta(days=1), deactivate=True, consecutive_failures=2
        )

        assert updated.next_execution_date == NOW + timedelta(days=1)
        assert updated.execution_count == 1
        assert updated.is_active is False
        assert updated.consecutive_failures == 2

    @pytest.mark.asyncio
    async def test_advance_missing(self, store):
        with pytest.raises(StoreError):
            await store.advance_order("missing", NOW)

    @pytest.mark.asyncio
    async def test_deactivate_reports_change(self, store):
        order = await store.insert_order(make_order())
        assert await store.deactivate(order.id) is True
        assert await store.deactivate(order.id) is False


class TestExecutions:
    @pytest.mark.asyncio
    async def test_finalize_once(self, store):
        execution = await store.write_execution("o1", "0xabc", Decimal("1"), "USDC", "QTM")
        assert execution.status == ExecutionStatus.PENDING

        final = await store.finalize_execution(execution.id, ExecutionStatus.SUCCESSFUL, tx_ref="0x1")
        assert final.transaction_hash == "0x1"

        with pytest.raises(StoreError):
            await store.finalize_execution(execution.id, ExecutionStatus.FAILED, error="late")

    @pytest.mark.asyncio
    async def test_find_by_cycle_key(self, store):
        written = await store.write_execution("o1", "0xabc", Decimal("1"), "USDC", "QTM", cycle_key="k1")
        await store.write_execution("o2", "0xabc", Decimal("1"), "USDC", "QTM", cycle_key="k1")

        assert (await store.find_execution("o1", "k1")).id == written.id
        assert await store.find_execution("o1", "k2") is None

    @pytest.mark.asyncio
    async def test_finalize_missing(self, store):
        with pytest.raises(StoreError):
            await store.finalize_execution("missing", ExecutionStatus.FAILED)

    @pytest.mark.asyncio
    async def test_list_filters(self, store):
        await store.write_execution("o1", "0xAbC", Decimal("1"), "USDC", "QTM", execution_date=NOW)
        await store.write_execution("o2", "0xabc", Decimal("1"), "USDC", "QTM", execution_date=NOW + timedelta(hours=1))
        await store.write_execution("o3", "0xdef", Decimal("1"), "USDC", "QTM", execution_date=NOW)

        by_wallet = await store.list_executions(wallet_address="0xABC")
        assert [e.recurring_order_id for e in by_wallet] == ["o2", "o1"]
        assert len(await store.list_executions(order_id="o3")) == 1
        assert len(await store.list_executions(limit=2)) == 2


class TestRunLock:
    @pytest.mark.asyncio
    async def test_exclusive_until_expiry(self, store):
        assert await store.acquire_run_lock("a", NOW, 60) is True
        assert await store.acquire_run_lock("b", NOW, 60) is False
        assert await store.acquire_run_lock("a", NOW, 60) is True
        assert await store.acquire_run_lock("b", NOW + timedelta(seconds=61), 60) is True

    @pytest.mark.asyncio
    async def test_release_only_by_owner(self, store):
        await store.acquire_run_lock("a", NOW, 60)
        await store.release_run_lock("b")
        assert await store.acquire_run_lock("b", NOW, 60) is False
        await store.release_run_lock("a")
        assert await store.acquire_run_lock("b", NOW, 60) is True


class TestFactory:
    def test_memory_store_without_supabase(self):
        reset_stores()
        try:
            settings = Settings(_env_file=None, supabase_url="", supabase_service_key="")
            store = get_order_store(settings)

            assert isinstance(store, InMemoryOrderStore)
            assert isinstance(store, OrderStore)
            assert isinstance(get_activity_logger(settings), ActivityLogger)
            assert get_order_store(settings) is store
        finally:
            reset_stores()
