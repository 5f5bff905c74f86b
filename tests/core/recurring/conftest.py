"""Shared fixtures for the recurring order tests."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

from tower.config import DEFAULT_TOKEN_DECIMALS
from tower.core.recurring import (
    EngineConfig,
    OrderType,
    Quote,
    RecurringOrder,
    RecurringOrderEngine,
    TokenRegistry,
)
from tower.db.memory_store import InMemoryOrderStore
from tower.providers.stub_submitter import StubTransactionSubmitter


NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
WALLET = "0xAbC0000000000000000000000000000000000001"


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def wallet():
    return WALLET


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def tokens():
    return TokenRegistry(DEFAULT_TOKEN_DECIMALS)


@pytest.fixture
def quote_provider():
    """Quote provider that prices everything 1:2."""
    provider = AsyncMock()

    async def get_quote(source_token, target_token, amount):
        return Quote(
            source_token=source_token,
            target_token=target_token,
            input_amount=amount,
            expected_output=amount * 2,
            route=[source_token, target_token],
        )

    provider.get_quote.side_effect = get_quote
    return provider


@pytest.fixture
def submitter():
    return StubTransactionSubmitter()


@pytest.fixture
def sleep():
    """Retry sleep that returns immediately."""
    return AsyncMock()


@pytest.fixture
def make_order():
    """Build an order due one hour before NOW unless overridden."""

    def _make(**overrides) -> RecurringOrder:
        values = dict(
            id="",
            wallet_address=WALLET,
            order_type=OrderType.BUY,
            source_token="USDC",
            target_token="QTM",
            amount=Decimal("10"),
            frequency="weekly",
            start_date=NOW - timedelta(days=7),
            next_execution_date=NOW - timedelta(hours=1),
            created_at=NOW - timedelta(days=7),
            updated_at=NOW - timedelta(days=7),
        )
        values.update(overrides)
        return RecurringOrder(**values)

    return _make


@pytest.fixture
def add_order(store, make_order):
    """Insert an order into the store and return the stored copy."""

    async def _add(**overrides) -> RecurringOrder:
        return await store.insert_order(make_order(**overrides))

    return _add


@pytest.fixture
def make_engine(store, quote_provider, submitter, tokens, clock, sleep):
    """Engine wired to the in-memory store; keyword overrides replace collaborators."""

    def _make(**overrides) -> RecurringOrderEngine:
        return RecurringOrderEngine(
            store=overrides.get("store", store),
            quote_provider=overrides.get("quote_provider", quote_provider),
            submitter=overrides.get("submitter", submitter),
            tokens=tokens,
            activity_logger=overrides.get("activity_logger", store),
            config=overrides.get("config", EngineConfig()),
            clock=clock,
            sleep=sleep,
            alert_sink=overrides.get("alert_sink"),
        )

    return _make
