"""
Recurring Order Worker

Entry points for the Schedule Clock: run the engine once (cron, the internal
HTTP trigger) or keep running it on an interval for deployments without an
external scheduler.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from tower.config import Settings, settings as default_settings
from tower.core.recurring import EngineConfig, RecurringOrderEngine, RunSummary, TokenRegistry
from tower.db.factory import get_activity_logger, get_order_store
from tower.providers.quantum_exchange import QuantumExchangeQuoteProvider
from tower.providers.stub_submitter import StubTransactionSubmitter

logger = logging.getLogger(__name__)

_submitter: Optional[StubTransactionSubmitter] = None


def get_submitter() -> StubTransactionSubmitter:
    """Process-wide submitter so idempotency keys are honoured across runs."""
    global _submitter
    if _submitter is None:
        _submitter = StubTransactionSubmitter()
    return _submitter


def build_engine(
    settings: Optional[Settings] = None,
    *,
    store: Any = None,
    activity_logger: Any = None,
    quote_provider: Any = None,
    submitter: Any = None,
) -> RecurringOrderEngine:
    """
    Wire an engine from settings.

    Collaborators not passed in are built from settings: the configured
    order store, the QuantumExchange quote provider and the stub submitter.
    """
    settings = settings or default_settings
    tokens = TokenRegistry.from_settings(settings)

    if store is None:
        store = get_order_store(settings)
        if activity_logger is None:
            activity_logger = get_activity_logger(settings)

    return RecurringOrderEngine(
        store=store,
        quote_provider=quote_provider or QuantumExchangeQuoteProvider(tokens),
        submitter=submitter or get_submitter(),
        tokens=tokens,
        activity_logger=activity_logger,
        config=EngineConfig.from_settings(settings),
    )


async def run_recurring_orders_once(
    engine: Optional[RecurringOrderEngine] = None,
    settings: Optional[Settings] = None,
) -> RunSummary:
    """
    Run the engine once.

    Args:
        engine: Pre-built engine (built from settings when omitted)
        settings: Settings used to build the engine

    Returns:
        RunSummary for the run
    """
    engine = engine or build_engine(settings)
    summary = await engine.run()
    logger.info(
        f"Recurring run {summary.run_id}: {summary.succeeded} succeeded, {summary.failed} failed, "
        f"{summary.skipped} skipped in {summary.duration_seconds:.1f}s"
    )
    return summary


async def run_recurring_orders_loop(
    engine: Optional[RecurringOrderEngine] = None,
    settings: Optional[Settings] = None,
    interval_seconds: Optional[int] = None,
    max_iterations: Optional[int] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> int:
    """
    Run the engine in a continuous loop.

    Args:
        engine: Pre-built engine (built from settings when omitted)
        settings: Settings used to build the engine and default interval
        interval_seconds: Seconds between runs
        max_iterations: Max iterations (None for infinite)
        sleep: Awaitable sleep (injectable for tests)

    Returns:
        Number of iterations run
    """
    settings = settings or default_settings
    engine = engine or build_engine(settings)
    interval = interval_seconds or settings.recurring_trigger_interval_seconds

    iterations = 0
    while max_iterations is None or iterations < max_iterations:
        try:
            await run_recurring_orders_once(engine)
        except Exception as e:
            logger.error(f"Recurring run iteration {iterations + 1} failed: {e}")

        iterations += 1

        if max_iterations is None or iterations < max_iterations:
            logger.info(f"Sleeping {interval}s until next run...")
            await sleep(interval)

    return iterations
