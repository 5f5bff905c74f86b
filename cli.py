#!/usr/bin/env python3
"""Simple CLI for running and managing recurring orders locally"""

import argparse
import asyncio
import json
from datetime import datetime
from typing import List, Optional

from tower.config import settings
from tower.core.recovery import OrderNotFoundError, OrderOwnershipError, RecurringOrderError
from tower.core.recurring import (
    Execution,
    RecurringOrder,
    RecurringOrderService,
    RecurringScheduler,
    RunSummary,
    TokenRegistry,
)
from tower.db.factory import close_stores, get_activity_logger, get_order_store
from tower.logging_config import setup_logging
from tower.workers.recurring_order_worker import run_recurring_orders_loop, run_recurring_orders_once


def build_service() -> RecurringOrderService:
    return RecurringOrderService(
        store=get_order_store(settings),
        tokens=TokenRegistry.from_settings(settings),
        activity_logger=get_activity_logger(settings),
        min_amount=settings.min_order_amount,
    )


def print_summary(summary: RunSummary, as_json: bool = False):
    """Pretty print a run summary"""
    if as_json:
        print(json.dumps(summary.to_dict(), indent=2))
        return

    if summary.skipped_reason:
        print(f"⏭️  Run skipped: {summary.skipped_reason}")
        return

    print(f"\n🔁 Recurring run {summary.run_id}")
    print("=" * 50)
    print(f"Due:        {summary.due_count}")
    print(f"Processed:  {summary.processed}")
    print(f"Succeeded:  {summary.succeeded}")
    print(f"Failed:     {summary.failed}")
    print(f"Skipped:    {summary.skipped}")
    if summary.deferred:
        print(f"Deferred:   {summary.deferred}")
    if summary.store_errors:
        print(f"🚨 Store errors: {summary.store_errors}")
    print(f"Volume:     {summary.total_volume}")
    for token, volume in summary.volume_by_token.items():
        print(f"  {token:<8} {volume}")
    print(f"Duration:   {summary.duration_seconds:.2f}s")

    if summary.errors:
        print("\nErrors:")
        for error in summary.errors:
            print(f" - {error}")


def print_orders(orders: List[RecurringOrder]):
    if not orders:
        print("No recurring orders")
        return
    for order in orders:
        status = "active" if order.is_active else "cancelled"
        print(
            f"{order.id}  {order.order_label:<15} {order.amount} {order.source_token} -> {order.target_token}  "
            f"{RecurringScheduler.format_schedule_description(order.frequency):<16} "
            f"next {order.next_execution_date.isoformat()}  [{status}, {order.execution_count} runs]"
        )


def print_executions(executions: List[Execution]):
    if not executions:
        print("No executions")
        return
    for execution in executions:
        detail = execution.transaction_hash or execution.error_message or ""
        print(
            f"{execution.execution_date.isoformat()}  {execution.status.value:<10} "
            f"{execution.amount} {execution.source_token} -> {execution.target_token}  {detail}"
        )


async def cli_create(args: argparse.Namespace):
    end_date: Optional[datetime] = datetime.fromisoformat(args.end_date) if args.end_date else None
    try:
        order = await build_service().create_order(
            wallet_address=args.wallet,
            order_type=args.order_type,
            source_token=args.source,
            target_token=args.target,
            amount=args.amount,
            frequency=args.frequency,
            end_date=end_date,
        )
    except (ValueError, RecurringOrderError) as e:
        print(f"❌ Error: {e}")
        return
    print(f"✅ Created {order.id}, first execution at {order.next_execution_date.isoformat()}")


async def cli_cancel(args: argparse.Namespace):
    try:
        result = await build_service().cancel_order(args.order_id, args.wallet)
    except (OrderNotFoundError, OrderOwnershipError) as e:
        print(f"❌ Error: {e}")
        return
    if result.already_cancelled:
        print(f"ℹ️  Order {args.order_id} was already cancelled")
    else:
        print(f"✅ Cancelled {args.order_id}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tower recurring orders CLI")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the engine once")
    run_parser.add_argument("--json", action="store_true", help="Print the summary as JSON")

    loop_parser = subparsers.add_parser("loop", help="Run the engine on an interval")
    loop_parser.add_argument("--interval", type=int, help="Seconds between runs")
    loop_parser.add_argument("--iterations", type=int, help="Stop after N runs")

    create_parser = subparsers.add_parser("create", help="Create a recurring order")
    create_parser.add_argument("wallet", help="Wallet address")
    create_parser.add_argument("order_type", choices=["buy", "sell"], help="Order type")
    create_parser.add_argument("source", help="Source token symbol")
    create_parser.add_argument("target", help="Target token symbol")
    create_parser.add_argument("amount", help="Amount per cycle")
    create_parser.add_argument("frequency", help="hourly, daily, weekly, bi-weekly or monthly")
    create_parser.add_argument("--end-date", help="ISO-8601 end date")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a recurring order")
    cancel_parser.add_argument("order_id", help="Order ID")
    cancel_parser.add_argument("wallet", help="Owner wallet address")

    list_parser = subparsers.add_parser("list", help="List a wallet's orders")
    list_parser.add_argument("wallet", help="Wallet address")
    list_parser.add_argument("--all", action="store_true", help="Include cancelled orders")

    executions_parser = subparsers.add_parser("executions", help="Show execution history")
    executions_parser.add_argument("--order", help="Order ID")
    executions_parser.add_argument("--wallet", help="Wallet address")
    executions_parser.add_argument("--limit", type=int, default=20, help="Max rows (default: 20)")

    return parser


async def main():
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    setup_logging()
    try:
        await dispatch(args, parser)
    finally:
        await close_stores()


async def dispatch(args: argparse.Namespace, parser: argparse.ArgumentParser):
    command = args.command.lower()

    if command == "run":
        print_summary(await run_recurring_orders_once(settings=settings), as_json=args.json)

    elif command == "loop":
        await run_recurring_orders_loop(
            settings=settings,
            interval_seconds=args.interval,
            max_iterations=args.iterations,
        )

    elif command == "create":
        await cli_create(args)

    elif command == "cancel":
        await cli_cancel(args)

    elif command == "list":
        print_orders(await build_service().list_orders(args.wallet, active_only=not args.all))

    elif command == "executions":
        service = build_service()
        if args.order:
            print_executions(await service.get_order_executions(args.order, limit=args.limit))
        elif args.wallet:
            print_executions(await service.get_wallet_executions(args.wallet, limit=args.limit))
        else:
            print("❌ Pass --order or --wallet")

    else:
        print(f"❌ Unknown command: {command}")
        parser.print_help()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
