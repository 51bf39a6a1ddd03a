#!/usr/bin/env python3
"""
CLI: inspect or cancel a marketplace order from a shell.

Usage:
    # Show an order and its line items
    python -m cli.cancel_order ORDER_ID --show

    # Cancel as a given user (buyer or seller on the order)
    python -m cli.cancel_order ORDER_ID --as USER_ID --reason "Out of stock"
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import sys

from artmarket.config import get_settings
from artmarket.database import AsyncSessionLocal, get_db_ctx
from artmarket.errors import CancellationError
from artmarket.services.cancellation import OrderCancellationWorkflow
from artmarket.services.notifications import DatabaseNotificationSink, NotificationDispatcher
from artmarket.services.order_store import SqlOrderStore
from artmarket.services.payments import XenditGateway


async def cmd_show(order_id: str) -> int:
    async with AsyncSessionLocal() as session:
        store = SqlOrderStore(session)
        order = await store.get_order(order_id)
        if order is None:
            print(f"ERROR: order {order_id!r} not found", file=sys.stderr)
            return 1
        items = await store.get_line_items(order_id)

    print(f"\nOrder {order.id}")
    print(f"  Buyer:    {order.user_id}")
    print(f"  Total:    {order.total_amount}")
    print(f"  Status:   {order.status} / payment {order.payment_status}")
    if order.cancelled_at:
        print(f"  Cancelled {order.cancelled_at} ({order.cancellation_reason or '-'})")

    print(f"\n{'ITEM':<38} {'SELLER':<38} {'QTY':>5}")
    print("-" * 84)
    for it in items:
        print(f"{it.marketplace_item_id or '-':<38} {it.seller_profile_id or '-':<38} {it.quantity:>5}")
    return 0


async def cmd_cancel(order_id: str, user_id: str, reason: str | None) -> int:
    settings = get_settings()
    dispatcher = NotificationDispatcher(
        DatabaseNotificationSink(AsyncSessionLocal),
        max_retries=settings.notification_max_retries,
        retry_base_seconds=settings.notification_retry_base_seconds,
    )

    try:
        async with get_db_ctx() as session:
            workflow = OrderCancellationWorkflow(
                SqlOrderStore(session),
                XenditGateway(settings),
                dispatcher,
                default_reason=settings.default_cancellation_reason,
                max_reason_length=settings.cancellation_reason_max_length,
                currency_symbol=settings.currency_symbol,
            )
            result = await workflow.cancel_order(user_id, order_id, reason)
    except CancellationError as exc:
        print(f"ERROR [{exc.code}]: {exc.message}", file=sys.stderr)
        return 1

    print(result.message)
    if result.refund:
        print(f"  Refund {result.refund.id}: {result.refund.amount} ({result.refund.status})")

    # Queued notices are delivered once the cancellation has committed.
    worker = asyncio.create_task(dispatcher.worker())
    try:
        await dispatcher.join(timeout=30)
    finally:
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="ArtMarket order CLI")
    parser.add_argument("order_id", help="Order to act on")
    parser.add_argument("--show", action="store_true", help="Print the order and exit")
    parser.add_argument("--as", dest="user_id", metavar="USER_ID", help="Act as this user")
    parser.add_argument("--reason", help="Cancellation reason (max 500 chars)")
    args = parser.parse_args()

    if args.show:
        sys.exit(asyncio.run(cmd_show(args.order_id)))
    if not args.user_id:
        parser.error("--as USER_ID is required to cancel")
    sys.exit(asyncio.run(cmd_cancel(args.order_id, args.user_id, args.reason)))


if __name__ == "__main__":
    main()
