"""
Order cancellation: refund or invalidate payment, restore inventory, then
mark the order cancelled.

Ordering matters:
  - Authorization and state guards run before any side effect.
  - A failed refund aborts before anything is written.
  - Inventory restoration and a failed payment-link expiry are best effort.
  - The order row is written last, conditional on the status it was read
    with, so a concurrent cancellation cannot both succeed.
  - The refund notice is queued only after that write.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from artmarket.errors import (
    AlreadyCancelled,
    Forbidden,
    Internal,
    InvalidArgument,
    InvalidState,
    NotFound,
    PaymentFailed,
    Unauthenticated,
)
from artmarket.models import MarketplaceItem, Order, OrderItem, OrderStatus, PaymentStatus
from artmarket.services.notifications import NotificationEvent, NotificationPublisher
from artmarket.services.order_store import OrderStore, OrderStoreError
from artmarket.services.payments import PaymentGateway, RefundRecord, refund_idempotency_key

logger = logging.getLogger(__name__)


class OrderParty(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"


_SHIPPED_STATUSES = frozenset({OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value})

REFUND_NOTIFICATION_TYPE = "order_refund_initiated"


@dataclass
class CancellationResult:
    order: Order
    message: str
    refund: Optional[RefundRecord] = None


async def resolve_order_party(
    store: OrderStore,
    requester_id: str,
    order: Order,
    items: List[OrderItem],
) -> Optional[OrderParty]:
    """Return the party *requester_id* plays on *order*, or None."""
    if order.user_id == requester_id:
        return OrderParty.BUYER

    profile = await store.get_seller_profile(requester_id)
    if profile is not None and any(
        item.seller_profile_id == profile.id for item in items
    ):
        return OrderParty.SELLER
    return None


def format_amount(amount: float) -> str:
    """``1000`` -> ``"1,000"``, ``1234.5`` -> ``"1,234.50"``."""
    text = f"{float(amount):,.2f}"
    return text[:-3] if text.endswith(".00") else text


class OrderCancellationWorkflow:
    def __init__(
        self,
        store: OrderStore,
        gateway: PaymentGateway,
        publisher: NotificationPublisher,
        *,
        default_reason: str = "Order cancelled",
        max_reason_length: int = 500,
        currency_symbol: str = "₱",
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._publisher = publisher
        self._default_reason = default_reason
        self._max_reason_length = max_reason_length
        self._currency_symbol = currency_symbol

    async def cancel_order(
        self,
        requester_id: Optional[str],
        order_id: str,
        reason: Optional[str] = None,
    ) -> CancellationResult:
        """
        Cancel *order_id* on behalf of *requester_id* (its buyer or a seller
        on one of its line items).

        Raises one of the ``artmarket.errors`` cancellation failures; any
        unexpected store error surfaces as ``Internal``.
        """
        if not requester_id:
            raise Unauthenticated()

        cleaned_reason = self.clean_reason(reason)

        try:
            return await self._cancel(requester_id, order_id, cleaned_reason)
        except (OrderStoreError, SQLAlchemyError) as exc:
            logger.error("Store failure while cancelling order %s: %s", order_id, exc)
            raise Internal() from exc

    def clean_reason(self, reason: Optional[str]) -> Optional[str]:
        """Trim *reason*; blank means no reason.  Over-long raises InvalidArgument."""
        if reason is None:
            return None
        trimmed = reason.strip()
        if not trimmed:
            return None
        if len(trimmed) > self._max_reason_length:
            raise InvalidArgument(
                f"Cancellation reason must be 1-{self._max_reason_length} characters"
            )
        return trimmed

    async def _cancel(
        self, requester_id: str, order_id: str, reason: Optional[str]
    ) -> CancellationResult:
        order = await self._store.get_order(order_id, for_update=True)
        if order is None:
            raise NotFound()

        items = await self._store.get_line_items(order_id)
        party = await resolve_order_party(self._store, requester_id, order, items)
        if party is None:
            logger.info(
                "Cancellation refused: user=%s is not a party to order=%s",
                requester_id, order_id,
            )
            raise Forbidden()

        observed_status = order.status
        if observed_status == OrderStatus.CANCELLED.value:
            raise AlreadyCancelled()
        if observed_status in _SHIPPED_STATUSES:
            raise InvalidState()

        was_paid = order.payment_status == PaymentStatus.PAID.value
        total_amount = order.total_amount
        buyer_id = order.user_id

        refund = await self._settle_payment(order, reason)
        await self._restore_inventory(order_id, items)
        updated = await self._mark_cancelled(order_id, observed_status, was_paid, reason)

        logger.info(
            "Order cancelled: order=%s by=%s (%s) refunded=%s",
            order_id, requester_id, party.value, refund is not None,
        )

        if refund is not None:
            self._notify_refund(order_id, buyer_id, total_amount, refund)

        message = "Order cancelled successfully. Inventory has been restored."
        if was_paid:
            message += (
                f" Refund of {self._currency_symbol}{format_amount(total_amount)}"
                " is being processed."
            )
        return CancellationResult(order=updated, message=message, refund=refund)

    # ── Payment ──────────────────────────────────────────────────────────────

    async def _settle_payment(
        self, order: Order, reason: Optional[str]
    ) -> Optional[RefundRecord]:
        if order.payment_status == PaymentStatus.PAID.value:
            if not order.payment_link_id:
                logger.error("Paid order %s has no payment reference to refund", order.id)
                raise PaymentFailed()
            try:
                return await self._gateway.create_refund(
                    payment_reference=order.payment_link_id,
                    amount=order.total_amount,
                    reason=reason or self._default_reason,
                    idempotency_key=refund_idempotency_key(order.id),
                )
            except Exception as exc:
                logger.error("Refund failure for order %s: %s", order.id, exc)
                raise PaymentFailed() from exc

        if order.payment_link_id:
            # A stale link is harmless next to a wrong order state; keep going.
            try:
                await self._gateway.cancel_payment_link(order.payment_link_id)
            except Exception as exc:
                logger.warning(
                    "Failed to expire payment link %s for order %s: %s",
                    order.payment_link_id, order.id, exc,
                )
        return None

    # ── Inventory ────────────────────────────────────────────────────────────

    async def _restore_inventory(self, order_id: str, items: List[OrderItem]) -> None:
        # Snapshot before touching the store; a failed item rolls back its savepoint.
        restorations = [
            (line.marketplace_item_id, line.quantity or 0)
            for line in items
            if line.marketplace_item_id
        ]
        for item_id, quantity in restorations:
            try:
                restored = await self._restore_item(item_id, quantity)
            except Exception as exc:
                logger.warning(
                    "Inventory restore failed for item=%s order=%s: %s",
                    item_id, order_id, exc,
                )
                continue
            if restored is None:
                logger.warning(
                    "Marketplace item %s on order %s no longer exists – skipping",
                    item_id, order_id,
                )

    async def _restore_item(self, item_id: str, quantity: int) -> Optional[MarketplaceItem]:
        item = await self._store.get_marketplace_item(item_id)
        if item is None:
            return None
        new_quantity = (item.quantity or 0) + quantity
        restored = await self._store.update_marketplace_item(
            item_id,
            {
                "quantity": new_quantity,
                "is_available": True,
                "updated_at": datetime.now(timezone.utc),
            },
        )
        logger.info(
            "Stock restored: item=%s delta=%+d new_quantity=%d",
            item_id, quantity, new_quantity,
        )
        return restored

    # ── Order state ──────────────────────────────────────────────────────────

    async def _mark_cancelled(
        self,
        order_id: str,
        observed_status: str,
        was_paid: bool,
        reason: Optional[str],
    ) -> Order:
        now = datetime.now(timezone.utc)
        patch = {
            "status": OrderStatus.CANCELLED.value,
            "cancelled_at": now,
            "updated_at": now,
            "cancellation_reason": reason,
        }
        if was_paid:
            patch["payment_status"] = PaymentStatus.REFUNDED.value

        updated = await self._store.update_order(
            order_id, patch, expected_statuses=[observed_status]
        )
        if updated is not None:
            return updated

        # Lost a race with another writer between the guard checks and now.
        current = await self._store.get_order(order_id)
        logger.warning(
            "Order %s changed during cancellation (now %s)",
            order_id, current.status if current else "missing",
        )
        if current is None:
            raise NotFound()
        if current.status == OrderStatus.CANCELLED.value:
            raise AlreadyCancelled()
        raise InvalidState()

    # ── Notifications ────────────────────────────────────────────────────────

    def _notify_refund(
        self,
        order_id: str,
        buyer_id: str,
        total_amount: float,
        refund: RefundRecord,
    ) -> None:
        event = NotificationEvent(
            type=REFUND_NOTIFICATION_TYPE,
            title="Your refund is being processed",
            body=f"We initiated a refund for your order {order_id[:8].upper()}.",
            recipient=buyer_id,
            data={
                "order_id": order_id,
                "refund_id": refund.id,
                "amount": refund.amount if refund.amount is not None else total_amount,
                "status": refund.status or "PENDING",
            },
            dedupe_key=order_id,
        )
        try:
            self._publisher.publish(event)
        except Exception as exc:
            logger.warning("Failed to publish refund notification for %s: %s", order_id, exc)
