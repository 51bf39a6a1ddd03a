"""
Order store: the persistence seam the cancellation workflow depends on.

Lookups return ``None`` when a row does not exist; any database failure is
raised as ``OrderStoreError`` so callers can tell "missing" from "broken".
The SQLAlchemy implementation only flushes – the request-scoped session
owns the commit.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from artmarket.models import MarketplaceItem, Order, OrderItem, SellerProfile

logger = logging.getLogger(__name__)


class OrderStoreError(Exception):
    """Underlying database call failed (not a missing row)."""


class OrderStore(Protocol):
    async def get_order(
        self, order_id: str, for_update: bool = False
    ) -> Optional[Order]: ...

    async def get_line_items(self, order_id: str) -> List[OrderItem]: ...

    async def get_seller_profile(self, user_id: str) -> Optional[SellerProfile]: ...

    async def get_marketplace_item(self, item_id: str) -> Optional[MarketplaceItem]: ...

    async def update_marketplace_item(
        self, item_id: str, patch: Dict[str, Any]
    ) -> Optional[MarketplaceItem]: ...

    async def update_order(
        self,
        order_id: str,
        patch: Dict[str, Any],
        expected_statuses: Optional[Iterable[str]] = None,
    ) -> Optional[Order]: ...


class SqlOrderStore:
    """``OrderStore`` backed by an async SQLAlchemy session."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_order(
        self, order_id: str, for_update: bool = False
    ) -> Optional[Order]:
        """
        Load one order.  With *for_update* the row stays locked until the
        surrounding transaction ends (PostgreSQL; SQLite ignores the clause).
        """
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        try:
            return (await self._session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise OrderStoreError(f"failed to load order {order_id}") from exc

    async def get_line_items(self, order_id: str) -> List[OrderItem]:
        stmt = (
            select(OrderItem)
            .where(OrderItem.order_id == order_id)
            .order_by(OrderItem.id)
        )
        try:
            return list((await self._session.execute(stmt)).scalars().all())
        except SQLAlchemyError as exc:
            raise OrderStoreError(f"failed to load items for order {order_id}") from exc

    async def get_seller_profile(self, user_id: str) -> Optional[SellerProfile]:
        stmt = select(SellerProfile).where(SellerProfile.user_id == user_id)
        try:
            return (await self._session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise OrderStoreError(f"failed to load seller profile for {user_id}") from exc

    async def get_marketplace_item(self, item_id: str) -> Optional[MarketplaceItem]:
        # Savepoint so a failed item leaves the request transaction usable.
        try:
            async with self._session.begin_nested():
                return await self._session.get(MarketplaceItem, item_id)
        except SQLAlchemyError as exc:
            raise OrderStoreError(f"failed to load marketplace item {item_id}") from exc

    async def update_marketplace_item(
        self, item_id: str, patch: Dict[str, Any]
    ) -> Optional[MarketplaceItem]:
        try:
            async with self._session.begin_nested():
                item = await self._session.get(MarketplaceItem, item_id)
                if item is None:
                    return None
                for key, value in patch.items():
                    setattr(item, key, value)
                self._session.add(item)
                await self._session.flush()
                return item
        except SQLAlchemyError as exc:
            raise OrderStoreError(f"failed to update marketplace item {item_id}") from exc

    async def update_order(
        self,
        order_id: str,
        patch: Dict[str, Any],
        expected_statuses: Optional[Iterable[str]] = None,
    ) -> Optional[Order]:
        """
        Apply *patch* to an order and return the refreshed row.

        When *expected_statuses* is given the write is conditional on the
        order's current status being one of them; ``None`` is returned if no
        row matched (missing order or lost race).
        """
        stmt = update(Order).where(Order.id == order_id)
        if expected_statuses is not None:
            stmt = stmt.where(Order.status.in_(list(expected_statuses)))
        stmt = stmt.values(**patch).execution_options(synchronize_session=False)

        try:
            result = await self._session.execute(stmt)
            if result.rowcount == 0:
                logger.info(
                    "Conditional order update matched no row: order=%s expected=%s",
                    order_id, expected_statuses,
                )
                return None
            return await self._session.get(Order, order_id, populate_existing=True)
        except SQLAlchemyError as exc:
            raise OrderStoreError(f"failed to update order {order_id}") from exc
