"""
Shared pytest fixtures – in-memory SQLite for unit tests (no real Postgres needed).
"""
from __future__ import annotations

import os

# Configure test env before any artmarket import reads settings.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SESSION_SECRET_KEY", "test-session-secret-32chars-xxxxx")
os.environ.setdefault("XENDIT_SECRET_KEY", "xnd_development_test")

from typing import AsyncGenerator, List, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from artmarket.database import enable_sqlite_savepoints  # noqa: E402
from artmarket.models import (  # noqa: E402
    Base,
    MarketplaceItem,
    Order,
    OrderItem,
    SellerProfile,
)
from artmarket.services.notifications import NotificationEvent  # noqa: E402
from artmarket.services.payments import PaymentGatewayError, RefundRecord  # noqa: E402

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(TEST_DB_URL, echo=False)
    enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


# ── Seed data ────────────────────────────────────────────────────────────────
#
# Buyer "buyer-1" ordered from two sellers:
#   seller-a (profile SP-A) – 2 x M1 (M1 has 5 left)
#   seller-b (profile SP-B) – 1 x M2 (M2 has 0 left, unavailable)
# "stranger" has a seller profile that is on no line item.

async def seed_marketplace(session: AsyncSession) -> None:
    session.add_all([
        SellerProfile(id="SP-A", user_id="seller-a", shop_name="Atelier A"),
        SellerProfile(id="SP-B", user_id="seller-b", shop_name="Studio B"),
        SellerProfile(id="SP-X", user_id="stranger", shop_name="Elsewhere"),
    ])
    session.add_all([
        MarketplaceItem(id="M1", seller_profile_id="SP-A", title="Print", price=250, quantity=5),
        MarketplaceItem(
            id="M2", seller_profile_id="SP-B", title="Canvas", price=500,
            quantity=0, is_available=False,
        ),
    ])
    await session.commit()


async def seed_order(
    session: AsyncSession,
    order_id: str = "O1",
    *,
    status: str = "pending",
    payment_status: str = "paid",
    total_amount: float = 1000,
    payment_link_id: Optional[str] = "inv-123",
    lines: Optional[List[tuple]] = None,
) -> Order:
    """Insert an order for buyer-1; *lines* are (seller_profile_id, item_id, qty)."""
    if lines is None:
        lines = [("SP-A", "M1", 2), ("SP-B", "M2", 1)]
    order = Order(
        id=order_id,
        user_id="buyer-1",
        total_amount=total_amount,
        status=status,
        payment_status=payment_status,
        payment_link_id=payment_link_id,
    )
    session.add(order)
    for seller_profile_id, item_id, qty in lines:
        session.add(
            OrderItem(
                order_id=order_id,
                seller_profile_id=seller_profile_id,
                marketplace_item_id=item_id,
                quantity=qty,
                unit_price=250,
            )
        )
    await session.commit()
    return order


# ── Fakes ────────────────────────────────────────────────────────────────────

class FakeGateway:
    """In-memory PaymentGateway that records every call."""

    def __init__(self, fail_refund: bool = False, fail_link: bool = False) -> None:
        self.fail_refund = fail_refund
        self.fail_link = fail_link
        self.refunds: List[dict] = []
        self.cancelled_links: List[str] = []

    async def create_refund(self, payment_reference, amount, reason, idempotency_key):
        self.refunds.append({
            "payment_reference": payment_reference,
            "amount": amount,
            "reason": reason,
            "idempotency_key": idempotency_key,
        })
        if self.fail_refund:
            raise PaymentGatewayError("Xendit returned 503 for /refunds", status_code=503)
        return RefundRecord(id=f"rfd-{len(self.refunds)}", amount=amount, status="PENDING")

    async def cancel_payment_link(self, reference):
        self.cancelled_links.append(reference)
        if self.fail_link:
            raise PaymentGatewayError("Xendit returned 404 for expire", status_code=404)


class FakePublisher:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.events: List[NotificationEvent] = []

    def publish(self, event: NotificationEvent) -> None:
        if self.fail:
            raise RuntimeError("queue unavailable")
        self.events.append(event)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()
