"""
Integration tests for the order endpoints using HTTPX against the ASGI app.
Covers the response envelope and the status code of each failure kind.
"""
from __future__ import annotations

import json
from base64 import b64encode

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from itsdangerous import TimestampSigner

from artmarket.config import Settings, get_settings
from artmarket.database import get_db
from artmarket.deps import (
    get_notification_publisher,
    get_payment_gateway,
    get_requester_id,
)
from artmarket.main import app
from artmarket.models import MarketplaceItem, Order

from conftest import FakeGateway, FakePublisher, seed_marketplace, seed_order


class _Caller:
    user_id: str | None = "buyer-1"


@pytest_asyncio.fixture(scope="function")
async def test_db(session_factory):
    async with session_factory() as session:
        await seed_marketplace(session)
        await seed_order(session, "O1", total_amount=1000, lines=[("SP-A", "M1", 2)])
        await seed_order(session, "O2", status="shipped")

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    yield session_factory
    app.dependency_overrides.clear()


@pytest.fixture
def caller(test_db):
    c = _Caller()
    app.dependency_overrides[get_requester_id] = lambda: c.user_id
    return c


@pytest.fixture
def fakes(test_db):
    gateway, publisher = FakeGateway(), FakePublisher()
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notification_publisher] = lambda: publisher
    return gateway, publisher


def _client(**kwargs) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test", **kwargs)


@pytest.mark.asyncio
async def test_cancel_paid_order(test_db, caller, fakes):
    gateway, publisher = fakes

    async with _client() as client:
        resp = await client.post("/orders/O1/cancel", json={"reason": "Wrong size"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert "Refund of ₱1,000 is being processed." in body["message"]
    assert body["data"]["id"] == "O1"
    assert body["data"]["status"] == "cancelled"
    assert body["data"]["payment_status"] == "refunded"
    assert body["data"]["cancellation_reason"] == "Wrong size"
    assert body["data"]["refund"] == {"id": "rfd-1", "amount": 1000.0, "status": "PENDING"}
    assert len(publisher.events) == 1

    # Committed by the request session.
    async with test_db() as session:
        assert (await session.get(Order, "O1")).status == "cancelled"
        assert (await session.get(MarketplaceItem, "M1")).quantity == 7


@pytest.mark.asyncio
async def test_cancel_without_body(test_db, caller, fakes):
    gateway, _ = fakes

    async with _client() as client:
        resp = await client.post("/orders/O1/cancel")

    assert resp.status_code == 200
    assert gateway.refunds[0]["reason"] == "Order cancelled"


@pytest.mark.asyncio
async def test_unpaid_cancel_has_no_refund_key(test_db, caller, fakes):
    async with test_db() as session:
        await seed_order(session, "O3", payment_status="unpaid", payment_link_id=None)

    async with _client() as client:
        resp = await client.post("/orders/O3/cancel", json={})

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Order cancelled successfully. Inventory has been restored."
    assert "refund" not in body["data"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "order_id, user_id, payload, status_code, code",
    [
        ("O1", None, {}, 401, "unauthenticated"),
        ("O1", "buyer-1", {"reason": "x" * 501}, 400, "invalid_argument"),
        ("O1", "buyer-1", {"reason": 42}, 400, "invalid_argument"),
        ("nope", "buyer-1", {}, 404, "not_found"),
        ("O1", "stranger", {}, 403, "forbidden"),
        ("O2", "buyer-1", {}, 400, "invalid_state"),
    ],
)
async def test_cancel_failure_envelopes(
    test_db, caller, fakes, order_id, user_id, payload, status_code, code
):
    caller.user_id = user_id

    async with _client() as client:
        resp = await client.post(f"/orders/{order_id}/cancel", json=payload)

    assert resp.status_code == status_code
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == code
    assert body["error"]


@pytest.mark.asyncio
async def test_second_cancel_is_already_cancelled(test_db, caller, fakes):
    async with _client() as client:
        first = await client.post("/orders/O1/cancel")
        second = await client.post("/orders/O1/cancel")

    assert first.status_code == 200
    assert second.status_code == 400
    assert second.json()["code"] == "already_cancelled"


@pytest.mark.asyncio
async def test_refund_failure_returns_500_and_keeps_order(test_db, caller, fakes):
    gateway = FakeGateway(fail_refund=True)
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    async with _client() as client:
        resp = await client.post("/orders/O1/cancel")

    assert resp.status_code == 500
    assert resp.json() == {
        "success": False,
        "error": "Refund failed. Order was not cancelled.",
        "code": "payment_failed",
    }
    async with test_db() as session:
        order = await session.get(Order, "O1")
        assert (order.status, order.payment_status) == ("pending", "paid")
        assert (await session.get(MarketplaceItem, "M1")).quantity == 5


@pytest.mark.asyncio
async def test_get_order_for_seller(test_db, caller, fakes):
    caller.user_id = "seller-a"

    async with _client() as client:
        resp = await client.get("/orders/O1")

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["id"] == "O1"
    assert [i["marketplace_item_id"] for i in data["items"]] == ["M1"]


@pytest.mark.asyncio
async def test_get_order_forbidden_for_stranger(test_db, caller, fakes):
    caller.user_id = "stranger"

    async with _client() as client:
        resp = await client.get("/orders/O1")

    assert resp.status_code == 403
    assert resp.json()["code"] == "forbidden"


# ── Requester identity ───────────────────────────────────────────────────────

def _session_cookie(data: dict) -> str:
    signer = TimestampSigner(get_settings().session_secret_key)
    return signer.sign(b64encode(json.dumps(data).encode("utf-8"))).decode("utf-8")


@pytest.mark.asyncio
async def test_session_cookie_identifies_requester(test_db, fakes):
    cookies = {"artmarket_session": _session_cookie({"user_id": "buyer-1"})}

    async with _client(cookies=cookies) as client:
        resp = await client.post("/orders/O1/cancel")

    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_user_header_ignored_unless_trusted(test_db, fakes):
    async with _client() as client:
        resp = await client.post("/orders/O1/cancel", headers={"X-User-Id": "buyer-1"})

    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_user_header_accepted_when_trusted(test_db, fakes):
    app.dependency_overrides[get_settings] = lambda: Settings(trust_upstream_user_header=True)

    async with _client() as client:
        resp = await client.post("/orders/O1/cancel", headers={"X-User-Id": "buyer-1"})

    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_health_endpoint(test_db):
    async with _client() as client:
        resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "db": "ok"}
