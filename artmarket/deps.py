"""
FastAPI dependency utilities: requester identity, DB-backed store, workflow
collaborators.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from artmarket.config import Settings, get_settings
from artmarket.database import get_db
from artmarket.services.cancellation import OrderCancellationWorkflow
from artmarket.services.notifications import NotificationPublisher
from artmarket.services.order_store import OrderStore, SqlOrderStore
from artmarket.services.payments import PaymentGateway

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "user_id"


def get_session_user_id(request: Request) -> str | None:
    return request.session.get(SESSION_USER_KEY)


async def get_requester_id(
    request: Request,
    x_user_id: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> Optional[str]:
    """
    Resolve who is calling.  The signed session cookie wins; the X-User-Id
    header is honoured only behind a trusted auth proxy.  ``None`` means
    anonymous – the workflow decides what that implies.
    """
    user_id = get_session_user_id(request)
    if user_id:
        return str(user_id)

    if x_user_id:
        if settings.trust_upstream_user_header:
            return x_user_id.strip() or None
        logger.warning("Ignoring X-User-Id header – upstream header trust is disabled")
    return None


def get_order_store(db: AsyncSession = Depends(get_db)) -> OrderStore:
    return SqlOrderStore(db)


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_notification_publisher(request: Request) -> NotificationPublisher:
    return request.app.state.notifications


def get_cancellation_workflow(
    store: OrderStore = Depends(get_order_store),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
    settings: Settings = Depends(get_settings),
) -> OrderCancellationWorkflow:
    return OrderCancellationWorkflow(
        store,
        gateway,
        publisher,
        default_reason=settings.default_cancellation_reason,
        max_reason_length=settings.cancellation_reason_max_length,
        currency_symbol=settings.currency_symbol,
    )
