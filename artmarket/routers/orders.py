"""
Marketplace order endpoints.

POST /orders/{order_id}/cancel
GET  /orders/{order_id}
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from artmarket.deps import get_cancellation_workflow, get_order_store, get_requester_id
from artmarket.errors import Forbidden, NotFound, Unauthenticated
from artmarket.schemas import (
    CancelledOrderOut,
    CancelOrderRequest,
    CancelOrderResponse,
    ErrorResponse,
    OrderDetailOut,
    OrderDetailResponse,
    OrderItemOut,
    RefundSummary,
)
from artmarket.services.cancellation import OrderCancellationWorkflow, resolve_order_party
from artmarket.services.order_store import OrderStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


@router.post(
    "/{order_id}/cancel",
    response_model=CancelOrderResponse,
    response_model_exclude_unset=True,
    responses=_ERROR_RESPONSES,
)
async def cancel_order(
    order_id: str,
    body: Optional[CancelOrderRequest] = None,
    requester_id: Optional[str] = Depends(get_requester_id),
    workflow: OrderCancellationWorkflow = Depends(get_cancellation_workflow),
) -> CancelOrderResponse:
    """
    Cancel an order as its buyer or one of its sellers.  Paid orders are
    refunded in full before the order is marked cancelled.
    """
    result = await workflow.cancel_order(
        requester_id, order_id, body.reason if body else None
    )

    data = CancelledOrderOut.model_validate(result.order)
    if result.refund is not None:
        data.refund = RefundSummary(
            id=result.refund.id,
            amount=result.refund.amount,
            status=result.refund.status,
        )
    return CancelOrderResponse(success=True, message=result.message, data=data)


@router.get(
    "/{order_id}",
    response_model=OrderDetailResponse,
    responses=_ERROR_RESPONSES,
)
async def get_order(
    order_id: str,
    requester_id: Optional[str] = Depends(get_requester_id),
    store: OrderStore = Depends(get_order_store),
) -> OrderDetailResponse:
    if not requester_id:
        raise Unauthenticated()

    order = await store.get_order(order_id)
    if order is None:
        raise NotFound()

    items = await store.get_line_items(order_id)
    if await resolve_order_party(store, requester_id, order, items) is None:
        raise Forbidden("You do not have permission to view this order")

    data = OrderDetailOut.model_validate(order)
    data.items = [OrderItemOut.model_validate(i) for i in items]
    return OrderDetailResponse(success=True, data=data)
