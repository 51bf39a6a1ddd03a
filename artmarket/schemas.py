"""
Pydantic schemas for request/response validation.
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


# ── Requests ─────────────────────────────────────────────────────────────────

class CancelOrderRequest(BaseModel):
    # Length is checked after trimming by the workflow, not here.
    reason: Optional[str] = None


# ── Responses ────────────────────────────────────────────────────────────────

class RefundSummary(BaseModel):
    id: str
    amount: float
    status: str


class OrderItemOut(BaseModel):
    id: int
    seller_profile_id: Optional[str] = None
    marketplace_item_id: Optional[str] = None
    quantity: int
    unit_price: float

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: str
    user_id: str
    total_amount: float
    payment_status: str
    status: str
    payment_link_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CancelledOrderOut(OrderOut):
    refund: Optional[RefundSummary] = None


class OrderDetailOut(OrderOut):
    items: List[OrderItemOut] = []


class CancelOrderResponse(BaseModel):
    success: bool = True
    message: str
    data: CancelledOrderOut


class OrderDetailResponse(BaseModel):
    success: bool = True
    data: OrderDetailOut


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: str


class HealthResponse(BaseModel):
    status: str = "ok"
    db: str = "ok"
