"""
ArtMarket order service – FastAPI entry point.
"""
from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from artmarket.config import get_settings
from artmarket.database import AsyncSessionLocal
from artmarket.errors import CancellationError, Internal, InvalidArgument
from artmarket.routers import health, orders
from artmarket.services.notifications import DatabaseNotificationSink, NotificationDispatcher
from artmarket.services.order_store import OrderStoreError
from artmarket.services.payments import XenditGateway

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s – %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(
    title="ArtMarket Orders",
    version="1.0.0",
    description="Marketplace order cancellation with refunds and inventory restoration.",
)

# ── Middleware ────────────────────────────────────────────────────────────────

app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret_key,
    session_cookie="artmarket_session",
    https_only=False,   # set to True behind TLS in production
    same_site="lax",
    max_age=86400 * 7,  # 7 days
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Collaborators ─────────────────────────────────────────────────────────────

app.state.payment_gateway = XenditGateway(settings)
app.state.notifications = NotificationDispatcher(
    DatabaseNotificationSink(AsyncSessionLocal),
    max_retries=settings.notification_max_retries,
    retry_base_seconds=settings.notification_retry_base_seconds,
    maxsize=settings.notification_queue_size,
)

# ── Exception handlers ────────────────────────────────────────────────────────

def _error_body(exc: CancellationError) -> dict:
    return {"success": False, "error": exc.message, "code": exc.code}


@app.exception_handler(CancellationError)
async def _cancellation_error(request: Request, exc: CancellationError):
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc))


@app.exception_handler(OrderStoreError)
async def _store_error(request: Request, exc: OrderStoreError):
    logger.error("Order store failure on %s %s: %s", request.method, request.url.path, exc)
    err = Internal()
    return JSONResponse(status_code=err.status_code, content=_error_body(err))


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    err = InvalidArgument()
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(err))

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(orders.router)
app.include_router(health.router)


# ── Startup / shutdown ────────────────────────────────────────────────────────

@app.on_event("startup")
async def _startup() -> None:
    if not settings.payments_configured:
        logger.warning("XENDIT_SECRET_KEY is not set – refunds will fail")

    logger.info("Starting notification worker …")
    app.state.notification_worker = asyncio.create_task(
        app.state.notifications.worker(), name="notification-worker"
    )
    logger.info("Order service ready.")


@app.on_event("shutdown")
async def _shutdown() -> None:
    logger.info("Draining notification queue …")
    try:
        await app.state.notifications.join(timeout=30)
    except asyncio.TimeoutError:
        logger.warning("Notification queue did not drain within 30 s")
    app.state.notification_worker.cancel()
