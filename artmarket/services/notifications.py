"""
User-facing notifications, delivered off the request path.

Architecture:
  - Callers hand a NotificationEvent to ``NotificationDispatcher.publish``,
    which only enqueues it (never blocks, never raises for delivery problems).
  - A background worker coroutine drains the queue into a NotificationSink
    with retries; exhausted events are logged and dead-lettered.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from artmarket.models import Notification, NotificationFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    type: str
    title: str
    body: str
    recipient: str
    data: Dict[str, Any] = field(default_factory=dict)
    # Events sharing (type, recipient, dedupe_key) are delivered once.
    dedupe_key: Optional[str] = None


class NotificationPublisher(Protocol):
    def publish(self, event: NotificationEvent) -> None: ...


class NotificationSink(Protocol):
    async def deliver(self, event: NotificationEvent) -> None: ...

    async def record_failure(
        self, event: NotificationEvent, error: str, attempts: int
    ) -> None: ...


# ── Database sink ────────────────────────────────────────────────────────────

class DatabaseNotificationSink:
    """Writes notifications into the ``notifications`` table, one session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def deliver(self, event: NotificationEvent) -> None:
        async with self._session_factory() as session:
            if event.dedupe_key is not None:
                existing = (
                    await session.execute(
                        select(Notification.id).where(
                            Notification.type == event.type,
                            Notification.recipient == event.recipient,
                            Notification.dedupe_key == event.dedupe_key,
                        )
                    )
                ).first()
                if existing:
                    logger.info(
                        "Duplicate notification skipped: type=%s recipient=%s key=%s",
                        event.type, event.recipient, event.dedupe_key,
                    )
                    return

            session.add(
                Notification(
                    type=event.type,
                    title=event.title,
                    body=event.body,
                    data=event.data,
                    recipient=event.recipient,
                    dedupe_key=event.dedupe_key,
                )
            )
            await session.commit()

    async def record_failure(
        self, event: NotificationEvent, error: str, attempts: int
    ) -> None:
        async with self._session_factory() as session:
            now = datetime.now(timezone.utc)
            session.add(
                NotificationFailure(
                    event_type=event.type,
                    recipient=event.recipient,
                    payload=asdict(event),
                    error=error,
                    attempts=attempts,
                    created_at=now,
                    last_tried=now,
                )
            )
            await session.commit()


# ── Dispatcher ───────────────────────────────────────────────────────────────

@dataclass
class NotificationJob:
    event: NotificationEvent
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationDispatcher:
    """Queue-backed ``NotificationPublisher`` with a retrying delivery worker."""

    def __init__(
        self,
        sink: NotificationSink,
        *,
        max_retries: int = 5,
        retry_base_seconds: float = 2.0,
        maxsize: int = 10_000,
    ) -> None:
        self._sink = sink
        self._max_retries = max_retries
        self._retry_base_seconds = retry_base_seconds
        self._queue: asyncio.Queue[NotificationJob] = asyncio.Queue(maxsize=maxsize)

    def publish(self, event: NotificationEvent) -> None:
        """Non-blocking enqueue. Drops event and logs if queue is full."""
        try:
            self._queue.put_nowait(NotificationJob(event=event))
        except asyncio.QueueFull:
            logger.error(
                "Notification queue full – dropping %s for recipient=%s",
                event.type, event.recipient,
            )

    async def _handle_job(self, job: NotificationJob) -> None:
        event = job.event
        last_error = ""

        for attempt in range(1, self._max_retries + 1):
            try:
                await self._sink.deliver(event)
                logger.debug(
                    "Delivered %s -> recipient=%s (attempt %d)",
                    event.type, event.recipient, attempt,
                )
                return
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "Notification error type=%s recipient=%s attempt=%d/%d: %s",
                    event.type, event.recipient, attempt, self._max_retries, exc,
                )

            if attempt < self._max_retries:
                delay = self._retry_base_seconds * (2 ** (attempt - 1))
                await asyncio.sleep(delay)

        logger.error(
            "Notification failed after %d attempts: type=%s recipient=%s",
            self._max_retries, event.type, event.recipient,
        )
        await self._sink.record_failure(event, last_error, self._max_retries)

    async def worker(self) -> None:
        """
        Runs as a long-lived background task.
        Drains the notification queue and handles each job.
        """
        logger.info("Notification worker started")
        while True:
            job = await self._queue.get()
            try:
                await self._handle_job(job)
            except Exception as exc:
                logger.exception("Unexpected error in notification worker: %s", exc)
            finally:
                self._queue.task_done()

    async def join(self, timeout: float | None = None) -> None:
        """Wait until every queued event has been handled."""
        await asyncio.wait_for(self._queue.join(), timeout=timeout)

    @property
    def pending(self) -> int:
        return self._queue.qsize()
