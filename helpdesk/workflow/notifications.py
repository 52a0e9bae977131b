"""Fire-and-forget notifications emitted by workflow operations.

Notifications are collected while an operation's transaction is open and only
handed to the :class:`Notifier` after the transaction commits. Delivery
failures are logged; they never fail or roll back the operation that caused
them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from helpdesk.db.models import NotificationTable

from .clock import utcnow

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        ticket_id: str | None = None,
    ) -> None:
        ...


class LoggingNotifier:
    """Notifier that only writes notifications to the application log."""

    async def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        ticket_id: str | None = None,
    ) -> None:
        logger.info(
            "Notification %s for user %s: %s",
            type,
            user_id,
            title,
            extra={"user_id": user_id, "ticket_id": ticket_id, "notification_type": type},
        )


class DatabaseNotifier:
    """Persists notifications to the ``notifications`` table in their own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        ticket_id: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    NotificationTable(
                        user_id=user_id,
                        type=type,
                        title=title,
                        message=message,
                        ticket_id=ticket_id,
                        created_at=utcnow(),
                    )
                )


@dataclass(slots=True)
class PendingNotification:
    user_id: str
    type: str
    title: str
    message: str
    ticket_id: str | None = None


class NotificationOutbox:
    """Buffers notifications for one operation until its transaction commits."""

    def __init__(self) -> None:
        self._pending: list[PendingNotification] = []

    def __len__(self) -> int:
        return len(self._pending)

    def add(
        self,
        user_id: str | None,
        type: str,
        title: str,
        message: str,
        ticket_id: str | None = None,
    ) -> None:
        if not user_id:
            return
        self._pending.append(PendingNotification(user_id, type, title, message, ticket_id))

    async def dispatch(self, notifier: Notifier) -> None:
        pending, self._pending = self._pending, []
        for item in pending:
            try:
                await notifier.notify(item.user_id, item.type, item.title, item.message, ticket_id=item.ticket_id)
            except Exception:
                logger.exception(
                    "Failed to deliver notification",
                    extra={"user_id": item.user_id, "ticket_id": item.ticket_id, "notification_type": item.type},
                )
