"""
rally.services.notification_service — In-App Inbox
===================================================

Every notification a user is sent is also written to their inbox, whether
or not a push reaches a device.  The inbox is what the app lists; pushes
are a best-effort nudge on top.

:class:`Notifier` lets synchronous code (the admission controller, running
on a request worker thread) send a notification: the inbox row is written
inline and the push is scheduled on the event loop bound at startup.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select, update

from rally.database.engine import get_session
from rally.database.models import Notification, as_utc, utcnow

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from rally.services.delivery import DeliveryReport, DeliveryService

logger = logging.getLogger(__name__)

# Payload keys stored in their own columns; everything else goes to ``data``.
_COLUMN_KEYS = ("title", "body", "type")


def notification_to_dict(row: Notification) -> dict:
    created_at = as_utc(row.created_at)
    read_at = as_utc(row.read_at)
    return {
        "id": row.id,
        "title": row.title,
        "body": row.body,
        "type": row.type,
        "data": row.data or {},
        "is_read": row.is_read,
        "created_at": created_at.isoformat() if created_at else None,
        "read_at": read_at.isoformat() if read_at else None,
    }


class NotificationService:
    """Per-user inbox over the ``notifications`` table.  All methods are sync."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def save(self, user_ids: Sequence[str], payload: Mapping) -> int:
        """Write one inbox row per distinct user.  Returns the number written."""
        title = str(payload.get("title") or "").strip()
        if not title:
            raise ValueError("A notification needs a title")
        recipients = list(dict.fromkeys(str(u) for u in user_ids if u))
        if not recipients:
            return 0
        extra = {k: v for k, v in payload.items() if k not in _COLUMN_KEYS}
        now = self._clock()
        with get_session(self.engine) as session:
            session.add_all([
                Notification(
                    user_id=user_id,
                    title=title,
                    body=str(payload.get("body") or ""),
                    type=str(payload.get("type") or "general"),
                    data=extra or None,
                    created_at=now,
                )
                for user_id in recipients
            ])
        return len(recipients)

    def save_best_effort(self, user_ids: Sequence[str], payload: Mapping) -> int:
        try:
            return self.save(user_ids, payload)
        except Exception:
            logger.exception("Failed to save inbox notification for %d users", len(user_ids))
            return 0

    def list_for_user(
        self,
        user_id: str,
        page: int = 0,
        size: int = 20,
        unread_only: bool = False,
    ) -> dict:
        """Newest first, with the total and unread counts."""
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
        with get_session(self.engine) as session:
            total = session.scalar(
                select(func.count()).select_from(query.subquery())
            ) or 0
            unread = session.scalar(
                select(func.count()).select_from(Notification).where(
                    Notification.user_id == user_id, Notification.is_read.is_(False)
                )
            ) or 0
            rows = session.scalars(
                query.order_by(Notification.created_at.desc(), Notification.id.desc())
                .offset(page * size)
                .limit(size)
            ).all()
            items = [notification_to_dict(row) for row in rows]
        return {
            "items": items,
            "total": int(total),
            "unread_count": int(unread),
            "page": page,
            "size": size,
            "has_more": (page + 1) * size < total,
        }

    def mark_as_read(self, user_id: str, notification_id: int) -> bool | None:
        """Mark one of the user's notifications read.

        Returns ``True`` if it changed, ``False`` if it was already read and
        ``None`` if the user has no such notification.
        """
        with get_session(self.engine) as session:
            row = session.get(Notification, notification_id)
            if row is None or row.user_id != user_id:
                return None
            if row.is_read:
                return False
            row.is_read = True
            row.read_at = self._clock()
            return True

    def mark_all_as_read(self, user_id: str) -> int:
        with get_session(self.engine) as session:
            result = session.execute(
                update(Notification)
                .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                .values(is_read=True, read_at=self._clock())
            )
            return result.rowcount


class Notifier:
    """Inbox plus push for callers that are not coroutines."""

    def __init__(self, inbox: NotificationService, delivery: DeliveryService | None = None) -> None:
        self.inbox = inbox
        self.delivery = delivery
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Event loop pushes are scheduled on.  Set once at startup."""
        self._loop = loop

    def notify(self, user_ids: Sequence[str], payload: Mapping) -> None:
        """Save to the inbox now and schedule the push.  Never raises."""
        loop = self._loop
        if self.delivery is None or loop is None or loop.is_closed():
            self.inbox.save_best_effort(user_ids, payload)
            logger.debug("No event loop bound; notification stored without push")
            return
        # deliver() writes the inbox rows itself.
        asyncio.run_coroutine_threadsafe(self._push(list(user_ids), dict(payload)), loop)

    async def _push(self, user_ids: list[str], payload: dict) -> DeliveryReport | None:
        try:
            return await self.delivery.deliver(user_ids, payload)
        except Exception:
            logger.exception("Push to %d users failed", len(user_ids))
            return None
