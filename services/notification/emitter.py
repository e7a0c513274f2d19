"""
services/notification/emitter.py
Side effects of booking/payment transitions: a persisted Notification row
plus a live event on the recipient's channel.

The row is written inside the caller's database transaction. The live event
is queued and only published by ``flush()``, which runs as a background task
after the response, i.e. after the transaction has committed. If the caller
rolls back, ``discard()`` drops the queue so nothing is announced for a
change that never happened.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from fastapi import BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.notification.realtime import RealtimePublisher, get_realtime_publisher
from services.notification.render import render_event_payload
from shared.models.models import Notification, NotificationType
from shared.repositories import notifications as notifications_repo
from shared.schemas.schemas import build_meta

logger = logging.getLogger(__name__)

NOTIFICATION_EVENT = "notification"


class NotificationEmitter:
    def __init__(self, db: AsyncSession, publisher: RealtimePublisher):
        self.db = db
        self.publisher = publisher
        self._pending: List[Tuple[UUID, Dict[str, Any]]] = []

    async def notify(
        self,
        type: NotificationType,
        sender_id: Optional[UUID],
        recipient_id: UUID,
        title: str,
        message: str,
        image: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        notification = await notifications_repo.create_notification(
            self.db,
            type=type,
            sender_id=sender_id,
            recipient_id=recipient_id,
            title=title,
            message=message,
            image=image,
            meta=build_meta(type, **meta) if meta is not None else None,
        )
        self._pending.append((recipient_id, render_event_payload(notification)))
        logger.info(f"Queued {type.value} notification {notification.id} for user {recipient_id}")
        return notification

    @property
    def pending(self) -> int:
        return len(self._pending)

    def discard(self) -> None:
        if self._pending:
            logger.info(f"Discarding {len(self._pending)} unpublished notification events")
        self._pending.clear()

    async def flush(self) -> None:
        """Publish queued events. Never raises."""
        pending, self._pending = self._pending, []
        for recipient_id, payload in pending:
            await self.publisher.publish_to_user(recipient_id, NOTIFICATION_EVENT, payload)


def get_notification_emitter(
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    publisher: RealtimePublisher = Depends(get_realtime_publisher),
) -> NotificationEmitter:
    """One emitter per request; its queue is published once the response is sent."""
    emitter = NotificationEmitter(db, publisher)
    background_tasks.add_task(emitter.flush)
    return emitter
