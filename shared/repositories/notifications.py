"""
shared/repositories/notifications.py
Notification persistence and recipient-scoped reads.
"""

from datetime import datetime, timezone
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import NotFoundError
from shared.models.models import Notification, NotificationType


async def create_notification(
    db: AsyncSession,
    type: NotificationType,
    sender_id: Optional[UUID],
    recipient_id: UUID,
    title: str,
    message: str,
    image: Optional[str],
    meta: Optional[dict],
) -> Notification:
    notification = Notification(
        type=type,
        sender_id=sender_id,
        recipient_id=recipient_id,
        title=title,
        message=message,
        image=image,
        meta=meta,
        created_at=datetime.now(timezone.utc),
    )
    db.add(notification)
    await db.flush()
    return notification


async def get_for_recipient(
    db: AsyncSession, notification_id: UUID, recipient_id: UUID
) -> Notification:
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.recipient_id == recipient_id,
        )
    )
    notification = result.scalar_one_or_none()
    if not notification:
        raise NotFoundError("Notification not found")
    return notification


async def replace_meta(db: AsyncSession, notification: Notification, **changes) -> None:
    # Reassign rather than mutate so the JSON column is flagged dirty
    notification.meta = {**(notification.meta or {}), **changes}
    await db.flush()


async def list_for_recipient(
    db: AsyncSession,
    recipient_id: UUID,
    unread_only: bool = False,
    page: int = 1,
    page_size: int = 20,
) -> tuple[Sequence[Notification], int]:
    conditions = [Notification.recipient_id == recipient_id]
    if unread_only:
        conditions.append(Notification.is_read.is_(False))

    total = await db.scalar(select(func.count(Notification.id)).where(*conditions))
    result = await db.execute(
        select(Notification)
        .where(*conditions)
        .order_by(Notification.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return result.scalars().all(), total or 0


async def unread_count(db: AsyncSession, recipient_id: UUID) -> int:
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.recipient_id == recipient_id,
            Notification.is_read.is_(False),
        )
    )
    return count or 0


async def mark_read(
    db: AsyncSession, recipient_id: UUID, notification_id: Optional[UUID] = None
) -> int:
    """Mark one notification (or all unread ones) as read."""
    conditions = [Notification.recipient_id == recipient_id, Notification.is_read.is_(False)]
    if notification_id:
        conditions.append(Notification.id == notification_id)
    result = await db.execute(
        update(Notification)
        .where(*conditions)
        .values(is_read=True, read_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
