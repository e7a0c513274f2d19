"""
services/notification/router.py
In-app notifications: paginated inbox rendered with action buttons,
read markers, and a WebSocket that forwards the user's live channel.
"""

import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db, get_db_context
from config.redis_client import get_redis
from config.settings import settings
from services.notification.realtime import RealtimePublisher, get_realtime_publisher
from services.notification.render import render_notification
from shared.exceptions import AppError
from shared.middleware.auth import decode_token, get_current_user, load_active_user
from shared.models.models import User
from shared.repositories import notifications as notifications_repo
from shared.schemas.schemas import (
    NotificationResponse,
    PaginatedResponse,
    SuccessResponse,
    UnreadCountResponse,
    paginate,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ── REST Endpoints ────────────────────────────────────────────

@router.get("", response_model=SuccessResponse[PaginatedResponse[NotificationResponse]])
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=settings.NOTIFICATIONS_PAGE_SIZE_MAX),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's in-app notifications, newest first."""
    notifications, total = await notifications_repo.list_for_recipient(
        db, current_user.id, unread_only, page, page_size
    )
    items = [render_notification(n) for n in notifications]
    return SuccessResponse(data=paginate(items, total, page, page_size))


@router.get("/unread-count", response_model=SuccessResponse[UnreadCountResponse])
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await notifications_repo.unread_count(db, current_user.id)
    return SuccessResponse(data=UnreadCountResponse(unread=count))


@router.post("/read-all", response_model=SuccessResponse[UnreadCountResponse])
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await notifications_repo.mark_read(db, current_user.id)
    await db.commit()
    return SuccessResponse(
        message="All notifications marked as read",
        data=UnreadCountResponse(unread=0),
    )


@router.post("/{notification_id}/read", response_model=SuccessResponse[NotificationResponse])
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    notification = await notifications_repo.get_for_recipient(db, notification_id, current_user.id)
    await notifications_repo.mark_read(db, current_user.id, notification.id)
    await db.commit()
    await db.refresh(notification)
    return SuccessResponse(message="Marked as read", data=render_notification(notification))


# ── Live channel ──────────────────────────────────────────────

async def stop_forwarder(forwarder: asyncio.Task) -> None:
    """Cancel the pub/sub forwarding task and wait for it to unwind."""
    forwarder.cancel()
    try:
        await forwarder
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.warning(f"Notification forwarder stopped with an error: {e}")


@router.websocket("/ws")
async def notifications_socket(
    websocket: WebSocket,
    token: str = Query(...),
    redis=Depends(get_redis),
    publisher: RealtimePublisher = Depends(get_realtime_publisher),
):
    """
    Forward events published on ``user:{id}`` to the socket. Browsers cannot
    set headers on a WebSocket, so the access token comes as a query param.
    """
    try:
        token_data = await decode_token(token, redis)
        async with get_db_context() as db:
            user = await load_active_user(db, token_data.user_id)
            user_id = user.id
    except AppError as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    async with publisher.subscribe(user_id) as pubsub:

        async def forward() -> None:
            async for message in pubsub.listen():
                if message["type"] == "message":
                    await websocket.send_text(message["data"])

        forwarder = asyncio.create_task(forward())
        try:
            # Client messages are ignored; receiving only detects disconnects
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug(f"Notification socket closed for user {user_id}")
        finally:
            await stop_forwarder(forwarder)
