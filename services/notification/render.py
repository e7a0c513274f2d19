"""
services/notification/render.py
Read-time transforms from a stored notification to what clients display.
Pure functions over ``meta``; nothing here touches the database.
"""

from typing import Any, Callable, Dict, List

from shared.models.models import Notification, NotificationType
from shared.schemas.schemas import (
    BookingPromptMeta,
    NotificationAction,
    NotificationResponse,
    RefundReviewMeta,
    parse_meta,
)


def _booking_request_actions(notification: Notification) -> List[NotificationAction]:
    meta: BookingPromptMeta = parse_meta(notification.type, notification.meta)
    base = f"/bookings/{meta.booking_id}"
    query = f"?notification_id={notification.id}"
    texts = meta.texts if len(meta.texts) >= 2 else ["Decline", "Accept"]
    reject_text, accept_text = texts[0], texts[1]
    return [
        NotificationAction(
            text=reject_text,
            bg_primary=False,
            url=f"{base}/reject{query}",
            method="PATCH",
            disabled=meta.disabled,
        ),
        NotificationAction(
            text=accept_text,
            bg_primary=True,
            url=f"{base}/accept{query}",
            method="PATCH",
            disabled=meta.disabled,
        ),
    ]


def _refund_request_actions(notification: Notification) -> List[NotificationAction]:
    meta: BookingPromptMeta = parse_meta(notification.type, notification.meta)
    return [
        NotificationAction(
            text=meta.texts[0] if meta.texts else "Refund",
            bg_primary=True,
            url=f"/payments/bookings/{meta.booking_id}/refund",
            method="POST",
            disabled=meta.disabled,
        )
    ]


def _refund_review_actions(notification: Notification) -> List[NotificationAction]:
    meta: RefundReviewMeta = parse_meta(notification.type, notification.meta)
    text = meta.texts[0] if meta.texts else "Confirm receipt"
    return [
        NotificationAction(
            text=text,
            bg_primary=True,
            url=f"/payments/bookings/{meta.booking_id}/refunds/{notification.id}/review",
            method="POST",
            disabled=meta.disabled or text == "Confirmed",
        )
    ]


_ACTION_BUILDERS: Dict[NotificationType, Callable[[Notification], List[NotificationAction]]] = {
    NotificationType.BOOKING_REQUESTED: _booking_request_actions,
    NotificationType.BOOKING_CANCELLED_BY_EXPERT: _refund_request_actions,
    NotificationType.REFUND_REVIEW: _refund_review_actions,
}


def render_actions(notification: Notification) -> List[NotificationAction]:
    """Buttons for prompt-type notifications; plain messages get none."""
    if not notification.meta:
        return []
    builder = _ACTION_BUILDERS.get(notification.type)
    return builder(notification) if builder else []


def render_notification(notification: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        type=notification.type,
        sender_id=notification.sender_id,
        title=notification.title,
        message=notification.message,
        image=notification.image,
        meta=notification.meta,
        actions=render_actions(notification),
        is_read=notification.is_read,
        read_at=notification.read_at,
        created_at=notification.created_at,
    )


def render_event_payload(notification: Notification) -> Dict[str, Any]:
    """JSON-ready body pushed on the recipient's real-time channel."""
    return render_notification(notification).model_dump(mode="json")
