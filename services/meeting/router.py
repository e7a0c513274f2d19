"""
services/meeting/router.py
Zoom webhook: URL validation challenge and meeting.ended handling.
"""

import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request

from services.booking.ledger import BookingLedger, get_booking_ledger
from shared.exceptions import ValidationError
from shared.utils.security import verify_zoom_webhook_signature, zoom_url_validation_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/zoom", tags=["Meetings"])


def _parse_zoom_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@router.post("/webhook", include_in_schema=False)
async def zoom_webhook(
    request: Request,
    ledger: BookingLedger = Depends(get_booking_ledger),
):
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        raise ValidationError("Invalid webhook payload")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid webhook payload")

    event = payload.get("event")
    data = payload.get("payload") or {}

    if event == "endpoint.url_validation":
        plain_token = data.get("plainToken", "")
        return {
            "plainToken": plain_token,
            "encryptedToken": zoom_url_validation_token(plain_token),
        }

    if not verify_zoom_webhook_signature(
        body,
        request.headers.get("x-zm-request-timestamp", ""),
        request.headers.get("x-zm-signature", ""),
    ):
        logger.warning(f"Rejected Zoom webhook {event}: bad signature")
        raise ValidationError("Invalid webhook signature")

    if event == "meeting.ended":
        meeting = data.get("object") or {}
        booking = await ledger.meeting_ended(
            str(meeting.get("id")),
            started_at=_parse_zoom_time(meeting.get("start_time")),
            ended_at=_parse_zoom_time(meeting.get("end_time")),
        )
        return {"received": True, "status": booking.status.value if booking else "unknown_meeting"}

    return {"received": True, "status": "ignored"}
