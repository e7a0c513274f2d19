"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date as date_type
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Generic, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.models.models import NotificationType

T = TypeVar("T")


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class SuccessResponse(BaseSchema, Generic[T]):
    """Envelope for every successful response."""
    success: bool = True
    message: str = "OK"
    data: Optional[T] = None


class PaginatedResponse(BaseSchema, Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int
    pages: int


class ErrorResponse(BaseSchema):
    success: bool = False
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None


def paginate(items: List[Any], total: int, page: int, page_size: int) -> Dict[str, Any]:
    return {
        "items": items,
        "total": total,
        "page": page,
        "page_size": page_size,
        "pages": (total + page_size - 1) // page_size if page_size else 0,
    }


# ── Booking ───────────────────────────────────────────────────

MAX_SESSION_MINUTES = 480


class SessionDetails(BaseSchema):
    topic: str = Field(..., min_length=1, max_length=255)
    meeting_type: str = Field(default="video", max_length=50)
    agenda: Optional[str] = Field(None, max_length=2000)


class BookingCreateRequest(BaseSchema):
    expert_id: uuid.UUID
    date: date_type = Field(..., description="YYYY-MM-DD")
    time: str = Field(..., description='"HH:MM" or "hh:mm AM/PM" (UTC wall time)')
    session_duration: int = Field(..., ge=15, le=MAX_SESSION_MINUTES, description="minutes")
    session_details: SessionDetails
    amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("time is required")
        return v


class BookingCreateResponse(BaseSchema):
    booking_id: uuid.UUID
    transaction_id: uuid.UUID
    payment_intent_id: str
    client_secret: Optional[str]
    amount: Decimal
    currency: str


class ConfirmPaymentRequest(BaseSchema):
    transaction_id: uuid.UUID
    payment_method_id: str = Field(..., min_length=1, max_length=255)


class ReasonRequest(BaseSchema):
    reason: str = Field(..., min_length=3, max_length=500)


class TransactionResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    amount: Decimal
    currency: str
    status: str
    provider: str
    provider_id: Optional[str]
    captured_at: Optional[datetime]
    refund_id: Optional[str]
    refund_date: Optional[datetime]
    refund_reason: Optional[str]
    settled_at: Optional[datetime]
    payout_id: Optional[str]
    payout_status: Optional[str]
    created_at: datetime


class BookingResponse(BaseSchema):
    id: uuid.UUID
    student_id: uuid.UUID
    expert_id: uuid.UUID
    date: datetime
    expert_date_time: datetime
    student_date_time: datetime
    session_duration: int
    session_details: Dict[str, Any]
    status: str
    meeting_link: Optional[str]
    refund_reason: Optional[str]
    created_at: datetime


# ── Payment ───────────────────────────────────────────────────

class PayoutRequest(BaseSchema):
    amount: Decimal = Field(..., gt=0, decimal_places=2)


class BalanceEntry(BaseSchema):
    amount: int  # minor units
    currency: str


class BalanceResponse(BaseSchema):
    available: List[BalanceEntry]
    pending: List[BalanceEntry] = []


class PayoutResponse(BaseSchema):
    payout_id: str
    amount: Decimal
    currency: str
    status: Optional[str] = None


class SettlementResponse(BaseSchema):
    booking_id: uuid.UUID
    transaction_id: uuid.UUID
    captured: bool
    payout_id: Optional[str]
    payout_amount_minor: int
    payout_status: Optional[str]


class OnboardingLinkResponse(BaseSchema):
    url: str


class ConnectStatusResponse(BaseSchema):
    stripe_account_id: Optional[str]
    details_submitted: bool
    charges_enabled: bool
    is_onboard_completed: bool


# ── Notification ──────────────────────────────────────────────
# meta is a tagged union keyed by Notification.type

class BookingPromptMeta(BaseSchema):
    """Notifications that carry action buttons for a booking."""
    booking_id: uuid.UUID
    disabled: bool = False
    texts: List[str] = []
    session_details: Optional[Dict[str, Any]] = None


class BookingUpdateMeta(BaseSchema):
    booking_id: uuid.UUID
    reason: Optional[str] = None


class RefundReviewMeta(BaseSchema):
    booking_id: uuid.UUID
    transaction_id: uuid.UUID
    refund_id: Optional[str] = None
    disabled: bool = False
    texts: List[str] = ["Confirm receipt"]


class PayoutMeta(BaseSchema):
    booking_id: Optional[uuid.UUID] = None
    transaction_id: uuid.UUID
    payout_id: str
    amount_minor: int


META_SCHEMAS: Dict[NotificationType, Type[BaseSchema]] = {
    NotificationType.BOOKING_REQUESTED: BookingPromptMeta,
    NotificationType.BOOKING_CONFIRMED: BookingPromptMeta,
    NotificationType.BOOKING_CANCELLED_BY_EXPERT: BookingPromptMeta,
    NotificationType.BOOKING_CANCELLED_BY_STUDENT: BookingUpdateMeta,
    NotificationType.BOOKING_COMPLETED: BookingUpdateMeta,
    NotificationType.BOOKING_MISSED: BookingUpdateMeta,
    NotificationType.REFUND_REVIEW: RefundReviewMeta,
    NotificationType.PAYOUT_SENT: PayoutMeta,
}


def build_meta(type: NotificationType, **fields) -> Dict[str, Any]:
    """Validate meta against its variant and return the JSON-ready dict."""
    return META_SCHEMAS[type](**fields).model_dump(mode="json")


def parse_meta(type: NotificationType, raw: Optional[Dict[str, Any]]) -> Optional[BaseSchema]:
    if raw is None:
        return None
    return META_SCHEMAS[type].model_validate(raw)


class NotificationAction(BaseSchema):
    text: str
    bg_primary: bool = False
    url: str
    method: Literal["GET", "POST", "PATCH"]
    disabled: bool = False


class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    sender_id: Optional[uuid.UUID]
    title: str
    message: str
    image: Optional[str]
    meta: Optional[Dict[str, Any]]
    actions: List[NotificationAction] = []
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime


class UnreadCountResponse(BaseSchema):
    unread: int
