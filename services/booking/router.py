"""
services/booking/router.py
Booking lifecycle endpoints.
States: PENDING → UPCOMING | REFUNDED; UPCOMING → COMPLETED | REFUNDED | MISSED
"""

from enum import Enum
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from shared.middleware.auth import get_current_user, require_expert, require_student
from shared.models.models import Booking, BookingStatus, User
from shared.schemas.schemas import (
    BookingCreateRequest,
    BookingCreateResponse,
    BookingResponse,
    ConfirmPaymentRequest,
    PaginatedResponse,
    ReasonRequest,
    SuccessResponse,
    TransactionResponse,
    paginate,
)
from services.booking.ledger import BookingLedger, get_booking_ledger
from services.payment.orchestrator import PaymentOrchestrator, get_payment_orchestrator

router = APIRouter(prefix="/bookings", tags=["Bookings"])


class BookingAction(str, Enum):
    accept = "accept"
    reject = "reject"


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse.model_validate(booking)


# ── Create & pay ──────────────────────────────────────────────

@router.post(
    "",
    response_model=SuccessResponse[BookingCreateResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(require_student),
    ledger: BookingLedger = Depends(get_booking_ledger),
):
    """
    Book a session. Creates a PENDING booking and a manual-capture payment
    hold; the client completes payment with the returned client secret.
    """
    result = await ledger.create_booking(current_user, data)
    return SuccessResponse(
        message="Booking created. Complete payment to send the request.",
        data=BookingCreateResponse(**result),
    )


@router.post("/confirm-payment", response_model=SuccessResponse[TransactionResponse])
async def confirm_payment(
    data: ConfirmPaymentRequest,
    current_user: User = Depends(require_student),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Authorize and capture the hold. The expert is notified on success."""
    transaction = await payments.confirm_and_capture(
        data.transaction_id, data.payment_method_id, current_user
    )
    return SuccessResponse(
        message="Payment captured. The expert has been notified.",
        data=TransactionResponse.model_validate(transaction),
    )


# ── Lifecycle ─────────────────────────────────────────────────

@router.patch("/{booking_id}/{action}", response_model=SuccessResponse[BookingResponse])
async def accept_or_reject_booking(
    booking_id: UUID,
    action: BookingAction,
    notification_id: Optional[UUID] = Query(None),
    current_user: User = Depends(require_expert),
    ledger: BookingLedger = Depends(get_booking_ledger),
):
    """Expert accepts (meeting is scheduled) or rejects (payment is refunded)."""
    booking = await ledger.accept_or_reject(booking_id, current_user, action.value, notification_id)
    message = "Booking accepted" if action == BookingAction.accept else "Booking rejected and refunded"
    return SuccessResponse(message=message, data=_booking_response(booking))


@router.post("/{booking_id}/complete", response_model=SuccessResponse[BookingResponse])
async def complete_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    ledger: BookingLedger = Depends(get_booking_ledger),
):
    booking = await ledger.mark_completed(booking_id, current_user)
    return SuccessResponse(message="Session marked as completed", data=_booking_response(booking))


@router.post("/{booking_id}/cancel", response_model=SuccessResponse[BookingResponse])
async def cancel_booking(
    booking_id: UUID,
    data: ReasonRequest,
    current_user: User = Depends(get_current_user),
    ledger: BookingLedger = Depends(get_booking_ledger),
):
    """Either participant cancels a PENDING or UPCOMING booking; the payment is returned."""
    booking = await ledger.cancel(booking_id, current_user, data.reason)
    return SuccessResponse(message="Booking cancelled", data=_booking_response(booking))


# ── Read Endpoints ────────────────────────────────────────────

@router.get("", response_model=SuccessResponse[PaginatedResponse[BookingResponse]])
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    ledger: BookingLedger = Depends(get_booking_ledger),
):
    """Own bookings, as student or as expert depending on the active profile."""
    bookings, total = await ledger.list_for_user(current_user, status_filter, page, page_size)
    items = [_booking_response(b) for b in bookings]
    return SuccessResponse(data=paginate(items, total, page, page_size))


@router.get("/{booking_id}", response_model=SuccessResponse[BookingResponse])
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    ledger: BookingLedger = Depends(get_booking_ledger),
):
    booking = await ledger.get_for_participant(booking_id, current_user)
    return SuccessResponse(data=_booking_response(booking))
