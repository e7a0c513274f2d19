"""
services/booking/ledger.py
Booking Ledger: creates bookings and owns the status state machine.

    PENDING ──accept──► UPCOMING ──complete / meeting ended──► COMPLETED
       │                   │  └──────meeting too short──────► MISSED
       └──reject/cancel────┴──cancel──► REFUNDED

Every transition is a conditional UPDATE on the expected source status;
a caller that loses a race gets ConflictError/InvalidStateError and no
side effects.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence
from uuid import UUID

from fastapi import Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.base import LifecycleService
from services.meeting.provider import ZoomMeetingProvider, get_meeting_provider
from services.notification.emitter import NotificationEmitter, get_notification_emitter
from services.payment.orchestrator import PaymentOrchestrator, get_payment_orchestrator
from services.payment.refunds import RefundCoordinator, get_refund_coordinator
from shared.exceptions import (
    ConflictError,
    InvalidStateError,
    NotEligibleError,
    NotFoundError,
    NotOnboardedError,
    PermissionDenied,
    ValidationError,
)
from shared.models.models import (
    Booking,
    BookingStatus,
    NotificationType,
    TransactionStatus,
    User,
)
from shared.repositories import bookings as bookings_repo
from shared.repositories import notifications as notifications_repo
from shared.repositories import transactions as transactions_repo
from shared.repositories import users as users_repo
from shared.schemas.schemas import BookingCreateRequest
from shared.utils.money import CENT, session_price
from shared.utils.timezones import format_for_user, parse_session_start, to_civil_time

logger = logging.getLogger(__name__)

ACCEPT = "accept"
REJECT = "reject"
REJECT_REASON = "Declined by expert"
SLOT_TAKEN = "This time slot is already booked"


class BookingLedger(LifecycleService):
    def __init__(
        self,
        db: AsyncSession,
        emitter: NotificationEmitter,
        payments: PaymentOrchestrator,
        refunds: RefundCoordinator,
        meetings: ZoomMeetingProvider,
    ):
        super().__init__(db, emitter)
        self.payments = payments
        self.refunds = refunds
        self.meetings = meetings

    # ── Create ───────────────────────────────────────────────

    async def create_booking(self, student: User, data: BookingCreateRequest) -> Dict[str, Any]:
        """
        Persist a PENDING booking with its PENDING transaction and open the
        payment hold. Nothing is written unless the hold succeeds.
        """
        if data.expert_id == student.id:
            raise ValidationError("You cannot book a session with yourself")
        start = parse_session_start(data.date.isoformat(), data.time)

        try:
            expert = await users_repo.get_user(self.db, data.expert_id)
        except NotFoundError:
            raise NotFoundError("Expert not found")
        profile = await users_repo.get_expert_profile(self.db, expert.id)
        if not profile or not expert.is_active:
            raise NotFoundError("Expert not found")
        if not profile.can_receive_payments:
            raise NotOnboardedError("This expert has not completed payment onboarding yet")
        if profile.hourly_rate is None:
            raise NotEligibleError("This expert has not set an hourly rate")

        price = session_price(profile.hourly_rate, data.session_duration)
        if data.amount is not None and Decimal(data.amount).quantize(CENT) != price:
            raise ValidationError(
                "Amount does not match the session price",
                {"expected": str(price), "received": str(data.amount)},
            )

        if await bookings_repo.find_slot_conflict(self.db, expert.id, start, data.session_duration):
            raise ConflictError(SLOT_TAKEN)

        try:
            async with self.atomic():
                booking = await bookings_repo.create_booking(
                    self.db,
                    student_id=student.id,
                    expert_id=expert.id,
                    date=start,
                    expert_date_time=to_civil_time(start, expert.timezone),
                    student_date_time=to_civil_time(start, student.timezone),
                    session_duration=data.session_duration,
                    session_details=data.session_details.model_dump(),
                )
                transaction = await transactions_repo.create_transaction(
                    self.db, booking.id, price, settings.STRIPE_CURRENCY
                )
                await self.record_transition(booking.id, None, BookingStatus.PENDING, student.id)
                intent = await self.payments.create_hold(booking, transaction, profile.stripe_account_id)
        except IntegrityError:
            # Lost the race for the slot to a concurrent request
            raise ConflictError(SLOT_TAKEN)

        return {
            "booking_id": booking.id,
            "transaction_id": transaction.id,
            "payment_intent_id": intent.id,
            "client_secret": getattr(intent, "client_secret", None),
            "amount": price,
            "currency": transaction.currency,
        }

    # ── Expert decision ──────────────────────────────────────

    async def accept_or_reject(
        self,
        booking_id: UUID,
        expert: User,
        action: str,
        notification_id: Optional[UUID] = None,
    ) -> Booking:
        if action not in (ACCEPT, REJECT):
            raise ValidationError("Action must be 'accept' or 'reject'")

        booking = await bookings_repo.get_booking(self.db, booking_id)
        if booking.expert_id != expert.id:
            raise PermissionDenied("Only the booked expert can respond to this booking")
        if booking.status != BookingStatus.PENDING or booking.meeting_link:
            raise ConflictError(
                "Booking has already been processed",
                {"status": booking.status.value},
            )

        profile = await users_repo.get_expert_profile(self.db, expert.id)
        if not profile or not profile.can_receive_payments:
            raise NotOnboardedError("Complete payment onboarding before responding to bookings")
        transaction = await transactions_repo.get_for_booking(self.db, booking.id)
        if not transaction:
            raise InvalidStateError("Booking has no payment")

        request_notification = None
        if notification_id:
            request_notification = await notifications_repo.get_for_recipient(
                self.db, notification_id, expert.id
            )
        student = await users_repo.get_user(self.db, booking.student_id)

        async with self.atomic():
            if action == ACCEPT:
                if transaction.status != TransactionStatus.COMPLETED:
                    raise InvalidStateError("The student has not completed payment yet")
                await self._accept(booking, expert, student)
                texts = ["Decline", "Accepted"]
            else:
                await self.refunds.refund_in_transaction(
                    booking,
                    transaction,
                    expert.id,
                    REJECT_REASON,
                    allow_void=True,
                    from_statuses=[BookingStatus.PENDING],
                )
                await self.emitter.notify(
                    NotificationType.BOOKING_CANCELLED_BY_EXPERT,
                    sender_id=expert.id,
                    recipient_id=student.id,
                    title="Booking declined",
                    message=f"{expert.name} could not take your session. Your payment has been refunded.",
                    image=expert.image,
                    meta={"booking_id": booking.id, "disabled": True, "texts": ["Refunded"]},
                )
                texts = ["Declined", "Accept"]

            if request_notification:
                await notifications_repo.replace_meta(
                    self.db, request_notification, disabled=True, texts=texts
                )

        return await bookings_repo.get_booking(self.db, booking.id)

    async def _accept(self, booking: Booking, expert: User, student: User) -> None:
        claimed = await bookings_repo.transition(
            self.db, booking.id, [BookingStatus.PENDING], BookingStatus.UPCOMING
        )
        if not claimed:
            raise ConflictError("Booking has already been processed")

        details = booking.session_details or {}
        meeting = await self.meetings.create_meeting(
            topic=f"Session with {student.name}",
            start_time=booking.date,
            duration_minutes=booking.session_duration,
            agenda=details.get("agenda") or details.get("topic") or "",
            timezone=expert.timezone,
        )
        try:
            await bookings_repo.set_meeting(self.db, booking.id, meeting.id, meeting.join_url)
            await self.record_transition(booking.id, BookingStatus.PENDING, BookingStatus.UPCOMING, expert.id)
            await self.emitter.notify(
                NotificationType.BOOKING_CONFIRMED,
                sender_id=expert.id,
                recipient_id=student.id,
                title="Booking confirmed",
                message=(
                    f"{expert.name} accepted your session on "
                    f"{format_for_user(booking.date, student.timezone)}."
                ),
                image=expert.image,
                meta={"booking_id": booking.id, "disabled": True, "texts": ["Decline", "Accepted"]},
            )
        except Exception:
            logger.error(f"Zoom meeting {meeting.id} orphaned: booking {booking.id} was not updated")
            raise

    # ── Completion ───────────────────────────────────────────

    async def mark_completed(self, booking_id: UUID, actor: User) -> Booking:
        booking = await bookings_repo.get_booking(self.db, booking_id)
        if not booking.is_participant(actor.id):
            raise PermissionDenied("Only the booking's participants can complete it")
        if booking.status != BookingStatus.UPCOMING:
            raise InvalidStateError(
                f"Cannot complete a booking in '{booking.status.value}' state",
                {"status": booking.status.value},
            )

        async with self.atomic():
            claimed = await bookings_repo.transition(
                self.db, booking.id, [BookingStatus.UPCOMING], BookingStatus.COMPLETED
            )
            if not claimed:
                raise InvalidStateError("Booking status changed, please reload")
            await self.record_transition(booking.id, BookingStatus.UPCOMING, BookingStatus.COMPLETED, actor.id)
            await self.emitter.notify(
                NotificationType.BOOKING_COMPLETED,
                sender_id=actor.id,
                recipient_id=booking.other_party(actor.id),
                title="Session completed",
                message=f"{actor.name} marked your session as completed.",
                image=actor.image,
                meta={"booking_id": booking.id},
            )

        return await bookings_repo.get_booking(self.db, booking.id)

    async def meeting_ended(
        self,
        meeting_id: str,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[Booking]:
        """
        Zoom reported the meeting over. An UPCOMING booking becomes COMPLETED
        when the meeting ran long enough, MISSED otherwise. Anything else is
        left alone.
        """
        booking = await bookings_repo.get_booking_by_meeting_id(self.db, meeting_id)
        if not booking:
            logger.info(f"meeting.ended for unknown meeting {meeting_id}")
            return None
        if booking.status != BookingStatus.UPCOMING:
            logger.info(f"meeting.ended ignored for booking {booking.id} in {booking.status.value}")
            return booking

        target = BookingStatus.COMPLETED
        if started_at and ended_at:
            attended_minutes = (ended_at - started_at).total_seconds() / 60
            if attended_minutes < settings.MEETING_MIN_ATTENDED_MINUTES:
                target = BookingStatus.MISSED

        async with self.atomic():
            claimed = await bookings_repo.transition(
                self.db, booking.id, [BookingStatus.UPCOMING], target
            )
            if not claimed:
                return booking
            await self.record_transition(booking.id, BookingStatus.UPCOMING, target, None, "meeting ended")
            if target == BookingStatus.MISSED:
                await self.emitter.notify(
                    NotificationType.BOOKING_MISSED,
                    sender_id=None,
                    recipient_id=booking.student_id,
                    title="Session missed",
                    message="Your session ended before it really started. Contact the expert to reschedule.",
                    meta={"booking_id": booking.id},
                )
            else:
                await self.emitter.notify(
                    NotificationType.BOOKING_COMPLETED,
                    sender_id=None,
                    recipient_id=booking.student_id,
                    title="Session completed",
                    message="Your session has ended. We hope it was useful!",
                    meta={"booking_id": booking.id},
                )

        return await bookings_repo.get_booking(self.db, booking.id)

    # ── Cancellation ─────────────────────────────────────────

    async def cancel(self, booking_id: UUID, actor: User, reason: str) -> Booking:
        """Either participant, while PENDING or UPCOMING. Refunds or voids the payment."""
        booking = await bookings_repo.get_booking(self.db, booking_id)
        if not booking.is_participant(actor.id):
            raise PermissionDenied("Only the booking's participants can cancel it")
        if booking.status not in (BookingStatus.PENDING, BookingStatus.UPCOMING):
            raise InvalidStateError(
                f"Cannot cancel a booking in '{booking.status.value}' state",
                {"status": booking.status.value},
            )

        transaction = await transactions_repo.get_for_booking(self.db, booking.id)
        async with self.atomic():
            if transaction:
                await self.refunds.refund_in_transaction(
                    booking, transaction, actor.id, reason, allow_void=True
                )
            else:
                claimed = await bookings_repo.transition(
                    self.db,
                    booking.id,
                    [BookingStatus.PENDING, BookingStatus.UPCOMING],
                    BookingStatus.REFUNDED,
                    refund_reason=reason,
                )
                if not claimed:
                    raise ConflictError("Booking status changed, please reload")
                await self.record_transition(booking.id, booking.status, BookingStatus.REFUNDED, actor.id, reason)
            await self.refunds.notify_cancellation(booking, actor, reason)

        return await bookings_repo.get_booking(self.db, booking.id)

    # ── Reads ────────────────────────────────────────────────

    async def get_for_participant(self, booking_id: UUID, user: User) -> Booking:
        booking = await bookings_repo.get_booking(self.db, booking_id)
        if not booking.is_participant(user.id):
            raise PermissionDenied("Not authorized to view this booking")
        return booking

    async def list_for_user(
        self,
        user: User,
        status: Optional[BookingStatus],
        page: int,
        page_size: int,
    ) -> tuple[Sequence[Booking], int]:
        return await bookings_repo.list_for_user(
            self.db, user.id, user.active_profile, status, page, page_size
        )


def get_booking_ledger(
    db: AsyncSession = Depends(get_db),
    emitter: NotificationEmitter = Depends(get_notification_emitter),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
    refunds: RefundCoordinator = Depends(get_refund_coordinator),
    meetings: ZoomMeetingProvider = Depends(get_meeting_provider),
) -> BookingLedger:
    return BookingLedger(db, emitter, payments, refunds, meetings)
