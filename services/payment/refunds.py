"""
services/payment/refunds.py
Refund Coordinator: reverses a booking's payment and marks the booking and
its transaction REFUNDED together.

Two paths reach the same end state:
- synchronous: a participant cancels/refunds, or the expert rejects;
- asynchronous: Stripe confirms a refund by webhook, possibly before,
  after, or more than once relative to the synchronous path.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Sequence
from uuid import UUID

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.base import LifecycleService
from services.notification.emitter import NotificationEmitter, get_notification_emitter
from services.payment.provider import (
    CANCELED,
    SUCCEEDED,
    StripePaymentProvider,
    get_payment_provider,
)
from shared.exceptions import ConflictError, NotFoundError, PermissionDenied, ValidationError
from shared.models.models import (
    Booking,
    BookingStatus,
    Notification,
    NotificationType,
    Transaction,
    TransactionStatus,
    User,
)
from shared.repositories import bookings as bookings_repo
from shared.repositories import notifications as notifications_repo
from shared.repositories import transactions as transactions_repo

logger = logging.getLogger(__name__)

REFUNDABLE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.UPCOMING)
PROVIDER_REFUND_REASON = "Refunded by payment provider"
REVIEW_CONFIRMED_TEXT = "Confirmed"


class RefundCoordinator(LifecycleService):
    def __init__(
        self,
        db: AsyncSession,
        emitter: NotificationEmitter,
        provider: StripePaymentProvider,
    ):
        super().__init__(db, emitter)
        self.provider = provider

    # ── Synchronous path ─────────────────────────────────────

    async def refund(self, booking_id: UUID, actor: User, reason: str) -> Transaction:
        """
        Participant-requested refund of a captured payment.
        Fails with ConflictError on a second call; Stripe is called at most once.
        """
        booking = await bookings_repo.get_booking(self.db, booking_id)
        if not booking.is_participant(actor.id):
            raise PermissionDenied("Only the booking's participants can request a refund")

        transaction = await transactions_repo.get_for_booking(self.db, booking.id)
        if not transaction:
            raise NotFoundError("Transaction not found")
        if transaction.status == TransactionStatus.REFUNDED or booking.status == BookingStatus.REFUNDED:
            raise ConflictError("Booking has already been refunded")
        if transaction.status != TransactionStatus.COMPLETED or not transaction.provider_id:
            raise ConflictError("There is no captured payment to refund")
        if booking.status not in REFUNDABLE_BOOKING_STATUSES:
            raise ConflictError(
                f"A {booking.status.value.lower()} booking can no longer be refunded",
                {"status": booking.status.value},
            )

        async with self.atomic():
            await self.refund_in_transaction(booking, transaction, actor.id, reason, allow_void=False)
            await self.notify_cancellation(booking, actor, reason)

        return await transactions_repo.get_transaction(self.db, transaction.id)

    async def refund_in_transaction(
        self,
        booking: Booking,
        transaction: Transaction,
        actor_id: Optional[UUID],
        reason: str,
        allow_void: bool = True,
        from_statuses: Sequence[BookingStatus] = REFUNDABLE_BOOKING_STATUSES,
    ) -> Optional[str]:
        """
        Claim both records as REFUNDED, then reverse the money at Stripe.
        Runs inside the caller's unit of work: if Stripe fails, the caller's
        rollback restores both statuses. With ``allow_void`` an uncaptured
        hold is released instead of refunded. ``from_statuses`` limits which
        booking statuses may be claimed. Returns the Stripe refund id.
        """
        now = datetime.now(timezone.utc)
        expected_transaction = [TransactionStatus.COMPLETED]
        if allow_void:
            expected_transaction.append(TransactionStatus.PENDING)

        transaction_claimed = await transactions_repo.transition(
            self.db,
            transaction.id,
            expected_transaction,
            TransactionStatus.REFUNDED,
            refund_date=now,
            refund_reason=reason,
        )
        if not transaction_claimed:
            raise ConflictError("Booking has already been refunded")

        booking_claimed = await bookings_repo.transition(
            self.db,
            booking.id,
            from_statuses,
            BookingStatus.REFUNDED,
            refund_reason=reason,
        )
        if not booking_claimed:
            raise ConflictError("Booking status changed, please reload")

        await self.record_transition(booking.id, booking.status, BookingStatus.REFUNDED, actor_id, reason)

        if not transaction.provider_id:
            return None

        metadata = {
            "booking_id": str(booking.id),
            "transaction_id": str(transaction.id),
            "reason": reason[:500],
        }
        refund_id = None
        if transaction.status == TransactionStatus.COMPLETED:
            refund_id = await self._issue_refund(transaction, metadata)
        else:
            # The webhook may not have caught up with a capture yet
            intent = await self.provider.retrieve_intent(transaction.provider_id)
            if intent.status == SUCCEEDED:
                refund_id = await self._issue_refund(transaction, metadata)
            elif intent.status != CANCELED:
                await self.provider.cancel_hold(
                    transaction.provider_id, idempotency_key=f"cancel_{transaction.id}"
                )
                logger.info(f"Released payment hold {transaction.provider_id} for booking {booking.id}")

        if refund_id:
            await transactions_repo.set_fields(self.db, transaction.id, refund_id=refund_id)
        return refund_id

    async def _issue_refund(self, transaction: Transaction, metadata: dict) -> str:
        refund = await self.provider.refund(
            transaction.provider_id,
            reverse_transfer=True,
            refund_fee=True,
            metadata=metadata,
            idempotency_key=f"refund_{transaction.id}",
        )
        logger.info(f"Issued refund {refund.id} for transaction {transaction.id}")
        return refund.id

    async def notify_cancellation(self, booking: Booking, actor: User, reason: str) -> None:
        recipient_id = booking.other_party(actor.id)
        if actor.id == booking.expert_id:
            await self.emitter.notify(
                NotificationType.BOOKING_CANCELLED_BY_EXPERT,
                sender_id=actor.id,
                recipient_id=recipient_id,
                title="Session cancelled",
                message=f"{actor.name} cancelled your session. Your payment has been refunded.",
                image=actor.image,
                meta={"booking_id": booking.id, "disabled": True, "texts": ["Refunded"]},
            )
        else:
            await self.emitter.notify(
                NotificationType.BOOKING_CANCELLED_BY_STUDENT,
                sender_id=actor.id,
                recipient_id=recipient_id,
                title="Session cancelled",
                message=f"{actor.name} cancelled the session: {reason}",
                image=actor.image,
                meta={"booking_id": booking.id, "reason": reason},
            )

    # ── Asynchronous (webhook) path ──────────────────────────

    async def confirm_provider_refund(self, payment_intent_id: str, refund_id: Optional[str]) -> bool:
        """
        Stripe reports a successful refund. Brings the ledger in line if the
        synchronous path has not, and asks the student (once) to confirm
        the money arrived. Returns whether a review request was raised.
        """
        transaction = await transactions_repo.get_by_provider_id(self.db, payment_intent_id)
        if not transaction:
            logger.warning(f"Refund webhook for unknown payment intent {payment_intent_id}")
            return False

        now = datetime.now(timezone.utc)
        async with self.atomic():
            if transaction.status != TransactionStatus.REFUNDED:
                moved = await transactions_repo.transition(
                    self.db,
                    transaction.id,
                    [TransactionStatus.PENDING, TransactionStatus.COMPLETED],
                    TransactionStatus.REFUNDED,
                    refund_id=refund_id,
                    refund_date=now,
                    refund_reason=PROVIDER_REFUND_REASON,
                )
                booking = await bookings_repo.get_booking(self.db, transaction.booking_id)
                if moved and booking.status in REFUNDABLE_BOOKING_STATUSES:
                    await bookings_repo.transition(
                        self.db,
                        booking.id,
                        REFUNDABLE_BOOKING_STATUSES,
                        BookingStatus.REFUNDED,
                        refund_reason=PROVIDER_REFUND_REASON,
                    )
                    await self.record_transition(
                        booking.id, booking.status, BookingStatus.REFUNDED, None, PROVIDER_REFUND_REASON
                    )
                elif moved:
                    logger.warning(
                        f"Provider refunded transaction {transaction.id} of a {booking.status.value} booking"
                    )

            first_confirmation = await transactions_repo.update_where_null(
                self.db, transaction.id, "refund_confirmed_at", refund_confirmed_at=now
            )
            if not first_confirmation:
                logger.info(f"Refund for transaction {transaction.id} already confirmed")
                return False

            if refund_id and not transaction.refund_id:
                await transactions_repo.set_fields(self.db, transaction.id, refund_id=refund_id)

            booking = await bookings_repo.get_booking(self.db, transaction.booking_id)
            await self.emitter.notify(
                NotificationType.REFUND_REVIEW,
                sender_id=None,
                recipient_id=booking.student_id,
                title="Refund processed",
                message=(
                    f"Your refund of {transaction.amount} {transaction.currency.upper()} has been "
                    "processed. Please confirm once it reaches your account."
                ),
                meta={
                    "booking_id": booking.id,
                    "transaction_id": transaction.id,
                    "refund_id": refund_id or transaction.refund_id,
                    "disabled": False,
                    "texts": ["Confirm receipt"],
                },
            )
        return True

    async def review_refund(self, booking_id: UUID, notification_id: UUID, student: User) -> Notification:
        """The paying student acknowledges a REFUND_REVIEW notification."""
        booking = await bookings_repo.get_booking(self.db, booking_id)
        if booking.student_id != student.id:
            raise PermissionDenied("Only the paying student can review this refund")

        notification = await notifications_repo.get_for_recipient(self.db, notification_id, student.id)
        meta = notification.meta or {}
        if notification.type != NotificationType.REFUND_REVIEW or meta.get("booking_id") != str(booking.id):
            raise ValidationError("Notification is not a refund review for this booking")
        if REVIEW_CONFIRMED_TEXT in (meta.get("texts") or []):
            raise ConflictError("Refund receipt already confirmed")

        async with self.atomic():
            await notifications_repo.replace_meta(
                self.db, notification, disabled=True, texts=[REVIEW_CONFIRMED_TEXT]
            )
        logger.info(f"Student {student.id} confirmed refund receipt for booking {booking.id}")
        return notification


def get_refund_coordinator(
    db: AsyncSession = Depends(get_db),
    emitter: NotificationEmitter = Depends(get_notification_emitter),
    provider: StripePaymentProvider = Depends(get_payment_provider),
) -> RefundCoordinator:
    return RefundCoordinator(db, emitter, provider)
