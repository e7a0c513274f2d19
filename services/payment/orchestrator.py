"""
services/payment/orchestrator.py
Payment Orchestrator: moves a booking's money through Stripe.

    createHold ──► confirmAndCapture ──► (session) ──► capturePostSession
      (manual-capture intent)    (authorize + capture)        (payout 90%)

Amounts live in major units on the Transaction and are converted to minor
units only when handed to the provider.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import Depends
from pybreaker import CircuitBreakerError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.base import LifecycleService
from services.notification.emitter import NotificationEmitter, get_notification_emitter
from services.payment.provider import (
    NEEDS_PAYMENT_METHOD,
    READY_TO_CAPTURE,
    SUCCEEDED,
    StripePaymentProvider,
    get_payment_provider,
)
from shared.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    NotOnboardedError,
    PaymentProcessingError,
    PermissionDenied,
    ProviderUnavailableError,
)
from shared.models.models import (
    Booking,
    BookingStatus,
    ExpertProfile,
    NotificationType,
    Transaction,
    TransactionStatus,
    User,
)
from shared.repositories import bookings as bookings_repo
from shared.repositories import transactions as transactions_repo
from shared.repositories import users as users_repo
from shared.utils.money import net_payout_minor, to_major_units, to_minor_units
from shared.utils.timezones import format_for_user

logger = logging.getLogger(__name__)

PAYOUT_PAID = "paid"
PAYOUT_FAILED = "failed"
PAYOUT_SKIPPED = "skipped"


class PaymentOrchestrator(LifecycleService):
    def __init__(
        self,
        db: AsyncSession,
        emitter: NotificationEmitter,
        provider: StripePaymentProvider,
    ):
        super().__init__(db, emitter)
        self.provider = provider

    # ── Hold ─────────────────────────────────────────────────

    async def create_hold(
        self,
        booking: Booking,
        transaction: Transaction,
        expert_account_id: str,
    ) -> Any:
        """
        Open a manual-capture PaymentIntent for the transaction amount and
        store its id. Runs inside the caller's unit of work.
        """
        intent = await self.provider.create_payment_hold(
            amount_minor=to_minor_units(transaction.amount),
            destination_account=expert_account_id,
            currency=transaction.currency,
            metadata={
                "booking_id": str(booking.id),
                "transaction_id": str(transaction.id),
                "student_id": str(booking.student_id),
                "expert_id": str(booking.expert_id),
            },
        )
        await transactions_repo.set_fields(self.db, transaction.id, provider_id=intent.id)
        logger.info(f"Created payment hold {intent.id} for booking {booking.id}")
        return intent

    # ── Confirm & capture ────────────────────────────────────

    async def confirm_and_capture(
        self,
        transaction_id: UUID,
        payment_method_id: str,
        student: User,
    ) -> Transaction:
        transaction = await transactions_repo.get_transaction(self.db, transaction_id)
        booking = await bookings_repo.get_booking(self.db, transaction.booking_id)
        if booking.student_id != student.id:
            raise PermissionDenied("Only the booking's student can pay for it")
        if transaction.status != TransactionStatus.PENDING:
            raise ConflictError("Payment has already been processed")
        if booking.status != BookingStatus.PENDING:
            raise InvalidStateError(f"Cannot pay for a booking in '{booking.status.value}' state")
        if not transaction.provider_id:
            raise PaymentProcessingError("No payment hold exists for this booking")

        async with self.atomic():
            intent = await self.provider.retrieve_intent(transaction.provider_id)
            if intent.status in NEEDS_PAYMENT_METHOD:
                intent = await self.provider.attach_and_confirm(transaction.provider_id, payment_method_id)

            if intent.status == READY_TO_CAPTURE:
                intent = await self.provider.capture(
                    transaction.provider_id, idempotency_key=f"capture_{transaction.id}"
                )
            elif intent.status != SUCCEEDED:
                # Left PENDING for follow-up (3DS, declined card...)
                logger.warning(
                    f"Payment intent {transaction.provider_id} is '{intent.status}' after confirmation"
                )
                raise PaymentProcessingError(
                    "Payment could not be completed",
                    {"payment_status": intent.status},
                )

            await self._mark_captured(transaction, booking)

        return await transactions_repo.get_transaction(self.db, transaction.id)

    async def mark_intent_succeeded(self, payment_intent_id: str) -> bool:
        """Webhook side of capture. Returns whether this call moved the transaction."""
        transaction = await transactions_repo.get_by_provider_id(self.db, payment_intent_id)
        if not transaction:
            logger.warning(f"payment_intent.succeeded for unknown intent {payment_intent_id}")
            return False
        async with self.atomic():
            booking = await bookings_repo.get_booking(self.db, transaction.booking_id)
            return await self._mark_captured(transaction, booking)

    async def _mark_captured(self, transaction: Transaction, booking: Booking) -> bool:
        claimed = await transactions_repo.transition(
            self.db,
            transaction.id,
            [TransactionStatus.PENDING],
            TransactionStatus.COMPLETED,
            captured_at=datetime.now(timezone.utc),
        )
        if not claimed:
            # The other path (confirm call or webhook) got there first and notified
            logger.info(f"Transaction {transaction.id} already captured")
            return False

        logger.info(f"Transaction {transaction.id}: PENDING → COMPLETED")
        if booking.status == BookingStatus.PENDING:
            await self._announce_booking_request(booking)
        return True

    async def _announce_booking_request(self, booking: Booking) -> None:
        student = await users_repo.get_user(self.db, booking.student_id)
        expert = await users_repo.get_user(self.db, booking.expert_id)
        await self.emitter.notify(
            NotificationType.BOOKING_REQUESTED,
            sender_id=student.id,
            recipient_id=expert.id,
            title="New session request",
            message=(
                f"{student.name} booked a {booking.session_duration}-minute session on "
                f"{format_for_user(booking.date, expert.timezone)}."
            ),
            image=student.image,
            meta={
                "booking_id": booking.id,
                "disabled": False,
                "texts": ["Decline", "Accept"],
                "session_details": booking.session_details,
            },
        )

    # ── Post-session settlement ──────────────────────────────

    async def capture_post_session(self, booking_id: UUID, actor: User) -> Dict[str, Any]:
        """
        Capture the hold if still outstanding and pay 90% out to the expert.
        The payout is best-effort: a failure is logged and recorded, the
        capture still stands.
        """
        booking = await bookings_repo.get_booking(self.db, booking_id)
        if not booking.is_participant(actor.id):
            raise PermissionDenied("Only the booking's participants can settle it")
        if booking.status != BookingStatus.COMPLETED:
            raise InvalidStateError(
                f"Cannot capture a booking in '{booking.status.value}' state",
                {"status": booking.status.value},
            )

        transaction = await transactions_repo.get_for_booking(self.db, booking.id)
        if not transaction:
            raise NotFoundError("Transaction not found")
        if transaction.status == TransactionStatus.REFUNDED:
            raise ConflictError("Booking payment has been refunded")

        now = datetime.now(timezone.utc)
        captured = False
        async with self.atomic():
            claimed = await transactions_repo.update_where_null(
                self.db, transaction.id, "settled_at", settled_at=now
            )
            if not claimed:
                raise ConflictError("Booking has already been settled")

            if transaction.status == TransactionStatus.PENDING:
                await self._capture_outstanding(transaction)
                await transactions_repo.transition(
                    self.db,
                    transaction.id,
                    [TransactionStatus.PENDING],
                    TransactionStatus.COMPLETED,
                    captured_at=now,
                )
                captured = True

            payout_minor = net_payout_minor(to_minor_units(transaction.amount), settings.PLATFORM_FEE_PERCENT)
            profile = await users_repo.get_expert_profile(self.db, booking.expert_id)
            payout_id, payout_status = await self._attempt_payout(booking, transaction, profile, payout_minor)
            await transactions_repo.set_fields(
                self.db,
                transaction.id,
                payout_id=payout_id,
                payout_status=payout_status,
                payout_at=now if payout_id else None,
            )

        return {
            "booking_id": booking.id,
            "transaction_id": transaction.id,
            "captured": captured,
            "payout_id": payout_id,
            "payout_amount_minor": payout_minor,
            "payout_status": payout_status,
        }

    async def _capture_outstanding(self, transaction: Transaction) -> None:
        intent = await self.provider.retrieve_intent(transaction.provider_id)
        if intent.status == READY_TO_CAPTURE:
            await self.provider.capture(
                transaction.provider_id, idempotency_key=f"capture_{transaction.id}"
            )
        elif intent.status != SUCCEEDED:
            raise PaymentProcessingError(
                "Payment hold cannot be captured",
                {"payment_status": intent.status},
            )

    async def _attempt_payout(
        self,
        booking: Booking,
        transaction: Transaction,
        profile: Optional[ExpertProfile],
        payout_minor: int,
    ) -> tuple[Optional[str], str]:
        if not profile or not profile.stripe_account_id:
            logger.warning(f"Payout skipped for booking {booking.id}: expert has no connected account")
            return None, PAYOUT_SKIPPED
        try:
            payout = await self.provider.payout(
                profile.stripe_account_id,
                payout_minor,
                currency=transaction.currency,
                metadata={"booking_id": str(booking.id), "transaction_id": str(transaction.id)},
                idempotency_key=f"payout_{transaction.id}",
            )
        except (PaymentProcessingError, ProviderUnavailableError, CircuitBreakerError) as e:
            # Funds stay in the connected balance for Stripe's regular schedule
            logger.error(f"Payout of {payout_minor} for booking {booking.id} failed: {e}")
            return None, PAYOUT_FAILED
        logger.info(f"Payout {payout.id} of {payout_minor} sent for booking {booking.id}")
        return payout.id, payout.status

    async def record_payout_status(self, payout_id: str, status: str) -> bool:
        """Payout webhooks. Notifies the expert the first time a payout is paid."""
        transaction = await transactions_repo.get_by_payout_id(self.db, payout_id)
        if not transaction:
            logger.info(f"Payout event for untracked payout {payout_id}")
            return False

        async with self.atomic():
            changed = await transactions_repo.update_payout_status(self.db, transaction.id, status)
            if changed and status == PAYOUT_PAID:
                booking = await bookings_repo.get_booking(self.db, transaction.booking_id)
                amount_minor = net_payout_minor(
                    to_minor_units(transaction.amount), settings.PLATFORM_FEE_PERCENT
                )
                await self.emitter.notify(
                    NotificationType.PAYOUT_SENT,
                    sender_id=None,
                    recipient_id=booking.expert_id,
                    title="Payout sent",
                    message=(
                        f"{to_major_units(amount_minor)} {transaction.currency.upper()} "
                        "is on its way to your bank account."
                    ),
                    meta={
                        "booking_id": booking.id,
                        "transaction_id": transaction.id,
                        "payout_id": payout_id,
                        "amount_minor": amount_minor,
                    },
                )
        return changed

    # ── Expert account pass-throughs ─────────────────────────

    async def _connected_account(self, expert: User) -> ExpertProfile:
        profile = await users_repo.get_expert_profile(self.db, expert.id)
        if not profile or not profile.stripe_account_id:
            raise NotOnboardedError("No connected payment account. Complete Stripe onboarding first.")
        return profile

    async def payout(self, expert: User, amount: Decimal) -> Dict[str, Any]:
        profile = await self._connected_account(expert)
        payout = await self.provider.payout(
            profile.stripe_account_id,
            to_minor_units(amount),
            metadata={"expert_id": str(expert.id)},
        )
        logger.info(f"Manual payout {payout.id} of {amount} for expert {expert.id}")
        return {
            "payout_id": payout.id,
            "amount": amount,
            "currency": getattr(payout, "currency", settings.STRIPE_CURRENCY),
            "status": getattr(payout, "status", None),
        }

    async def balance(self, expert: User) -> Dict[str, Any]:
        profile = await self._connected_account(expert)
        balance = await self.provider.get_balance(profile.stripe_account_id)
        return {
            "available": [
                {"amount": entry["amount"], "currency": entry["currency"]}
                for entry in balance["available"]
            ],
            "pending": [
                {"amount": entry["amount"], "currency": entry["currency"]}
                for entry in balance.get("pending", [])
            ],
        }

    # ── Connect onboarding ───────────────────────────────────

    async def _expert_profile(self, expert: User) -> ExpertProfile:
        profile = await users_repo.get_expert_profile(self.db, expert.id)
        if not profile:
            raise NotFoundError("Expert profile not found")
        return profile

    async def create_connected_account(self, expert: User) -> str:
        """Express account with the transfers capability; idempotent per expert."""
        profile = await self._expert_profile(expert)
        if profile.stripe_account_id:
            return profile.stripe_account_id

        async with self.atomic():
            account = await self.provider.create_connected_account(
                email=expert.email, metadata={"expert_id": str(expert.id)}
            )
            profile.stripe_account_id = account.id
            profile.is_onboard_completed = False
        logger.info(f"Created Stripe Express account {account.id} for expert {expert.id}")
        return account.id

    async def onboarding_link(self, expert: User) -> str:
        profile = await self._connected_account(expert)
        base = settings.FRONTEND_URL.rstrip("/")
        link = await self.provider.create_onboarding_link(
            profile.stripe_account_id,
            refresh_url=f"{base}/expert/payment?reauth=true",
            return_url=f"{base}/expert/payment?success=true",
        )
        return link.url

    async def account_status(self, expert: User) -> Dict[str, Any]:
        profile = await self._expert_profile(expert)
        if not profile.stripe_account_id:
            return {
                "stripe_account_id": None,
                "details_submitted": False,
                "charges_enabled": False,
                "is_onboard_completed": False,
            }

        account = await self.provider.retrieve_account(profile.stripe_account_id)
        details_submitted = bool(account.details_submitted)
        charges_enabled = bool(account.charges_enabled)
        completed = details_submitted and charges_enabled
        if completed != profile.is_onboard_completed:
            async with self.atomic():
                profile.is_onboard_completed = completed
            logger.info(f"Expert {expert.id} onboarding completed={completed}")

        return {
            "stripe_account_id": profile.stripe_account_id,
            "details_submitted": details_submitted,
            "charges_enabled": charges_enabled,
            "is_onboard_completed": completed,
        }


def get_payment_orchestrator(
    db: AsyncSession = Depends(get_db),
    emitter: NotificationEmitter = Depends(get_notification_emitter),
    provider: StripePaymentProvider = Depends(get_payment_provider),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, emitter, provider)
