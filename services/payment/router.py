"""
services/payment/router.py
Stripe Connect integration: post-session capture and payout, refunds,
expert balance/payouts, onboarding, and the signed webhook.
"""

import logging
from uuid import UUID

import stripe
from fastapi import APIRouter, Depends, Request

from config.settings import settings
from shared.exceptions import ValidationError
from shared.middleware.auth import get_current_user, require_expert, require_student
from shared.models.models import User
from shared.schemas.schemas import (
    BalanceResponse,
    ConnectStatusResponse,
    NotificationResponse,
    OnboardingLinkResponse,
    PayoutRequest,
    PayoutResponse,
    ReasonRequest,
    SettlementResponse,
    SuccessResponse,
    TransactionResponse,
)
from services.notification.render import render_notification
from services.payment.orchestrator import PaymentOrchestrator, get_payment_orchestrator
from services.payment.provider import StripePaymentProvider, get_payment_provider
from services.payment.refunds import RefundCoordinator, get_refund_coordinator
from services.payment.webhooks import StripeWebhookHandler, get_stripe_webhook_handler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


# ── Booking money movement ────────────────────────────────────

@router.post("/bookings/{booking_id}/capture", response_model=SuccessResponse[SettlementResponse])
async def capture_post_session(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """
    Settle a COMPLETED booking: capture the hold if still outstanding,
    then pay the expert's share out. A failed payout does not fail the call.
    """
    result = await payments.capture_post_session(booking_id, current_user)
    message = "Payment settled" if result["payout_id"] else "Payment settled, payout pending"
    return SuccessResponse(message=message, data=SettlementResponse(**result))


@router.post("/bookings/{booking_id}/refund", response_model=SuccessResponse[TransactionResponse])
async def refund_booking(
    booking_id: UUID,
    data: ReasonRequest,
    current_user: User = Depends(get_current_user),
    refunds: RefundCoordinator = Depends(get_refund_coordinator),
):
    transaction = await refunds.refund(booking_id, current_user, data.reason)
    return SuccessResponse(
        message="Refund issued",
        data=TransactionResponse.model_validate(transaction),
    )


@router.post(
    "/bookings/{booking_id}/refunds/{notification_id}/review",
    response_model=SuccessResponse[NotificationResponse],
)
async def review_refund(
    booking_id: UUID,
    notification_id: UUID,
    current_user: User = Depends(require_student),
    refunds: RefundCoordinator = Depends(get_refund_coordinator),
):
    """The student confirms the refunded money arrived."""
    notification = await refunds.review_refund(booking_id, notification_id, current_user)
    return SuccessResponse(message="Refund receipt confirmed", data=render_notification(notification))


# ── Expert account ────────────────────────────────────────────

@router.get("/experts/balance", response_model=SuccessResponse[BalanceResponse])
async def expert_balance(
    current_user: User = Depends(require_expert),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    balance = await payments.balance(current_user)
    return SuccessResponse(data=BalanceResponse(**balance))


@router.post("/experts/payouts", response_model=SuccessResponse[PayoutResponse])
async def expert_payout(
    data: PayoutRequest,
    current_user: User = Depends(require_expert),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    payout = await payments.payout(current_user, data.amount)
    return SuccessResponse(message="Payout created", data=PayoutResponse(**payout))


# ── Stripe Connect onboarding ─────────────────────────────────

@router.post("/stripe/create-account", response_model=SuccessResponse[ConnectStatusResponse])
async def create_connected_account(
    current_user: User = Depends(require_expert),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    account_id = await payments.create_connected_account(current_user)
    return SuccessResponse(
        message="Connected account ready",
        data=ConnectStatusResponse(
            stripe_account_id=account_id,
            details_submitted=False,
            charges_enabled=False,
            is_onboard_completed=False,
        ),
    )


@router.get("/stripe/onboarding-link", response_model=SuccessResponse[OnboardingLinkResponse])
async def onboarding_link(
    current_user: User = Depends(require_expert),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    url = await payments.onboarding_link(current_user)
    return SuccessResponse(data=OnboardingLinkResponse(url=url))


@router.get("/stripe/status", response_model=SuccessResponse[ConnectStatusResponse])
async def connect_status(
    current_user: User = Depends(require_expert),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    status = await payments.account_status(current_user)
    return SuccessResponse(data=ConnectStatusResponse(**status))


# ── Stripe Webhook ────────────────────────────────────────────

@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    provider: StripePaymentProvider = Depends(get_payment_provider),
    handler: StripeWebhookHandler = Depends(get_stripe_webhook_handler),
):
    """
    Stripe webhook handler. Validates the Stripe-Signature header before
    anything is read from the payload.
    """
    body = await request.body()
    signature = request.headers.get("Stripe-Signature", "")

    try:
        event = provider.construct_event(body, signature, settings.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Rejected Stripe webhook: {type(e).__name__}")
        raise ValidationError("Invalid webhook signature")

    outcome = await handler.handle(event)
    return {"received": True, "status": outcome}
