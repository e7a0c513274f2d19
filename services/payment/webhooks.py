"""
services/payment/webhooks.py
Dispatch of verified Stripe events to the orchestrator and refund coordinator.

Stripe delivers at least once and in no particular order, so every handler
checks current state before writing and reports what it did.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Depends

from services.payment.orchestrator import PaymentOrchestrator, get_payment_orchestrator
from services.payment.refunds import RefundCoordinator, get_refund_coordinator

logger = logging.getLogger(__name__)

REFUND_SUCCEEDED = "succeeded"


class StripeWebhookHandler:
    def __init__(self, payments: PaymentOrchestrator, refunds: RefundCoordinator):
        self.payments = payments
        self.refunds = refunds
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[str]]] = {
            "payment_intent.succeeded": self._payment_succeeded,
            "payment_intent.payment_failed": self._payment_failed,
            "charge.refunded": self._charge_refunded,
            "refund.created": self._refund_changed,
            "refund.updated": self._refund_changed,
            "payout.created": self._payout_changed,
            "payout.paid": self._payout_changed,
            "payout.failed": self._payout_changed,
        }

    async def handle(self, event: Any) -> str:
        event_type = event["type"]
        handler = self._handlers.get(event_type)
        if not handler:
            logger.debug(f"Ignoring Stripe event {event_type}")
            return "ignored"
        obj = event["data"]["object"]
        outcome = await handler(obj)
        logger.info(f"Stripe event {event.get('id')} ({event_type}): {outcome}")
        return outcome

    async def _payment_succeeded(self, intent: Dict[str, Any]) -> str:
        moved = await self.payments.mark_intent_succeeded(intent["id"])
        return "captured" if moved else "already_captured"

    async def _payment_failed(self, intent: Dict[str, Any]) -> str:
        error = intent.get("last_payment_error") or {}
        logger.warning(
            f"Payment failed for intent {intent['id']}: {error.get('message', 'unknown reason')}"
        )
        return "logged"

    async def _charge_refunded(self, charge: Dict[str, Any]) -> str:
        intent_id = charge.get("payment_intent")
        if not intent_id or not charge.get("refunded"):
            return "ignored"
        refund_id = self._latest_refund_id(charge)
        raised = await self.refunds.confirm_provider_refund(intent_id, refund_id)
        return "refund_confirmed" if raised else "refund_already_confirmed"

    async def _refund_changed(self, refund: Dict[str, Any]) -> str:
        intent_id = refund.get("payment_intent")
        if not intent_id or refund.get("status") != REFUND_SUCCEEDED:
            return "ignored"
        raised = await self.refunds.confirm_provider_refund(intent_id, refund["id"])
        return "refund_confirmed" if raised else "refund_already_confirmed"

    async def _payout_changed(self, payout: Dict[str, Any]) -> str:
        changed = await self.payments.record_payout_status(payout["id"], payout["status"])
        return f"payout_{payout['status']}" if changed else "payout_unchanged"

    @staticmethod
    def _latest_refund_id(charge: Dict[str, Any]) -> Optional[str]:
        refunds = (charge.get("refunds") or {}).get("data") or []
        return refunds[0]["id"] if refunds else None


def get_stripe_webhook_handler(
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
    refunds: RefundCoordinator = Depends(get_refund_coordinator),
) -> StripeWebhookHandler:
    return StripeWebhookHandler(payments, refunds)
