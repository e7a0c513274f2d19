"""
services/payment/provider.py
Thin async wrapper over the Stripe SDK for the calls the marketplace makes.

The SDK is synchronous, so every call runs in the threadpool behind a
circuit breaker. Stripe errors are translated into the platform's error
kinds here; callers never see ``stripe.StripeError``.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional

import stripe
from pybreaker import CircuitBreakerError
from starlette.concurrency import run_in_threadpool

from config.settings import settings
from shared.exceptions import PaymentProcessingError, ProviderUnavailableError
from shared.utils.money import platform_fee_minor
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)

# PaymentIntent statuses the orchestrator branches on
NEEDS_PAYMENT_METHOD = {"requires_payment_method", "requires_confirmation"}
READY_TO_CAPTURE = "requires_capture"
SUCCEEDED = "succeeded"
CANCELED = "canceled"

# Caller mistakes; these must not trip the breaker
_CLIENT_ERRORS = (
    stripe.CardError,
    stripe.InvalidRequestError,
    stripe.IdempotencyError,
    stripe.SignatureVerificationError,
)



def _request_options(idempotency_key: Optional[str]) -> Dict[str, str]:
    # Stripe replays the first response for a repeated key instead of moving money twice
    return {"idempotency_key": idempotency_key} if idempotency_key else {}


class StripePaymentProvider:
    def __init__(
        self,
        api_key: str,
        currency: str = "usd",
        fee_percent: float = 10.0,
    ):
        self.api_key = api_key
        self.currency = currency
        self.fee_percent = fee_percent
        self.breaker = circuit_breaker_manager.get_breaker("stripe", exclude=_CLIENT_ERRORS)

    async def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return await run_in_threadpool(
                self.breaker.call, fn, *args, api_key=self.api_key, **kwargs
            )
        except CircuitBreakerError:
            logger.error(f"Stripe circuit open, refusing {operation}")
            raise
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning(f"Stripe unavailable during {operation}: {e}")
            raise ProviderUnavailableError("Payment provider is unavailable, please retry")
        except stripe.StripeError as e:
            if (e.http_status or 0) >= 500:
                logger.warning(f"Stripe {e.http_status} during {operation}: {e}")
                raise ProviderUnavailableError("Payment provider is unavailable, please retry")
            logger.error(f"Stripe error during {operation}: {e}")
            raise PaymentProcessingError(
                e.user_message or f"Payment provider rejected {operation}",
                {"provider_code": e.code} if e.code else None,
            )

    # ── Payment intents ──────────────────────────────────────

    async def create_payment_hold(
        self,
        amount_minor: int,
        destination_account: str,
        metadata: Optional[Dict[str, str]] = None,
        currency: Optional[str] = None,
    ) -> Any:
        """
        Authorize ``amount_minor`` without moving it. The platform keeps
        the fee; the remainder is transferred to the expert on capture.
        """
        return await self._call(
            "create_payment_hold",
            stripe.PaymentIntent.create,
            amount=amount_minor,
            currency=currency or self.currency,
            application_fee_amount=platform_fee_minor(amount_minor, self.fee_percent),
            transfer_data={"destination": destination_account},
            capture_method="manual",
            automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            metadata=metadata or {},
        )

    async def retrieve_intent(self, intent_id: str) -> Any:
        return await self._call("retrieve_intent", stripe.PaymentIntent.retrieve, intent_id)

    async def attach_and_confirm(self, intent_id: str, payment_method_id: str) -> Any:
        return await self._call(
            "confirm_intent",
            stripe.PaymentIntent.confirm,
            intent_id,
            payment_method=payment_method_id,
        )

    async def capture(self, intent_id: str, idempotency_key: Optional[str] = None) -> Any:
        return await self._call(
            "capture_intent",
            stripe.PaymentIntent.capture,
            intent_id,
            **_request_options(idempotency_key),
        )

    async def cancel_hold(self, intent_id: str, idempotency_key: Optional[str] = None) -> Any:
        """Release an authorization that was never captured."""
        return await self._call(
            "cancel_intent",
            stripe.PaymentIntent.cancel,
            intent_id,
            **_request_options(idempotency_key),
        )

    # ── Refunds & payouts ────────────────────────────────────

    async def refund(
        self,
        intent_id: str,
        reverse_transfer: bool = True,
        refund_fee: bool = True,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        return await self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=intent_id,
            reverse_transfer=reverse_transfer,
            refund_application_fee=refund_fee,
            metadata=metadata or {},
            **_request_options(idempotency_key),
        )

    async def payout(
        self,
        account_id: str,
        amount_minor: int,
        metadata: Optional[Dict[str, str]] = None,
        currency: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        return await self._call(
            "payout",
            stripe.Payout.create,
            amount=amount_minor,
            currency=currency or self.currency,
            stripe_account=account_id,
            metadata=metadata or {},
            **_request_options(idempotency_key),
        )

    async def get_balance(self, account_id: str) -> Any:
        return await self._call("get_balance", stripe.Balance.retrieve, stripe_account=account_id)

    # ── Connect onboarding ───────────────────────────────────

    async def create_connected_account(self, email: str, metadata: Dict[str, str]) -> Any:
        return await self._call(
            "create_account",
            stripe.Account.create,
            type="express",
            email=email,
            capabilities={"transfers": {"requested": True}},
            metadata=metadata,
        )

    async def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> Any:
        return await self._call(
            "create_account_link",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )

    async def retrieve_account(self, account_id: str) -> Any:
        return await self._call("retrieve_account", stripe.Account.retrieve, account_id)

    # ── Webhooks ─────────────────────────────────────────────

    def construct_event(self, payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and return the event as plain JSON.
        Raises ValueError or stripe.SignatureVerificationError on bad input.
        """
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        stripe.WebhookSignature.verify_header(
            body, signature, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
        )
        return json.loads(body)


# ── Global provider (initialized on startup) ─────────────────
payment_provider: Optional[StripePaymentProvider] = None


def init_payment_provider() -> StripePaymentProvider:
    global payment_provider
    payment_provider = StripePaymentProvider(
        api_key=settings.STRIPE_SECRET_KEY,
        currency=settings.STRIPE_CURRENCY,
        fee_percent=settings.PLATFORM_FEE_PERCENT,
    )
    return payment_provider


def get_payment_provider() -> StripePaymentProvider:
    """FastAPI dependency to get the Stripe provider."""
    if not payment_provider:
        raise RuntimeError("Payment provider not initialized. Call init_payment_provider() first.")
    return payment_provider
