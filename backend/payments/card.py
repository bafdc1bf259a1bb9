"""
Card Provider (Stripe PaymentIntents)
=====================================
Card-network adapter with automatic capture.

- Charge amount recomputed from line items, never taken from the client
- Order recorded only after Stripe accepts the intent
- Webhooks verified with Stripe-Signature before anything is parsed

pip install stripe structlog
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Mapping, Optional

import stripe
import structlog

from errors import ProviderAuthenticityError, ValidationError
from orders.models import Order, ProviderTag
from orders.pricing import deviates, recompute_amounts
from payments.base import (
    CaptureOutcome,
    CaptureResult,
    CircuitBreaker,
    EventKind,
    EventMapper,
    PaymentProvider,
    ProviderSession,
    VerifiedEvent,
    call_with_retry,
    lower_headers,
    to_minor_units,
)
from payments.config import ProviderCallConfig, StripeConfig

logger = structlog.get_logger().bind(component="card_provider")


# =============================================================================
# WEBHOOK EVENT MAP
# =============================================================================

stripe_events = EventMapper("stripe")


@stripe_events.register("payment_intent.succeeded", EventKind.SUCCEEDED)
@stripe_events.register("payment_intent.payment_failed", EventKind.PENDING)
@stripe_events.register("payment_intent.canceled", EventKind.CANCELLED)
@stripe_events.register("payment_intent.processing", EventKind.PENDING)
@stripe_events.register("payment_intent.amount_capturable_updated", EventKind.PENDING)
def _intent_reference(resource: dict) -> Optional[str]:
    return resource.get("id")


@stripe_events.register("charge.refunded", EventKind.REFUNDED)
def _charge_reference(resource: dict) -> Optional[str]:
    return resource.get("payment_intent")


def is_retryable_stripe_error(error: BaseException) -> bool:
    if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)):
        return True
    if isinstance(error, stripe.StripeError):
        return (error.http_status or 0) >= 500
    return False


def intent_outcome(status: str) -> CaptureOutcome:
    if status == "succeeded":
        return CaptureOutcome.SUCCEEDED
    if status == "canceled":
        return CaptureOutcome.CANCELLED
    # processing, requires_action, requires_capture, requires_payment_method
    # (a failed attempt returns here and the customer may retry)
    return CaptureOutcome.PENDING


# =============================================================================
# ADAPTER
# =============================================================================

class CardProvider(PaymentProvider):
    tag = ProviderTag.CARD
    persists_before_initiate = False
    capture_method = "automatic"

    def __init__(
        self,
        config: StripeConfig,
        call_config: Optional[ProviderCallConfig] = None,
        stripe_client=stripe,
    ):
        self.config = config
        self.call_config = call_config or ProviderCallConfig()
        self._stripe = stripe_client
        self._breaker = CircuitBreaker(
            f"stripe_{self.tag.value}",
            failure_threshold=self.call_config.circuit_failure_threshold,
            reset_timeout=self.call_config.circuit_reset_seconds,
        )

    async def _call(self, name: str, func, *args, order_id: Optional[str] = None, **kwargs):
        """Run a blocking Stripe SDK call off the event loop, with retries."""
        kwargs["api_key"] = self.config.secret_key
        try:
            return await call_with_retry(
                lambda: asyncio.to_thread(func, *args, **kwargs),
                provider=self.tag.value,
                name=name,
                config=self.call_config,
                is_retryable=is_retryable_stripe_error,
                breaker=self._breaker,
                order_id=order_id,
            )
        except stripe.StripeError as e:
            logger.error("stripe_request_rejected",
                         provider=self.tag.value,
                         operation=name,
                         order_id=order_id,
                         error=str(e),
                         error_type=type(e).__name__)
            raise ValidationError(
                f"{self.tag.value} provider rejected {name}: {e.user_message or str(e)}",
                provider=self.tag.value,
                order_id=order_id,
            )

    def _intent_metadata(self, order: Order) -> dict:
        return {
            "order_id": order.order_id,
            "idempotency_key": order.idempotency_key,
            "provider": self.tag.value,
        }

    async def initiate(self, order: Order) -> ProviderSession:
        amounts = recompute_amounts(
            order.line_items,
            order.amounts.shipping,
            order.amounts.tax,
            order.amounts.discount,
        )
        if deviates(amounts.total, order.amounts.total):
            logger.warning("card_total_mismatch",
                           order_id=order.order_id,
                           recomputed=str(amounts.total),
                           submitted=str(order.amounts.total))
            raise ValidationError(
                f"Submitted total {order.amounts.total} does not match computed total {amounts.total}",
                computed_total=str(amounts.total),
            )

        params = {
            "amount": to_minor_units(amounts.total),
            "currency": order.currency.lower(),
            "capture_method": self.capture_method,
            "automatic_payment_methods": {"enabled": True},
            "metadata": self._intent_metadata(order),
            "idempotency_key": f"intent:{order.idempotency_key}",
        }
        if order.guest_email:
            params["receipt_email"] = order.guest_email

        intent = await self._call("initiate", self._stripe.PaymentIntent.create, order_id=order.order_id, **params)

        logger.info("payment_intent_created",
                    provider=self.tag.value,
                    order_id=order.order_id,
                    provider_reference=intent["id"],
                    amount=str(amounts.total))

        return ProviderSession(
            provider=self.tag,
            provider_reference=intent["id"],
            client_secret=intent.get("client_secret"),
            amount=amounts.total,
            currency=order.currency,
        )

    async def lookup(self, provider_reference: str) -> CaptureResult:
        intent = await self._call("lookup", self._stripe.PaymentIntent.retrieve, provider_reference)
        return CaptureResult(
            outcome=intent_outcome(intent["status"]),
            provider_reference=provider_reference,
            raw={"status": intent["status"]},
        )

    async def capture(self, provider_reference: str) -> CaptureResult:
        # Automatic capture: Stripe captures on confirmation, we only confirm the result
        return await self.lookup(provider_reference)

    async def verify_webhook(self, raw_payload: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        signature = lower_headers(headers).get("stripe-signature")
        if not signature:
            raise ProviderAuthenticityError(self.tag.value, "missing Stripe-Signature header")
        if not self.config.webhook_secret:
            raise ProviderAuthenticityError(self.tag.value, "webhook secret not configured")

        # Verify signature BEFORE parsing
        try:
            self._stripe.Webhook.construct_event(raw_payload, signature, self.config.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise ProviderAuthenticityError(self.tag.value, str(e))
        except ValueError:
            raise ProviderAuthenticityError(self.tag.value, "malformed payload")

        event = json.loads(raw_payload)
        event_type = event.get("type", "unknown")
        resource = event.get("data", {}).get("object", {})

        kind, reference = stripe_events.map(event_type, resource)
        # Same Stripe account can carry intents of another adapter
        owner = (resource.get("metadata") or {}).get("provider")
        if owner and owner != self.tag.value:
            kind, reference = EventKind.IGNORED, None

        created = event.get("created")
        return VerifiedEvent(
            provider=self.tag,
            event_id=event.get("id", "unknown"),
            event_type=event_type,
            kind=kind,
            provider_reference=reference,
            occurred_at=datetime.fromtimestamp(created, tz=timezone.utc) if created else datetime.now(timezone.utc),
            payload=event,
        )
