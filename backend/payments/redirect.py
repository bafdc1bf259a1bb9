"""
Redirect Provider (PayPal Orders v2)
====================================
Redirect-based adapter: the customer approves the payment on PayPal and the
storefront captures it explicitly afterwards.

- OAuth client-credentials token cached until shortly before expiry
- Explicit item/shipping/tax/discount breakdown; on mismatch the recomputed
  total is submitted and the discrepancy logged
- PayPal-Request-Id on every mutating call (provider-side idempotency)
- Webhooks verified through PayPal's verify-webhook-signature API

pip install httpx structlog
"""

import json
import time
from typing import Mapping, Optional

import httpx
import structlog

from errors import ProviderAuthenticityError, ProviderUnavailable, ValidationError
from orders.models import Amounts, Order, ProviderTag
from orders.pricing import revalidate
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
)
from payments.config import PayPalConfig, ProviderCallConfig

logger = structlog.get_logger().bind(component="redirect_provider")

TOKEN_REFRESH_MARGIN_SECONDS = 60

VERIFICATION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


# =============================================================================
# WEBHOOK EVENT MAP
# =============================================================================

paypal_events = EventMapper("paypal")


@paypal_events.register("CHECKOUT.ORDER.APPROVED", EventKind.PENDING)
@paypal_events.register("CHECKOUT.ORDER.COMPLETED", EventKind.SUCCEEDED)
@paypal_events.register("CHECKOUT.ORDER.VOIDED", EventKind.CANCELLED)
def _order_reference(resource: dict) -> Optional[str]:
    return resource.get("id")


@paypal_events.register("PAYMENT.CAPTURE.COMPLETED", EventKind.SUCCEEDED)
@paypal_events.register("PAYMENT.CAPTURE.PENDING", EventKind.PENDING)
@paypal_events.register("PAYMENT.CAPTURE.DENIED", EventKind.FAILED)
@paypal_events.register("PAYMENT.CAPTURE.REFUNDED", EventKind.REFUNDED)
def _capture_reference(resource: dict) -> Optional[str]:
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    return related.get("order_id")


class PayPalAPIError(Exception):
    def __init__(self, status_code: int, body: dict):
        self.status_code = status_code
        self.body = body or {}
        super().__init__(f"PayPal API error {status_code}: {self.body.get('name') or self.body.get('error')}")

    @property
    def issues(self) -> list[str]:
        return [d.get("issue") for d in self.body.get("details", []) if d.get("issue")]


def is_retryable_paypal_error(error: BaseException) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, PayPalAPIError):
        return error.status_code >= 500 or error.status_code in (401, 429)
    return False


def _money(currency: str, value) -> dict:
    return {"currency_code": currency, "value": f"{value:.2f}"}


def capture_outcome(data: dict) -> CaptureOutcome:
    """Map an Orders v2 representation to the normalized outcome."""
    status = data.get("status")
    captures = []
    for unit in data.get("purchase_units", []):
        captures.extend((unit.get("payments") or {}).get("captures", []))

    if captures:
        capture_status = captures[0].get("status")
        if capture_status in ("COMPLETED", "PARTIALLY_REFUNDED", "REFUNDED"):
            return CaptureOutcome.SUCCEEDED
        if capture_status in ("DECLINED", "FAILED"):
            return CaptureOutcome.FAILED
        return CaptureOutcome.PENDING

    if status == "COMPLETED":
        return CaptureOutcome.SUCCEEDED
    if status == "VOIDED":
        return CaptureOutcome.CANCELLED
    return CaptureOutcome.PENDING


# =============================================================================
# ADAPTER
# =============================================================================

class RedirectProvider(PaymentProvider):
    tag = ProviderTag.REDIRECT
    persists_before_initiate = True

    def __init__(
        self,
        config: PayPalConfig,
        call_config: Optional[ProviderCallConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.call_config = call_config or ProviderCallConfig()
        self._client = client or httpx.AsyncClient(timeout=self.call_config.timeout_seconds)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._breaker = CircuitBreaker(
            "paypal",
            failure_threshold=self.call_config.circuit_failure_threshold,
            reset_timeout=self.call_config.circuit_reset_seconds,
        )

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        if not self.config.client_id or not self.config.client_secret:
            raise ProviderUnavailable(self.tag.value, "auth", "PayPal credentials are not configured")

        response = await self._client.post(
            f"{self.config.base_url}/v1/oauth2/token",
            auth=(self.config.client_id, self.config.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        body = response.json() if response.content else {}
        if response.status_code != 200 or not body.get("access_token"):
            logger.error("paypal_auth_failed",
                         status=response.status_code,
                         error=body.get("error"),
                         environment=self.config.environment)
            raise PayPalAPIError(response.status_code, body)

        self._token = body["access_token"]
        expires_in = int(body.get("expires_in", 3600))
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_REFRESH_MARGIN_SECONDS, 0)
        logger.info("paypal_token_refreshed", environment=self.config.environment)
        return self._token

    async def _send(self, method: str, path: str, payload: Optional[dict] = None, request_id: Optional[str] = None):
        token = await self._access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id

        response = await self._client.request(
            method,
            f"{self.config.base_url}{path}",
            json=payload,
            headers=headers,
        )
        body = response.json() if response.content else {}
        if response.status_code == 401:
            self._token = None
        if response.status_code >= 400:
            raise PayPalAPIError(response.status_code, body)
        return body

    async def _call(self, name: str, method: str, path: str, order_id: Optional[str] = None, **kwargs) -> dict:
        return await call_with_retry(
            lambda: self._send(method, path, **kwargs),
            provider=self.tag.value,
            name=name,
            config=self.call_config,
            is_retryable=is_retryable_paypal_error,
            breaker=self._breaker,
            order_id=order_id,
        )

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    def _order_payload(self, order: Order, amounts: Amounts) -> dict:
        currency = order.currency
        breakdown = {
            "item_total": _money(currency, amounts.subtotal),
            "shipping": _money(currency, amounts.shipping),
            "tax_total": _money(currency, amounts.tax),
        }
        if amounts.discount:
            breakdown["discount"] = _money(currency, amounts.discount)

        return {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": order.order_id,
                "custom_id": order.order_id,
                "description": f"Order from {self.config.brand_name} - {len(order.line_items)} item(s)",
                "amount": {**_money(currency, amounts.total), "breakdown": breakdown},
                "items": [
                    {
                        "name": line.name[:127],
                        "unit_amount": _money(currency, line.unit_price),
                        "quantity": str(line.quantity),
                        "sku": line.product_ref[:127],
                        "category": "PHYSICAL_GOODS",
                    }
                    for line in order.line_items
                ],
            }],
            "application_context": {
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "brand_name": self.config.brand_name,
                "return_url": f"{self.config.frontend_url}/order-confirmation?order_id={order.order_id}",
                "cancel_url": f"{self.config.frontend_url}/checkout",
            },
        }

    async def initiate(self, order: Order) -> ProviderSession:
        amounts = order.amounts
        substituted = revalidate(order.line_items, order.amounts)
        if substituted is not None:
            logger.warning("redirect_breakdown_mismatch",
                           order_id=order.order_id,
                           stored_total=str(order.amounts.total),
                           recomputed_total=str(substituted.total))
            amounts = substituted

        try:
            data = await self._call(
                "initiate", "POST", "/v2/checkout/orders",
                order_id=order.order_id,
                payload=self._order_payload(order, amounts),
                request_id=f"order-{order.idempotency_key}",
            )
        except PayPalAPIError as e:
            logger.error("paypal_order_rejected", order_id=order.order_id, status=e.status_code, issues=e.issues)
            raise ValidationError(f"redirect provider rejected initiate: {e}", provider=self.tag.value)

        approval = next(
            (link["href"] for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not data.get("id") or not approval:
            raise ProviderUnavailable(self.tag.value, "initiate", "response missing order id or approval link",
                                      order_id=order.order_id)

        logger.info("paypal_order_created",
                    order_id=order.order_id,
                    provider_reference=data["id"],
                    status=data.get("status"),
                    amount=str(amounts.total))

        return ProviderSession(
            provider=self.tag,
            provider_reference=data["id"],
            redirect_url=approval,
            amount=amounts.total,
            currency=order.currency,
            substituted_amounts=substituted,
        )

    async def capture(self, provider_reference: str) -> CaptureResult:
        try:
            data = await self._call(
                "capture", "POST", f"/v2/checkout/orders/{provider_reference}/capture",
                request_id=f"capture-{provider_reference}",
            )
        except PayPalAPIError as e:
            if "ORDER_ALREADY_CAPTURED" in e.issues:
                logger.info("paypal_order_already_captured", provider_reference=provider_reference)
                return await self.lookup(provider_reference)
            if "ORDER_NOT_APPROVED" in e.issues:
                return CaptureResult(outcome=CaptureOutcome.PENDING, provider_reference=provider_reference,
                                     raw={"issues": e.issues})
            logger.warning("paypal_capture_rejected",
                           provider_reference=provider_reference,
                           status=e.status_code,
                           issues=e.issues)
            return CaptureResult(outcome=CaptureOutcome.FAILED, provider_reference=provider_reference,
                                 raw={"status_code": e.status_code, "issues": e.issues})

        outcome = capture_outcome(data)
        logger.info("paypal_capture_completed",
                    provider_reference=provider_reference,
                    status=data.get("status"),
                    outcome=outcome.value)
        return CaptureResult(outcome=outcome, provider_reference=provider_reference, raw={"status": data.get("status")})

    async def lookup(self, provider_reference: str) -> CaptureResult:
        try:
            data = await self._call("lookup", "GET", f"/v2/checkout/orders/{provider_reference}")
        except PayPalAPIError as e:
            if e.status_code == 404:
                return CaptureResult(outcome=CaptureOutcome.FAILED, provider_reference=provider_reference,
                                     raw={"status_code": 404})
            raise ProviderUnavailable(self.tag.value, "lookup", str(e))
        return CaptureResult(
            outcome=capture_outcome(data),
            provider_reference=provider_reference,
            raw={"status": data.get("status")},
        )

    async def verify_webhook(self, raw_payload: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        headers = lower_headers(headers)
        missing = [h for h in VERIFICATION_HEADERS.values() if not headers.get(h)]
        if missing:
            raise ProviderAuthenticityError(self.tag.value, f"missing headers: {', '.join(missing)}")
        if not self.config.webhook_id:
            raise ProviderAuthenticityError(self.tag.value, "webhook id not configured")

        try:
            event = json.loads(raw_payload)
        except ValueError:
            raise ProviderAuthenticityError(self.tag.value, "malformed payload")

        verification = {field: headers[header] for field, header in VERIFICATION_HEADERS.items()}
        verification.update({"webhook_id": self.config.webhook_id, "webhook_event": event})

        try:
            result = await self._call(
                "verify_webhook", "POST", "/v1/notifications/verify-webhook-signature",
                payload=verification,
            )
        except PayPalAPIError as e:
            raise ProviderAuthenticityError(self.tag.value, f"verification rejected ({e.status_code})")

        if result.get("verification_status") != "SUCCESS":
            raise ProviderAuthenticityError(self.tag.value, f"verification_status={result.get('verification_status')}")

        event_type = event.get("event_type", "unknown")
        kind, reference = paypal_events.map(event_type, event.get("resource", {}))
        fields = {}
        if event.get("create_time"):
            fields["occurred_at"] = event["create_time"]

        return VerifiedEvent(
            provider=self.tag,
            event_id=event.get("id", "unknown"),
            event_type=event_type,
            kind=kind,
            provider_reference=reference,
            payload=event,
            **fields,
        )

    async def close(self) -> None:
        await self._client.aclose()
