"""
Wallet Provider (Apple Pay / Google Pay via Stripe)
===================================================
Wallet tokens are charged as a manual-capture PaymentIntent.

- Explicit subtotal/shipping/tax/discount breakdown sent with the intent
- Breakdown re-validated before submission; on mismatch the recomputed
  total is charged and the discrepancy logged
- Funds are authorized at initiate and captured by the explicit capture call
"""

import structlog

from orders.models import Order, ProviderTag
from orders.pricing import revalidate
from payments.base import CaptureResult, ProviderSession, to_minor_units
from payments.card import CardProvider, intent_outcome

logger = structlog.get_logger().bind(component="wallet_provider")


class WalletProvider(CardProvider):
    tag = ProviderTag.WALLET
    persists_before_initiate = True
    capture_method = "manual"

    def _intent_metadata(self, order: Order) -> dict:
        metadata = super()._intent_metadata(order)
        metadata["wallet"] = order.metadata.get("wallet_type", "apple_pay")
        return metadata

    async def initiate(self, order: Order) -> ProviderSession:
        amounts = order.amounts
        substituted = revalidate(order.line_items, order.amounts)
        if substituted is not None:
            logger.warning("wallet_breakdown_mismatch",
                           order_id=order.order_id,
                           stored_total=str(order.amounts.total),
                           recomputed_total=str(substituted.total))
            amounts = substituted

        metadata = self._intent_metadata(order)
        metadata.update({
            "subtotal": str(amounts.subtotal),
            "shipping": str(amounts.shipping),
            "tax": str(amounts.tax),
            "discount": str(amounts.discount),
        })
        params = {
            "amount": to_minor_units(amounts.total),
            "currency": order.currency.lower(),
            "capture_method": self.capture_method,
            "metadata": metadata,
            "idempotency_key": f"intent:{order.idempotency_key}",
        }

        token = order.metadata.get("wallet_token")
        if token:
            params.update({
                "payment_method_data": {"type": "card", "card": {"token": token}},
                "confirm": True,
                "return_url": f"{self.config.frontend_url}/order-confirmation?order_id={order.order_id}",
            })
        else:
            params["payment_method_types"] = ["card"]

        if order.guest_email:
            params["receipt_email"] = order.guest_email

        intent = await self._call("initiate", self._stripe.PaymentIntent.create, order_id=order.order_id, **params)

        logger.info("wallet_intent_created",
                    order_id=order.order_id,
                    provider_reference=intent["id"],
                    status=intent.get("status"),
                    amount=str(amounts.total))

        return ProviderSession(
            provider=self.tag,
            provider_reference=intent["id"],
            client_secret=intent.get("client_secret"),
            amount=amounts.total,
            currency=order.currency,
            substituted_amounts=substituted,
        )

    async def capture(self, provider_reference: str) -> CaptureResult:
        intent = await self._call("lookup", self._stripe.PaymentIntent.retrieve, provider_reference)
        if intent["status"] == "requires_capture":
            intent = await self._call(
                "capture",
                self._stripe.PaymentIntent.capture,
                provider_reference,
                idempotency_key=f"capture:{provider_reference}",
            )
            logger.info("wallet_payment_captured", provider_reference=provider_reference, status=intent["status"])

        return CaptureResult(
            outcome=intent_outcome(intent["status"]),
            provider_reference=provider_reference,
            raw={"status": intent["status"]},
        )
