"""
Webhook Reconciler
==================
Turns authenticated provider events into order state transitions.

- Verification is mandatory: every event goes through the owning adapter's
  verify_webhook before anything is read from it
- Redelivery of an applied event is an acknowledged no-op
- Events for unknown provider references are rejected, nothing mutated
- Events that would move a settled order somewhere else are not applied;
  they land in the manual-review queue and are acknowledged
"""

import uuid
from typing import Mapping, Optional

import structlog
from pydantic import BaseModel

from errors import InvalidTransition, OrderNotFound, ProviderAuthenticityError, ValidationError
from orders.ledger import IAuditLog
from orders.models import AuditEventType, Order, OrderStatus, TransitionEvent
from orders.review import IReviewQueue, ReviewItem, flag_for_review
from orders.service import OrderService
from payments.base import EventKind, ProviderRegistry, VerifiedEvent

logger = structlog.get_logger().bind(component="webhook_reconciler")


EVENT_TARGETS = {
    EventKind.SUCCEEDED: OrderStatus.PAID,
    EventKind.FAILED: OrderStatus.FAILED,
    EventKind.CANCELLED: OrderStatus.CANCELLED,
    EventKind.REFUNDED: OrderStatus.REFUNDED,
}


# =============================================================================
# RECONCILER
# =============================================================================

class WebhookAck(BaseModel):
    status: str  # "applied", "duplicate", "ignored", "flagged_for_review"
    provider: str
    event_id: str
    event_type: str
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    review_id: Optional[str] = None


class WebhookReconciler:

    def __init__(
        self,
        service: OrderService,
        providers: ProviderRegistry,
        review_queue: IReviewQueue,
        audit: IAuditLog,
    ):
        self.service = service
        self.providers = providers
        self.review_queue = review_queue
        self.audit = audit

    async def handle(self, provider_tag: str, raw_payload: bytes, headers: Mapping[str, str]) -> WebhookAck:
        """
        Verify, map and apply one provider event.

        Raises:
            ProviderAuthenticityError: verification failed (no state change).
            OrderNotFound: unknown provider or provider reference.
        """
        correlation_id = str(uuid.uuid4())
        provider = self.providers.get(provider_tag)
        if provider is None:
            raise OrderNotFound(str(provider_tag), kind="provider")

        try:
            event = await provider.verify_webhook(raw_payload, headers)
        except ProviderAuthenticityError as e:
            logger.warning("webhook_signature_invalid",
                           security_event=True,
                           provider=provider.tag.value,
                           reason=e.reason,
                           correlation_id=correlation_id)
            raise

        log = logger.bind(correlation_id=correlation_id,
                          provider=event.provider.value,
                          event_id=event.event_id,
                          event_type=event.event_type)
        log.info("webhook_received", kind=event.kind.value, provider_reference=event.provider_reference)

        target = EVENT_TARGETS.get(event.kind)
        if target is None:
            return self._ack("ignored", event)

        if not event.provider_reference:
            log.warning("webhook_missing_reference")
            raise ValidationError(f"Event {event.event_id} carries no provider reference")

        order = await self.service.orders.get_by_provider_reference(event.provider.value, event.provider_reference)
        if order is None:
            log.warning("webhook_unknown_reference", provider_reference=event.provider_reference)
            raise OrderNotFound(event.provider_reference, kind="order")

        transition = TransitionEvent(
            target_status=target.value,
            provider_reference=event.provider_reference,
            occurred_at=event.occurred_at,
            raw_evidence={"event_id": event.event_id, "event_type": event.event_type, "payload": event.payload},
            reason=f"webhook {event.event_type}",
            actor=f"provider:{event.provider.value}",
        )
        try:
            result = await self.service.transition(order.order_id, transition, correlation_id)
        except InvalidTransition as e:
            review = await self._flag(event, order, target, e, correlation_id)
            return self._ack("flagged_for_review", event, order, review_id=review.review_id)

        status = "applied" if result.applied else "duplicate"
        log.info("webhook_processed", status=status, order_id=order.order_id, order_status=result.status.value)
        return self._ack(status, event, result.entity)

    async def _flag(
        self,
        event: VerifiedEvent,
        order: Order,
        target: OrderStatus,
        error: InvalidTransition,
        correlation_id: str,
    ) -> ReviewItem:
        return await flag_for_review(
            self.review_queue,
            self.audit,
            source="webhook",
            audit_event=AuditEventType.WEBHOOK_FLAGGED,
            provider=event.provider.value,
            event_id=event.event_id,
            event_type=event.event_type,
            order=order,
            attempted_status=target.value,
            error=error,
            correlation_id=correlation_id,
            provider_reference=event.provider_reference,
            payload=event.payload,
        )

    @staticmethod
    def _ack(status: str, event: VerifiedEvent, order: Optional[Order] = None, review_id: Optional[str] = None) -> WebhookAck:
        return WebhookAck(
            status=status,
            provider=event.provider.value,
            event_id=event.event_id,
            event_type=event.event_type,
            order_id=order.order_id if order else None,
            order_status=order.status.value if order else None,
            review_id=review_id,
        )
