"""
Order Service
=============
Provider-agnostic checkout / capture / transition entrypoint.

Control flow:
    checkout -> Idempotency Guard -> Ledger (provisional order) -> Provider.initiate
    capture / webhook -> State Machine -> Ledger (CAS) -> Notification (fire-and-forget)

Depends only on the PaymentProvider capability set, never on a concrete
provider. Every mutation runs under the per-order lock and is written with a
compare-and-swap on ``version``.
"""

import hashlib
import json
import uuid
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from errors import DuplicateOrderError, InvalidTransition, OrderNotFound, ValidationError
from notifications.dispatcher import NotificationDispatcher, OrderNotification
from orders.idempotency import IIdempotencyStore
from orders.ledger import IAuditLog, IOrderRepository, emit_audit, update_with_retry
from orders.locks import KeyedLocks
from orders.models import (
    AuditEventType,
    Order,
    OrderStatus,
    ProviderTag,
    TransitionEvent,
)
from orders.pricing import price_checkout
from orders.review import InMemoryReviewQueue, IReviewQueue, flag_for_review
from orders.state_machine import ORDER_MACHINE, TransitionResult
from payments.base import CaptureOutcome, CaptureResult, PaymentProvider, ProviderRegistry, ProviderSession

logger = structlog.get_logger().bind(component="order_service")


# =============================================================================
# REQUEST / RESULT MODELS
# =============================================================================

class CheckoutItem(BaseModel):
    product_ref: str
    name: str
    unit_price: Decimal
    quantity: int


class CheckoutRequest(BaseModel):
    items: list[CheckoutItem] = Field(default_factory=list)
    shipping: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    total: Decimal
    provider: ProviderTag
    idempotency_key: Optional[str] = None
    owner_ref: Optional[str] = None
    guest_email: Optional[str] = None
    currency: str = "EUR"
    metadata: dict = Field(default_factory=dict)


class CheckoutResult(BaseModel):
    order: Order
    provider_session: Optional[dict] = None
    duplicate: bool = False

    def to_response(self) -> dict:
        return {
            "order_id": self.order.order_id,
            "status": self.order.status.value,
            "provider_session": self.provider_session,
            "duplicate": self.duplicate,
        }


def derive_idempotency_key(request: CheckoutRequest) -> str:
    """Stable key for clients that do not send one: same cart, same key."""
    canonical = {
        "owner": request.owner_ref or request.guest_email,
        "provider": request.provider.value,
        "items": [[i.product_ref, str(i.unit_price), i.quantity] for i in request.items],
        "amounts": [str(request.shipping), str(request.tax), str(request.discount), str(request.total)],
        "currency": request.currency,
    }
    digest = hashlib.sha256(json.dumps(canonical, sort_keys=True).encode()).hexdigest()
    return f"derived:{digest[:32]}"


# Capture outcomes that settle an order
CAPTURE_TARGETS = {
    CaptureOutcome.SUCCEEDED: OrderStatus.PAID,
    CaptureOutcome.FAILED: OrderStatus.FAILED,
    CaptureOutcome.CANCELLED: OrderStatus.CANCELLED,
}


# =============================================================================
# ORDER SERVICE
# =============================================================================

class OrderService:

    def __init__(
        self,
        orders: IOrderRepository,
        idempotency: IIdempotencyStore,
        providers: ProviderRegistry,
        audit: IAuditLog,
        notifier: NotificationDispatcher,
        locks: Optional[KeyedLocks] = None,
        max_write_attempts: int = 3,
        review_queue: Optional[IReviewQueue] = None,
    ):
        self.orders = orders
        self.idempotency = idempotency
        self.providers = providers
        self.audit = audit
        self.notifier = notifier
        self.locks = locks or KeyedLocks()
        self.max_write_attempts = max_write_attempts
        self.review_queue = review_queue or InMemoryReviewQueue()

    def _provider(self, tag) -> PaymentProvider:
        provider = self.providers.get(tag)
        if provider is None:
            raise ValidationError(f"Unsupported payment provider: {getattr(tag, 'value', tag)}",
                                  supported=self.providers.tags)
        return provider

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def checkout(self, request: CheckoutRequest, correlation_id: Optional[str] = None) -> CheckoutResult:
        """
        Turn a cart into a provisional order with an open provider session.

        Validation happens before any side effect. A repeated key returns the
        existing order with ``duplicate=True`` instead of creating another.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        provider = self._provider(request.provider)
        line_items, amounts = price_checkout(
            request.items,
            request.total,
            shipping=request.shipping,
            tax=request.tax,
            discount=request.discount,
        )
        key = request.idempotency_key or derive_idempotency_key(request)

        log = logger.bind(correlation_id=correlation_id, idempotency_key=key, provider=provider.tag.value)
        log.info("checkout_initiated", total=str(amounts.total), items=len(line_items))

        reservation = await self.idempotency.reserve(key)
        if not reservation.fresh:
            return await self._duplicate(reservation.existing_order_id, key)

        try:
            existing = await self.orders.get_by_idempotency_key(key)
            if existing and not self._resumable(existing):
                await self.idempotency.complete(key, existing.order_id)
                return await self._duplicate(existing.order_id, key)

            if existing:
                log.info("checkout_resumed", order_id=existing.order_id)
                order = existing
            else:
                order = Order(
                    order_id=Order.generate_order_id(),
                    owner_ref=request.owner_ref,
                    guest_email=request.guest_email,
                    line_items=line_items,
                    amounts=amounts,
                    currency=request.currency.upper(),
                    provider=provider.tag,
                    idempotency_key=key,
                    metadata=request.metadata,
                    status_history=[ORDER_MACHINE.initial_entry(OrderStatus.PENDING, reason="checkout")],
                )

            if provider.persists_before_initiate:
                if not existing:
                    order = await self._create(order, correlation_id)
                session = await provider.initiate(order)
                order = await self._open_session(order.order_id, session, correlation_id)
            else:
                session = await provider.initiate(order)
                result = ORDER_MACHINE.transition(order, self._session_event(session))
                order = result.entity.model_copy(update={"provider_session": session.public()})
                order = await self._create(order, correlation_id)

            await self.idempotency.complete(key, order.order_id)
        except BaseException:
            await self.idempotency.release(key)
            raise

        log.info("checkout_completed",
                 order_id=order.order_id,
                 provider_reference=order.provider_reference,
                 status=order.status.value)
        return CheckoutResult(order=order, provider_session=order.provider_session)

    def _resumable(self, order: Order) -> bool:
        # Persisted before initiate, but the provider call never confirmed
        return order.status == OrderStatus.PENDING and not order.provider_reference

    async def _duplicate(self, order_id: str, key: str) -> CheckoutResult:
        order = await self.orders.get(order_id, include_deleted=True)
        if order is None:
            raise OrderNotFound(order_id)
        logger.info("checkout_duplicate", order_id=order_id, idempotency_key=key)
        return CheckoutResult(order=order, provider_session=order.provider_session, duplicate=True)

    async def _create(self, order: Order, correlation_id: str) -> Order:
        try:
            order = await self.orders.create(order)
        except DuplicateOrderError:
            logger.error("order_create_conflict", order_id=order.order_id)
            raise
        await emit_audit(
            self.audit,
            AuditEventType.ORDER_CREATED,
            "order",
            order.order_id,
            correlation_id,
            new_state={"status": order.status.value, "total": str(order.amounts.total)},
            metadata={"provider": order.provider.value, "idempotency_key": order.idempotency_key},
        )
        return order

    @staticmethod
    def _session_event(session: ProviderSession) -> TransitionEvent:
        return TransitionEvent(
            target_status=OrderStatus.AWAITING_PAYMENT.value,
            provider_reference=session.provider_reference,
            reason="provider session opened",
            actor=f"provider:{session.provider.value}",
        )

    async def _open_session(self, order_id: str, session: ProviderSession, correlation_id: str) -> Order:
        updates = {"provider_session": session.public()}
        if session.substituted_amounts is not None:
            updates["amounts"] = session.substituted_amounts
        result = await self.transition(order_id, self._session_event(session), correlation_id, updates=updates)
        return result.entity

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def transition(
        self,
        order_id: str,
        event: TransitionEvent,
        correlation_id: Optional[str] = None,
        updates: Optional[dict] = None,
    ) -> TransitionResult:
        """
        Apply ``event`` through the state machine, serialized per order.

        Raises:
            InvalidTransition: edge not allowed (order unchanged).
            OrderNotFound: unknown order id.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        outcome = {}

        def mutate(current: Order) -> Optional[Order]:
            result = ORDER_MACHINE.transition(current, event)
            outcome["previous"] = result.previous_status
            if not result.applied:
                return None
            return result.entity.model_copy(update=updates) if updates else result.entity

        async with self.locks.hold(order_id):
            before, after = await update_with_retry(
                self.orders, order_id, mutate, max_attempts=self.max_write_attempts
            )

        if after is None:
            return TransitionResult(entity=before, previous_status=outcome["previous"], applied=False)

        # Committed: the notification and the result must survive an audit outage
        self.notifier.dispatch(OrderNotification.for_order(after, outcome["previous"], correlation_id))
        try:
            await emit_audit(
                self.audit,
                AuditEventType.ORDER_TRANSITIONED,
                "order",
                order_id,
                correlation_id,
                previous_state={"status": outcome["previous"]},
                new_state={"status": after.status.value, "provider_reference": after.provider_reference},
                metadata={"reason": event.reason, "evidence": event.raw_evidence},
                actor=event.actor,
            )
        except Exception as e:
            logger.error("transition_audit_failed",
                         order_id=order_id,
                         edge=f"{outcome['previous']}->{after.status.value}",
                         actor=event.actor,
                         evidence=event.raw_evidence,
                         correlation_id=correlation_id,
                         error=str(e),
                         exc_info=True)
        return TransitionResult(entity=after, previous_status=outcome["previous"], applied=True)

    async def capture(
        self,
        provider_tag,
        provider_reference: str,
        correlation_id: Optional[str] = None,
    ) -> tuple[Order, CaptureResult]:
        """
        Explicit capture path (redirect-style providers).

        A provider timeout raises ProviderUnavailable and leaves the order in
        ``awaiting_payment`` for a later reconciling event. Only an
        ``awaiting_payment`` order is ever sent to the provider.

        Raises:
            InvalidTransition: order is not awaiting payment, or it moved
                while the provider was capturing (the outcome is then queued
                for manual review).
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        provider = self._provider(provider_tag)
        order = await self.orders.get_by_provider_reference(provider.tag.value, provider_reference)
        if order is None:
            raise OrderNotFound(provider_reference, kind="order")

        if order.status in (OrderStatus.PAID, OrderStatus.REFUNDED):
            return order, CaptureResult(outcome=CaptureOutcome.SUCCEEDED, provider_reference=provider_reference)

        if order.status != OrderStatus.AWAITING_PAYMENT:
            logger.warning("capture_refused", order_id=order.order_id, status=order.status.value,
                           provider_reference=provider_reference, correlation_id=correlation_id)
            raise InvalidTransition(
                order.status.value,
                OrderStatus.PAID.value,
                reason="capture requires awaiting_payment",
                entity_id=order.order_id,
            )

        captured = await provider.capture(provider_reference)
        target = CAPTURE_TARGETS.get(captured.outcome)
        if target is None:
            logger.info("capture_pending", order_id=order.order_id, provider_reference=provider_reference)
            return order, captured

        try:
            result = await self.transition(
                order.order_id,
                TransitionEvent(
                    target_status=target.value,
                    provider_reference=provider_reference,
                    raw_evidence=captured.raw,
                    reason=f"capture {captured.outcome.value}",
                    actor=f"provider:{provider.tag.value}",
                ),
                correlation_id,
            )
        except InvalidTransition as e:
            await flag_for_review(
                self.review_queue,
                self.audit,
                source="capture",
                audit_event=AuditEventType.ORDER_FLAGGED,
                provider=provider.tag.value,
                event_id=f"capture:{provider_reference}",
                event_type=f"capture.{captured.outcome.value}",
                order=order,
                attempted_status=target.value,
                error=e,
                correlation_id=correlation_id,
                provider_reference=provider_reference,
                payload=captured.raw,
            )
            raise
        return result.entity, captured

    async def cancel(self, order_id: str, reason: Optional[str] = None, actor: str = "customer",
                     correlation_id: Optional[str] = None) -> Order:
        """Customer cancel of an unpaid order."""
        await self.orders.require(order_id)
        result = await self.transition(
            order_id,
            TransitionEvent(
                target_status=OrderStatus.CANCELLED.value,
                reason=reason or "cancelled by customer",
                actor=actor,
            ),
            correlation_id,
        )
        return result.entity

    async def get(self, order_id: str, include_deleted: bool = False) -> Order:
        return await self.orders.require(order_id, include_deleted=include_deleted)
