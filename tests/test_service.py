import asyncio
from decimal import Decimal

import pytest

from conftest import checkout_request
from errors import InvalidTransition, OrderNotFound, ProviderUnavailable, ValidationError
from orders.models import AuditEventType, OrderStatus, ProviderTag, TransitionEvent
from orders.service import CheckoutItem
from payments.base import CaptureOutcome


@pytest.mark.asyncio
async def test_checkout_persists_before_initiate(service, orders, provider, audit):
    result = await service.checkout(checkout_request())

    order = result.order
    assert not result.duplicate
    assert order.amounts.total == Decimal("49.99")
    assert order.status == OrderStatus.AWAITING_PAYMENT
    assert order.provider_reference == "redirect-ref-1"
    assert result.provider_session["redirect_url"] == "https://pay.example/approve"
    assert [h.status for h in order.status_history] == ["pending", "awaiting_payment"]
    assert (await orders.get(order.order_id)).version == order.version

    events = [e.event_type for e in await audit.get_by_entity("order", order.order_id)]
    assert events == [AuditEventType.ORDER_CREATED, AuditEventType.ORDER_TRANSITIONED]


@pytest.mark.asyncio
async def test_checkout_card_records_order_after_intent(service, orders, card_provider):
    result = await service.checkout(checkout_request(provider=ProviderTag.CARD))

    assert result.order.provider_reference == "card-ref-1"
    assert result.order.status == OrderStatus.AWAITING_PAYMENT
    assert [h.status for h in result.order.status_history] == ["pending", "awaiting_payment"]
    assert await orders.get(result.order.order_id) is not None


@pytest.mark.asyncio
async def test_checkout_total_mismatch_persists_nothing(service, orders, provider, idempotency):
    with pytest.raises(ValidationError):
        await service.checkout(checkout_request(total=Decimal("45.00")))

    assert await orders.all() == []
    assert provider.initiated == []
    assert await idempotency.get_record("key-1") is None


@pytest.mark.asyncio
async def test_unsupported_provider_is_rejected(orders, idempotency, audit, notifier, locks, card_provider):
    from orders.service import OrderService
    from payments.base import ProviderRegistry

    service = OrderService(orders, idempotency, ProviderRegistry([card_provider]), audit, notifier, locks)
    with pytest.raises(ValidationError):
        await service.checkout(checkout_request())


@pytest.mark.asyncio
async def test_repeated_key_returns_existing_order(service, orders, provider):
    first = await service.checkout(checkout_request())
    second = await service.checkout(checkout_request())

    assert second.duplicate
    assert second.order.order_id == first.order.order_id
    assert len(await orders.all()) == 1
    assert len(provider.initiated) == 1


@pytest.mark.asyncio
async def test_concurrent_identical_checkouts_create_one_order(service, orders, provider):
    results = await asyncio.gather(*[service.checkout(checkout_request()) for _ in range(5)])

    assert len({r.order.order_id for r in results}) == 1
    assert sum(not r.duplicate for r in results) == 1
    assert len(await orders.all()) == 1
    assert len(provider.initiated) == 1


@pytest.mark.asyncio
async def test_provider_failure_releases_key_and_retry_resumes(service, orders, provider, idempotency):
    provider.fail_initiate = ProviderUnavailable("redirect", "initiate", "timed out after 10s")
    with pytest.raises(ProviderUnavailable):
        await service.checkout(checkout_request())

    stranded = (await orders.all())[0]
    assert stranded.status == OrderStatus.PENDING
    assert await idempotency.get_record("key-1") is None

    provider.fail_initiate = None
    result = await service.checkout(checkout_request())

    assert not result.duplicate
    assert result.order.order_id == stranded.order_id
    assert result.order.status == OrderStatus.AWAITING_PAYMENT
    assert len(await orders.all()) == 1


@pytest.mark.asyncio
async def test_card_failure_persists_nothing(service, orders, card_provider):
    card_provider.fail_initiate = ProviderUnavailable("card", "initiate", "timed out")
    with pytest.raises(ProviderUnavailable):
        await service.checkout(checkout_request(provider=ProviderTag.CARD))

    assert await orders.all() == []


@pytest.mark.asyncio
async def test_derived_key_deduplicates_identical_carts(service, orders):
    first = await service.checkout(checkout_request(idempotency_key=None))
    second = await service.checkout(checkout_request(idempotency_key=None))

    assert second.duplicate
    assert first.order.idempotency_key.startswith("derived:")
    assert len(await orders.all()) == 1


@pytest.mark.asyncio
async def test_capture_settles_order_and_notifies(service, provider, notifier):
    order = (await service.checkout(checkout_request())).order
    provider.outcomes[order.provider_reference] = CaptureOutcome.SUCCEEDED

    settled, captured = await service.capture("redirect", order.provider_reference)
    await notifier.drain()

    assert captured.outcome == CaptureOutcome.SUCCEEDED
    assert settled.status == OrderStatus.PAID
    assert [n.event_type for n in notifier.sent][-1] == "order.paid"


@pytest.mark.asyncio
async def test_capture_pending_leaves_order_unchanged(service, provider):
    order = (await service.checkout(checkout_request())).order

    unchanged, captured = await service.capture("redirect", order.provider_reference)

    assert captured.outcome == CaptureOutcome.PENDING
    assert unchanged.status == OrderStatus.AWAITING_PAYMENT


@pytest.mark.asyncio
async def test_capture_of_paid_order_is_idempotent(service, provider):
    order = (await service.checkout(checkout_request())).order
    provider.outcomes[order.provider_reference] = CaptureOutcome.SUCCEEDED
    await service.capture("redirect", order.provider_reference)
    # provider would now say something else; a paid order is not asked again
    provider.outcomes[order.provider_reference] = CaptureOutcome.FAILED

    again, captured = await service.capture("redirect", order.provider_reference)

    assert captured.outcome == CaptureOutcome.SUCCEEDED
    assert again.status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_capture_unknown_reference(service):
    with pytest.raises(OrderNotFound):
        await service.capture("redirect", "nope")


@pytest.mark.asyncio
async def test_redelivered_transition_is_noop(service, notifier):
    order = (await service.checkout(checkout_request())).order
    event = TransitionEvent(target_status="paid", provider_reference=order.provider_reference)

    first = await service.transition(order.order_id, event)
    second = await service.transition(order.order_id, event)
    await notifier.drain()

    assert first.applied
    assert not second.applied
    assert len(second.entity.status_history) == len(first.entity.status_history)
    assert [n.event_type for n in notifier.sent].count("order.paid") == 1


@pytest.mark.asyncio
async def test_concurrent_conflicting_transitions_apply_one(service):
    order = (await service.checkout(checkout_request())).order

    results = await asyncio.gather(
        service.transition(order.order_id, TransitionEvent(target_status="paid")),
        service.transition(order.order_id, TransitionEvent(target_status="failed")),
        return_exceptions=True,
    )

    applied = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InvalidTransition)]
    assert len(applied) == 1
    assert len(rejected) == 1
    final = await service.get(order.order_id)
    assert final.status == applied[0].status
    assert len(final.status_history) == 3


@pytest.mark.asyncio
async def test_history_timestamps_strictly_increase(service):
    order = (await service.checkout(checkout_request())).order
    await service.transition(order.order_id, TransitionEvent(target_status="paid"))
    await service.transition(order.order_id, TransitionEvent(target_status="refunded"))

    history = (await service.get(order.order_id)).status_history
    assert [h.status for h in history] == ["pending", "awaiting_payment", "paid", "refunded"]
    assert all(a.at < b.at for a, b in zip(history, history[1:]))


@pytest.mark.asyncio
async def test_cancel_unpaid_order(service):
    order = (await service.checkout(checkout_request())).order

    cancelled = await service.cancel(order.order_id, reason="changed my mind")

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.status_history[-1].reason == "changed my mind"


@pytest.mark.asyncio
async def test_cancel_paid_order_is_rejected(service):
    order = (await service.checkout(checkout_request())).order
    await service.transition(order.order_id, TransitionEvent(target_status="paid"))

    with pytest.raises(InvalidTransition):
        await service.cancel(order.order_id)
    assert (await service.get(order.order_id)).status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_notification_failure_does_not_affect_transition(orders, idempotency, provider, audit, locks):
    from notifications.dispatcher import NotificationDispatcher
    from orders.service import OrderService
    from payments.base import ProviderRegistry

    class BrokenDispatcher(NotificationDispatcher):
        async def send(self, notification):
            raise ConnectionError("smtp down")

    notifier = BrokenDispatcher()
    service = OrderService(orders, idempotency, ProviderRegistry([provider]), audit, notifier, locks)
    order = (await service.checkout(checkout_request())).order

    result = await service.transition(order.order_id, TransitionEvent(target_status="paid"))
    await notifier.drain()

    assert result.applied
    assert (await service.get(order.order_id)).status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_shipping_breakdown_end_to_end(service, provider):
    from conftest import FAKE_SIGNATURE, fake_event
    from orders.review import InMemoryReviewQueue
    from payments.webhooks import WebhookReconciler

    request = checkout_request(
        items=[CheckoutItem(product_ref="WIG-001", name="Lace Front Wig", unit_price=Decimal("40.00"), quantity=1)],
        shipping=Decimal("9.99"),
    )
    order = (await service.checkout(request)).order
    assert order.amounts.total == Decimal("49.99")
    assert [h.status for h in order.status_history] == ["pending", "awaiting_payment"]

    reconciler = WebhookReconciler(service, service.providers, InMemoryReviewQueue(), service.audit)
    payload = fake_event("payment.succeeded", order.provider_reference)
    signed = {"X-Fake-Signature": FAKE_SIGNATURE}
    await reconciler.handle("redirect", payload, signed)
    await reconciler.handle("redirect", payload, signed)

    paid = await service.get(order.order_id)
    assert paid.status == OrderStatus.PAID
    assert len(paid.status_history) == 3
    assert paid.status_history[-1].status == paid.status.value


@pytest.mark.asyncio
async def test_items_summing_below_declared_total_are_rejected(service, orders):
    request = checkout_request(
        items=[CheckoutItem(product_ref="WIG-001", name="Lace Front Wig", unit_price=Decimal("45.00"), quantity=1)],
        total=Decimal("49.99"),
    )

    with pytest.raises(ValidationError):
        await service.checkout(request)
    assert await orders.all() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("settled", ["cancelled", "failed"])
async def test_capture_of_settled_unpaid_order_never_reaches_provider(service, provider, settled):
    order = (await service.checkout(checkout_request())).order
    await service.transition(order.order_id, TransitionEvent(target_status=settled))
    provider.outcomes[order.provider_reference] = CaptureOutcome.SUCCEEDED

    with pytest.raises(InvalidTransition):
        await service.capture("redirect", order.provider_reference)

    assert provider.captured == []
    assert (await service.get(order.order_id)).status.value == settled


@pytest.mark.asyncio
async def test_capture_racing_a_cancel_is_flagged_for_review(service, provider, review_queue, audit):
    order = (await service.checkout(checkout_request())).order
    provider.outcomes[order.provider_reference] = CaptureOutcome.SUCCEEDED

    async def cancel_meanwhile(reference):
        await service.cancel(order.order_id)

    provider.on_capture = cancel_meanwhile

    with pytest.raises(InvalidTransition):
        await service.capture("redirect", order.provider_reference)

    pending = await review_queue.get_pending()
    assert len(pending) == 1
    assert pending[0].current_status == "cancelled"
    assert pending[0].attempted_status == "paid"
    assert pending[0].event_type == "capture.succeeded"
    flagged = await audit.get_by_entity("capture", order.order_id)
    assert flagged[0].event_type == AuditEventType.ORDER_FLAGGED
    assert flagged[0].metadata["terminal_conflict"] is True


@pytest.mark.asyncio
async def test_capture_cancelled_outcome_cancels_order(service, provider):
    order = (await service.checkout(checkout_request())).order
    provider.outcomes[order.provider_reference] = CaptureOutcome.CANCELLED

    cancelled, captured = await service.capture("redirect", order.provider_reference)

    assert captured.outcome == CaptureOutcome.CANCELLED
    assert cancelled.status == OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_audit_outage_after_commit_keeps_transition_and_notification(service, audit, notifier, monkeypatch):
    order = (await service.checkout(checkout_request())).order

    async def audit_down(entry):
        raise ConnectionError("audit db down")

    monkeypatch.setattr(audit, "append", audit_down)
    event = TransitionEvent(target_status="paid", provider_reference=order.provider_reference)

    result = await service.transition(order.order_id, event)
    redelivered = await service.transition(order.order_id, event)
    await notifier.drain()

    assert result.applied
    assert not redelivered.applied
    assert (await service.get(order.order_id)).status == OrderStatus.PAID
    assert [n.event_type for n in notifier.sent].count("order.paid") == 1


@pytest.mark.asyncio
async def test_reused_key_after_purge_returns_existing_order(service, idempotency, orders):
    from datetime import timedelta

    from orders.models import utcnow

    first = (await service.checkout(checkout_request())).order
    record = await idempotency.get_record("key-1")
    record.expires_at = utcnow() - timedelta(seconds=1)
    assert await idempotency.purge_expired() == 1

    again = await service.checkout(checkout_request())
    other = (await service.checkout(checkout_request(idempotency_key="key-2"))).order

    assert again.duplicate
    assert again.order.order_id == first.order_id
    assert other.order_id != first.order_id
    assert len(await orders.all()) == 2
