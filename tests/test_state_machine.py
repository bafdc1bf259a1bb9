from decimal import Decimal

import pytest

from errors import InvalidTransition
from orders.models import Amounts, Booking, BookingStatus, LineItem, Order, OrderStatus, ProviderTag, TransitionEvent
from orders.state_machine import BOOKING_MACHINE, ORDER_MACHINE


def _order(status=OrderStatus.PENDING, provider_reference=None) -> Order:
    return Order(
        order_id="ORD-TEST0001",
        guest_email="guest@example.com",
        line_items=[LineItem(product_ref="SKU", name="Wig", unit_price=Decimal("10.00"),
                             quantity=1, line_total=Decimal("10.00"))],
        amounts=Amounts(subtotal=Decimal("10.00"), total=Decimal("10.00")),
        provider=ProviderTag.CARD,
        provider_reference=provider_reference,
        idempotency_key="k",
        status=status,
        status_history=[ORDER_MACHINE.initial_entry(status)],
    )


def test_allowed_edge_appends_one_history_entry():
    order = _order()
    result = ORDER_MACHINE.transition(order, TransitionEvent(target_status="awaiting_payment", provider_reference="pi_1"))

    assert result.applied
    assert result.previous_status == "pending"
    assert result.status == OrderStatus.AWAITING_PAYMENT
    assert result.entity.provider_reference == "pi_1"
    assert len(result.entity.status_history) == 2
    assert result.entity.version == order.version + 1
    # input entity is not mutated
    assert order.status == OrderStatus.PENDING


def test_same_status_is_noop():
    order = _order(OrderStatus.PAID, "pi_1")
    result = ORDER_MACHINE.transition(order, TransitionEvent(target_status="paid", provider_reference="pi_1"))

    assert not result.applied
    assert result.entity is order


@pytest.mark.parametrize("current,target", [
    (OrderStatus.PENDING, "paid"),
    (OrderStatus.FAILED, "paid"),
    (OrderStatus.REFUNDED, "paid"),
    (OrderStatus.CANCELLED, "awaiting_payment"),
])
def test_disallowed_edge_names_the_edge(current, target):
    with pytest.raises(InvalidTransition) as exc:
        ORDER_MACHINE.transition(_order(current, "pi_1"), TransitionEvent(target_status=target))

    assert exc.value.context["edge"] == f"{current.value}->{target}"


def test_terminal_to_terminal_requires_review():
    with pytest.raises(InvalidTransition) as exc:
        ORDER_MACHINE.transition(_order(OrderStatus.FAILED, "pi_1"), TransitionEvent(target_status="paid"))
    assert exc.value.requires_review


def test_paid_to_refunded_is_allowed():
    result = ORDER_MACHINE.transition(_order(OrderStatus.PAID, "pi_1"), TransitionEvent(target_status="refunded"))
    assert result.status == OrderStatus.REFUNDED


def test_provider_reference_mismatch_is_rejected():
    order = _order(OrderStatus.AWAITING_PAYMENT, "pi_1")
    with pytest.raises(InvalidTransition):
        ORDER_MACHINE.transition(order, TransitionEvent(target_status="paid", provider_reference="pi_other"))


def test_unknown_status_is_rejected():
    with pytest.raises(InvalidTransition):
        ORDER_MACHINE.transition(_order(), TransitionEvent(target_status="shipped"))


def test_history_timestamps_strictly_increase():
    order = _order()
    for target in ("awaiting_payment", "paid", "refunded"):
        order = ORDER_MACHINE.transition(order, TransitionEvent(target_status=target)).entity

    stamps = [entry.at for entry in order.status_history]
    assert all(a < b for a, b in zip(stamps, stamps[1:]))


def test_booking_lifecycle():
    booking = Booking(customer_name="Ada", customer_email="ada@example.com",
                      status_history=[BOOKING_MACHINE.initial_entry(BookingStatus.PENDING)])
    for target in ("confirmed", "in_progress", "completed"):
        booking = BOOKING_MACHINE.transition(booking, TransitionEvent(target_status=target)).entity

    assert booking.status == BookingStatus.COMPLETED
    assert BOOKING_MACHINE.is_terminal(booking.status)
    with pytest.raises(InvalidTransition):
        BOOKING_MACHINE.transition(booking, TransitionEvent(target_status="cancelled"))


def test_allowed_targets():
    assert ORDER_MACHINE.allowed_targets("paid") == frozenset({OrderStatus.REFUNDED})
    assert ORDER_MACHINE.can_transition("awaiting_payment", "cancelled")
    assert not ORDER_MACHINE.can_transition("pending", "paid")
