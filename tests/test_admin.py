import pytest

from conftest import checkout_request
from errors import InvalidTransition, OrderNotFound, PrivilegeDenied
from orders.admin import BookingService, booking_admin, order_admin
from orders.models import AuditEventType, BookingStatus, OrderStatus, TransitionEvent


@pytest.fixture
def admin(orders, audit, locks):
    return order_admin(orders, audit, locks)


@pytest.fixture
def booking_service(bookings, audit, locks):
    return BookingService(bookings, audit, locks)


async def _order_in(service, status, key="key-1"):
    order = (await service.checkout(checkout_request(idempotency_key=key))).order
    if status != OrderStatus.AWAITING_PAYMENT:
        order = (await service.transition(order.order_id, TransitionEvent(target_status=status.value))).entity
    return order


@pytest.mark.asyncio
async def test_soft_delete_cancelled_order(service, admin, orders, audit):
    order = await _order_in(service, OrderStatus.CANCELLED)

    outcome = await admin.delete(order.order_id, "duplicate cart", actor="admin@example.com")

    assert outcome.action == "soft_deleted"
    stored = await orders.get(order.order_id, include_deleted=True)
    assert stored.deleted
    assert stored.deleted_by == "admin@example.com"
    assert stored.deletion_reason == "duplicate cart"
    assert stored.status == OrderStatus.CANCELLED
    assert stored.status_history == order.status_history
    assert await orders.get(order.order_id) is None
    events = [e.event_type for e in await audit.get_by_entity("order", order.order_id)]
    assert AuditEventType.ORDER_SOFT_DELETED in events


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [OrderStatus.AWAITING_PAYMENT, OrderStatus.PAID])
async def test_only_cancelled_orders_can_be_soft_deleted(service, admin, orders, status):
    order = await _order_in(service, status)

    with pytest.raises(InvalidTransition):
        await admin.delete(order.order_id, None, actor="admin")

    assert not (await orders.get(order.order_id)).deleted


@pytest.mark.asyncio
async def test_soft_delete_twice_is_noop(service, admin):
    order = await _order_in(service, OrderStatus.CANCELLED)
    await admin.delete(order.order_id, None, actor="admin")

    outcome = await admin.delete(order.order_id, None, actor="admin")

    assert outcome.action == "already_deleted"


@pytest.mark.asyncio
async def test_hard_delete_requires_elevation(service, admin, orders):
    order = await _order_in(service, OrderStatus.PAID)

    with pytest.raises(PrivilegeDenied):
        await admin.delete(order.order_id, "gdpr", actor="admin", hard_delete=True)
    assert await orders.get(order.order_id) is not None

    outcome = await admin.delete(order.order_id, "gdpr", actor="admin", hard_delete=True, elevated=True)

    assert outcome.action == "hard_deleted"
    assert await orders.get(order.order_id, include_deleted=True) is None


@pytest.mark.asyncio
async def test_restore_keeps_status_and_history(service, admin, orders):
    order = await _order_in(service, OrderStatus.CANCELLED)
    await admin.delete(order.order_id, None, actor="admin")

    outcome = await admin.restore(order.order_id, actor="admin")

    assert outcome.action == "restored"
    restored = await orders.get(order.order_id)
    assert restored.status == OrderStatus.CANCELLED
    assert restored.status_history == order.status_history
    assert restored.deleted_at is None


@pytest.mark.asyncio
async def test_restore_of_live_order_is_noop(service, admin):
    order = await _order_in(service, OrderStatus.CANCELLED)

    assert (await admin.restore(order.order_id, actor="admin")).action == "not_deleted"


@pytest.mark.asyncio
async def test_bulk_delete_reports_rejections(service, admin):
    cancelled = await _order_in(service, OrderStatus.CANCELLED, key="k-cancelled")
    paid = await _order_in(service, OrderStatus.PAID, key="k-paid")

    result = await admin.bulk_delete([cancelled.order_id, paid.order_id, "ORD-MISSING"], "cleanup", actor="admin")

    assert [p["id"] for p in result.processed] == [cancelled.order_id]
    rejected = {r["id"]: r["error"] for r in result.rejected}
    assert rejected == {paid.order_id: "invalid_transition", "ORD-MISSING": "not_found"}


@pytest.mark.asyncio
async def test_bulk_hard_delete_without_elevation_is_denied_up_front(service, admin, orders):
    order = await _order_in(service, OrderStatus.CANCELLED)

    with pytest.raises(PrivilegeDenied):
        await admin.bulk_delete([order.order_id], None, actor="admin", hard_delete=True)
    assert await orders.get(order.order_id) is not None


@pytest.mark.asyncio
async def test_delete_unknown_order(admin):
    with pytest.raises(OrderNotFound):
        await admin.delete("ORD-NOPE", None, actor="admin")


@pytest.mark.asyncio
async def test_booking_lifecycle_and_soft_delete(booking_service, bookings, audit, locks):
    manager = booking_admin(bookings, audit, locks)
    booking = await booking_service.create("Ada Lovelace", "ada@example.com", notes="curly wig")

    with pytest.raises(InvalidTransition):
        await manager.delete(booking.booking_id, None, actor="admin")

    result = await booking_service.update_status(booking.booking_id, "cancelled", actor="admin", reason="no show")
    assert result.applied
    assert result.status == BookingStatus.CANCELLED

    outcome = await manager.delete(booking.booking_id, None, actor="admin")
    assert outcome.action == "soft_deleted"
    assert (await bookings.get(booking.booking_id, include_deleted=True)).status == BookingStatus.CANCELLED


@pytest.mark.asyncio
async def test_booking_invalid_status_change(booking_service):
    booking = await booking_service.create("Ada Lovelace", "ada@example.com")

    with pytest.raises(InvalidTransition):
        await booking_service.update_status(booking.booking_id, "completed", actor="admin")

    noop = await booking_service.update_status(booking.booking_id, "pending", actor="admin")
    assert not noop.applied
