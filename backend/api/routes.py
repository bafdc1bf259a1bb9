"""
HTTP surface of the fulfillment core.

Handlers stay thin: parse, call one service operation, render. Domain errors
propagate to the exception handlers registered in ``api/server.py``.
"""

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from api.container import Container
from errors import IdempotencyConflict, PrivilegeDenied
from orders.service import CheckoutRequest

router = APIRouter()


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_container(request: Request) -> Container:
    return request.app.state.container


def _matches(supplied: Optional[str], expected: str) -> bool:
    return bool(expected) and bool(supplied) and secrets.compare_digest(supplied, expected)


class AdminContext(BaseModel):
    actor: str
    elevated: bool = False


def require_admin(
    container: Container = Depends(get_container),
    x_admin_key: Optional[str] = Header(default=None),
    x_admin_elevation: Optional[str] = Header(default=None),
    x_admin_actor: Optional[str] = Header(default=None),
) -> AdminContext:
    if not _matches(x_admin_key, container.config.ADMIN_API_KEY):
        raise PrivilegeDenied("Admin credentials required")
    return AdminContext(
        actor=x_admin_actor or "admin",
        elevated=_matches(x_admin_elevation, container.config.ADMIN_ELEVATION_KEY),
    )


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CancelRequest(BaseModel):
    reason: Optional[str] = None


class BulkDeleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ids: list[str] = Field(min_length=1)
    reason: Optional[str] = None
    hard_delete: bool = Field(default=False, alias="hardDelete")


class BookingRequest(BaseModel):
    customer_name: str = Field(min_length=1)
    customer_email: str = Field(min_length=3)
    quantity: int = Field(default=1, ge=1)
    notes: Optional[str] = None


class BookingStatusRequest(BaseModel):
    status: str
    reason: Optional[str] = None


def _order_view(order) -> dict:
    return order.model_dump(mode="json", exclude={"storage_id", "idempotency_key"})


# =============================================================================
# CHECKOUT & PAYMENTS
# =============================================================================

@router.post("/checkout", status_code=201)
async def checkout(
    body: CheckoutRequest,
    container: Container = Depends(get_container),
    idempotency_key: Optional[str] = Header(default=None),
):
    """
    Create a provisional order and open a provider session.

    A repeated idempotency key answers 409 with the existing order.
    """
    if not body.idempotency_key and idempotency_key:
        body = body.model_copy(update={"idempotency_key": idempotency_key})

    result = await container.service.checkout(body)
    if result.duplicate:
        conflict = IdempotencyConflict(result.order.idempotency_key, result.order.order_id)
        return JSONResponse(status_code=409, content={**conflict.to_dict(), **result.to_response()})
    return result.to_response()


@router.post("/payments/{provider}/capture/{provider_reference}")
async def capture_payment(provider: str, provider_reference: str, container: Container = Depends(get_container)):
    order, captured = await container.service.capture(provider, provider_reference)
    return {
        "order_id": order.order_id,
        "status": order.status.value,
        "outcome": captured.outcome.value,
    }


@router.post("/payments/{provider}/webhook")
async def payment_webhook(provider: str, request: Request, container: Container = Depends(get_container)):
    payload = await request.body()
    ack = await container.reconciler.handle(provider, payload, dict(request.headers))
    return ack.model_dump()


# =============================================================================
# ORDERS
# =============================================================================

@router.get("/orders/{order_id}")
async def get_order(order_id: str, container: Container = Depends(get_container)):
    return _order_view(await container.service.get(order_id))


@router.post("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: Optional[CancelRequest] = None,
    container: Container = Depends(get_container),
):
    order = await container.service.cancel(order_id, reason=body.reason if body else None)
    return {"order_id": order.order_id, "status": order.status.value}


@router.delete("/orders/{order_id}")
async def delete_order(
    order_id: str,
    hard_delete: bool = Query(default=False, alias="hardDelete"),
    reason: Optional[str] = Query(default=None),
    admin: AdminContext = Depends(require_admin),
    container: Container = Depends(get_container),
):
    outcome = await container.order_admin.delete(order_id, reason, admin.actor, hard_delete, admin.elevated)
    return outcome.to_dict()


@router.post("/orders/bulk-delete")
async def bulk_delete_orders(
    body: BulkDeleteRequest,
    admin: AdminContext = Depends(require_admin),
    container: Container = Depends(get_container),
):
    result = await container.order_admin.bulk_delete(body.ids, body.reason, admin.actor, body.hard_delete, admin.elevated)
    return result.to_dict()


@router.post("/orders/{order_id}/restore")
async def restore_order(
    order_id: str,
    admin: AdminContext = Depends(require_admin),
    container: Container = Depends(get_container),
):
    outcome = await container.order_admin.restore(order_id, admin.actor)
    return outcome.to_dict()


# =============================================================================
# ADMIN READS
# =============================================================================

@router.get("/admin/orders/{order_id}")
async def admin_get_order(
    order_id: str,
    admin: AdminContext = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return _order_view(await container.service.get(order_id, include_deleted=True))


@router.get("/admin/orders/{order_id}/audit")
async def admin_order_audit(
    order_id: str,
    admin: AdminContext = Depends(require_admin),
    container: Container = Depends(get_container),
):
    entries = await container.audit.get_by_entity("order", order_id)
    return {"order_id": order_id, "entries": [e.model_dump(mode="json") for e in entries]}


@router.get("/admin/reviews")
async def list_reviews(
    limit: int = Query(default=100, ge=1, le=500),
    admin: AdminContext = Depends(require_admin),
    container: Container = Depends(get_container),
):
    items = await container.review_queue.get_pending(limit)
    return {
        "items": [item.model_dump(mode="json") for item in items],
        "stats": await container.review_queue.get_stats(),
    }


@router.post("/admin/reviews/{review_id}/resolve")
async def resolve_review(
    review_id: str,
    admin: AdminContext = Depends(require_admin),
    container: Container = Depends(get_container),
):
    item = await container.review_queue.resolve(review_id, admin.actor)
    if item is None:
        return JSONResponse(status_code=404, content={"error": "not_found", "detail": f"Review not found: {review_id}"})
    return item.model_dump(mode="json")


# =============================================================================
# BOOKINGS
# =============================================================================

@router.post("/bookings", status_code=201)
async def create_booking(body: BookingRequest, container: Container = Depends(get_container)):
    booking = await container.bookings_service.create(
        body.customer_name, body.customer_email, notes=body.notes, quantity=body.quantity
    )
    return booking.model_dump(mode="json")


@router.put("/bookings/{booking_id}/status")
async def update_booking_status(
    booking_id: str,
    body: BookingStatusRequest,
    admin: AdminContext = Depends(require_admin),
    container: Container = Depends(get_container),
):
    result = await container.bookings_service.update_status(booking_id, body.status, admin.actor, body.reason)
    return {
        "booking_id": booking_id,
        "status": result.status.value,
        "previous_status": result.previous_status,
        "applied": result.applied,
    }


@router.delete("/bookings/{booking_id}")
async def delete_booking(
    booking_id: str,
    hard_delete: bool = Query(default=False, alias="hardDelete"),
    reason: Optional[str] = Query(default=None),
    admin: AdminContext = Depends(require_admin),
    container: Container = Depends(get_container),
):
    outcome = await container.booking_admin.delete(booking_id, reason, admin.actor, hard_delete, admin.elevated)
    return outcome.to_dict()


@router.post("/bookings/bulk-delete")
async def bulk_delete_bookings(
    body: BulkDeleteRequest,
    admin: AdminContext = Depends(require_admin),
    container: Container = Depends(get_container),
):
    result = await container.booking_admin.bulk_delete(body.ids, body.reason, admin.actor, body.hard_delete, admin.elevated)
    return result.to_dict()


@router.post("/bookings/{booking_id}/restore")
async def restore_booking(
    booking_id: str,
    admin: AdminContext = Depends(require_admin),
    container: Container = Depends(get_container),
):
    outcome = await container.booking_admin.restore(booking_id, admin.actor)
    return outcome.to_dict()
