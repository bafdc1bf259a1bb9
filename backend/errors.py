"""
Error Taxonomy
==============
Every failure the fulfillment core can surface to a caller.

Each exception carries a taxonomy ``code`` and the HTTP status the API layer
maps it to. Domain code raises these; only ``api/server.py`` turns them into
responses.
"""

from typing import Any, Optional


class FulfillmentError(Exception):
    """Base exception for all fulfillment errors."""

    code = "fulfillment_error"
    http_status = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        body = {"error": self.code, "detail": self.message}
        body.update({k: v for k, v in self.context.items() if v is not None})
        return body


class ValidationError(FulfillmentError):
    """Malformed or inconsistent amounts/items. Raised before any provider call."""

    code = "validation_error"
    http_status = 400


class IdempotencyConflict(FulfillmentError):
    """A checkout with this idempotency key already exists (or is in flight)."""

    code = "idempotency_conflict"
    http_status = 409

    def __init__(self, key: str, order_id: Optional[str] = None):
        if order_id:
            msg = f"Checkout already processed for key {key}: {order_id}"
        else:
            msg = f"Checkout for key {key} is still in progress"
        super().__init__(msg, order_id=order_id)
        self.key = key
        self.order_id = order_id


class ProviderAuthenticityError(FulfillmentError):
    """Webhook signature or verification failure."""

    code = "provider_authenticity_error"
    http_status = 400

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Webhook verification failed for {provider}: {reason}", provider=provider)
        self.provider = provider
        self.reason = reason


class ProviderUnavailable(FulfillmentError):
    """Timeout or 5xx from the external processor. Outcome unknown, order unchanged."""

    code = "provider_unavailable"
    http_status = 503

    def __init__(self, provider: str, operation: str, reason: str, order_id: Optional[str] = None):
        super().__init__(
            f"{provider} {operation} could not be confirmed: {reason}",
            provider=provider,
            operation=operation,
            order_id=order_id,
        )
        self.provider = provider
        self.operation = operation
        self.reason = reason
        self.order_id = order_id


class InvalidTransition(FulfillmentError):
    """Attempted state change violates the transition table or its guards."""

    code = "invalid_transition"
    http_status = 409

    def __init__(
        self,
        current: str,
        target: str,
        reason: Optional[str] = None,
        entity_id: Optional[str] = None,
        requires_review: bool = False,
    ):
        msg = f"Invalid transition {current} -> {target}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg, edge=f"{current}->{target}", entity_id=entity_id)
        self.current = current
        self.target = target
        self.reason = reason
        self.entity_id = entity_id
        self.requires_review = requires_review


class PrivilegeDenied(FulfillmentError):
    """Administrative operation attempted without the required elevation."""

    code = "privilege_denied"
    http_status = 403


class OrderNotFound(FulfillmentError):
    """No order (or booking) matches the given identifier."""

    code = "not_found"
    http_status = 404

    def __init__(self, identifier: str, kind: str = "order"):
        super().__init__(f"{kind.capitalize()} not found: {identifier}", identifier=identifier)
        self.identifier = identifier
        self.kind = kind


class StaleOrderError(FulfillmentError):
    """Compare-and-swap lost against a concurrent writer of the same entity."""

    code = "stale_write"
    http_status = 409

    def __init__(self, entity_id: str, expected_version: int):
        super().__init__(f"Concurrent update detected for {entity_id} (expected version {expected_version})")
        self.entity_id = entity_id
        self.expected_version = expected_version


class DuplicateOrderError(FulfillmentError):
    """Ledger uniqueness violation on idempotency key or provider reference."""

    code = "duplicate_order"
    http_status = 409

    def __init__(self, field: str, value: str):
        super().__init__(f"An order with {field}={value} already exists", field=field)
        self.field = field
        self.value = value
