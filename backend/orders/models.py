"""
Order Domain Models
===================
Pydantic models for the order aggregate and everything that travels with it:

- Order / LineItem / Amounts (the aggregate root and its value objects)
- StatusHistoryEntry (append-only lifecycle log)
- TransitionEvent (input to the state machine)
- Booking (second stateful entity sharing the state machine)
- AuditLogEntry (immutable trail of accepted changes)
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


CENTS = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def money(value) -> Decimal:
    """Quantize any numeric input to two decimal places."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ProviderTag(str, Enum):
    CARD = "card"
    WALLET = "wallet"
    REDIRECT = "redirect"


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_TRANSITIONED = "order.transitioned"
    ORDER_SOFT_DELETED = "order.soft_deleted"
    ORDER_HARD_DELETED = "order.hard_deleted"
    ORDER_RESTORED = "order.restored"
    BOOKING_TRANSITIONED = "booking.transitioned"
    BOOKING_SOFT_DELETED = "booking.soft_deleted"
    BOOKING_HARD_DELETED = "booking.hard_deleted"
    BOOKING_RESTORED = "booking.restored"
    WEBHOOK_FLAGGED = "webhook.flagged_for_review"
    ORDER_FLAGGED = "order.flagged_for_review"


# =============================================================================
# VALUE OBJECTS
# =============================================================================

class LineItem(BaseModel):
    """One priced cart line. ``line_total`` is always ``unit_price * quantity``."""

    model_config = ConfigDict(frozen=True)

    product_ref: str
    name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal

    @model_validator(mode="after")
    def _check_line_total(self) -> "LineItem":
        if money(self.unit_price * self.quantity) != money(self.line_total):
            raise ValueError(f"line_total mismatch for {self.product_ref}")
        return self


class Amounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: Decimal
    shipping: Decimal = Decimal("0.00")
    tax: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")
    total: Decimal

    def expected_total(self) -> Decimal:
        return money(self.subtotal + self.shipping + self.tax - self.discount)

    def is_consistent(self) -> bool:
        return self.expected_total() == money(self.total)


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str
    at: datetime
    reason: Optional[str] = None
    actor: str = "system"


class TransitionEvent(BaseModel):
    """A request to move an entity to ``target_status``."""

    target_status: str
    provider_reference: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)
    raw_evidence: dict = Field(default_factory=dict)
    reason: Optional[str] = None
    actor: str = "system"


# =============================================================================
# STATEFUL ENTITIES
# =============================================================================

class StatefulRecord(BaseModel):
    """Fields shared by every entity driven through the state machine."""

    status: str
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)

    deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    deletion_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1  # Optimistic locking

    @property
    def entity_id(self) -> str:
        raise NotImplementedError

    def soft_deleted(self, actor: str, reason: Optional[str]) -> "StatefulRecord":
        now = utcnow()
        return self.model_copy(update={
            "deleted": True,
            "deleted_at": now,
            "deleted_by": actor,
            "deletion_reason": reason,
            "updated_at": now,
            "version": self.version + 1,
        })

    def restored(self) -> "StatefulRecord":
        return self.model_copy(update={
            "deleted": False,
            "deleted_at": None,
            "deleted_by": None,
            "deletion_reason": None,
            "updated_at": utcnow(),
            "version": self.version + 1,
        })


class Order(StatefulRecord):
    """Core order aggregate"""

    order_id: str
    storage_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    owner_ref: Optional[str] = None
    guest_email: Optional[str] = None

    line_items: list[LineItem]
    amounts: Amounts
    currency: str = "EUR"

    status: OrderStatus = OrderStatus.PENDING

    provider: ProviderTag
    provider_reference: Optional[str] = None
    provider_session: Optional[dict] = None
    idempotency_key: str

    metadata: dict = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_owner(self) -> "Order":
        if not self.owner_ref and not self.guest_email:
            raise ValueError("guest_email is required for guest checkout")
        return self

    @property
    def entity_id(self) -> str:
        return self.order_id

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    @staticmethod
    def generate_order_id() -> str:
        # Random, not derived from the key: a key reused after its TTL must not collide
        return f"ORD-{uuid.uuid4().hex[:16].upper()}"


class Booking(StatefulRecord):
    """Service booking (wig renovation appointments in the storefront)."""

    booking_id: str = Field(default_factory=lambda: f"BKG-{uuid.uuid4().hex[:8].upper()}")
    customer_name: str
    customer_email: str
    service: str = "Wig Renovation"
    quantity: int = 1
    total_price: Decimal = Decimal("15.00")
    status: BookingStatus = BookingStatus.PENDING
    notes: Optional[str] = None

    @property
    def entity_id(self) -> str:
        return self.booking_id


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.PAID,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
})


# =============================================================================
# AUDIT
# =============================================================================

class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""

    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "order", "booking", "webhook"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"
