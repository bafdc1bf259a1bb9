# orders/__init__.py
# ============================================================================
# STOREFRONT FULFILLMENT - ORDERS MODULE
# ============================================================================
# Order/booking models, pricing, the shared state machine and the ledger
# ============================================================================

from orders.models import (
    Amounts,
    Booking,
    BookingStatus,
    LineItem,
    Order,
    OrderStatus,
    ProviderTag,
    TransitionEvent,
)

from orders.pricing import (
    AMOUNT_EPSILON,
    price_checkout,
    recompute_amounts,
)

from orders.state_machine import (
    BOOKING_MACHINE,
    ORDER_MACHINE,
    StateMachine,
    TransitionResult,
)

__all__ = [
    # Models
    "Amounts",
    "Booking",
    "BookingStatus",
    "LineItem",
    "Order",
    "OrderStatus",
    "ProviderTag",
    "TransitionEvent",
    # Pricing
    "AMOUNT_EPSILON",
    "price_checkout",
    "recompute_amounts",
    # State machine
    "BOOKING_MACHINE",
    "ORDER_MACHINE",
    "StateMachine",
    "TransitionResult",
]
