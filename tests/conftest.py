import json
from decimal import Decimal
from typing import Mapping, Optional

import pytest

from errors import ProviderAuthenticityError, ProviderUnavailable
from orders.ledger import InMemoryAuditLog, InMemoryBookingRepository, InMemoryOrderRepository
from orders.idempotency import InMemoryIdempotencyStore
from orders.locks import KeyedLocks
from orders.models import Amounts, LineItem, Order, ProviderTag
from orders.pricing import revalidate
from orders.review import InMemoryReviewQueue
from orders.service import CheckoutItem, CheckoutRequest, OrderService
from notifications.dispatcher import InMemoryNotificationDispatcher
from payments.base import (
    CaptureOutcome,
    CaptureResult,
    EventKind,
    PaymentProvider,
    ProviderRegistry,
    ProviderSession,
    VerifiedEvent,
    lower_headers,
)
from payments.config import ProviderCallConfig

FAKE_SIGNATURE = "valid-signature"

FAKE_EVENT_KINDS = {
    "payment.succeeded": EventKind.SUCCEEDED,
    "payment.failed": EventKind.FAILED,
    "payment.cancelled": EventKind.CANCELLED,
    "payment.refunded": EventKind.REFUNDED,
    "payment.pending": EventKind.PENDING,
}


class FakeProvider(PaymentProvider):
    """Scriptable provider: sessions are numbered, outcomes set per reference."""

    def __init__(self, tag: ProviderTag = ProviderTag.REDIRECT, persists_before_initiate: bool = True):
        self.tag = tag
        self.persists_before_initiate = persists_before_initiate
        self.initiated: list[Order] = []
        self.outcomes: dict[str, CaptureOutcome] = {}
        self.unavailable = False
        self.fail_initiate: Optional[Exception] = None
        self.lookup_errors: dict[str, Exception] = {}
        self.captured: list[str] = []
        self.on_capture = None
        self.closed = False

    async def initiate(self, order: Order) -> ProviderSession:
        if self.fail_initiate is not None:
            raise self.fail_initiate
        self.initiated.append(order)
        substituted = revalidate(order.line_items, order.amounts)
        amounts = substituted or order.amounts
        return ProviderSession(
            provider=self.tag,
            provider_reference=f"{self.tag.value}-ref-{len(self.initiated)}",
            redirect_url="https://pay.example/approve",
            amount=amounts.total,
            currency=order.currency,
            substituted_amounts=substituted,
        )

    async def capture(self, provider_reference: str) -> CaptureResult:
        self.captured.append(provider_reference)
        if self.on_capture is not None:
            await self.on_capture(provider_reference)
        return await self.lookup(provider_reference)

    async def lookup(self, provider_reference: str) -> CaptureResult:
        if self.unavailable:
            raise ProviderUnavailable(self.tag.value, "lookup", "timed out after 0.1s")
        if provider_reference in self.lookup_errors:
            raise self.lookup_errors[provider_reference]
        outcome = self.outcomes.get(provider_reference, CaptureOutcome.PENDING)
        return CaptureResult(outcome=outcome, provider_reference=provider_reference, raw={"fake": outcome.value})

    async def verify_webhook(self, raw_payload: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        if lower_headers(headers).get("x-fake-signature") != FAKE_SIGNATURE:
            raise ProviderAuthenticityError(self.tag.value, "bad signature")
        event = json.loads(raw_payload)
        return VerifiedEvent(
            provider=self.tag,
            event_id=event["id"],
            event_type=event["type"],
            kind=FAKE_EVENT_KINDS.get(event["type"], EventKind.IGNORED),
            provider_reference=event.get("reference"),
            payload=event,
        )

    async def close(self) -> None:
        self.closed = True


def fake_event(event_type: str, reference: Optional[str], event_id: str = "evt_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "reference": reference}).encode()


def checkout_request(**overrides) -> CheckoutRequest:
    """40.00 + 9.99 cart for a guest, paid through the redirect provider."""
    fields = {
        "items": [
            CheckoutItem(product_ref="WIG-001", name="Lace Front Wig", unit_price=Decimal("40.00"), quantity=1),
            CheckoutItem(product_ref="CARE-002", name="Wig Shampoo", unit_price=Decimal("9.99"), quantity=1),
        ],
        "total": Decimal("49.99"),
        "provider": ProviderTag.REDIRECT,
        "idempotency_key": "key-1",
        "guest_email": "guest@example.com",
    }
    fields.update(overrides)
    return CheckoutRequest(**fields)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def card_provider():
    return FakeProvider(ProviderTag.CARD, persists_before_initiate=False)


@pytest.fixture
def orders():
    return InMemoryOrderRepository()


@pytest.fixture
def bookings():
    return InMemoryBookingRepository()


@pytest.fixture
def audit():
    return InMemoryAuditLog()


@pytest.fixture
def notifier():
    return InMemoryNotificationDispatcher()


@pytest.fixture
def idempotency():
    return InMemoryIdempotencyStore()


@pytest.fixture
def locks():
    return KeyedLocks(timeout_seconds=5)


@pytest.fixture
def review_queue():
    return InMemoryReviewQueue()


@pytest.fixture
def service(orders, idempotency, provider, card_provider, audit, notifier, locks, review_queue):
    return OrderService(
        orders,
        idempotency,
        ProviderRegistry([provider, card_provider]),
        audit,
        notifier,
        locks,
        review_queue=review_queue,
    )


def make_order(amounts: Optional[Amounts] = None, **overrides) -> Order:
    """A 40.00 + 9.99 order as the ledger would hold it before initiate."""
    line_items = [
        LineItem(product_ref="WIG-001", name="Lace Front Wig", unit_price=Decimal("40.00"),
                 quantity=1, line_total=Decimal("40.00")),
        LineItem(product_ref="CARE-002", name="Wig Shampoo", unit_price=Decimal("9.99"),
                 quantity=1, line_total=Decimal("9.99")),
    ]
    fields = {
        "order_id": "ORD-TEST0001",
        "guest_email": "guest@example.com",
        "line_items": line_items,
        "amounts": amounts or Amounts(subtotal=Decimal("49.99"), total=Decimal("49.99")),
        "provider": ProviderTag.CARD,
        "idempotency_key": "key-1",
    }
    fields.update(overrides)
    return Order(**fields)


@pytest.fixture
def fast_calls():
    return ProviderCallConfig(timeout_seconds=1.0, max_attempts=2, backoff_base_seconds=0.001,
                              backoff_max_seconds=0.001)
