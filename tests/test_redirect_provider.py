import json
from decimal import Decimal

import httpx
import pytest

from conftest import make_order
from errors import ProviderAuthenticityError, ProviderUnavailable
from orders.models import Amounts, ProviderTag
from payments.base import CaptureOutcome, EventKind
from payments.config import PayPalConfig, detect_paypal_environment
from payments.redirect import RedirectProvider

BASE = "https://api-m.sandbox.paypal.com"

WEBHOOK_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2026-01-01T00:00:00Z",
}


class FakePayPal:
    """Routes requests by (method, path); records everything it sees."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes = {
            ("POST", "/v1/oauth2/token"): (200, {"access_token": "A21-token", "expires_in": 32400}),
            ("POST", "/v2/checkout/orders"): (201, {
                "id": "PP-ORDER-1",
                "status": "CREATED",
                "links": [{"rel": "self", "href": f"{BASE}/v2/checkout/orders/PP-ORDER-1"},
                          {"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=PP-ORDER-1"}],
            }),
            ("POST", "/v2/checkout/orders/PP-ORDER-1/capture"): (201, {
                "id": "PP-ORDER-1",
                "status": "COMPLETED",
                "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED"}]}}],
            }),
            ("GET", "/v2/checkout/orders/PP-ORDER-1"): (200, {"id": "PP-ORDER-1", "status": "COMPLETED"}),
            ("POST", "/v1/notifications/verify-webhook-signature"): (200, {"verification_status": "SUCCESS"}),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.routes.get((request.method, request.url.path), (404, {"name": "RESOURCE_NOT_FOUND"}))
        return httpx.Response(status, json=body)

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def paypal():
    return FakePayPal()


@pytest.fixture
def redirect(paypal, fast_calls):
    config = PayPalConfig(client_id="client", client_secret="secret", webhook_id="WH-ID",
                          frontend_url="https://shop.example")
    client = httpx.AsyncClient(transport=httpx.MockTransport(paypal.handler))
    return RedirectProvider(config, fast_calls, client=client)


def _order(**overrides):
    return make_order(provider=ProviderTag.REDIRECT, **overrides)


@pytest.mark.asyncio
async def test_initiate_creates_order_with_breakdown(redirect, paypal):
    session = await redirect.initiate(_order())

    assert session.provider_reference == "PP-ORDER-1"
    assert session.redirect_url.startswith("https://www.sandbox.paypal.com/checkoutnow")
    request = paypal.calls("/v2/checkout/orders")[0]
    assert request.headers["PayPal-Request-Id"] == "order-key-1"
    assert request.headers["Authorization"] == "Bearer A21-token"
    unit = json.loads(request.content)["purchase_units"][0]
    assert unit["amount"]["value"] == "49.99"
    assert unit["amount"]["breakdown"]["item_total"]["value"] == "49.99"
    assert [i["quantity"] for i in unit["items"]] == ["1", "1"]
    assert unit["custom_id"] == "ORD-TEST0001"


@pytest.mark.asyncio
async def test_initiate_substitutes_recomputed_total(redirect, paypal):
    stale = Amounts(subtotal=Decimal("40.00"), total=Decimal("40.00"))

    session = await redirect.initiate(_order(amounts=stale))

    unit = json.loads(paypal.calls("/v2/checkout/orders")[0].content)["purchase_units"][0]
    assert unit["amount"]["value"] == "49.99"
    assert session.substituted_amounts.total == Decimal("49.99")


@pytest.mark.asyncio
async def test_access_token_is_cached(redirect, paypal):
    await redirect.initiate(_order())
    await redirect.capture("PP-ORDER-1")

    assert len(paypal.calls("/v1/oauth2/token")) == 1


@pytest.mark.asyncio
async def test_capture_completed(redirect, paypal):
    result = await redirect.capture("PP-ORDER-1")

    assert result.outcome == CaptureOutcome.SUCCEEDED
    assert paypal.calls("/v2/checkout/orders/PP-ORDER-1/capture")[0].headers["PayPal-Request-Id"] == "capture-PP-ORDER-1"


@pytest.mark.asyncio
async def test_capture_already_captured_falls_back_to_lookup(redirect, paypal):
    paypal.routes[("POST", "/v2/checkout/orders/PP-ORDER-1/capture")] = (
        422, {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]})

    result = await redirect.capture("PP-ORDER-1")

    assert result.outcome == CaptureOutcome.SUCCEEDED
    assert len(paypal.calls("/v2/checkout/orders/PP-ORDER-1")) == 1


@pytest.mark.asyncio
async def test_capture_not_approved_is_pending(redirect, paypal):
    paypal.routes[("POST", "/v2/checkout/orders/PP-ORDER-1/capture")] = (
        422, {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_NOT_APPROVED"}]})

    assert (await redirect.capture("PP-ORDER-1")).outcome == CaptureOutcome.PENDING


@pytest.mark.asyncio
async def test_capture_server_errors_raise_unavailable(redirect, paypal):
    paypal.routes[("POST", "/v2/checkout/orders/PP-ORDER-1/capture")] = (503, {"name": "SERVICE_UNAVAILABLE"})

    with pytest.raises(ProviderUnavailable):
        await redirect.capture("PP-ORDER-1")
    assert len(paypal.calls("/v2/checkout/orders/PP-ORDER-1/capture")) == 2


@pytest.mark.asyncio
async def test_lookup_unknown_order_is_failed(redirect):
    assert (await redirect.lookup("PP-MISSING")).outcome == CaptureOutcome.FAILED


@pytest.mark.asyncio
async def test_lookup_voided_order_is_cancelled(redirect, paypal):
    paypal.routes[("GET", "/v2/checkout/orders/PP-ORDER-1")] = (200, {"id": "PP-ORDER-1", "status": "VOIDED"})

    assert (await redirect.lookup("PP-ORDER-1")).outcome == CaptureOutcome.CANCELLED


@pytest.mark.asyncio
async def test_verify_webhook(redirect, paypal):
    payload = json.dumps({
        "id": "WH-EVT-1",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "create_time": "2026-01-01T00:00:05Z",
        "resource": {"id": "CAP-1", "supplementary_data": {"related_ids": {"order_id": "PP-ORDER-1"}}},
    }).encode()

    event = await redirect.verify_webhook(payload, WEBHOOK_HEADERS)

    assert event.kind == EventKind.SUCCEEDED
    assert event.provider_reference == "PP-ORDER-1"
    sent = json.loads(paypal.calls("/v1/notifications/verify-webhook-signature")[0].content)
    assert sent["webhook_id"] == "WH-ID"
    assert sent["transmission_id"] == "tx-1"


@pytest.mark.asyncio
async def test_verify_webhook_rejects_missing_headers(redirect, paypal):
    with pytest.raises(ProviderAuthenticityError):
        await redirect.verify_webhook(b"{}", {"PAYPAL-TRANSMISSION-ID": "tx-1"})
    assert paypal.requests == []


@pytest.mark.asyncio
async def test_verify_webhook_rejects_failed_verification(redirect, paypal):
    paypal.routes[("POST", "/v1/notifications/verify-webhook-signature")] = (200, {"verification_status": "FAILURE"})

    with pytest.raises(ProviderAuthenticityError):
        await redirect.verify_webhook(b'{"event_type": "CHECKOUT.ORDER.COMPLETED"}', WEBHOOK_HEADERS)


@pytest.mark.parametrize("value,expected", [
    ("live", "live"),
    ("Production", "live"),
    ("sandbox", "sandbox"),
    (None, "sandbox"),
])
def test_detect_paypal_environment(value, expected):
    assert detect_paypal_environment(value) == expected
