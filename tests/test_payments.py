# tests/test_payments.py
import base64
import json
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy.future import select

from checkout_service import config, crud, models, orders, payments
from checkout_service.errors import ExternalProviderFailure, NotFound


@pytest.fixture
async def order_id(db, catalog, address, buyer, us):
    # Total 235.00: 210 of items plus 25 shipping
    cart = await crud.save_user_cart(
        db, buyer, [catalog.line("item", 3), catalog.line("weight", 2), catalog.line("fixed", 2)], us
    )
    placed = await orders.place_order(db, buyer, address.id, cart.id)
    return placed.order_id


@pytest.fixture
def provider(monkeypatch):
    """Serves provider calls from `routes` ({(method, path): handler}) and records every request."""
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(config, "PAYPAL_CLIENT_ID", "pp-client")
    monkeypatch.setattr(config, "PAYPAL_SECRET", "pp-secret")
    routes = {}
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        route = routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "no route"})
        return route(request)

    monkeypatch.setattr(payments, "transport", httpx.MockTransport(handler))
    return routes, requests


def stripe_intent(order_id, intent_id="pi_1", status="succeeded", amount=23500):
    return httpx.Response(200, json={
        "id": intent_id, "status": status, "amount": amount, "currency": "usd", "metadata": {"order_id": order_id},
    })


def paypal_capture(order_id, value="235.00", status="COMPLETED"):
    return httpx.Response(201, json={
        "id": "PP-1",
        "status": status,
        "purchase_units": [{
            "reference_id": order_id,
            "payments": {"captures": [{"id": "CAP-1", "amount": {"value": value, "currency_code": "USD"}}]},
        }],
    })


async def test_stripe_intent_amount_in_cents(db, order_id, buyer, provider):
    routes, requests = provider
    routes[("POST", "/v1/payment_intents")] = lambda r: httpx.Response(
        200, json={"id": "pi_1", "client_secret": "pi_1_secret", "status": "requires_payment_method"}
    )

    intent = await payments.create_stripe_payment_intent(db, buyer, order_id)

    assert intent.payment_intent_id == "pi_1"
    assert intent.client_secret == "pi_1_secret"
    form = parse_qs(requests[0].content.decode())
    assert form["amount"] == ["23500"]
    assert form["currency"] == ["usd"]
    assert requests[0].headers["Authorization"] == "Bearer sk_test_123"


async def test_stripe_intent_provider_error_raises(db, order_id, buyer, provider):
    routes, _ = provider
    routes[("POST", "/v1/payment_intents")] = lambda r: httpx.Response(402, json={"error": {"message": "declined"}})
    with pytest.raises(ExternalProviderFailure):
        await payments.create_stripe_payment_intent(db, buyer, order_id)


async def test_stripe_confirm_succeeded_marks_paid(db, order_id, buyer, provider, events):
    routes, _ = provider
    routes[("GET", "/v1/payment_intents/pi_1")] = lambda r: stripe_intent(order_id)

    order = await payments.confirm_stripe_payment(db, buyer, order_id, "pi_1")

    assert order.payment_status == models.PaymentStatus.Paid.value
    assert order.payment_method == "Stripe"
    assert order.payment_details.payment_intent_id == "pi_1"
    assert order.payment_details.status == "Completed"
    assert order.payment_details.amount == pytest.approx(235.0)
    assert events.statuses[order_id]["details"]["payment_status"] == "Paid"


async def test_stripe_confirm_other_status_marks_failed(db, order_id, buyer, provider):
    routes, _ = provider
    routes[("GET", "/v1/payment_intents/pi_1")] = lambda r: stripe_intent(order_id, status="requires_payment_method")
    order = await payments.confirm_stripe_payment(db, buyer, order_id, "pi_1")
    assert order.payment_status == models.PaymentStatus.Failed.value
    assert order.payment_details.status == "requires_payment_method"


async def test_stripe_confirm_transport_error_is_swallowed(db, order_id, buyer, monkeypatch):
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    monkeypatch.setattr(payments, "transport", httpx.MockTransport(unreachable))
    order = await payments.confirm_stripe_payment(db, buyer, order_id, "pi_1")
    assert order.payment_status == models.PaymentStatus.Failed.value
    assert order.payment_details is None


async def test_paypal_create_payment(db, order_id, buyer, provider):
    routes, requests = provider
    routes[("POST", "/v2/checkout/orders")] = lambda r: httpx.Response(201, json={"id": "PP-1", "status": "CREATED"})

    payment = await payments.create_paypal_payment(db, buyer, order_id)

    assert (payment.payment_id, payment.status) == ("PP-1", "CREATED")
    body = json.loads(requests[0].content)
    assert body["intent"] == "CAPTURE"
    assert body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "235.00"}
    expected = base64.b64encode(b"pp-client:pp-secret").decode()
    assert requests[0].headers["Authorization"] == f"Basic {expected}"


async def test_paypal_capture_completed(db, order_id, buyer, provider):
    routes, _ = provider
    routes[("POST", "/v2/checkout/orders/PP-1/capture")] = lambda r: paypal_capture(order_id)

    order = await payments.capture_paypal_payment(db, buyer, order_id, "PP-1")

    assert order.payment_status == models.PaymentStatus.Paid.value
    assert order.payment_method == "Paypal"
    assert order.payment_details.amount == pytest.approx(235.0)
    assert order.payment_details.currency == "USD"


async def test_paypal_capture_not_completed_marks_failed(db, order_id, buyer, provider):
    routes, _ = provider
    routes[("POST", "/v2/checkout/orders/PP-1/capture")] = lambda r: httpx.Response(
        201, json={"id": "PP-1", "status": "PAYER_ACTION_REQUIRED"}
    )
    order = await payments.capture_paypal_payment(db, buyer, order_id, "PP-1")
    assert order.payment_status == models.PaymentStatus.Failed.value


async def test_recapture_updates_single_payment_record(db, order_id, buyer, provider):
    routes, _ = provider
    routes[("GET", "/v1/payment_intents/pi_1")] = lambda r: stripe_intent(order_id, status="requires_payment_method")
    routes[("GET", "/v1/payment_intents/pi_2")] = lambda r: stripe_intent(order_id, intent_id="pi_2")
    await payments.confirm_stripe_payment(db, buyer, order_id, "pi_1")
    order = await payments.confirm_stripe_payment(db, buyer, order_id, "pi_2")

    assert order.payment_status == models.PaymentStatus.Paid.value
    records = (await db.execute(select(models.PaymentDetails))).scalars().all()
    assert [r.payment_intent_id for r in records] == ["pi_2"]


async def test_payments_only_for_own_orders(db, order_id, buyer, provider):
    stranger = buyer.model_copy(update={"user_id": "user-2"})
    with pytest.raises(NotFound):
        await payments.create_stripe_payment_intent(db, stranger, order_id)
    with pytest.raises(NotFound):
        await payments.capture_paypal_payment(db, stranger, order_id, "PP-1")


async def test_stripe_intent_for_another_order_does_not_pay(db, order_id, buyer, provider):
    routes, _ = provider
    routes[("GET", "/v1/payment_intents/pi_other")] = lambda r: stripe_intent(
        "some-other-order", intent_id="pi_other", amount=1
    )

    order = await payments.confirm_stripe_payment(db, buyer, order_id, "pi_other")

    assert order.payment_status == models.PaymentStatus.Failed.value
    assert order.payment_details is None


async def test_stripe_intent_with_wrong_amount_does_not_pay(db, order_id, buyer, provider):
    routes, _ = provider
    routes[("GET", "/v1/payment_intents/pi_1")] = lambda r: stripe_intent(order_id, amount=100)
    order = await payments.confirm_stripe_payment(db, buyer, order_id, "pi_1")
    assert order.payment_status == models.PaymentStatus.Failed.value
    assert order.payment_details is None


async def test_failed_confirm_keeps_paid_order_paid(db, order_id, buyer, provider):
    routes, _ = provider
    routes[("GET", "/v1/payment_intents/pi_1")] = lambda r: stripe_intent(order_id)
    routes[("GET", "/v1/payment_intents/pi_2")] = lambda r: stripe_intent(
        order_id, intent_id="pi_2", status="canceled"
    )
    await payments.confirm_stripe_payment(db, buyer, order_id, "pi_1")

    order = await payments.confirm_stripe_payment(db, buyer, order_id, "pi_2")

    assert order.payment_status == models.PaymentStatus.Paid.value
    assert order.payment_details.payment_intent_id == "pi_1"
    assert order.payment_details.status == "Completed"


@pytest.mark.parametrize("reference, value", [("some-other-order", "235.00"), (None, "0.01")])
async def test_paypal_capture_must_match_order(db, order_id, buyer, provider, reference, value):
    routes, _ = provider
    routes[("POST", "/v2/checkout/orders/PP-1/capture")] = lambda r: paypal_capture(reference or order_id, value=value)

    order = await payments.capture_paypal_payment(db, buyer, order_id, "PP-1")

    assert order.payment_status == models.PaymentStatus.Failed.value
    assert order.payment_details is None
