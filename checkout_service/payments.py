from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from typing import Optional
import httpx
import logging

from . import config, models, schemas
from .auth import AuthContext, require_user
from .errors import ExternalProviderFailure, NotFound
from .orders import load_order, notify_order_status

logger = logging.getLogger(__name__)

# Replaced in tests with an httpx.MockTransport
transport: httpx.AsyncBaseTransport | None = None


def _client(base_url: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, timeout=config.PROVIDER_TIMEOUT_SECONDS, transport=transport)


def _cents(value: float) -> int:
    return round(value * 100)


async def _owned_order(db: AsyncSession, auth: AuthContext, order_id: str) -> models.Order:
    order = await load_order(db, order_id)
    if order is None or order.user_id != auth.user_id:
        raise NotFound("Order not found.")
    return order


async def _record_payment(
    db: AsyncSession,
    auth: AuthContext,
    order: models.Order,
    method: str,
    paid: bool,
    payment_intent_id: str | None = None,
    provider_status: str | None = None,
    amount: float | None = None,
    currency: str | None = None,
) -> models.Order:
    """
    Sets the order's payment status and, when the provider returned a payment,
    upserts its PaymentDetails (one row per order). A failure never replaces a
    payment that already went through.
    """
    if not paid and order.payment_status == models.PaymentStatus.Paid.value:
        logger.warning(f"Order {order.id} is already paid, ignoring failed {method} payment {payment_intent_id}")
        return order

    if payment_intent_id is not None:
        result = await db.execute(
            select(models.PaymentDetails).where(models.PaymentDetails.order_id == order.id)
        )
        details = result.scalars().first()
        if details is None:
            details = models.PaymentDetails(order_id=order.id)
            db.add(details)
        details.payment_intent_id = payment_intent_id
        details.payment_method = method
        details.status = "Completed" if paid else (provider_status or "Failed")
        details.amount = amount if amount is not None else order.total
        details.currency = currency or ""
        details.user_id = auth.user_id

    status = models.PaymentStatus.Paid if paid else models.PaymentStatus.Failed
    order.payment_status = status.value
    order.payment_method = method
    await db.commit()

    if paid:
        logger.info(f"Payment for order {order.id} captured via {method}")
    else:
        logger.warning(f"Payment for order {order.id} via {method} failed (provider status: {provider_status})")
    await notify_order_status(
        order.id, order.order_status, {"event": "payment", "payment_status": status.value, "payment_method": method}
    )
    return await load_order(db, order.id)


# --- Stripe ---

def _stripe_headers() -> dict:
    return {"Authorization": f"Bearer {config.STRIPE_SECRET_KEY}"}


async def create_stripe_payment_intent(
    db: AsyncSession, auth: Optional[AuthContext], order_id: str
) -> schemas.StripeIntentResponse:
    """Creates a PaymentIntent for the order total, in cents."""
    auth = require_user(auth)
    order = await _owned_order(db, auth, order_id)

    payload = {
        "amount": _cents(order.total),
        "currency": config.STRIPE_CURRENCY,
        "automatic_payment_methods[enabled]": "true",
        "metadata[order_id]": order.id,
    }
    try:
        async with _client(config.STRIPE_API_BASE) as client:
            response = await client.post("/v1/payment_intents", data=payload, headers=_stripe_headers())
            response.raise_for_status()
            intent = response.json()
    except httpx.HTTPStatusError as e:
        logger.error(f"Stripe returned status {e.response.status_code} for order {order_id}. Response: {e.response.text[:500]}")
        raise ExternalProviderFailure("Failed to create payment intent.")
    except httpx.RequestError as e:
        logger.error(f"Could not connect to Stripe ({e.request.url}) for order {order_id}: {e}")
        raise ExternalProviderFailure("Failed to create payment intent.")

    logger.info(f"Created Stripe payment intent {intent['id']} for order {order_id}")
    return schemas.StripeIntentResponse(payment_intent_id=intent["id"], client_secret=intent.get("client_secret"))


async def confirm_stripe_payment(
    db: AsyncSession, auth: Optional[AuthContext], order_id: str, payment_intent_id: str
) -> models.Order:
    """
    Reads the PaymentIntent back from Stripe and records the outcome.
    Only a 'succeeded' intent created for this order and its total counts as
    paid. Provider errors mark the payment Failed instead of raising.
    """
    auth = require_user(auth)
    order = await _owned_order(db, auth, order_id)

    try:
        async with _client(config.STRIPE_API_BASE) as client:
            response = await client.get(f"/v1/payment_intents/{payment_intent_id}", headers=_stripe_headers())
            response.raise_for_status()
            intent = response.json()
    except httpx.HTTPStatusError as e:
        logger.error(f"Stripe returned status {e.response.status_code} confirming order {order_id}. Response: {e.response.text[:500]}")
        return await _record_payment(db, auth, order, "Stripe", paid=False)
    except httpx.RequestError as e:
        logger.error(f"Could not connect to Stripe ({e.request.url}) confirming order {order_id}: {e}")
        return await _record_payment(db, auth, order, "Stripe", paid=False)

    provider_status = intent.get("status")
    amount = intent.get("amount")
    intent_order_id = (intent.get("metadata") or {}).get("order_id")
    if intent_order_id != order.id or amount != _cents(order.total):
        logger.warning(
            f"Stripe intent {payment_intent_id} (order {intent_order_id}, amount {amount}) "
            f"does not pay order {order_id} ({_cents(order.total)})"
        )
        return await _record_payment(db, auth, order, "Stripe", paid=False, provider_status=provider_status)

    return await _record_payment(
        db,
        auth,
        order,
        "Stripe",
        paid=provider_status == "succeeded",
        payment_intent_id=intent.get("id", payment_intent_id),
        provider_status=provider_status,
        amount=amount / 100,
        currency=intent.get("currency", config.STRIPE_CURRENCY),
    )


# --- PayPal ---

def _paypal_auth() -> tuple:
    return (config.PAYPAL_CLIENT_ID, config.PAYPAL_SECRET)


async def create_paypal_payment(
    db: AsyncSession, auth: Optional[AuthContext], order_id: str
) -> schemas.PayPalPaymentResponse:
    auth = require_user(auth)
    order = await _owned_order(db, auth, order_id)

    payload = {
        "intent": "CAPTURE",
        "purchase_units": [
            {
                "reference_id": order.id,
                "amount": {"currency_code": config.PAYPAL_CURRENCY, "value": f"{order.total:.2f}"},
            }
        ],
    }
    try:
        async with _client(config.PAYPAL_API_BASE) as client:
            response = await client.post("/v2/checkout/orders", json=payload, auth=_paypal_auth())
            response.raise_for_status()
            payment = response.json()
    except httpx.HTTPStatusError as e:
        logger.error(f"PayPal returned status {e.response.status_code} for order {order_id}. Response: {e.response.text[:500]}")
        raise ExternalProviderFailure("Failed to create PayPal payment.")
    except httpx.RequestError as e:
        logger.error(f"Could not connect to PayPal ({e.request.url}) for order {order_id}: {e}")
        raise ExternalProviderFailure("Failed to create PayPal payment.")

    logger.info(f"Created PayPal payment {payment['id']} for order {order_id}")
    return schemas.PayPalPaymentResponse(payment_id=payment["id"], status=payment.get("status", ""))


async def capture_paypal_payment(
    db: AsyncSession, auth: Optional[AuthContext], order_id: str, payment_id: str
) -> models.Order:
    """Captures an approved PayPal order. Anything but COMPLETED marks the payment Failed."""
    auth = require_user(auth)
    order = await _owned_order(db, auth, order_id)

    try:
        async with _client(config.PAYPAL_API_BASE) as client:
            response = await client.post(f"/v2/checkout/orders/{payment_id}/capture", json={}, auth=_paypal_auth())
            response.raise_for_status()
            capture_data = response.json()
    except httpx.HTTPStatusError as e:
        logger.error(f"PayPal returned status {e.response.status_code} capturing order {order_id}. Response: {e.response.text[:500]}")
        return await _record_payment(db, auth, order, "Paypal", paid=False)
    except httpx.RequestError as e:
        logger.error(f"Could not connect to PayPal ({e.request.url}) capturing order {order_id}: {e}")
        return await _record_payment(db, auth, order, "Paypal", paid=False)

    provider_status = capture_data.get("status")
    if provider_status != "COMPLETED":
        return await _record_payment(db, auth, order, "Paypal", paid=False, provider_status=provider_status)

    try:
        unit = capture_data["purchase_units"][0]
        capture = unit["payments"]["captures"][0]
        amount = float(capture["amount"]["value"])
        currency = capture["amount"]["currency_code"]
    except (KeyError, IndexError, TypeError, ValueError):
        logger.warning(f"PayPal capture {payment_id} for order {order_id} carries no capture amount")
        return await _record_payment(db, auth, order, "Paypal", paid=False, provider_status=provider_status)

    if unit.get("reference_id") != order.id or _cents(amount) != _cents(order.total):
        logger.warning(
            f"PayPal capture {payment_id} (reference {unit.get('reference_id')}, amount {amount}) "
            f"does not pay order {order_id} ({order.total:.2f})"
        )
        return await _record_payment(db, auth, order, "Paypal", paid=False, provider_status=provider_status)

    return await _record_payment(
        db,
        auth,
        order,
        "Paypal",
        paid=True,
        payment_intent_id=payment_id,
        provider_status=provider_status,
        amount=amount,
        currency=currency,
    )
