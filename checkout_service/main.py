from fastapi import FastAPI, Depends, Cookie, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import ValidationError
from contextlib import asynccontextmanager
from typing import List, Optional
import json
from urllib.parse import unquote
import logging

from . import cache, config, coupons, crud, kafka_client, orders, payments, schemas
from .auth import AuthContext, get_auth_context
from .database import get_db_session, engine, Base
from .errors import CheckoutError

logging.basicConfig(level=config.LOG_LEVEL, format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Checkout Service starting up...")
    logger.info("Checking/Creating database tables...")
    async with engine.begin() as conn:
        # Development convenience, migrations own the schema in production
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables check complete.")
    if config.EVENTS_ENABLED:
        try:
            await kafka_client.start_producer()
        except Exception as e:
            logger.error(f"Kafka producer unavailable at startup, will retry on first event: {e}")
    logger.info(f"Listening on {config.APP_HOST}:{config.APP_PORT}")

    yield

    logger.info("Checkout Service shutting down...")
    await kafka_client.stop_producer()
    await cache.close_redis()
    await engine.dispose()


app = FastAPI(
    title="Checkout Service",
    description="Prices carts, applies store coupons, places multi-store orders and captures payments.",
    version="0.1.0",
    lifespan=lifespan
)


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def get_destination(user_country: Optional[str] = Cookie(None, alias="userCountry")) -> schemas.CountryContext:
    """Shipping destination from the `userCountry` cookie, or the configured default country."""
    default = schemas.CountryContext(name=config.DEFAULT_COUNTRY_NAME, code=config.DEFAULT_COUNTRY_CODE)
    if not user_country:
        return default
    try:
        return schemas.CountryContext(**json.loads(unquote(user_country)))
    except (ValueError, TypeError, ValidationError) as e:
        logger.warning(f"Ignoring malformed userCountry cookie: {e}")
        return default


@app.get("/health", tags=["Monitoring"], summary="Health Check")
async def health_check():
    return {"status": "healthy"}


# --- Shipping ---

@app.get(
    "/products/{product_id}/shipping",
    response_model=schemas.ShippingDetails,
    tags=["Shipping"],
    summary="Shipping Details For A Product"
)
async def product_shipping_endpoint(
    product_id: str,
    destination: schemas.CountryContext = Depends(get_destination),
    db: AsyncSession = Depends(get_db_session),
):
    return await crud.get_product_shipping_details(db, product_id, destination)


# --- Cart ---

@app.post(
    "/cart/latest",
    response_model=List[schemas.PricedLine],
    tags=["Cart"],
    summary="Re-price Client Cart Lines"
)
async def latest_cart_endpoint(
    request_data: schemas.CartLinesRequest,
    destination: schemas.CountryContext = Depends(get_destination),
    db: AsyncSession = Depends(get_db_session),
):
    """
    Returns current price, stock-clamped quantity and shipping for each line.
    Nothing is saved; quantities may come back lower than requested.
    """
    logger.info(f"Received re-price request for {len(request_data.items)} lines")
    try:
        return await crud.update_cart_with_latest(db, request_data.items, destination)
    except CheckoutError:
        raise
    except Exception as e:
        logger.exception(f"Error re-pricing cart lines: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred while pricing the cart."
        )


@app.put("/cart", response_model=schemas.CartRead, tags=["Cart"], summary="Save User Cart")
async def save_cart_endpoint(
    request_data: schemas.CartLinesRequest,
    destination: schemas.CountryContext = Depends(get_destination),
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Re-prices the lines server side and replaces the user's cart with them."""
    try:
        return await crud.save_user_cart(db, auth, request_data.items, destination)
    except CheckoutError:
        raise
    except Exception as e:
        logger.exception(f"Error saving cart: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred while saving the cart."
        )


@app.get("/cart", response_model=schemas.CartRead, tags=["Cart"], summary="Get User Cart")
async def get_cart_endpoint(
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await crud.get_user_cart(db, auth)


@app.delete("/cart", status_code=status.HTTP_204_NO_CONTENT, tags=["Cart"], summary="Empty User Cart")
async def empty_cart_endpoint(
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    await crud.empty_user_cart(db, auth)
    return None


@app.post(
    "/cart/{cart_id}/checkout-refresh",
    response_model=schemas.CartRead,
    tags=["Cart"],
    summary="Re-price Saved Cart For Checkout"
)
async def checkout_refresh_endpoint(
    cart_id: str,
    country_id: Optional[str] = None,
    destination: schemas.CountryContext = Depends(get_destination),
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Uses `country_id` (the selected shipping address's country) when given, else the cookie country."""
    return await crud.update_checkout_products_with_latest(db, auth, cart_id, country_id or destination)


@app.post(
    "/cart/{cart_id}/coupon",
    response_model=schemas.ApplyCouponResponse,
    tags=["Coupons"],
    summary="Apply Coupon To Cart"
)
async def apply_coupon_endpoint(
    cart_id: str,
    request_data: schemas.ApplyCouponRequest,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await coupons.apply_coupon(db, auth, request_data.coupon, cart_id)


@app.delete(
    "/cart/{cart_id}/coupon",
    response_model=schemas.CartRead,
    tags=["Coupons"],
    summary="Remove Coupon From Cart"
)
async def remove_coupon_endpoint(
    cart_id: str,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await coupons.remove_coupon(db, auth, cart_id)


# --- Seller coupon management ---

@app.get(
    "/stores/{store_url}/coupons",
    response_model=List[schemas.CouponRead],
    tags=["Coupons"],
    summary="List Store Coupons"
)
async def list_store_coupons_endpoint(
    store_url: str,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await coupons.get_store_coupons(db, auth, store_url)


@app.post(
    "/stores/{store_url}/coupons",
    response_model=schemas.CouponRead,
    tags=["Coupons"],
    summary="Create or Update Store Coupon"
)
async def upsert_store_coupon_endpoint(
    store_url: str,
    coupon: schemas.CouponUpsert,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await coupons.upsert_coupon(db, auth, coupon, store_url)


@app.delete(
    "/stores/{store_url}/coupons/{coupon_id}",
    response_model=schemas.CouponRead,
    tags=["Coupons"],
    summary="Delete Store Coupon"
)
async def delete_store_coupon_endpoint(
    store_url: str,
    coupon_id: str,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await coupons.delete_coupon(db, auth, coupon_id, store_url)


@app.get("/coupons/{coupon_id}", response_model=schemas.CouponRead, tags=["Coupons"], summary="Get Coupon")
async def get_coupon_endpoint(coupon_id: str, db: AsyncSession = Depends(get_db_session)):
    return await coupons.get_coupon(db, coupon_id)


# --- Shipping addresses ---

@app.get(
    "/addresses",
    response_model=List[schemas.ShippingAddressRead],
    tags=["Addresses"],
    summary="List Shipping Addresses"
)
async def list_addresses_endpoint(
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await crud.get_user_shipping_addresses(db, auth)


@app.put(
    "/addresses",
    response_model=schemas.ShippingAddressRead,
    tags=["Addresses"],
    summary="Create or Update Shipping Address"
)
async def upsert_address_endpoint(
    address: schemas.ShippingAddressUpsert,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await crud.upsert_shipping_address(db, auth, address)


# --- Orders ---

@app.post(
    "/orders",
    response_model=schemas.PlaceOrderResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Orders"],
    summary="Place Order From Cart"
)
async def place_order_endpoint(
    request_data: schemas.PlaceOrderRequest,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Creates one order group per store in the cart, in a single transaction."""
    logger.info(f"Received order request for cart {request_data.cart_id}")
    return await orders.place_order(db, auth, request_data.shipping_address_id, request_data.cart_id)


@app.get("/orders", response_model=List[schemas.OrderSummary], tags=["Orders"], summary="List User Orders")
async def list_orders_endpoint(
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await orders.get_user_orders(db, auth)


@app.get("/orders/{order_id}", response_model=schemas.OrderRead, tags=["Orders"], summary="Get Order")
async def get_order_endpoint(
    order_id: str,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await orders.get_order(db, auth, order_id)


@app.get("/orders/{order_id}/status", summary="Get Order Status", tags=["Orders"], response_model=dict)
async def get_order_status_endpoint(
    order_id: str,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Latest status from the Redis cache, falling back to the order row."""
    return await orders.get_order_status(db, auth, order_id)


@app.patch(
    "/stores/{store_id}/order-groups/{group_id}",
    response_model=schemas.StatusResponse,
    tags=["Orders"],
    summary="Update Order Group Status"
)
async def update_group_status_endpoint(
    store_id: str,
    group_id: str,
    request_data: schemas.OrderGroupStatusUpdate,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    new_status = await orders.update_order_group_status(db, auth, store_id, group_id, request_data.status)
    return schemas.StatusResponse(status=new_status)


@app.patch(
    "/stores/{store_id}/order-items/{item_id}",
    response_model=schemas.StatusResponse,
    tags=["Orders"],
    summary="Update Order Item Status"
)
async def update_item_status_endpoint(
    store_id: str,
    item_id: str,
    request_data: schemas.OrderItemStatusUpdate,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    new_status = await orders.update_order_item_status(db, auth, store_id, item_id, request_data.status)
    return schemas.StatusResponse(status=new_status)


# --- Payments ---

@app.post(
    "/orders/{order_id}/payments/stripe/intent",
    response_model=schemas.StripeIntentResponse,
    tags=["Payments"],
    summary="Create Stripe Payment Intent"
)
async def stripe_intent_endpoint(
    order_id: str,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await payments.create_stripe_payment_intent(db, auth, order_id)


@app.post(
    "/orders/{order_id}/payments/stripe/confirm",
    response_model=schemas.OrderRead,
    tags=["Payments"],
    summary="Record Stripe Payment Outcome"
)
async def stripe_confirm_endpoint(
    order_id: str,
    request_data: schemas.StripeConfirmRequest,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await payments.confirm_stripe_payment(db, auth, order_id, request_data.payment_intent_id)


@app.post(
    "/orders/{order_id}/payments/paypal",
    response_model=schemas.PayPalPaymentResponse,
    tags=["Payments"],
    summary="Create PayPal Payment"
)
async def paypal_create_endpoint(
    order_id: str,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await payments.create_paypal_payment(db, auth, order_id)


@app.post(
    "/orders/{order_id}/payments/paypal/capture",
    response_model=schemas.OrderRead,
    tags=["Payments"],
    summary="Capture PayPal Payment"
)
async def paypal_capture_endpoint(
    order_id: str,
    request_data: schemas.PayPalCaptureRequest,
    auth: Optional[AuthContext] = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    return await payments.capture_paypal_payment(db, auth, order_id, request_data.payment_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("checkout_service.main:app", host=config.APP_HOST, port=config.APP_PORT)
