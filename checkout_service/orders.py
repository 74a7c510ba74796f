from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload
from typing import List, Optional
import logging

from . import cache, crud, kafka_client, logic, models, schemas
from .auth import AuthContext, require_seller, require_user
from .errors import CheckoutError, NotFound, OrderCreationFailed, Unauthorized, ValidationFailure

logger = logging.getLogger(__name__)


def _order_options():
    return (
        selectinload(models.Order.groups).selectinload(models.OrderGroup.items),
        selectinload(models.Order.payment_details),
    )


async def load_order(db: AsyncSession, order_id: str) -> models.Order | None:
    result = await db.execute(
        select(models.Order)
        .where(models.Order.id == order_id)
        .options(*_order_options())
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def notify_order_status(order_id: str, status: str, details: dict | None = None):
    """Caches the status and publishes it. Both are best effort."""
    await cache.set_order_status(order_id, status, details)
    await kafka_client.publish_order_status(order_id, status, details)


def _order_item(line: schemas.PricedLine) -> models.OrderItem:
    return models.OrderItem(
        product_id=line.product_id,
        variant_id=line.variant_id,
        size_id=line.size_id,
        product_slug=line.product_slug,
        variant_slug=line.variant_slug,
        sku=line.sku,
        name=f"{line.name} · {line.variant_name}",
        image=line.image,
        size=line.size,
        quantity=line.quantity,
        price=line.price,
        shipping_fee=line.shipping_fee,
        total_price=line.total_price,
        status=models.ProductStatus.Pending.value,
    )


async def place_order(
    db: AsyncSession, auth: Optional[AuthContext], shipping_address_id: str, cart_id: str
) -> schemas.PlaceOrderResponse:
    """
    Turns a saved cart into an order with one group per store.

    Lines are re-priced for the shipping address's country. Group totals include
    shipping; the cart coupon discounts only its own store's group. The order,
    its groups and items are written in a single transaction.
    """
    auth = require_user(auth)

    address = await db.get(models.ShippingAddress, shipping_address_id)
    if address is None or address.user_id != auth.user_id:
        raise NotFound("Shipping address not found.")

    cart = await crud.get_owned_cart(db, auth, cart_id)
    if not cart.cart_items:
        raise ValidationFailure("Cart is empty.")

    country = await db.get(models.Country, address.country_id)
    if country is None:
        raise NotFound("Failed to get Shipping details for order.")
    destination = schemas.CountryContext(name=country.name, code=country.code)

    priced = await crud.price_lines(db, list(cart.cart_items), destination, country)
    coupon = cart.coupon
    if coupon is not None and not logic.coupon_is_active(coupon):
        logger.info(f"Cart {cart.id}: coupon {coupon.code} expired before checkout, not applied")
        coupon = None

    grouped = logic.group_by_store(priced)
    deliveries = {
        store_id: await crud.get_delivery_details_for_store_by_country(db, store_id, country.id)
        for store_id in grouped
    }

    try:
        order = models.Order(
            user_id=auth.user_id,
            shipping_address_id=address.id,
            order_status=models.OrderStatus.Pending.value,
            payment_status=models.PaymentStatus.Pending.value,
            groups=[],
        )
        db.add(order)

        order_total = 0.0
        order_shipping = 0.0
        for store_id, lines in grouped.items():
            totals = logic.group_totals(lines, coupon)
            delivery = deliveries[store_id]
            order.groups.append(
                models.OrderGroup(
                    store_id=store_id,
                    status=models.OrderStatus.Pending.value,
                    sub_total=totals["sub_total"],
                    shipping_fees=totals["shipping_fees"],
                    total=totals["total"],
                    coupon_id=totals["coupon_id"],
                    shipping_service=delivery.shipping_service,
                    shipping_delivery_min=delivery.delivery_time_min,
                    shipping_delivery_max=delivery.delivery_time_max,
                    items=[_order_item(line) for line in lines],
                )
            )
            logger.debug(
                f"Order group for store {store_id}: subtotal {totals['sub_total']:.2f}, "
                f"shipping {totals['shipping_fees']:.2f}, discount {totals['discount']:.2f}"
            )
            order_total += totals["total"]
            order_shipping += totals["shipping_fees"]

        order.total = order_total
        order.shipping_fees = order_shipping
        order.sub_total = order_total - order_shipping
        await db.commit()
    except CheckoutError:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.exception(f"Order creation for cart {cart_id} failed, rolled back")
        raise OrderCreationFailed(f"Order could not be created: {e}")

    logger.info(f"Placed order {order.id} for user {auth.user_id}: {len(grouped)} groups, total {order.total:.2f}")
    await notify_order_status(
        order.id, models.OrderStatus.Pending.value, {"event": "order_placed", "total": order.total}
    )
    return schemas.PlaceOrderResponse(order_id=order.id)


async def get_order(db: AsyncSession, auth: Optional[AuthContext], order_id: str) -> models.Order:
    """Order with its groups (largest total first), items and payment details."""
    auth = require_user(auth)
    order = await load_order(db, order_id)
    if order is None or order.user_id != auth.user_id:
        raise NotFound("Order not found.")
    order.groups.sort(key=lambda group: group.total, reverse=True)
    return order


async def get_user_orders(db: AsyncSession, auth: Optional[AuthContext]) -> List[models.Order]:
    auth = require_user(auth)
    result = await db.execute(
        select(models.Order)
        .where(models.Order.user_id == auth.user_id)
        .order_by(models.Order.created_at.desc())
    )
    return list(result.scalars().all())


async def get_order_status(db: AsyncSession, auth: Optional[AuthContext], order_id: str) -> dict:
    """Owner-only. Cached status when present, otherwise read from the order row."""
    auth = require_user(auth)
    order = await db.get(models.Order, order_id)
    if order is None or order.user_id != auth.user_id:
        raise NotFound(f"Status not found for order {order_id}")
    cached = await cache.get_order_status(order_id)
    if cached:
        return cached
    return {"status": order.order_status, "details": {"payment_status": order.payment_status}}


async def _seller_store(db: AsyncSession, auth: AuthContext, store_id: str) -> models.Store:
    store = await crud.get_store(db, store_id)
    if store is None or store.user_id != auth.user_id:
        raise Unauthorized("Unauthorized Access !")
    return store


async def update_order_group_status(
    db: AsyncSession, auth: Optional[AuthContext], store_id: str, group_id: str, status: models.OrderStatus
) -> str:
    auth = require_seller(auth)
    await _seller_store(db, auth, store_id)

    group = await db.get(models.OrderGroup, group_id)
    if group is None or group.store_id != store_id:
        raise NotFound("Order not found.")

    group.status = models.OrderStatus(status).value
    await db.commit()
    logger.info(f"Order group {group_id} of order {group.order_id} set to {group.status}")
    await notify_order_status(group.order_id, group.status, {"event": "group_status", "group_id": group_id})
    return group.status


async def update_order_item_status(
    db: AsyncSession, auth: Optional[AuthContext], store_id: str, order_item_id: str, status: models.ProductStatus
) -> str:
    auth = require_seller(auth)
    await _seller_store(db, auth, store_id)

    result = await db.execute(
        select(models.OrderItem)
        .where(models.OrderItem.id == order_item_id)
        .options(selectinload(models.OrderItem.group))
        .execution_options(populate_existing=True)
    )
    item = result.scalars().first()
    if item is None or item.group.store_id != store_id:
        raise NotFound("Order item not found.")

    item.status = models.ProductStatus(status).value
    await db.commit()
    logger.info(f"Order item {order_item_id} set to {item.status}")
    await kafka_client.publish_order_status(
        item.group.order_id, item.status, {"event": "item_status", "order_item_id": order_item_id}
    )
    return item.status
