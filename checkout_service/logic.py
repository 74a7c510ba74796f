from collections import OrderedDict
from datetime import datetime, timezone
from typing import Iterable, List, Optional
import logging

from . import models, schemas, shipping

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def effective_unit_price(price: float, discount: float) -> float:
    """Unit price after the size's percentage discount (0-100)."""
    if not discount:
        return price
    return price - price * (discount / 100)


def clamp_quantity(requested: int, stock: int) -> int:
    return max(0, min(requested, stock))


def merge_quantities(lines: Iterable) -> "OrderedDict[str, int]":
    """Requested quantity per size_id, summed over repeated lines in first-seen order."""
    merged: "OrderedDict[str, int]" = OrderedDict()
    for line in lines:
        merged[line.size_id] = merged.get(line.size_id, 0) + line.quantity
    return merged


def price_line(
    size: models.Size,
    requested_quantity: int,
    destination: schemas.CountryContext,
    country_id: Optional[str],
    rate: schemas.ResolvedShippingRate,
) -> schemas.PricedLine:
    """
    Prices one cart line from the loaded size -> variant -> product chain.
    The quantity is silently clamped to stock; callers must read it back.
    Shipping is charged on the requested quantity, the unit price on the clamped one.
    """
    variant = size.variant
    product = variant.product

    quantity = clamp_quantity(requested_quantity, size.quantity)
    if quantity != requested_quantity:
        logger.warning(
            f"Size {size.id}: requested {requested_quantity}, stock {size.quantity}. Quantity clamped to {quantity}"
        )

    free = shipping.is_free_shipping(
        product.free_shipping_for_all_countries, shipping.eligible_country_ids(product), country_id
    )
    details = shipping.shipping_details(product.shipping_fee_method, rate, destination, free)
    price = effective_unit_price(size.price, size.discount)
    shipping_fee = shipping.calculate_shipping_fee(
        rate, product.shipping_fee_method, requested_quantity, variant.weight, free
    )
    total_price = price * quantity + shipping_fee
    logger.debug(f"Size {size.id}: unit {price:.2f} x {quantity} + shipping {shipping_fee:.2f} = {total_price:.2f}")

    return schemas.PricedLine(
        product_id=product.id,
        variant_id=variant.id,
        size_id=size.id,
        store_id=product.store_id,
        product_slug=product.slug,
        variant_slug=variant.slug,
        sku=variant.sku,
        name=product.name,
        variant_name=variant.variant_name,
        image=variant.image,
        size=size.size,
        stock=size.quantity,
        weight=variant.weight,
        shipping_method=product.shipping_fee_method,
        quantity=quantity,
        price=price,
        shipping_fee=shipping_fee,
        total_price=total_price,
        shipping_service=details.shipping_service,
        delivery_time_min=details.delivery_time_min,
        delivery_time_max=details.delivery_time_max,
        is_free_shipping=free,
    )


def aggregate_cart(lines: Iterable) -> schemas.CartTotals:
    """Totals before any coupon. Works on PricedLine and CartItem alike."""
    lines = list(lines)
    sub_total = sum(line.price * line.quantity for line in lines)
    shipping_fees = sum(line.shipping_fee for line in lines)
    return schemas.CartTotals(sub_total=sub_total, shipping_fees=shipping_fees, total=sub_total + shipping_fees)


def coupon_is_active(coupon: models.Coupon, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return as_naive_utc(coupon.start_date) <= now <= as_naive_utc(coupon.end_date)


def coupon_discount(lines: Iterable, store_id: str, discount: float) -> float:
    """Percentage of the coupon store's lines, shipping included. Zero when no line matches."""
    store_total = sum(line.price * line.quantity + line.shipping_fee for line in lines if line.store_id == store_id)
    return store_total * discount / 100


def group_by_store(lines: Iterable[schemas.PricedLine]) -> "OrderedDict[str, List[schemas.PricedLine]]":
    groups: "OrderedDict[str, List[schemas.PricedLine]]" = OrderedDict()
    for line in lines:
        groups.setdefault(line.store_id, []).append(line)
    return groups


def group_totals(lines: List[schemas.PricedLine], coupon: Optional[models.Coupon]) -> dict:
    """
    Totals for one store's order group. The coupon discounts the group's
    total (shipping included) only when it belongs to that store.
    """
    grouped_total = sum(line.total_price for line in lines)
    shipping_fees = sum(line.shipping_fee for line in lines)
    applies = coupon is not None and bool(lines) and lines[0].store_id == coupon.store_id
    discount = grouped_total * coupon.discount / 100 if applies else 0.0
    return {
        "sub_total": grouped_total - shipping_fees,
        "shipping_fees": shipping_fees,
        "discount": discount,
        "total": grouped_total - discount,
        "coupon_id": coupon.id if applies else None,
    }
