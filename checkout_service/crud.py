from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import IntegrityError
from sqlalchemy import update
from typing import Iterable, List, Optional
import logging

from . import config, logic, models, schemas, shipping
from .auth import AuthContext, require_user
from .errors import ConcurrentModification, NotFound, Unauthorized, ValidationFailure

logger = logging.getLogger(__name__)


# --- Catalog and shipping lookups ---

async def get_store(db: AsyncSession, store_id: str) -> models.Store | None:
    return await db.get(models.Store, store_id)

async def get_store_by_url(db: AsyncSession, store_url: str) -> models.Store | None:
    result = await db.execute(select(models.Store).filter(models.Store.url == store_url))
    return result.scalars().first()

async def resolve_country(
    db: AsyncSession, destination: schemas.CountryContext | str | None
) -> models.Country | None:
    """Finds the destination country by id, or by name and code for a cookie context."""
    if destination is None:
        return None
    if isinstance(destination, str):
        return await db.get(models.Country, destination)
    result = await db.execute(
        select(models.Country).where(
            models.Country.name == destination.name, models.Country.code == destination.code
        )
    )
    country = result.scalars().first()
    if country is None:
        logger.warning(f"Country {destination.name} ({destination.code}) not found, using store defaults")
    return country

async def get_shipping_rate(
    db: AsyncSession, store_id: str, country_id: Optional[str]
) -> schemas.ResolvedShippingRate:
    """Shipping rate for a store and destination. Unknown stores are fatal, unknown countries are not."""
    store = await get_store(db, store_id)
    if store is None:
        raise NotFound("Store not found.")
    rates = await _load_rates(db, [store_id], country_id)
    return shipping.resolve_shipping_rate(store, rates.get(store_id))

async def get_delivery_details_for_store_by_country(
    db: AsyncSession, store_id: str, country_id: Optional[str]
) -> schemas.DeliveryDetails:
    rate = await get_shipping_rate(db, store_id, country_id)
    return schemas.DeliveryDetails(
        shipping_service=rate.shipping_service or config.DEFAULT_SHIPPING_SERVICE,
        delivery_time_min=rate.delivery_time_min or config.DEFAULT_DELIVERY_TIME_MIN,
        delivery_time_max=rate.delivery_time_max or config.DEFAULT_DELIVERY_TIME_MAX,
    )

async def get_product_shipping_details(
    db: AsyncSession, product_id: str, destination: schemas.CountryContext
) -> schemas.ShippingDetails:
    """Shipping details shown on a product page for the visitor's country."""
    result = await db.execute(
        select(models.Product)
        .where(models.Product.id == product_id)
        .options(
            selectinload(models.Product.store),
            selectinload(models.Product.free_shipping).selectinload(models.FreeShipping.eligible_countries),
        )
    )
    product = result.scalars().first()
    if product is None:
        raise NotFound("Product not found.")
    country = await resolve_country(db, destination)
    country_id = country.id if country else None
    rates = await _load_rates(db, [product.store_id], country_id)
    rate = shipping.resolve_shipping_rate(product.store, rates.get(product.store_id))
    free = shipping.is_free_shipping(
        product.free_shipping_for_all_countries, shipping.eligible_country_ids(product), country_id
    )
    return shipping.shipping_details(product.shipping_fee_method, rate, destination, free)


# --- Line pricing ---

async def _load_sizes(db: AsyncSession, size_ids: List[str]) -> dict[str, models.Size]:
    """
    Loads sizes with their variant, product, store and free-shipping countries.
    Fetches all lines in one query.
    """
    stmt = (
        select(models.Size)
        .where(models.Size.id.in_(size_ids))
        .options(
            selectinload(models.Size.variant)
            .selectinload(models.ProductVariant.product)
            .selectinload(models.Product.store),
            selectinload(models.Size.variant)
            .selectinload(models.ProductVariant.product)
            .selectinload(models.Product.free_shipping)
            .selectinload(models.FreeShipping.eligible_countries),
        )
    )
    result = await db.execute(stmt)
    return {size.id: size for size in result.scalars().all()}

async def _load_rates(
    db: AsyncSession, store_ids: Iterable[str], country_id: Optional[str]
) -> dict[str, models.ShippingRate]:
    if country_id is None:
        return {}
    result = await db.execute(
        select(models.ShippingRate).where(
            models.ShippingRate.store_id.in_(list(store_ids)), models.ShippingRate.country_id == country_id
        )
    )
    return {rate.store_id: rate for rate in result.scalars().all()}

async def price_lines(
    db: AsyncSession,
    lines: Iterable,
    destination: schemas.CountryContext,
    country: Optional[models.Country],
) -> List[schemas.PricedLine]:
    """
    Re-prices lines (anything with product_id, variant_id, size_id and quantity)
    from current catalog data. Client prices are never read.
    """
    lines = list(lines)
    if not lines:
        return []
    sizes = await _load_sizes(db, list({line.size_id for line in lines}))

    for line in lines:
        size = sizes.get(line.size_id)
        if size is None or size.variant_id != line.variant_id or size.variant.product_id != line.product_id:
            raise ValidationFailure(
                f"Invalid product, variant, or size combination for productId {line.product_id}, "
                f"variantId {line.variant_id}, sizeId {line.size_id}"
            )
        if size.variant.product.store is None:
            raise NotFound("Store not found.")

    country_id = country.id if country else None
    stores = {size.variant.product.store_id: size.variant.product.store for size in sizes.values()}
    rates = await _load_rates(db, stores.keys(), country_id)
    resolved = {
        store_id: shipping.resolve_shipping_rate(store, rates.get(store_id))
        for store_id, store in stores.items()
    }

    priced = []
    for size_id, quantity in logic.merge_quantities(lines).items():
        size = sizes[size_id]
        rate = resolved[size.variant.product.store_id]
        priced.append(logic.price_line(size, quantity, destination, country_id, rate))
    logger.info(f"Priced {len(priced)} lines for destination {destination.code}")
    return priced

async def update_cart_with_latest(
    db: AsyncSession, lines: Iterable, destination: schemas.CountryContext
) -> List[schemas.PricedLine]:
    """Latest price, stock-clamped quantity and shipping for client-side cart lines. Nothing is saved."""
    country = await resolve_country(db, destination)
    return await price_lines(db, lines, destination, country)


# --- Cart persistence ---

def _cart_options():
    return (selectinload(models.Cart.cart_items), selectinload(models.Cart.coupon))

async def get_cart(db: AsyncSession, cart_id: str) -> models.Cart | None:
    result = await db.execute(
        select(models.Cart)
        .where(models.Cart.id == cart_id)
        .options(*_cart_options())
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()

async def get_cart_for_user(db: AsyncSession, user_id: str) -> models.Cart | None:
    result = await db.execute(
        select(models.Cart)
        .where(models.Cart.user_id == user_id)
        .options(*_cart_options())
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()

async def get_owned_cart(db: AsyncSession, auth: AuthContext, cart_id: str) -> models.Cart:
    cart = await get_cart(db, cart_id)
    if cart is None:
        raise NotFound("Cart not found.")
    if cart.user_id != auth.user_id:
        raise Unauthorized("Unauthorized Access: You do not own this cart.")
    return cart

async def get_user_cart(db: AsyncSession, auth: Optional[AuthContext]) -> models.Cart:
    auth = require_user(auth)
    cart = await get_cart_for_user(db, auth.user_id)
    if cart is None:
        raise NotFound("Cart not found.")
    return cart

def _cart_item(line: schemas.PricedLine, position: int) -> models.CartItem:
    return models.CartItem(
        position=position,
        product_id=line.product_id,
        variant_id=line.variant_id,
        size_id=line.size_id,
        store_id=line.store_id,
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
    )

def replace_cart_items(cart: models.Cart, priced: List[schemas.PricedLine]) -> schemas.CartTotals:
    """Swaps every item of a loaded cart for freshly priced ones and resets its totals."""
    totals = logic.aggregate_cart(priced)
    cart.cart_items = [_cart_item(line, position) for position, line in enumerate(priced)]
    cart.sub_total = totals.sub_total
    cart.shipping_fees = totals.shipping_fees
    cart.total = totals.total
    cart.updated_at = logic.utcnow() # Always bumps the row version
    return totals

async def commit_cart(db: AsyncSession, cart_label: str):
    try:
        await db.commit()
    except (StaleDataError, IntegrityError) as e:
        await db.rollback()
        logger.warning(f"Concurrent update of cart {cart_label} rejected: {e}")
        raise ConcurrentModification("The cart was modified by another request. Please try again.")

async def save_user_cart(
    db: AsyncSession,
    auth: Optional[AuthContext],
    lines: Iterable,
    destination: schemas.CountryContext,
) -> models.Cart:
    """
    Re-prices the submitted lines and replaces the user's cart with them in one
    transaction. A coupon applied to the previous contents is dropped.
    """
    auth = require_user(auth)
    country = await resolve_country(db, destination)
    priced = await price_lines(db, lines, destination, country)

    cart = await get_cart_for_user(db, auth.user_id)
    if cart is None:
        cart = models.Cart(user_id=auth.user_id, cart_items=[])
        db.add(cart)
        logger.info(f"Creating cart for user {auth.user_id}")
    else:
        cart.coupon = None
        logger.info(f"Replacing cart {cart.id} for user {auth.user_id}")

    totals = replace_cart_items(cart, priced)
    await commit_cart(db, auth.user_id)
    logger.info(
        f"Saved cart for user {auth.user_id}: subtotal {totals.sub_total:.2f}, "
        f"shipping {totals.shipping_fees:.2f}, total {totals.total:.2f}"
    )
    return await get_cart(db, cart.id)

async def update_checkout_products_with_latest(
    db: AsyncSession,
    auth: Optional[AuthContext],
    cart_id: str,
    destination: schemas.CountryContext | str,
) -> models.Cart:
    """
    Re-prices a saved cart for the checkout destination and re-applies its
    coupon while it is still active and matches a store in the cart.
    """
    auth = require_user(auth)
    cart = await get_owned_cart(db, auth, cart_id)
    country = await resolve_country(db, destination)
    if isinstance(destination, str):
        if country is None:
            raise NotFound("Country not found.")
        destination = schemas.CountryContext(name=country.name, code=country.code)

    priced = await price_lines(db, list(cart.cart_items), destination, country)
    totals = replace_cart_items(cart, priced)

    coupon = cart.coupon
    if coupon is not None and logic.coupon_is_active(coupon):
        discount = logic.coupon_discount(priced, coupon.store_id, coupon.discount)
        cart.total = totals.total - discount
        logger.debug(f"Cart {cart.id}: coupon {coupon.code} re-applied, discount {discount:.2f}")
    elif coupon is not None:
        logger.info(f"Cart {cart.id}: coupon {coupon.code} is no longer active, no discount applied")

    await commit_cart(db, cart.id)
    return await get_cart(db, cart.id)

async def empty_user_cart(db: AsyncSession, auth: Optional[AuthContext]) -> bool:
    auth = require_user(auth)
    cart = await get_cart_for_user(db, auth.user_id)
    if cart is None:
        raise NotFound("Cart not found.")
    await db.delete(cart)
    await db.commit()
    logger.info(f"Deleted cart {cart.id} for user {auth.user_id}")
    return True


# --- Shipping addresses ---

async def get_user_shipping_addresses(
    db: AsyncSession, auth: Optional[AuthContext]
) -> List[models.ShippingAddress]:
    auth = require_user(auth)
    result = await db.execute(
        select(models.ShippingAddress).where(models.ShippingAddress.user_id == auth.user_id)
    )
    return list(result.scalars().all())

async def upsert_shipping_address(
    db: AsyncSession, auth: Optional[AuthContext], address: schemas.ShippingAddressUpsert
) -> models.ShippingAddress:
    auth = require_user(auth)
    if await db.get(models.Country, address.country_id) is None:
        raise NotFound("Country not found.")

    db_address = await db.get(models.ShippingAddress, address.id) if address.id else None
    if db_address is not None and db_address.user_id != auth.user_id:
        raise Unauthorized("Unauthorized Access: You do not own this address.")

    if address.default:
        # Only one default address per user
        await db.execute(
            update(models.ShippingAddress)
            .where(models.ShippingAddress.user_id == auth.user_id, models.ShippingAddress.default.is_(True))
            .values(default=False)
            .execution_options(synchronize_session="fetch")
        )

    data = address.model_dump(exclude={"id"})
    if db_address is None:
        db_address = models.ShippingAddress(**data, user_id=auth.user_id)
        if address.id:
            db_address.id = address.id
        db.add(db_address)
        logger.info(f"Creating shipping address for user {auth.user_id}")
    else:
        for field, value in data.items():
            setattr(db_address, field, value)
        logger.info(f"Updating shipping address {db_address.id} for user {auth.user_id}")
    await db.commit()
    await db.refresh(db_address)
    return db_address
