from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from typing import List, Optional
import logging

from . import crud, logic, models, schemas
from .auth import AuthContext, require_seller, require_user
from .errors import NotFound, Unauthorized, ValidationFailure

logger = logging.getLogger(__name__)


async def _owned_store(db: AsyncSession, auth: AuthContext, store_url: str) -> models.Store:
    if not store_url:
        raise ValidationFailure("Store URL is required.")
    store = await crud.get_store_by_url(db, store_url)
    if store is None:
        raise NotFound("Store not found.")
    if store.user_id != auth.user_id:
        raise Unauthorized("Unauthorized Access: You do not own this store.")
    return store


async def upsert_coupon(
    db: AsyncSession, auth: Optional[AuthContext], coupon: schemas.CouponUpsert, store_url: str
) -> models.Coupon:
    """Creates or updates a store coupon. Codes are unique within a store."""
    auth = require_seller(auth)
    store = await _owned_store(db, auth, store_url)

    stmt = select(models.Coupon).where(models.Coupon.code == coupon.code, models.Coupon.store_id == store.id)
    if coupon.id:
        stmt = stmt.where(models.Coupon.id != coupon.id)
    if (await db.execute(stmt)).scalars().first() is not None:
        raise ValidationFailure("A coupon with the same code already exists for this store.")

    db_coupon = await db.get(models.Coupon, coupon.id) if coupon.id else None
    if db_coupon is not None and db_coupon.store_id != store.id:
        raise Unauthorized("Unauthorized Access: Coupon belongs to another store.")

    data = {
        "code": coupon.code,
        "discount": coupon.discount,
        "start_date": logic.as_naive_utc(coupon.start_date),
        "end_date": logic.as_naive_utc(coupon.end_date),
    }
    if db_coupon is None:
        db_coupon = models.Coupon(**data, store_id=store.id)
        if coupon.id:
            db_coupon.id = coupon.id
        db.add(db_coupon)
        logger.info(f"Creating coupon '{coupon.code}' for store {store.url}")
    else:
        for field, value in data.items():
            setattr(db_coupon, field, value)
        logger.info(f"Updating coupon '{coupon.code}' for store {store.url}")

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ValidationFailure("A coupon with the same code already exists for this store.")
    await db.refresh(db_coupon)
    return db_coupon


async def get_store_coupons(db: AsyncSession, auth: Optional[AuthContext], store_url: str) -> List[models.Coupon]:
    auth = require_seller(auth)
    store = await _owned_store(db, auth, store_url)
    result = await db.execute(select(models.Coupon).where(models.Coupon.store_id == store.id))
    return list(result.scalars().all())


async def get_coupon(db: AsyncSession, coupon_id: str) -> models.Coupon:
    if not coupon_id:
        raise ValidationFailure("Please provide coupon ID.")
    coupon = await db.get(models.Coupon, coupon_id)
    if coupon is None:
        raise NotFound("Coupon not found.")
    return coupon


async def delete_coupon(
    db: AsyncSession, auth: Optional[AuthContext], coupon_id: str, store_url: str
) -> models.Coupon:
    auth = require_seller(auth)
    if not coupon_id or not store_url:
        raise ValidationFailure("Please provide coupon ID and store URL.")
    store = await _owned_store(db, auth, store_url)
    coupon = await db.get(models.Coupon, coupon_id)
    if coupon is None or coupon.store_id != store.id:
        raise NotFound("Coupon not found.")
    await db.delete(coupon)
    await db.commit()
    logger.info(f"Deleted coupon '{coupon.code}' from store {store.url}")
    return coupon


async def apply_coupon(
    db: AsyncSession, auth: Optional[AuthContext], coupon_code: str, cart_id: str
) -> schemas.ApplyCouponResponse:
    """
    Applies a store coupon to a cart. The discount is a percentage of the
    coupon store's lines (shipping included) and only lowers the cart total;
    items keep their prices. Nothing is written when a check fails.
    """
    auth = require_user(auth)

    result = await db.execute(
        select(models.Coupon).where(models.Coupon.code == coupon_code).options(
            selectinload(models.Coupon.store)
        )
    )
    candidates = list(result.scalars().all())
    if not candidates:
        raise ValidationFailure("Invalid coupon code.")

    cart = await crud.get_owned_cart(db, auth, cart_id)
    if cart.coupon_id:
        raise ValidationFailure("A coupon is already applied to this cart.")

    # Codes are unique per store; prefer the coupon of a store present in the cart
    cart_store_ids = {item.store_id for item in cart.cart_items}
    coupon = next((c for c in candidates if c.store_id in cart_store_ids), candidates[0])

    if not logic.coupon_is_active(coupon):
        raise ValidationFailure("Coupon is expired or not yet active.")

    store_items = [item for item in cart.cart_items if item.store_id == coupon.store_id]
    if not store_items:
        raise ValidationFailure("No items in the cart belong to the store associated with this coupon.")

    discount = logic.coupon_discount(store_items, coupon.store_id, coupon.discount)
    cart.coupon = coupon
    cart.total = cart.total - discount
    cart.updated_at = logic.utcnow()
    await crud.commit_cart(db, cart.id)
    logger.info(f"Applied coupon '{coupon.code}' to cart {cart.id}: discount {discount:.2f}, new total {cart.total:.2f}")

    updated = await crud.get_cart(db, cart.id)
    return schemas.ApplyCouponResponse(
        message=(
            f"Coupon applied successfully. Discount: -${discount:.2f} "
            f"applied to items from {coupon.store.name}."
        ),
        cart=schemas.CartRead.model_validate(updated),
    )


async def remove_coupon(db: AsyncSession, auth: Optional[AuthContext], cart_id: str) -> models.Cart:
    """Detaches the cart's coupon and restores the undiscounted total."""
    auth = require_user(auth)
    cart = await crud.get_owned_cart(db, auth, cart_id)
    if cart.coupon_id is None:
        raise ValidationFailure("No coupon is applied to this cart.")
    totals = logic.aggregate_cart(cart.cart_items)
    cart.coupon = None
    cart.total = totals.total
    cart.updated_at = logic.utcnow()
    await crud.commit_cart(db, cart.id)
    logger.info(f"Removed coupon from cart {cart.id}")
    return await crud.get_cart(db, cart.id)
