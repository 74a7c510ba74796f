"""
Shipping rules for a single product line.

Pure functions over already-loaded rows: the store, its optional per-country
override, and the product's free-shipping settings. Database lookups live in
crud.py.
"""
from typing import Iterable, Optional
import logging

from . import config, models, schemas
from .errors import ValidationFailure

logger = logging.getLogger(__name__)


def _pick(override, default):
    # An override field only counts when it was actually set
    return default if override is None else override


def resolve_shipping_rate(
    store: models.Store, rate: Optional[models.ShippingRate]
) -> schemas.ResolvedShippingRate:
    """Merges a per-country override onto the store defaults, field by field."""
    if rate is None:
        logger.debug(f"No shipping rate override for store {store.id}, using store defaults")
    return schemas.ResolvedShippingRate(
        shipping_service=_pick(rate and rate.shipping_service, store.default_shipping_service)
        or config.DEFAULT_SHIPPING_SERVICE,
        fee_per_item=_pick(rate and rate.shipping_fee_per_item, store.default_shipping_fee_per_item) or 0.0,
        fee_for_additional_item=_pick(
            rate and rate.shipping_fee_for_additional_item, store.default_shipping_fee_for_additional_item
        ) or 0.0,
        fee_per_kg=_pick(rate and rate.shipping_fee_per_kg, store.default_shipping_fee_per_kg) or 0.0,
        fee_fixed=_pick(rate and rate.shipping_fee_fixed, store.default_shipping_fee_fixed) or 0.0,
        delivery_time_min=_pick(rate and rate.delivery_time_min, store.default_delivery_time_min) or 0,
        delivery_time_max=_pick(rate and rate.delivery_time_max, store.default_delivery_time_max) or 0,
        return_policy=_pick(rate and rate.return_policy, store.return_policy) or config.DEFAULT_RETURN_POLICY,
    )


def is_free_shipping(
    free_for_all_countries: bool,
    eligible_country_ids: Iterable[str],
    country_id: Optional[str],
) -> bool:
    if free_for_all_countries:
        return True
    if country_id is None:
        return False
    return country_id in set(eligible_country_ids)


def eligible_country_ids(product: models.Product) -> list[str]:
    """Country ids from the product's free-shipping list; expects free_shipping to be loaded."""
    if product.free_shipping is None:
        return []
    return [country.id for country in product.free_shipping.eligible_countries]


def _unknown_method(method: str) -> float:
    if config.STRICT_SHIPPING_METHODS:
        raise ValidationFailure(f"Unsupported shipping fee method '{method}'.")
    logger.warning(f"Unknown shipping fee method '{method}', charging no shipping fee")
    return 0.0


def calculate_shipping_fee(
    rate: schemas.ResolvedShippingRate,
    method: str,
    quantity: int,
    weight: float,
    free_shipping: bool,
) -> float:
    if free_shipping or quantity <= 0:
        return 0.0

    if method == models.ShippingFeeMethod.ITEM.value:
        return rate.fee_per_item + rate.fee_for_additional_item * (quantity - 1)
    if method == models.ShippingFeeMethod.WEIGHT.value:
        return rate.fee_per_kg * weight * quantity
    if method == models.ShippingFeeMethod.FIXED.value:
        return rate.fee_fixed
    return _unknown_method(method)


def shipping_details(
    method: str,
    rate: schemas.ResolvedShippingRate,
    destination: schemas.CountryContext,
    free_shipping: bool,
) -> schemas.ShippingDetails:
    """Per-unit fee figures shown before a quantity is known."""
    details = schemas.ShippingDetails(
        shipping_fee_method=method,
        shipping_service=rate.shipping_service,
        delivery_time_min=rate.delivery_time_min,
        delivery_time_max=rate.delivery_time_max,
        return_policy=rate.return_policy,
        country_code=destination.code,
        country_name=destination.name,
        city=destination.city,
        is_free_shipping=free_shipping,
    )
    if free_shipping:
        return details

    if method == models.ShippingFeeMethod.ITEM.value:
        details.shipping_fee = rate.fee_per_item
        details.extra_shipping_fee = rate.fee_for_additional_item
    elif method == models.ShippingFeeMethod.WEIGHT.value:
        details.shipping_fee = rate.fee_per_kg
    elif method == models.ShippingFeeMethod.FIXED.value:
        details.shipping_fee = rate.fee_fixed
    return details
