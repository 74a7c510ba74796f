# tests/test_shipping.py
from types import SimpleNamespace

import pytest

from checkout_service import config, models, schemas, shipping
from checkout_service.errors import ValidationFailure


def store(**overrides):
    fields = dict(
        id="store-x",
        default_shipping_service="Standard Post",
        default_shipping_fee_per_item=5.0,
        default_shipping_fee_for_additional_item=2.0,
        default_shipping_fee_per_kg=3.0,
        default_shipping_fee_fixed=10.0,
        default_delivery_time_min=3,
        default_delivery_time_max=7,
        return_policy="Returns within 14 days.",
    )
    fields.update(overrides)
    return models.Store(**fields)


def rate(**fields):
    return schemas.ResolvedShippingRate(shipping_service="Standard Post", **fields)


def test_store_defaults_without_override():
    resolved = shipping.resolve_shipping_rate(store(), None)
    assert resolved.shipping_service == "Standard Post"
    assert resolved.fee_per_item == 5.0
    assert resolved.fee_for_additional_item == 2.0
    assert resolved.fee_per_kg == 3.0
    assert resolved.fee_fixed == 10.0
    assert (resolved.delivery_time_min, resolved.delivery_time_max) == (3, 7)
    assert resolved.return_policy == "Returns within 14 days."


def test_override_falls_back_field_by_field():
    override = models.ShippingRate(shipping_service="Express", shipping_fee_per_item=8.0, delivery_time_max=4)
    resolved = shipping.resolve_shipping_rate(store(), override)
    assert resolved.shipping_service == "Express"
    assert resolved.fee_per_item == 8.0
    assert resolved.delivery_time_max == 4
    # Unset override fields keep the store values
    assert resolved.fee_for_additional_item == 2.0
    assert resolved.fee_fixed == 10.0
    assert resolved.delivery_time_min == 3


def test_zero_override_is_honoured():
    override = models.ShippingRate(shipping_fee_per_item=0.0, shipping_fee_fixed=0.0)
    resolved = shipping.resolve_shipping_rate(store(), override)
    assert resolved.fee_per_item == 0.0
    assert resolved.fee_fixed == 0.0


def test_missing_service_and_policy_use_defaults():
    resolved = shipping.resolve_shipping_rate(store(default_shipping_service=None, return_policy=None), None)
    assert resolved.shipping_service == config.DEFAULT_SHIPPING_SERVICE
    assert resolved.return_policy == config.DEFAULT_RETURN_POLICY


def test_free_for_all_countries_ignores_eligible_list():
    assert shipping.is_free_shipping(True, [], "country-us") is True
    assert shipping.is_free_shipping(True, ["country-ca"], "country-us") is True
    assert shipping.is_free_shipping(True, [], None) is True


def test_free_only_for_eligible_country():
    assert shipping.is_free_shipping(False, ["country-ca"], "country-ca") is True
    assert shipping.is_free_shipping(False, ["country-ca"], "country-us") is False
    assert shipping.is_free_shipping(False, ["country-ca"], None) is False


def test_eligible_country_ids():
    product = SimpleNamespace(free_shipping=SimpleNamespace(eligible_countries=[SimpleNamespace(id="country-ca")]))
    assert shipping.eligible_country_ids(product) == ["country-ca"]
    assert shipping.eligible_country_ids(SimpleNamespace(free_shipping=None)) == []


@pytest.mark.parametrize("quantity, expected", [(1, 5.0), (3, 9.0)])
def test_item_fee(quantity, expected):
    r = rate(fee_per_item=5.0, fee_for_additional_item=2.0)
    assert shipping.calculate_shipping_fee(r, "ITEM", quantity, 0.0, False) == pytest.approx(expected)


def test_weight_fee():
    r = rate(fee_per_kg=3.0)
    assert shipping.calculate_shipping_fee(r, "WEIGHT", 4, 2.0, False) == pytest.approx(24.0)


def test_fixed_fee_ignores_quantity_and_weight():
    r = rate(fee_fixed=7.5)
    fees = {shipping.calculate_shipping_fee(r, "FIXED", q, w, False) for q, w in [(1, 0.1), (4, 2.0), (50, 30.0)]}
    assert fees == {7.5}


@pytest.mark.parametrize("method", ["ITEM", "WEIGHT", "FIXED"])
def test_free_shipping_zeroes_every_method(method):
    r = rate(fee_per_item=5.0, fee_for_additional_item=2.0, fee_per_kg=3.0, fee_fixed=10.0)
    assert shipping.calculate_shipping_fee(r, method, 3, 2.0, True) == 0.0


def test_non_positive_requested_quantity_has_no_fee():
    r = rate(fee_per_item=5.0, fee_fixed=10.0)
    assert shipping.calculate_shipping_fee(r, "ITEM", 0, 1.0, False) == 0.0
    assert shipping.calculate_shipping_fee(r, "FIXED", 0, 1.0, False) == 0.0


def test_unknown_method_charges_nothing(monkeypatch):
    monkeypatch.setattr(config, "STRICT_SHIPPING_METHODS", False)
    assert shipping.calculate_shipping_fee(rate(fee_fixed=10.0), "PIGEON", 2, 1.0, False) == 0.0


def test_unknown_method_rejected_in_strict_mode(monkeypatch):
    monkeypatch.setattr(config, "STRICT_SHIPPING_METHODS", True)
    with pytest.raises(ValidationFailure):
        shipping.calculate_shipping_fee(rate(fee_fixed=10.0), "PIGEON", 2, 1.0, False)


def test_shipping_details_for_item_method():
    destination = schemas.CountryContext(name="Canada", code="CA", city="Toronto")
    details = shipping.shipping_details(
        "ITEM", rate(fee_per_item=5.0, fee_for_additional_item=2.0, delivery_time_min=3, delivery_time_max=7),
        destination, False,
    )
    assert details.shipping_fee == 5.0
    assert details.extra_shipping_fee == 2.0
    assert details.country_code == "CA"
    assert details.city == "Toronto"
    assert details.is_free_shipping is False


def test_shipping_details_when_free():
    destination = schemas.CountryContext(name="Canada", code="CA")
    details = shipping.shipping_details("FIXED", rate(fee_fixed=10.0), destination, True)
    assert details.shipping_fee == 0.0
    assert details.is_free_shipping is True
