# tests/conftest.py
# Ensure project root (parent of tests) is on sys.path so `import checkout_service...` works.
import os
import sys
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

# Must be set before the package reads its config
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["EVENTS_ENABLED"] = "false"

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from checkout_service import cache, kafka_client, logic, models, schemas
from checkout_service.auth import AuthContext
from checkout_service.database import Base


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def events(monkeypatch):
    """Records Redis status writes and Kafka messages instead of talking to either."""
    recorded = SimpleNamespace(statuses={}, messages=[])

    async def set_order_status(order_id, status, details=None):
        recorded.statuses[order_id] = {"status": status, "details": details or {}}

    async def get_order_status(order_id):
        return recorded.statuses.get(order_id)

    async def send_message(topic, message):
        recorded.messages.append((topic, message))

    monkeypatch.setattr(cache, "set_order_status", set_order_status)
    monkeypatch.setattr(cache, "get_order_status", get_order_status)
    monkeypatch.setattr(kafka_client, "send_message", send_message)
    return recorded


@pytest.fixture
def buyer():
    return AuthContext(user_id="user-1")


@pytest.fixture
def seller_a():
    return AuthContext(user_id="seller-a", role=models.UserRole.SELLER.value)


@pytest.fixture
def seller_b():
    return AuthContext(user_id="seller-b", role=models.UserRole.SELLER.value)


@pytest.fixture
def us():
    return schemas.CountryContext(name="United States", code="US")


@pytest.fixture
def canada():
    return schemas.CountryContext(name="Canada", code="CA", city="Toronto")


@pytest.fixture
async def catalog(db):
    """
    Two stores with one product per shipping method.

    Store A ships per item (5 + 2 per additional) or per kg (3), and has a
    Canada override for the per-item fee only. Store B charges a fixed 4.
    """
    us = models.Country(id="country-us", name="United States", code="US")
    ca = models.Country(id="country-ca", name="Canada", code="CA")

    store_a = models.Store(
        id="store-a", name="Alpha Goods", url="alpha", user_id="seller-a",
        default_shipping_service="Alpha Post",
        default_shipping_fee_per_item=5.0, default_shipping_fee_for_additional_item=2.0,
        default_shipping_fee_per_kg=3.0, default_shipping_fee_fixed=10.0,
        default_delivery_time_min=3, default_delivery_time_max=7,
        return_policy="Returns within 14 days.",
    )
    store_b = models.Store(
        id="store-b", name="Beta Supply", url="beta", user_id="seller-b",
        default_shipping_service="Beta Freight",
        default_shipping_fee_per_item=1.0, default_shipping_fee_for_additional_item=0.5,
        default_shipping_fee_per_kg=1.0, default_shipping_fee_fixed=4.0,
        default_delivery_time_min=5, default_delivery_time_max=10,
    )
    rate_a_ca = models.ShippingRate(
        id="rate-a-ca", store_id="store-a", country_id="country-ca",
        shipping_service="Alpha Express", shipping_fee_per_item=8.0,
    )

    item_product = models.Product(
        id="p-item", store_id="store-a", name="Linen Shirt", slug="linen-shirt",
        shipping_fee_method=models.ShippingFeeMethod.ITEM.value,
    )
    weight_product = models.Product(
        id="p-weight", store_id="store-a", name="Cast Iron Pan", slug="cast-iron-pan",
        shipping_fee_method=models.ShippingFeeMethod.WEIGHT.value,
    )
    fixed_product = models.Product(
        id="p-fixed", store_id="store-b", name="Desk Lamp", slug="desk-lamp",
        shipping_fee_method=models.ShippingFeeMethod.FIXED.value,
    )
    free_product = models.Product(
        id="p-free", store_id="store-b", name="Sticker Pack", slug="sticker-pack",
        shipping_fee_method=models.ShippingFeeMethod.ITEM.value,
    )
    free_shipping = models.FreeShipping(id="fs-free", product_id="p-free", eligible_countries=[ca])

    variants = [
        models.ProductVariant(id="v-item", product_id="p-item", variant_name="White", slug="linen-shirt-white",
                              sku="SHIRT-W", weight=0.3, image="shirt.png"),
        models.ProductVariant(id="v-weight", product_id="p-weight", variant_name="26cm", slug="pan-26",
                              sku="PAN-26", weight=2.0),
        models.ProductVariant(id="v-fixed", product_id="p-fixed", variant_name="Black", slug="lamp-black",
                              sku="LAMP-B", weight=1.5),
        models.ProductVariant(id="v-free", product_id="p-free", variant_name="Mixed", slug="stickers-mixed",
                              sku="STK-M", weight=0.1),
    ]
    sizes = [
        models.Size(id="s-item", variant_id="v-item", size="M", price=20.0, discount=0.0, quantity=10),
        models.Size(id="s-weight", variant_id="v-weight", size="One", price=50.0, discount=10.0, quantity=5),
        models.Size(id="s-fixed", variant_id="v-fixed", size="One", price=30.0, discount=0.0, quantity=3),
        models.Size(id="s-free", variant_id="v-free", size="One", price=4.0, discount=0.0, quantity=100),
    ]

    db.add_all([us, ca, store_a, store_b])
    await db.flush()
    db.add_all([rate_a_ca, item_product, weight_product, fixed_product, free_product])
    await db.flush()
    db.add_all([free_shipping, *variants])
    await db.flush()
    db.add_all(sizes)
    await db.commit()

    def line(key: str, quantity: int) -> schemas.CartLineRequest:
        return schemas.CartLineRequest(product_id=f"p-{key}", variant_id=f"v-{key}", size_id=f"s-{key}", quantity=quantity)

    return SimpleNamespace(us=us, ca=ca, store_a=store_a, store_b=store_b, line=line)


@pytest.fixture
async def address(db, catalog):
    address = models.ShippingAddress(
        id="addr-1", user_id="user-1", country_id="country-us", first_name="Ada", last_name="Lovelace",
        phone="555-0100", address1="1 Main St", city="Springfield", state="IL", zip_code="62701", default=True,
    )
    db.add(address)
    await db.commit()
    return address


@pytest.fixture
def make_coupon(db):
    async def make(code="ALPHA10", store_id="store-a", discount=10, starts_in_days=-1, ends_in_days=30):
        now = logic.utcnow()
        coupon = models.Coupon(
            code=code, store_id=store_id, discount=discount,
            start_date=now + timedelta(days=starts_in_days), end_date=now + timedelta(days=ends_in_days),
        )
        db.add(coupon)
        await db.commit()
        return coupon
    return make
