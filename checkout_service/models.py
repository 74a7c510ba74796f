import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Float, ForeignKey, Integer, String, Table, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    # Naive UTC, comparable with values read back from any backend
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ShippingFeeMethod(str, enum.Enum):
    ITEM = "ITEM"
    WEIGHT = "WEIGHT"
    FIXED = "FIXED"


class UserRole(str, enum.Enum):
    USER = "USER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"


class OrderStatus(str, enum.Enum):
    Pending = "Pending"
    Confirmed = "Confirmed"
    Processing = "Processing"
    Shipped = "Shipped"
    OutforDelivery = "OutforDelivery"
    Delivered = "Delivered"
    Cancelled = "Cancelled"
    Failed = "Failed"
    Refunded = "Refunded"
    Returned = "Returned"
    PartiallyShipped = "PartiallyShipped"
    OnHold = "OnHold"


class PaymentStatus(str, enum.Enum):
    Pending = "Pending"
    Paid = "Paid"
    Failed = "Failed"
    Declined = "Declined"
    Cancelled = "Cancelled"
    Refunded = "Refunded"
    PartiallyRefunded = "PartiallyRefunded"
    Chargeback = "Chargeback"


class ProductStatus(str, enum.Enum):
    Pending = "Pending"
    Processing = "Processing"
    ReadyForShipment = "ReadyForShipment"
    Shipped = "Shipped"
    Delivered = "Delivered"
    Canceled = "Canceled"
    Returned = "Returned"
    Refunded = "Refunded"
    FailedDelivery = "FailedDelivery"
    OnHold = "OnHold"
    Backordered = "Backordered"
    PartiallyShipped = "PartiallyShipped"
    ExchangeRequested = "ExchangeRequested"
    AwaitingPickup = "AwaitingPickup"


free_shipping_countries = Table(
    "free_shipping_countries",
    Base.metadata,
    Column("free_shipping_id", String(36), ForeignKey("free_shipping.id", ondelete="CASCADE"), primary_key=True),
    Column("country_id", String(36), ForeignKey("countries.id", ondelete="CASCADE"), primary_key=True),
)


class Country(Base):
    __tablename__ = "countries"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False)
    code = Column(String(8), nullable=False)

    __table_args__ = (
        UniqueConstraint("name", "code", name="countries_name_code_unique"),
    )

    def __repr__(self):
        return f"<Country(code='{self.code}', name='{self.name}')>"


class Store(Base):
    __tablename__ = "stores"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    url = Column(String(255), nullable=False, unique=True, index=True)
    user_id = Column(String(64), nullable=False, index=True) # Owner, issued by the auth provider
    default_shipping_service = Column(String(255), nullable=False, default="International Delivery")
    default_shipping_fee_per_item = Column(Float, nullable=False, default=0.0)
    default_shipping_fee_for_additional_item = Column(Float, nullable=False, default=0.0)
    default_shipping_fee_per_kg = Column(Float, nullable=False, default=0.0)
    default_shipping_fee_fixed = Column(Float, nullable=False, default=0.0)
    default_delivery_time_min = Column(Integer, nullable=False, default=7)
    default_delivery_time_max = Column(Integer, nullable=False, default=30)
    return_policy = Column(Text, nullable=True)

    def __repr__(self):
        return f"<Store(id='{self.id}', url='{self.url}')>"


class ShippingRate(Base):
    """Per-country override of a store's shipping defaults. Unset fields fall back to the store."""
    __tablename__ = "shipping_rates"

    id = Column(String(36), primary_key=True, default=_uuid)
    store_id = Column(String(36), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    country_id = Column(String(36), ForeignKey("countries.id", ondelete="CASCADE"), nullable=False)
    shipping_service = Column(String(255), nullable=True)
    shipping_fee_per_item = Column(Float, nullable=True)
    shipping_fee_for_additional_item = Column(Float, nullable=True)
    shipping_fee_per_kg = Column(Float, nullable=True)
    shipping_fee_fixed = Column(Float, nullable=True)
    delivery_time_min = Column(Integer, nullable=True)
    delivery_time_max = Column(Integer, nullable=True)
    return_policy = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("store_id", "country_id", name="shipping_rates_store_country_unique"),
    )


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    store_id = Column(String(36), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True)
    shipping_fee_method = Column(String(20), nullable=False, default=ShippingFeeMethod.ITEM.value)
    free_shipping_for_all_countries = Column(Boolean, nullable=False, default=False)

    store = relationship("Store", lazy="raise")
    free_shipping = relationship("FreeShipping", uselist=False, back_populates="product", lazy="raise")
    variants = relationship("ProductVariant", back_populates="product", lazy="raise")


class FreeShipping(Base):
    __tablename__ = "free_shipping"

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, unique=True)

    product = relationship("Product", back_populates="free_shipping", lazy="raise")
    eligible_countries = relationship("Country", secondary=free_shipping_countries, lazy="raise")


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    variant_name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=False)
    weight = Column(Float, nullable=False, default=0.0) # kg
    image = Column(String(1024), nullable=True)

    product = relationship("Product", back_populates="variants", lazy="raise")
    sizes = relationship("Size", back_populates="variant", lazy="raise")


class Size(Base):
    __tablename__ = "sizes"

    id = Column(String(36), primary_key=True, default=_uuid)
    variant_id = Column(String(36), ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=False, index=True)
    size = Column(String(50), nullable=False)
    price = Column(Float, nullable=False)
    discount = Column(Float, nullable=False, default=0.0) # Percent off price, applied at read time
    quantity = Column(Integer, nullable=False, default=0) # Stock

    variant = relationship("ProductVariant", back_populates="sizes", lazy="raise")

    __table_args__ = (
        CheckConstraint('quantity >= 0', name='sizes_quantity_non_negative'),
        CheckConstraint('discount >= 0 AND discount <= 100', name='sizes_discount_percent'),
    )


class Cart(Base):
    __tablename__ = "carts"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    coupon_id = Column(String(36), ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True)
    sub_total = Column(Float, nullable=False, default=0.0)
    shipping_fees = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    cart_items = relationship(
        "CartItem", back_populates="cart", cascade="all, delete-orphan", lazy="raise", order_by="CartItem.position"
    )
    coupon = relationship("Coupon", lazy="raise")

    # Stale concurrent writes raise StaleDataError instead of overwriting each other
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Cart(id='{self.id}', user_id='{self.user_id}', total={self.total})>"


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    cart_id = Column(String(36), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(36), nullable=False)
    variant_id = Column(String(36), nullable=False)
    size_id = Column(String(36), nullable=False)
    store_id = Column(String(36), nullable=False)
    product_slug = Column(String(255), nullable=False)
    variant_slug = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=False)
    name = Column(String(512), nullable=False)
    image = Column(String(1024), nullable=True)
    size = Column(String(50), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    shipping_fee = Column(Float, nullable=False, default=0.0)
    total_price = Column(Float, nullable=False)

    cart = relationship("Cart", back_populates="cart_items", lazy="raise")


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=_uuid)
    code = Column(String(50), nullable=False, index=True)
    store_id = Column(String(36), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    discount = Column(Integer, nullable=False) # Percent
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    store = relationship("Store", lazy="raise")

    __table_args__ = (
        UniqueConstraint("store_id", "code", name="coupons_store_code_unique"),
        CheckConstraint('discount >= 1 AND discount <= 99', name='coupons_discount_percent'),
    )


class ShippingAddress(Base):
    __tablename__ = "shipping_addresses"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    country_id = Column(String(36), ForeignKey("countries.id"), nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    phone = Column(String(50), nullable=False)
    address1 = Column(String(255), nullable=False)
    address2 = Column(String(255), nullable=True)
    city = Column(String(100), nullable=False)
    state = Column(String(100), nullable=False)
    zip_code = Column(String(20), nullable=False)
    default = Column(Boolean, nullable=False, default=False)

    country = relationship("Country", lazy="raise")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    shipping_address_id = Column(String(36), ForeignKey("shipping_addresses.id"), nullable=False)
    order_status = Column(String(30), nullable=False, default=OrderStatus.Pending.value)
    payment_status = Column(String(30), nullable=False, default=PaymentStatus.Pending.value)
    payment_method = Column(String(30), nullable=True)
    sub_total = Column(Float, nullable=False, default=0.0)
    shipping_fees = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    groups = relationship("OrderGroup", back_populates="order", cascade="all, delete-orphan", lazy="raise")
    payment_details = relationship("PaymentDetails", uselist=False, back_populates="order", lazy="raise")

    def __repr__(self):
        return f"<Order(id='{self.id}', total={self.total}, payment_status='{self.payment_status}')>"


class OrderGroup(Base):
    __tablename__ = "order_groups"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    status = Column(String(30), nullable=False, default=OrderStatus.Pending.value)
    coupon_id = Column(String(36), ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True)
    sub_total = Column(Float, nullable=False)
    shipping_fees = Column(Float, nullable=False)
    total = Column(Float, nullable=False)
    shipping_service = Column(String(255), nullable=False)
    shipping_delivery_min = Column(Integer, nullable=False)
    shipping_delivery_max = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="groups", lazy="raise")
    items = relationship("OrderItem", back_populates="group", cascade="all, delete-orphan", lazy="raise")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_group_id = Column(String(36), ForeignKey("order_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), nullable=False)
    variant_id = Column(String(36), nullable=False)
    size_id = Column(String(36), nullable=False)
    product_slug = Column(String(255), nullable=False)
    variant_slug = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=False)
    name = Column(String(512), nullable=False)
    image = Column(String(1024), nullable=True)
    size = Column(String(50), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    shipping_fee = Column(Float, nullable=False)
    total_price = Column(Float, nullable=False)
    status = Column(String(30), nullable=False, default=ProductStatus.Pending.value)

    group = relationship("OrderGroup", back_populates="items", lazy="raise")


class PaymentDetails(Base):
    __tablename__ = "payment_details"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)
    payment_intent_id = Column(String(255), nullable=False)
    payment_method = Column(String(30), nullable=False)
    status = Column(String(50), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(10), nullable=False)
    user_id = Column(String(64), nullable=False)

    order = relationship("Order", back_populates="payment_details", lazy="raise")
