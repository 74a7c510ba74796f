from pydantic import BaseModel, Field, conint, constr, model_validator
from typing import Any, Dict, List, Optional
import datetime

from .models import OrderStatus, ProductStatus


# --- Destination / shipping ---

class CountryContext(BaseModel):
    """Shipping destination as carried by the `userCountry` cookie."""
    name: str
    code: str
    city: str = ""
    region: str = ""

class ResolvedShippingRate(BaseModel):
    shipping_service: str
    fee_per_item: float = 0.0
    fee_for_additional_item: float = 0.0
    fee_per_kg: float = 0.0
    fee_fixed: float = 0.0
    delivery_time_min: int = 0
    delivery_time_max: int = 0
    return_policy: str = ""

class ShippingDetails(BaseModel):
    shipping_fee_method: str
    shipping_service: str
    shipping_fee: float = 0.0 # Per item, per kg or fixed depending on the method
    extra_shipping_fee: float = 0.0 # Additional item fee, ITEM method only
    delivery_time_min: int = 0
    delivery_time_max: int = 0
    return_policy: str = ""
    country_code: str
    country_name: str
    city: str = ""
    is_free_shipping: bool = False

class DeliveryDetails(BaseModel):
    shipping_service: str
    delivery_time_min: int
    delivery_time_max: int


# --- Cart ---

class CartLineRequest(BaseModel):
    product_id: str
    variant_id: str
    size_id: str
    quantity: conint(gt=0) # Requested; clamped to stock when priced

class CartLinesRequest(BaseModel):
    items: List[CartLineRequest] = Field(..., min_length=1)

class PricedLine(BaseModel):
    product_id: str
    variant_id: str
    size_id: str
    store_id: str
    product_slug: str
    variant_slug: str
    sku: str
    name: str
    variant_name: str
    image: Optional[str] = None
    size: str
    stock: int
    weight: float
    shipping_method: str
    quantity: int = Field(ge=0)
    price: float = Field(ge=0) # Effective unit price after the size discount
    shipping_fee: float = Field(ge=0)
    total_price: float = Field(ge=0)
    shipping_service: str = ""
    delivery_time_min: int = 0
    delivery_time_max: int = 0
    is_free_shipping: bool = False

class CartTotals(BaseModel):
    sub_total: float
    shipping_fees: float
    total: float

class CouponRead(BaseModel):
    id: str
    code: str
    store_id: str
    discount: int
    start_date: datetime.datetime
    end_date: datetime.datetime

    class Config:
        from_attributes = True

class CartItemRead(BaseModel):
    id: str
    product_id: str
    variant_id: str
    size_id: str
    store_id: str
    product_slug: str
    variant_slug: str
    sku: str
    name: str
    image: Optional[str] = None
    size: str
    quantity: int
    price: float
    shipping_fee: float
    total_price: float

    class Config:
        from_attributes = True

class CartRead(BaseModel):
    id: str
    user_id: str
    coupon_id: Optional[str] = None
    coupon: Optional[CouponRead] = None
    sub_total: float
    shipping_fees: float
    total: float
    cart_items: List[CartItemRead]

    class Config:
        from_attributes = True


# --- Coupons ---

class CouponUpsert(BaseModel):
    id: Optional[str] = None
    code: constr(min_length=2, max_length=50, pattern=r"^[a-zA-Z0-9]+$")
    start_date: datetime.datetime
    end_date: datetime.datetime
    discount: conint(ge=1, le=99) # Percent

    @model_validator(mode="after")
    def check_window(self):
        if self.end_date < self.start_date:
            raise ValueError("End date must not be before start date.")
        return self

class ApplyCouponRequest(BaseModel):
    coupon: constr(min_length=2)

class ApplyCouponResponse(BaseModel):
    message: str
    cart: CartRead


# --- Addresses ---

class ShippingAddressUpsert(BaseModel):
    id: Optional[str] = None
    country_id: str
    first_name: str
    last_name: str
    phone: str
    address1: str
    address2: Optional[str] = None
    city: str
    state: str
    zip_code: str
    default: bool = False

class ShippingAddressRead(ShippingAddressUpsert):
    id: str
    user_id: str

    class Config:
        from_attributes = True


# --- Orders ---

class PlaceOrderRequest(BaseModel):
    shipping_address_id: str
    cart_id: str

class PlaceOrderResponse(BaseModel):
    order_id: str

class OrderItemRead(BaseModel):
    id: str
    product_id: str
    variant_id: str
    size_id: str
    product_slug: str
    variant_slug: str
    sku: str
    name: str
    image: Optional[str] = None
    size: str
    quantity: int
    price: float
    shipping_fee: float
    total_price: float
    status: str

    class Config:
        from_attributes = True

class OrderGroupRead(BaseModel):
    id: str
    store_id: str
    status: str
    coupon_id: Optional[str] = None
    sub_total: float
    shipping_fees: float
    total: float
    shipping_service: str
    shipping_delivery_min: int
    shipping_delivery_max: int
    items: List[OrderItemRead]

    class Config:
        from_attributes = True

class PaymentDetailsRead(BaseModel):
    payment_intent_id: str
    payment_method: str
    status: str
    amount: float
    currency: str

    class Config:
        from_attributes = True

class OrderRead(BaseModel):
    id: str
    user_id: str
    shipping_address_id: str
    order_status: str
    payment_status: str
    payment_method: Optional[str] = None
    sub_total: float
    shipping_fees: float
    total: float
    created_at: datetime.datetime
    groups: List[OrderGroupRead]
    payment_details: Optional[PaymentDetailsRead] = None

    class Config:
        from_attributes = True

class OrderSummary(BaseModel):
    id: str
    order_status: str
    payment_status: str
    total: float
    created_at: datetime.datetime

    class Config:
        from_attributes = True

class OrderGroupStatusUpdate(BaseModel):
    status: OrderStatus

class OrderItemStatusUpdate(BaseModel):
    status: ProductStatus

class StatusResponse(BaseModel):
    status: str


# --- Payments ---

class StripeIntentResponse(BaseModel):
    payment_intent_id: str
    client_secret: Optional[str] = None

class StripeConfirmRequest(BaseModel):
    payment_intent_id: str

class PayPalPaymentResponse(BaseModel):
    payment_id: str
    status: str

class PayPalCaptureRequest(BaseModel):
    payment_id: str


# --- Events ---

class OrderStatusUpdateEvent(BaseModel):
    order_id: str
    status: str
    timestamp: float # e.g., time.time()
    details: Dict[str, Any] | None = None
