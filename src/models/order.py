"""Order model type definitions for database operations."""

from datetime import datetime
from typing import Literal, TypedDict


# Order status values matching the database enum
OrderStatus = Literal["pending", "paid", "refunded", "disputed", "failed"]

# Delivery formats offered per product variant
DeliveryFormat = Literal["digital", "dvd", "usb"]

PHYSICAL_FORMATS: frozenset[str] = frozenset({"dvd", "usb"})
LICENSE_BACKED_FORMATS: frozenset[str] = frozenset({"digital"})


class OrderItem(TypedDict):
    """order_items table row.

    Name, variant and price are snapshots taken at checkout time and are
    never updated afterwards.
    """

    id: str
    order_id: str
    product_id: str
    variant_id: str
    variant_name: str
    delivery_format: DeliveryFormat
    product_name: str
    quantity: int
    unit_price: int


class Order(TypedDict, total=False):
    """orders table row.

    Monetary amounts are integer minor currency units.
    """

    id: str
    reference: str
    user_id: str | None
    customer_email: str
    status: OrderStatus
    total_amount: int
    currency: str
    cart_fingerprint: str
    locale: str
    stripe_session_id: str | None
    stripe_payment_intent: str | None
    stripe_charge_id: str | None
    paid_at: datetime | None
    refunded_at: datetime | None
    refund_reason: str | None
    dispute_reason: str | None
    dispute_status: str | None
    shipping_name: str | None
    shipping_address: str | None
    shipping_zip: str | None
    shipping_city: str | None
    shipping_country: str | None
    shipping_phone_prefix: str | None
    shipping_phone_number: str | None
    created_at: datetime
    updated_at: datetime


class OrderCreate(TypedDict, total=False):
    """Data required to insert a new pending order."""

    reference: str
    user_id: str
    customer_email: str
    status: OrderStatus
    total_amount: int
    currency: str
    cart_fingerprint: str
    locale: str
    shipping_name: str
    shipping_address: str
    shipping_zip: str
    shipping_city: str
    shipping_country: str
    shipping_phone_prefix: str
    shipping_phone_number: str
