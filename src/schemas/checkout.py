"""Checkout and order Pydantic schemas for API request/response models."""

import re
from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


# Order status literal type for validation
OrderStatus = Literal["pending", "paid", "refunded", "disputed", "failed"]

CATALOG_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,99}$"

# Countries we ship physical media to: (phone prefix, postal code pattern)
SUPPORTED_COUNTRIES: dict[str, tuple[str, re.Pattern[str]]] = {
    "FR": ("+33", re.compile(r"^[0-9]{5}$")),
    "BE": ("+32", re.compile(r"^[0-9]{4}$")),
    "CH": ("+41", re.compile(r"^[0-9]{4}$")),
    "MA": ("+212", re.compile(r"^[0-9]{5}$")),
    "LU": ("+352", re.compile(r"^[0-9]{4}$")),
    "DE": ("+49", re.compile(r"^[0-9]{5}$")),
    "ES": ("+34", re.compile(r"^[0-9]{5}$")),
    "IT": ("+39", re.compile(r"^[0-9]{5}$")),
    "PT": ("+351", re.compile(r"^[0-9]{4}-[0-9]{3}$")),
    "NL": ("+31", re.compile(r"^[0-9]{4}\s?[A-Z]{2}$", re.IGNORECASE)),
    "GB": ("+44", re.compile(r"^[A-Z]{1,2}[0-9]{1,2}\s?[0-9][A-Z]{2}$", re.IGNORECASE)),
    "CA": ("+1", re.compile(r"^[A-Z][0-9][A-Z]\s?[0-9][A-Z][0-9]$", re.IGNORECASE)),
    "US": ("+1", re.compile(r"^[0-9]{5}(-[0-9]{4})?$")),
}


class CartLine(BaseModel):
    """A single cart line as submitted by the client.

    Prices are never accepted from the client; only identifiers and quantity.
    """

    model_config = ConfigDict(extra="forbid")

    product_id: str = Field(pattern=CATALOG_ID_PATTERN, description="Catalog product identifier")
    variant_id: str = Field(pattern=CATALOG_ID_PATTERN, description="Catalog variant identifier")
    quantity: int = Field(strict=True, ge=1, le=100, description="Quantity ordered")


class ShippingAddress(BaseModel):
    """Shipping address required for physical (DVD/USB) variants."""

    shipping_name: str = Field(min_length=2, max_length=100, pattern=r"^[A-Za-zÀ-ÿ\s'-]+$")
    shipping_address: str = Field(min_length=5, max_length=200)
    shipping_zip: str = Field(min_length=4, max_length=10)
    shipping_city: str = Field(min_length=2, max_length=100, pattern=r"^[A-Za-zÀ-ÿ\s'-]+$")
    shipping_country: str = Field(min_length=2, max_length=2, description="ISO 3166-1 alpha-2 code")
    shipping_phone_prefix: str = Field(pattern=r"^\+[0-9]{1,4}$")
    shipping_phone_number: str = Field(min_length=8, max_length=15, pattern=r"^[0-9\s]+$")

    @model_validator(mode="after")
    def validate_country_formats(self) -> "ShippingAddress":
        """Check the postal code against the country's format."""
        country = SUPPORTED_COUNTRIES.get(self.shipping_country.upper())
        if country is None:
            raise ValueError(f"Unsupported shipping country: {self.shipping_country}")
        _, zip_pattern = country
        if not zip_pattern.match(self.shipping_zip.strip()):
            raise ValueError(f"Invalid postal code for {self.shipping_country.upper()}")
        self.shipping_country = self.shipping_country.upper()
        self.shipping_zip = self.shipping_zip.strip()
        self.shipping_phone_number = self.shipping_phone_number.replace(" ", "")
        return self


class CheckoutSessionCreate(BaseModel):
    """Schema for creating a checkout session via POST /checkout/session."""

    model_config = ConfigDict(extra="forbid")

    items: list[CartLine] = Field(min_length=1, max_length=50, description="Cart lines")
    email: str | None = Field(
        default=None,
        max_length=255,
        pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$",
        description="Customer email (defaults to the account email)",
    )
    locale: Literal["fr", "en"] = Field(default="en", description="Checkout and email language")
    shipping_address: ShippingAddress | None = Field(
        default=None, description="Required when the cart contains DVD or USB variants"
    )


class CheckoutSessionResponse(BaseModel):
    """Schema for checkout session creation response."""

    session_url: str = Field(description="Stripe Checkout URL to redirect to")
    order_id: UUID = Field(description="Pending order UUID")
    reused: bool = Field(default=False, description="True when an open session was returned")


class CheckoutResumeResponse(BaseModel):
    """Schema for POST /checkout/resume."""

    session_url: str | None = Field(default=None, description="Reusable Stripe Checkout URL")
    should_retry: bool = Field(default=False, description="True when the client must create a new session")


class OrderItemResponse(BaseModel):
    """Schema for a single order line item."""

    model_config = ConfigDict(from_attributes=True)

    product_id: str = Field(description="Catalog product identifier")
    variant_id: str = Field(description="Catalog variant identifier")
    product_name: str = Field(description="Product name at order time")
    variant_name: str = Field(description="Variant name at order time")
    delivery_format: str = Field(description="digital, dvd or usb")
    quantity: int = Field(ge=1, description="Quantity ordered")
    unit_price: int = Field(ge=0, description="Unit price in minor currency units")


class LicenseResponse(BaseModel):
    """Schema for a license key delivered with an order."""

    model_config = ConfigDict(from_attributes=True)

    product_id: str = Field(description="Catalog product identifier")
    key_code: str = Field(description="License activation key")


class OrderResponse(BaseModel):
    """Schema for order API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Order unique identifier")
    reference: str = Field(description="Human-readable order reference")
    status: OrderStatus = Field(description="Order status")
    total_amount: int = Field(description="Total amount in minor currency units")
    currency: str = Field(default="eur", description="Currency code")
    created_at: datetime = Field(description="Creation timestamp")
    paid_at: datetime | None = Field(default=None, description="Payment timestamp")
    items: list[OrderItemResponse] = Field(default_factory=list, description="Order line items")
    licenses: list[LicenseResponse] = Field(default_factory=list, description="Active license keys")


class OrderListResponse(BaseModel):
    """Schema for order list API responses."""

    items: list[OrderResponse] = Field(description="List of orders")


class OrderStatusResponse(BaseModel):
    """Schema for checkout success-page status polling."""

    order_id: UUID = Field(description="Order unique identifier")
    reference: str = Field(description="Human-readable order reference")
    status: OrderStatus = Field(description="Order status")
    total_amount: int = Field(description="Total amount in minor currency units")
    currency: str = Field(description="Currency code")


class CheckoutResumeRequest(BaseModel):
    """Schema for POST /checkout/resume: the cart whose session should be resumed."""

    model_config = ConfigDict(extra="forbid")

    items: list[CartLine] = Field(min_length=1, max_length=50, description="Cart lines")
