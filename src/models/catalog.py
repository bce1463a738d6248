"""Catalog table row definitions used by the pricing engine."""

from typing import TypedDict

from src.models.order import DeliveryFormat


class CatalogProduct(TypedDict):
    """products table row (price columns are decimal major units)."""

    id: str
    name: str
    base_price: float
    price: float | None
    inventory: int
    is_active: bool


class CatalogVariant(TypedDict):
    """product_variants table row."""

    id: str
    product_id: str
    name: str
    delivery_format: DeliveryFormat
    price_modifier: float
    is_active: bool
