"""Authoritative server-side pricing for checkout carts."""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

from supabase import Client

from src.api.middleware.error_handler import (
    CheckoutFailedError,
    InvalidCartError,
    InvalidVariantForProductError,
    ProductNotFoundError,
    VariantNotFoundError,
)
from src.core.config import Settings, get_settings
from src.core.supabase import get_supabase_client
from src.models.catalog import CatalogProduct, CatalogVariant
from src.models.order import PHYSICAL_FORMATS
from src.services.cart_fingerprint import NormalizedLine

logger = logging.getLogger(__name__)

_CENT = Decimal("1")


def to_minor_units(amount: Any) -> int:
    """Convert a catalog decimal price to integer minor units.

    This is the single rounding step; everything after it is integer math.
    ``str()`` avoids carrying binary float error into the Decimal.
    """
    return int((Decimal(str(amount)) * 100).quantize(_CENT, rounding=ROUND_HALF_UP))


def format_minor_units(amount: int, currency: str = "eur") -> str:
    """Render minor units for humans, e.g. ``379.80 EUR``."""
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(amount), 100)
    return f"{sign}{major}.{minor:02d} {currency.upper()}"


@dataclass(frozen=True)
class PricedLine:
    """A cart line with catalog snapshots and its authoritative unit price."""

    product_id: str
    variant_id: str
    product_name: str
    variant_name: str
    delivery_format: str
    quantity: int
    unit_price: int

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity

    @property
    def is_physical(self) -> bool:
        return self.delivery_format in PHYSICAL_FORMATS


@dataclass(frozen=True)
class PricedCart:
    """Priced cart; ``total`` is always the sum of line totals."""

    lines: tuple[PricedLine, ...]
    currency: str

    @property
    def total(self) -> int:
        return sum(line.line_total for line in self.lines)

    @property
    def requires_shipping(self) -> bool:
        return any(line.is_physical for line in self.lines)


class PricingService:
    """Computes line and order totals from trusted catalog rows.

    Client-submitted prices are never read. Products and variants are each
    fetched with one batched ``in`` query regardless of cart size.
    """

    def __init__(self, client: Client | None = None, settings: Settings | None = None) -> None:
        self.client = client or get_supabase_client()
        self.settings = settings or get_settings()

    def validate_bounds(self, lines: list[NormalizedLine]) -> None:
        """Check line count and per-line quantity bounds.

        Raises:
            InvalidCartError: If the cart is empty or out of bounds.
        """
        if not lines:
            raise InvalidCartError("Cart is empty")
        if len(lines) > self.settings.max_cart_lines:
            raise InvalidCartError(f"Cart cannot contain more than {self.settings.max_cart_lines} lines")
        for index, line in enumerate(lines):
            if not 1 <= line.quantity <= self.settings.max_line_quantity:
                raise InvalidCartError(
                    f"Quantity for {line.product_id}/{line.variant_id} must be between 1 and "
                    f"{self.settings.max_line_quantity}",
                    details=[
                        {
                            "loc": ["items", str(index), "quantity"],
                            "msg": "Quantity out of range",
                            "type": "invalid_quantity",
                        }
                    ],
                )

    def _fetch_products(self, product_ids: Iterable[str]) -> dict[str, CatalogProduct]:
        response = (
            self.client.table("products")
            .select("id, name, base_price, price, inventory, is_active")
            .in_("id", sorted(set(product_ids)))
            .execute()
        )
        return {row["id"]: row for row in response.data or []}

    def _fetch_variants(self, variant_ids: Iterable[str]) -> dict[str, CatalogVariant]:
        response = (
            self.client.table("product_variants")
            .select("id, product_id, name, delivery_format, price_modifier, is_active")
            .in_("id", sorted(set(variant_ids)))
            .execute()
        )
        return {row["id"]: row for row in response.data or []}

    @staticmethod
    def unit_price(product: CatalogProduct, variant: CatalogVariant) -> int:
        """Unit price in minor units for a product/variant pair.

        A promotional ``price`` only ever lowers the base price.
        """
        base = Decimal(str(product["base_price"]))
        if product.get("price") is not None:
            base = min(base, Decimal(str(product["price"])))
        modifier = Decimal(str(variant.get("price_modifier") or 0))
        return to_minor_units(base + modifier)

    async def price_cart(self, lines: list[NormalizedLine]) -> PricedCart:
        """Validate and price a normalized cart.

        Args:
            lines: Normalized cart lines (duplicates merged).

        Returns:
            PricedCart: Lines in input order with authoritative prices.

        Raises:
            InvalidCartError: Empty or out-of-bounds cart.
            ProductNotFoundError: Unknown or inactive product.
            VariantNotFoundError: Unknown or inactive variant.
            InvalidVariantForProductError: Variant belongs to another product.
        """
        self.validate_bounds(lines)

        products = self._fetch_products(line.product_id for line in lines)
        variants = self._fetch_variants(line.variant_id for line in lines)

        priced: list[PricedLine] = []
        for line in lines:
            product = products.get(line.product_id)
            if not product or not product.get("is_active", True):
                raise ProductNotFoundError(line.product_id)

            variant = variants.get(line.variant_id)
            if not variant or not variant.get("is_active", True):
                raise VariantNotFoundError(line.variant_id)

            if variant["product_id"] != product["id"]:
                logger.warning(
                    "Rejected variant %s submitted for product %s",
                    line.variant_id,
                    line.product_id,
                )
                raise InvalidVariantForProductError(line.product_id, line.variant_id)

            unit_price = self.unit_price(product, variant)
            if unit_price < 0:
                logger.error("Negative price computed for %s/%s", line.product_id, line.variant_id)
                raise CheckoutFailedError()

            priced.append(
                PricedLine(
                    product_id=product["id"],
                    variant_id=variant["id"],
                    product_name=product["name"],
                    variant_name=variant["name"],
                    delivery_format=variant["delivery_format"],
                    quantity=line.quantity,
                    unit_price=unit_price,
                )
            )

        return PricedCart(lines=tuple(priced), currency=self.settings.store_currency)
