"""Unit tests for PricingService."""

from typing import Any

import pytest

from src.api.middleware.error_handler import (
    InvalidCartError,
    InvalidVariantForProductError,
    ProductNotFoundError,
    VariantNotFoundError,
)
from src.services.cart_fingerprint import NormalizedLine
from src.services.pricing_service import PricingService, format_minor_units, to_minor_units


@pytest.fixture
def pricing(catalog: Any, test_settings: Any) -> PricingService:
    return PricingService(catalog, test_settings)


class TestMinorUnits:
    """Tests for the decimal to minor unit conversion."""

    def test_converts_decimal_strings(self) -> None:
        assert to_minor_units("189.90") == 18990
        assert to_minor_units(0) == 0

    def test_rounds_half_up(self) -> None:
        assert to_minor_units("0.005") == 1
        assert to_minor_units("19.994") == 1999

    def test_float_input_does_not_drift(self) -> None:
        assert to_minor_units(0.1 + 0.2) == 30

    def test_format(self) -> None:
        assert format_minor_units(37980, "eur") == "379.80 EUR"
        assert format_minor_units(5, "eur") == "0.05 EUR"


class TestPriceCart:
    """Tests for price_cart."""

    @pytest.mark.asyncio
    async def test_prices_two_digital_licenses(self, pricing: PricingService) -> None:
        """Test the catalog price times quantity: 189.90 x 2 = 379.80."""
        cart = await pricing.price_cart([NormalizedLine("win11-pro", "win11-pro-digital", 2)])

        assert cart.lines[0].unit_price == 18990
        assert cart.total == 37980
        assert cart.currency == "eur"
        assert cart.requires_shipping is False

    @pytest.mark.asyncio
    async def test_promotional_price_and_modifier(self, pricing: PricingService) -> None:
        """Test that the lower promotional price is used and the variant modifier added."""
        cart = await pricing.price_cart(
            [
                NormalizedLine("office-2021", "office-2021-digital", 1),
                NormalizedLine("win11-pro", "win11-pro-usb", 1),
            ]
        )

        prices = {line.variant_id: line.unit_price for line in cart.lines}
        assert prices == {"office-2021-digital": 19900, "win11-pro-usb": 20490}
        assert cart.total == 19900 + 20490
        assert cart.requires_shipping is True

    @pytest.mark.asyncio
    async def test_snapshots_names_and_format(self, pricing: PricingService) -> None:
        cart = await pricing.price_cart([NormalizedLine("win11-pro", "win11-pro-usb", 3)])

        line = cart.lines[0]
        assert line.product_name == "Windows 11 Pro"
        assert line.variant_name == "USB"
        assert line.delivery_format == "usb"
        assert line.line_total == 3 * 20490

    @pytest.mark.asyncio
    async def test_batches_catalog_queries(self, pricing: PricingService, catalog: Any) -> None:
        """Test that products and variants are each fetched once regardless of cart size."""
        await pricing.price_cart(
            [
                NormalizedLine("office-2021", "office-2021-digital", 1),
                NormalizedLine("win11-pro", "win11-pro-digital", 1),
                NormalizedLine("win11-pro", "win11-pro-usb", 1),
            ]
        )

        assert catalog.calls.count(("products", "select")) == 1
        assert catalog.calls.count(("product_variants", "select")) == 1

    @pytest.mark.asyncio
    async def test_unknown_product(self, pricing: PricingService) -> None:
        with pytest.raises(ProductNotFoundError):
            await pricing.price_cart([NormalizedLine("nope", "win11-pro-digital", 1)])

    @pytest.mark.asyncio
    async def test_inactive_product(self, pricing: PricingService) -> None:
        with pytest.raises(ProductNotFoundError):
            await pricing.price_cart([NormalizedLine("win10-home", "win11-pro-digital", 1)])

    @pytest.mark.asyncio
    async def test_inactive_variant(self, pricing: PricingService) -> None:
        with pytest.raises(VariantNotFoundError):
            await pricing.price_cart([NormalizedLine("office-2021", "office-2021-dvd", 1)])

    @pytest.mark.asyncio
    async def test_variant_of_other_product(self, pricing: PricingService) -> None:
        """Test that a cheap variant cannot be attached to an expensive product."""
        with pytest.raises(InvalidVariantForProductError) as exc_info:
            await pricing.price_cart([NormalizedLine("office-2021", "win11-pro-digital", 1)])

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_empty_cart(self, pricing: PricingService) -> None:
        with pytest.raises(InvalidCartError):
            await pricing.price_cart([])


class TestValidateBounds:
    """Tests for validate_bounds."""

    def test_quantity_above_limit(self, pricing: PricingService) -> None:
        """Test that merged duplicates cannot exceed the per-line quantity cap."""
        with pytest.raises(InvalidCartError) as exc_info:
            pricing.validate_bounds([NormalizedLine("win11-pro", "win11-pro-digital", 101)])

        assert exc_info.value.details[0]["type"] == "invalid_quantity"

    def test_too_many_lines(self, pricing: PricingService) -> None:
        lines = [NormalizedLine(f"p{i}", f"v{i}", 1) for i in range(51)]

        with pytest.raises(InvalidCartError):
            pricing.validate_bounds(lines)

    def test_at_limits(self, pricing: PricingService) -> None:
        lines = [NormalizedLine(f"p{i}", f"v{i}", 100) for i in range(50)]

        pricing.validate_bounds(lines)
