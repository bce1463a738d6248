"""Unit tests for FulfillmentService RPC wrappers."""

from typing import Any

import pytest

from src.models.results import Err, Ok
from src.services.fulfillment_service import FulfillmentService

ORDER_ID = "770e8400-e29b-41d4-a716-446655440000"


@pytest.fixture
def fulfillment(catalog: Any) -> FulfillmentService:
    return FulfillmentService(catalog)


class TestAssignLicenses:
    """Tests for assign_licenses."""

    @pytest.mark.asyncio
    async def test_claims_requested_quantity(self, fulfillment: FulfillmentService, catalog: Any) -> None:
        result = await fulfillment.assign_licenses(ORDER_ID, "win11-pro", 2)

        assert isinstance(result, Ok)
        assert len(result.value) == 2
        assert len(catalog.rows("licenses", order_id=ORDER_ID)) == 2

    @pytest.mark.asyncio
    async def test_insufficient_pool(self, fulfillment: FulfillmentService, catalog: Any) -> None:
        """Test that a short pool claims nothing and reports insufficient_inventory."""
        result = await fulfillment.assign_licenses(ORDER_ID, "office-2021", 3)

        assert isinstance(result, Err)
        assert result.kind == "insufficient_inventory"
        assert catalog.rows("licenses", order_id=ORDER_ID) == []

    @pytest.mark.asyncio
    async def test_short_result_is_incomplete(self, fulfillment: FulfillmentService, catalog: Any) -> None:
        catalog.rpc_handlers["assign_licenses_atomic"] = lambda params: [{"id": "l1"}]

        result = await fulfillment.assign_licenses(ORDER_ID, "win11-pro", 2)

        assert isinstance(result, Err)
        assert result.kind == "license_assignment_incomplete"

    @pytest.mark.asyncio
    async def test_transport_error(self, fulfillment: FulfillmentService, catalog: Any) -> None:
        catalog.failures[("rpc", "assign_licenses_atomic")] = ConnectionError("reset")

        result = await fulfillment.assign_licenses(ORDER_ID, "win11-pro", 1)

        assert isinstance(result, Err)
        assert result.kind == "license_assignment_failed"


class TestDecrementInventory:
    """Tests for decrement_inventory."""

    @pytest.mark.asyncio
    async def test_decrements(self, fulfillment: FulfillmentService, catalog: Any) -> None:
        result = await fulfillment.decrement_inventory("office-2021", 4)

        assert isinstance(result, Ok)
        assert catalog.rows("products", id="office-2021")[0]["inventory"] == 6

    @pytest.mark.asyncio
    async def test_never_negative(self, fulfillment: FulfillmentService, catalog: Any) -> None:
        result = await fulfillment.decrement_inventory("office-2021", 11)

        assert isinstance(result, Err)
        assert result.kind == "insufficient_inventory"
        assert catalog.rows("products", id="office-2021")[0]["inventory"] == 10


class TestAssignMissingLicenses:
    """Tests for the remediation path."""

    @pytest.mark.asyncio
    async def test_tops_up_paid_order(self, fulfillment: FulfillmentService, catalog: Any) -> None:
        catalog.tables["orders"] = [{"id": ORDER_ID, "status": "paid"}]
        catalog.tables["order_items"] = [
            {"order_id": ORDER_ID, "product_id": "win11-pro", "delivery_format": "digital", "quantity": 3},
            {"order_id": ORDER_ID, "product_id": "win11-pro", "delivery_format": "usb", "quantity": 1},
        ]
        await fulfillment.assign_licenses(ORDER_ID, "win11-pro", 1)

        result = await fulfillment.assign_missing_licenses(ORDER_ID)

        assert result == Ok(2)
        assert len(catalog.rows("licenses", order_id=ORDER_ID)) == 3

        assert await fulfillment.assign_missing_licenses(ORDER_ID) == Ok(0)

    @pytest.mark.asyncio
    async def test_rejects_unpaid_order(self, fulfillment: FulfillmentService, catalog: Any) -> None:
        catalog.tables["orders"] = [{"id": ORDER_ID, "status": "refunded"}]

        result = await fulfillment.assign_missing_licenses(ORDER_ID)

        assert result == Err("order_not_paid", "refunded")

    @pytest.mark.asyncio
    async def test_unknown_order(self, fulfillment: FulfillmentService) -> None:
        result = await fulfillment.assign_missing_licenses(ORDER_ID)

        assert isinstance(result, Err)
        assert result.kind == "order_not_found"
