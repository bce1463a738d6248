"""Unit tests for OrderService guarded transitions and lookups."""

import re
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.services.order_service import OrderService

ORDER_ID = "770e8400-e29b-41d4-a716-446655440000"
USER_ID = "550e8400-e29b-41d4-a716-446655440000"


@pytest.fixture
def orders(fake_db: Any, test_settings: Any) -> OrderService:
    return OrderService(fake_db, test_settings)


def seed_order(db: Any, **overrides: Any) -> dict:
    row = {
        "id": ORDER_ID,
        "reference": "AKM-20261019-ABC123",
        "user_id": USER_ID,
        "customer_email": "buyer@example.com",
        "status": "pending",
        "total_amount": 37980,
        "currency": "eur",
        "cart_fingerprint": "fp",
        "stripe_session_id": "cs_test_1",
        "stripe_payment_intent": None,
        "stripe_charge_id": None,
        "created_at": datetime.now(timezone.utc).isoformat(),
        **overrides,
    }
    db.tables.setdefault("orders", []).append(row)
    return row


class TestReference:
    """Tests for generate_reference."""

    def test_format(self, orders: OrderService) -> None:
        reference = orders.generate_reference(datetime(2026, 10, 19, tzinfo=timezone.utc))

        assert re.fullmatch(r"AKM-20261019-[0-9A-F]{6}", reference)


class TestMarkPaid:
    """Tests for the pending -> paid transition."""

    @pytest.mark.asyncio
    async def test_pending_order_becomes_paid(self, orders: OrderService, fake_db: Any) -> None:
        seed_order(fake_db)

        paid = await orders.mark_paid(ORDER_ID, "cs_test_1", "pi_123")

        assert paid is not None
        assert paid["status"] == "paid"
        assert paid["stripe_payment_intent"] == "pi_123"
        assert paid["paid_at"] is not None

    @pytest.mark.asyncio
    async def test_second_transition_is_a_no_op(self, orders: OrderService, fake_db: Any) -> None:
        """Test that only one caller wins the conditional update."""
        seed_order(fake_db)

        assert await orders.mark_paid(ORDER_ID, "cs_test_1", "pi_123") is not None
        assert await orders.mark_paid(ORDER_ID, "cs_test_1", "pi_123") is None

    @pytest.mark.asyncio
    async def test_failed_order_is_not_paid(self, orders: OrderService, fake_db: Any) -> None:
        seed_order(fake_db, status="failed")

        assert await orders.mark_paid(ORDER_ID, "cs_test_1", "pi_123") is None
        assert fake_db.rows("orders")[0]["status"] == "failed"


class TestRefundAndDispute:
    """Tests for refund and dispute transitions."""

    @pytest.mark.asyncio
    async def test_refund_any_non_refunded(self, orders: OrderService, fake_db: Any) -> None:
        seed_order(fake_db, status="disputed")

        refunded = await orders.mark_refunded(ORDER_ID, "requested_by_customer")

        assert refunded["status"] == "refunded"
        assert refunded["refund_reason"] == "requested_by_customer"
        assert await orders.mark_refunded(ORDER_ID, "duplicate") is None

    @pytest.mark.asyncio
    async def test_dispute_only_from_paid(self, orders: OrderService, fake_db: Any) -> None:
        seed_order(fake_db, status="pending")

        assert await orders.mark_disputed(ORDER_ID, "fraudulent", "needs_response") is None

    @pytest.mark.asyncio
    async def test_dispute_round_trip(self, orders: OrderService, fake_db: Any) -> None:
        seed_order(fake_db, status="paid")

        disputed = await orders.mark_disputed(ORDER_ID, "fraudulent", "needs_response")
        assert disputed["status"] == "disputed"
        assert disputed["dispute_reason"] == "fraudulent"

        restored = await orders.restore_paid(ORDER_ID, "won")
        assert restored["status"] == "paid"
        assert restored["dispute_status"] == "won"

    @pytest.mark.asyncio
    async def test_lost_dispute_refunds(self, orders: OrderService, fake_db: Any) -> None:
        seed_order(fake_db, status="disputed")

        lost = await orders.mark_dispute_lost(ORDER_ID, "lost")

        assert lost["status"] == "refunded"
        assert lost["refund_reason"] == "dispute_lost"

    @pytest.mark.asyncio
    async def test_restore_does_not_touch_pending(self, orders: OrderService, fake_db: Any) -> None:
        seed_order(fake_db, status="pending")

        assert await orders.restore_paid(ORDER_ID, "won") is None


class TestUserAndChargeBinding:
    """Tests for set-once columns."""

    @pytest.mark.asyncio
    async def test_bind_user_only_when_unset(self, orders: OrderService, fake_db: Any) -> None:
        seed_order(fake_db, user_id=None)

        assert (await orders.bind_user(ORDER_ID, USER_ID))["user_id"] == USER_ID
        assert await orders.bind_user(ORDER_ID, "someone-else") is None
        assert fake_db.rows("orders")[0]["user_id"] == USER_ID

    @pytest.mark.asyncio
    async def test_record_charge_id_once(self, orders: OrderService, fake_db: Any) -> None:
        seed_order(fake_db, status="paid")

        await orders.record_charge_id(ORDER_ID, "ch_1")
        await orders.record_charge_id(ORDER_ID, "ch_2")

        assert fake_db.rows("orders")[0]["stripe_charge_id"] == "ch_1"

    @pytest.mark.asyncio
    async def test_find_by_payment_reference(self, orders: OrderService, fake_db: Any) -> None:
        seed_order(fake_db, status="paid", stripe_payment_intent="pi_123", stripe_charge_id="ch_1")

        assert (await orders.find_by_payment_reference("pi_123", None))["id"] == ORDER_ID
        assert (await orders.find_by_payment_reference("pi_unknown", "ch_1"))["id"] == ORDER_ID
        assert await orders.find_by_payment_reference(None, None) is None


class TestLookups:
    """Tests for pending order lookups."""

    @pytest.mark.asyncio
    async def test_find_latest_pending_is_newest(self, orders: OrderService, fake_db: Any) -> None:
        old = (datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat()
        seed_order(fake_db, id="old", created_at=old)
        seed_order(fake_db, id="new", status="failed")
        seed_order(fake_db, id="newest")

        latest = await orders.find_latest_pending(USER_ID, "fp")

        assert latest["id"] == "newest"

    @pytest.mark.asyncio
    async def test_count_recent_pending_ignores_old(self, orders: OrderService, fake_db: Any) -> None:
        old = (datetime.now(timezone.utc) - timedelta(minutes=30)).isoformat()
        seed_order(fake_db, id="a")
        seed_order(fake_db, id="b", created_at=old)
        seed_order(fake_db, id="c", status="paid")

        assert await orders.count_recent_pending(USER_ID, timedelta(minutes=10)) == 1

    @pytest.mark.asyncio
    async def test_discard_keeps_non_pending(self, orders: OrderService, fake_db: Any) -> None:
        """Test that an order paid before the discard keeps its row and its items."""
        seed_order(fake_db, status="paid")
        fake_db.tables["order_items"] = [{"id": "item-1", "order_id": ORDER_ID, "quantity": 1}]

        assert await orders.discard_order(ORDER_ID) is False
        assert fake_db.rows("orders")[0]["status"] == "paid"
        assert len(fake_db.rows("order_items", order_id=ORDER_ID)) == 1
        assert ("order_items", "delete") not in fake_db.calls

    @pytest.mark.asyncio
    async def test_discard_removes_pending_order_and_items(self, orders: OrderService, fake_db: Any) -> None:
        seed_order(fake_db)
        fake_db.tables["order_items"] = [{"id": "item-1", "order_id": ORDER_ID, "quantity": 1}]

        assert await orders.discard_order(ORDER_ID) is True
        assert fake_db.rows("orders") == []
        assert fake_db.rows("order_items") == []


class TestLicenses:
    """Tests for license revocation on an order."""

    @pytest.mark.asyncio
    async def test_revoke_and_restore(self, orders: OrderService, fake_db: Any) -> None:
        fake_db.tables["licenses"] = [
            {"id": "l1", "product_id": "win11-pro", "key_code": "K1", "order_id": ORDER_ID, "revoked": False},
            {"id": "l2", "product_id": "win11-pro", "key_code": "K2", "order_id": ORDER_ID, "revoked": False},
            {"id": "l3", "product_id": "win11-pro", "key_code": "K3", "order_id": None, "revoked": False},
        ]

        assert await orders.revoke_licenses(ORDER_ID) == 2
        assert await orders.get_active_licenses(ORDER_ID) == []
        assert fake_db.rows("licenses", id="l3")[0]["revoked"] is False

        assert await orders.restore_licenses(ORDER_ID) == 2
        assert len(await orders.get_active_licenses(ORDER_ID)) == 2
