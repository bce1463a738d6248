"""Order store: persistence and guarded status transitions for orders.

Every transition that must not double-apply is a single conditional UPDATE
(``... WHERE status = ...``). An empty result means another writer got there
first; callers re-read the order instead of retrying the write.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from supabase import Client

from src.core.config import Settings, get_settings
from src.core.supabase import get_supabase_client
from src.models.license import License
from src.models.order import Order, OrderCreate, OrderItem
from src.services.pricing_service import PricedCart

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderService:
    """Service for order, order item and order-bound license records."""

    def __init__(self, client: Client | None = None, settings: Settings | None = None) -> None:
        """Initialize order service with Supabase client."""
        self.client = client or get_supabase_client()
        self.settings = settings or get_settings()

    def generate_reference(self, now: datetime | None = None) -> str:
        """Build a human-readable order reference like ``AKM-20261019-3FA9C2``."""
        now = now or utc_now()
        return f"{self.settings.order_reference_prefix}-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"

    @staticmethod
    def _first(response: Any) -> dict[str, Any] | None:
        data = response.data if response else None
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    # Creation

    async def create_order(
        self,
        user_id: str,
        customer_email: str,
        cart: PricedCart,
        fingerprint: str,
        locale: str,
        shipping: dict[str, str] | None = None,
    ) -> Order:
        """Insert a new pending order.

        Raises:
            postgrest.exceptions.APIError: On insert failure; code 23505 when
                another pending order already holds this (user, fingerprint).
        """
        order_data: OrderCreate = {
            "reference": self.generate_reference(),
            "user_id": user_id,
            "customer_email": customer_email,
            "status": "pending",
            "total_amount": cart.total,
            "currency": cart.currency,
            "cart_fingerprint": fingerprint,
            "locale": locale,
        }
        if shipping:
            order_data.update(shipping)  # type: ignore[typeddict-item]

        response = self.client.table("orders").insert(order_data).execute()
        order = self._first(response)
        if not order:
            raise RuntimeError("Order insert returned no row")
        logger.info("Created pending order %s (%s)", order["id"], order["reference"])
        return order

    async def insert_items(self, order_id: str, cart: PricedCart) -> list[OrderItem]:
        """Insert the snapshot line items of an order in one statement."""
        rows = [
            {
                "order_id": order_id,
                "product_id": line.product_id,
                "variant_id": line.variant_id,
                "variant_name": line.variant_name,
                "delivery_format": line.delivery_format,
                "product_name": line.product_name,
                "quantity": line.quantity,
                "unit_price": line.unit_price,
            }
            for line in cart.lines
        ]
        response = self.client.table("order_items").insert(rows).execute()
        if not response.data or len(response.data) != len(rows):
            raise RuntimeError(f"Expected {len(rows)} order items, got {len(response.data or [])}")
        return response.data

    async def mark_failed(self, order_id: str) -> bool:
        """Compensate a partially created checkout. Only pending orders move."""
        response = (
            self.client.table("orders")
            .update({"status": "failed", "updated_at": utc_now().isoformat()})
            .eq("id", order_id)
            .eq("status", "pending")
            .execute()
        )
        updated = bool(response.data)
        if updated:
            logger.warning("Order %s marked failed", order_id)
        return updated

    async def attach_session_id(self, order_id: str, session_id: str) -> None:
        self.client.table("orders").update(
            {"stripe_session_id": session_id, "updated_at": utc_now().isoformat()}
        ).eq("id", order_id).execute()

    async def discard_order(self, order_id: str) -> bool:
        """Delete a stale pending order and its items.

        The order is first moved pending -> failed in one conditional UPDATE.
        Items are only touched once that claim succeeds, so an order paid in
        the meantime keeps its items.

        Returns:
            bool: True if the order was still pending and has been discarded.
        """
        claimed = (
            self.client.table("orders")
            .update({"status": "failed", "updated_at": utc_now().isoformat()})
            .eq("id", order_id)
            .eq("status", "pending")
            .execute()
        )
        if not claimed.data:
            logger.info("Order %s is no longer pending, not discarding", order_id)
            return False

        self.client.table("order_items").delete().eq("order_id", order_id).execute()
        self.client.table("orders").delete().eq("id", order_id).eq("status", "failed").execute()
        logger.info("Discarded stale pending order %s", order_id)
        return True

    # Lookups

    async def find_latest_pending(self, user_id: str, fingerprint: str) -> Order | None:
        """Most recent pending order for this user and cart, of any age."""
        response = (
            self.client.table("orders")
            .select("*")
            .eq("user_id", user_id)
            .eq("cart_fingerprint", fingerprint)
            .eq("status", "pending")
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return self._first(response)

    async def count_recent_pending(self, user_id: str, window: timedelta) -> int:
        """Count pending orders created by the user inside ``window``."""
        since = (utc_now() - window).isoformat()
        response = (
            self.client.table("orders")
            .select("id", count="exact")
            .eq("user_id", user_id)
            .eq("status", "pending")
            .gte("created_at", since)
            .execute()
        )
        if response.count is not None:
            return response.count
        return len(response.data or [])

    async def get_order(self, order_id: str) -> Order | None:
        response = (
            self.client.table("orders")
            .select("*")
            .eq("id", order_id)
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    async def get_order_by_session_id(self, session_id: str) -> Order | None:
        response = (
            self.client.table("orders")
            .select("*")
            .eq("stripe_session_id", session_id)
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    async def find_by_payment_reference(
        self,
        payment_intent: str | None = None,
        charge_id: str | None = None,
    ) -> Order | None:
        """Locate an order by payment intent id, falling back to charge id."""
        for column, value in (("stripe_payment_intent", payment_intent), ("stripe_charge_id", charge_id)):
            if not value:
                continue
            response = (
                self.client.table("orders")
                .select("*")
                .eq(column, value)
                .limit(1)
                .execute()
            )
            order = self._first(response)
            if order:
                return order
        return None

    async def list_for_user(self, user_id: str) -> list[Order]:
        response = (
            self.client.table("orders")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return response.data or []

    async def get_items(self, order_id: str) -> list[OrderItem]:
        response = (
            self.client.table("order_items")
            .select("*")
            .eq("order_id", order_id)
            .execute()
        )
        return response.data or []

    # Guarded transitions

    async def mark_paid(
        self,
        order_id: str,
        session_id: str,
        payment_intent: str | None,
    ) -> Order | None:
        """Transition pending -> paid. Returns None if the order was not pending."""
        response = (
            self.client.table("orders")
            .update(
                {
                    "status": "paid",
                    "stripe_session_id": session_id,
                    "stripe_payment_intent": payment_intent,
                    "paid_at": utc_now().isoformat(),
                    "updated_at": utc_now().isoformat(),
                }
            )
            .eq("id", order_id)
            .eq("status", "pending")
            .execute()
        )
        return self._first(response)

    async def bind_user(self, order_id: str, user_id: str) -> Order | None:
        """Attach a user to an order that has none. Returns None if already bound."""
        response = (
            self.client.table("orders")
            .update({"user_id": user_id, "updated_at": utc_now().isoformat()})
            .eq("id", order_id)
            .is_("user_id", "null")
            .execute()
        )
        return self._first(response)

    async def record_charge_id(self, order_id: str, charge_id: str) -> None:
        """Remember the charge id the first time a charge event names it."""
        self.client.table("orders").update({"stripe_charge_id": charge_id}).eq("id", order_id).is_(
            "stripe_charge_id", "null"
        ).execute()

    async def mark_refunded(self, order_id: str, reason: str | None) -> Order | None:
        """Transition any non-refunded order to refunded."""
        now = utc_now().isoformat()
        response = (
            self.client.table("orders")
            .update({"status": "refunded", "refunded_at": now, "refund_reason": reason, "updated_at": now})
            .eq("id", order_id)
            .neq("status", "refunded")
            .execute()
        )
        return self._first(response)

    async def mark_disputed(self, order_id: str, reason: str | None, dispute_status: str | None) -> Order | None:
        """Transition paid (or disputed) -> disputed, recording dispute metadata."""
        response = (
            self.client.table("orders")
            .update(
                {
                    "status": "disputed",
                    "dispute_reason": reason,
                    "dispute_status": dispute_status,
                    "updated_at": utc_now().isoformat(),
                }
            )
            .eq("id", order_id)
            .in_("status", ["paid", "disputed"])
            .execute()
        )
        return self._first(response)

    async def restore_paid(self, order_id: str, dispute_status: str | None) -> Order | None:
        """Transition disputed (or dispute-refunded) -> paid after a won dispute."""
        response = (
            self.client.table("orders")
            .update({"status": "paid", "dispute_status": dispute_status, "updated_at": utc_now().isoformat()})
            .eq("id", order_id)
            .in_("status", ["disputed", "refunded"])
            .execute()
        )
        return self._first(response)

    async def mark_dispute_lost(self, order_id: str, dispute_status: str | None) -> Order | None:
        """Transition paid/disputed -> refunded after a lost dispute."""
        now = utc_now().isoformat()
        response = (
            self.client.table("orders")
            .update(
                {
                    "status": "refunded",
                    "dispute_status": dispute_status,
                    "refunded_at": now,
                    "refund_reason": "dispute_lost",
                    "updated_at": now,
                }
            )
            .eq("id", order_id)
            .in_("status", ["paid", "disputed"])
            .execute()
        )
        return self._first(response)

    # Licenses bound to orders

    async def revoke_licenses(self, order_id: str) -> int:
        """Set revoked=true on every license of the order. Idempotent."""
        response = (
            self.client.table("licenses")
            .update({"revoked": True})
            .eq("order_id", order_id)
            .execute()
        )
        count = len(response.data or [])
        logger.info("Revoked %d license(s) for order %s", count, order_id)
        return count

    async def restore_licenses(self, order_id: str) -> int:
        """Set revoked=false on every license of the order. Idempotent."""
        response = (
            self.client.table("licenses")
            .update({"revoked": False})
            .eq("order_id", order_id)
            .execute()
        )
        count = len(response.data or [])
        logger.info("Restored %d license(s) for order %s", count, order_id)
        return count

    async def get_active_licenses(self, order_id: str) -> list[License]:
        response = (
            self.client.table("licenses")
            .select("*")
            .eq("order_id", order_id)
            .eq("revoked", False)
            .execute()
        )
        return response.data or []
