"""License assignment and inventory decrement through database RPCs.

Both operations are atomic stored procedures; this module only maps their
outcomes onto Ok/Err results so the webhook reconciler never has to catch.
"""

import logging
from collections import Counter
from typing import Any

from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

from src.core.supabase import get_supabase_client
from src.models.order import LICENSE_BACKED_FORMATS
from src.models.results import Err, Ok, Result

logger = logging.getLogger(__name__)

ASSIGN_LICENSES_RPC = "assign_licenses_atomic"
DECREMENT_INVENTORY_RPC = "decrement_inventory"


def _error_text(error: PostgrestAPIError) -> str:
    return " ".join(str(part) for part in (error.message, error.details, error.hint) if part)


class FulfillmentService:
    """Wraps the license and inventory RPCs."""

    def __init__(self, client: Client | None = None) -> None:
        self.client = client or get_supabase_client()

    async def assign_licenses(self, order_id: str, product_id: str, quantity: int) -> Result[list[dict[str, Any]]]:
        """Claim ``quantity`` unused licenses of a product for an order.

        The RPC claims all or none.

        Returns:
            Ok(list of claimed license rows) or Err with kind
            ``insufficient_inventory``, ``license_assignment_incomplete`` or
            ``license_assignment_failed``.
        """
        try:
            response = self.client.rpc(
                ASSIGN_LICENSES_RPC,
                {"p_order_id": order_id, "p_product_id": product_id, "p_quantity": quantity},
            ).execute()
        except PostgrestAPIError as e:
            text = _error_text(e)
            if "insufficient" in text.lower():
                logger.error("Not enough licenses for product %s (order %s, need %d)", product_id, order_id, quantity)
                return Err("insufficient_inventory", text)
            logger.error("License assignment failed for order %s: %s", order_id, text)
            return Err("license_assignment_failed", text)
        except Exception as e:
            logger.error("License assignment RPC unavailable for order %s: %s", order_id, str(e))
            return Err("license_assignment_failed", str(e))

        rows = response.data or []
        if len(rows) != quantity:
            return Err(
                "license_assignment_incomplete",
                f"expected {quantity} license(s) for {product_id}, got {len(rows)}",
            )
        logger.info("Assigned %d license(s) of %s to order %s", quantity, product_id, order_id)
        return Ok(rows)

    async def decrement_inventory(self, product_id: str, quantity: int) -> Result[None]:
        """Atomically decrease stock for a product; never goes below zero.

        Returns:
            Ok(None) or Err with kind ``insufficient_inventory`` or
            ``inventory_decrement_failed``.
        """
        try:
            self.client.rpc(
                DECREMENT_INVENTORY_RPC,
                {"p_product_id": product_id, "p_quantity": quantity},
            ).execute()
        except PostgrestAPIError as e:
            text = _error_text(e)
            if "insufficient" in text.lower():
                logger.error("Inventory for %s cannot cover %d unit(s)", product_id, quantity)
                return Err("insufficient_inventory", text)
            logger.error("Inventory decrement failed for %s: %s", product_id, text)
            return Err("inventory_decrement_failed", text)
        except Exception as e:
            logger.error("Inventory RPC unavailable for %s: %s", product_id, str(e))
            return Err("inventory_decrement_failed", str(e))
        return Ok(None)

    async def assign_missing_licenses(self, order_id: str) -> Result[int]:
        """Top up a paid order's licenses to match its digital item quantities.

        Used for out-of-band remediation after a license shortage. Licenses
        already bound to the order (revoked or not) count as assigned.
        Inventory is not touched.

        Returns:
            Ok(number of newly assigned licenses) or the first Err encountered.
        """
        order = (
            self.client.table("orders").select("id, status").eq("id", order_id).maybe_single().execute()
        )
        if not order or not order.data:
            return Err("order_not_found", order_id)
        if order.data["status"] != "paid":
            return Err("order_not_paid", order.data["status"])

        items = self.client.table("order_items").select("*").eq("order_id", order_id).execute().data or []
        needed: Counter[str] = Counter()
        for item in items:
            if item.get("delivery_format") in LICENSE_BACKED_FORMATS:
                needed[item["product_id"]] += item["quantity"]

        bound = self.client.table("licenses").select("product_id").eq("order_id", order_id).execute().data or []
        have = Counter(row["product_id"] for row in bound)

        assigned = 0
        for product_id, quantity in sorted(needed.items()):
            missing = quantity - have.get(product_id, 0)
            if missing <= 0:
                continue
            result = await self.assign_licenses(order_id, product_id, missing)
            if isinstance(result, Err):
                return result
            assigned += missing
        return Ok(assigned)
