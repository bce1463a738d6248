"""Stripe webhook reconciliation.

Once a delivery's signature is verified the endpoint always acknowledges it.
Outcomes, including failures that need a human, are recorded on the
``stripe_webhook_events`` row instead of being surfaced to Stripe, whose
retries would otherwise replay side effects.

Two idempotence layers protect side effects:

* the unique ``event_id`` insert, taken before anything else runs;
* the conditional ``pending -> paid`` update, which stops a second event for
  the same session from assigning licenses or decrementing stock again.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Mapping

from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

from src.core.config import Settings, get_settings
from src.core.rate_limiter import InMemoryRateLimitStorage
from src.core.stripe import StripeClient
from src.core.supabase import get_supabase_client, is_unique_violation
from src.models.order import LICENSE_BACKED_FORMATS, Order
from src.models.results import Err
from src.models.webhook_event import WebhookEvent, WebhookEventStatus
from src.schemas.webhook import MissingField, parse_session_metadata
from src.services.email_service import DeliveredLicense, NotificationService
from src.services.fulfillment_service import FulfillmentService
from src.services.order_service import OrderService
from src.services.proof_of_purchase import (
    ProofLine,
    ProofOfPurchase,
    ProofRenderer,
    render_proof_of_purchase,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

WON_DISPUTE_STATUSES = frozenset({"won", "warning_closed"})


@dataclass(frozen=True)
class WebhookOutcome:
    """Result of handling one verified event.

    ``status`` is ``processed``, ``failed`` or ``dropped`` (written to the
    event row), or ``duplicate`` / ``degraded`` when no row was written by
    this delivery.
    """

    status: WebhookEventStatus | Literal["duplicate", "degraded"]
    order_id: str | None = None
    error_kind: str | None = None
    detail: str | None = None


def _processed(order_id: str | None = None, detail: str | None = None) -> WebhookOutcome:
    return WebhookOutcome(status="processed", order_id=order_id, detail=detail)


def _failed(kind: str, order_id: str | None = None, detail: str | None = None) -> WebhookOutcome:
    return WebhookOutcome(status="failed", order_id=order_id, error_kind=kind, detail=detail)


class WebhookService:
    """Drives the order state machine from verified Stripe events."""

    def __init__(
        self,
        orders: OrderService,
        fulfillment: FulfillmentService,
        notifications: NotificationService,
        stripe_client: StripeClient,
        rate_limiter: InMemoryRateLimitStorage,
        client: Client | None = None,
        settings: Settings | None = None,
        render_proof: ProofRenderer = render_proof_of_purchase,
    ) -> None:
        self.orders = orders
        self.fulfillment = fulfillment
        self.notifications = notifications
        self.stripe = stripe_client
        self.rate_limiter = rate_limiter
        self.client = client or get_supabase_client()
        self.settings = settings or get_settings()
        self.render_proof = render_proof

    def verify_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify the Stripe signature over the untouched raw body.

        Returns:
            dict: The verified event as plain JSON data.

        Raises:
            WebhookSecretMissingError, stripe.SignatureVerificationError, ValueError
        """
        self.stripe.construct_event(payload, sig_header)
        return json.loads(payload)

    async def handle_event(self, event: Mapping[str, Any], source_ip: str) -> WebhookOutcome:
        """Handle a verified event. Never raises.

        Args:
            event: Verified Stripe event.
            source_ip: Client IP of the delivery, for rate limiting.

        Returns:
            WebhookOutcome: What happened; the caller acknowledges regardless.
        """
        event_id = event.get("id", "")
        event_type = event.get("type", "")

        received: WebhookEvent = {"event_id": event_id, "event_type": event_type, "status": "processing"}
        try:
            self.client.table("stripe_webhook_events").insert(received).execute()
        except PostgrestAPIError as e:
            if is_unique_violation(e):
                logger.info("Webhook event %s already received, skipping", event_id)
                return WebhookOutcome(status="duplicate")
            logger.error("Idempotence store unavailable for event %s: %s", event_id, e.message)
            return WebhookOutcome(status="degraded", error_kind="idempotence_store_unavailable", detail=e.message)
        except Exception as e:
            logger.error("Idempotence store unavailable for event %s: %s", event_id, str(e))
            return WebhookOutcome(status="degraded", error_kind="idempotence_store_unavailable", detail=str(e))

        decision = await self.rate_limiter.check_and_increment(
            f"webhook-ip:{source_ip}",
            max_requests=self.settings.rate_limit_webhook_requests,
            window_seconds=self.settings.rate_limit_window_seconds,
        )
        if not decision.allowed:
            outcome = WebhookOutcome(status="dropped", error_kind="rate_limited")
            logger.warning("Webhook event %s dropped by rate limit (%s)", event_id, source_ip)
            self._finish(event_id, outcome)
            return outcome

        try:
            outcome = await self._dispatch(event_type, event)
        except Exception as e:
            logger.exception("Webhook event %s (%s) raised", event_id, event_type)
            outcome = _failed("exception", detail=f"{type(e).__name__}: {e}")

        self._finish(event_id, outcome)
        self._log_outcome(event_id, event_type, outcome)
        return outcome

    async def _dispatch(self, event_type: str, event: Mapping[str, Any]) -> WebhookOutcome:
        obj = event.get("data", {}).get("object", {})
        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            return await self.handle_checkout_completed(event.get("id", ""), obj)
        if event_type == "charge.refunded":
            return await self.handle_charge_refunded(obj)
        if event_type == "charge.dispute.created":
            return await self.handle_dispute_created(obj)
        if event_type == "charge.dispute.closed":
            return await self.handle_dispute_closed(obj)
        return _processed(detail=f"ignored event type {event_type}")

    def _finish(self, event_id: str, outcome: WebhookOutcome) -> None:
        """Write the terminal status. Best effort; a crash leaves ``processing``."""
        terminal: WebhookEvent = {
            "status": outcome.status,
            "order_id": outcome.order_id,
            "error_kind": outcome.error_kind,
            "error": outcome.detail[:MAX_ERROR_LENGTH] if outcome.detail else None,
        }
        try:
            self.client.table("stripe_webhook_events").update(
                {**terminal, "processed_at": datetime.now(timezone.utc).isoformat()}
            ).eq("event_id", event_id).execute()
        except Exception as e:
            logger.error("Could not record outcome of webhook event %s: %s", event_id, str(e))

    @staticmethod
    def _log_outcome(event_id: str, event_type: str, outcome: WebhookOutcome) -> None:
        if outcome.status == "processed":
            logger.info("Webhook %s (%s) processed, order %s", event_id, event_type, outcome.order_id)
        elif outcome.error_kind in {"insufficient_inventory", "license_assignment_failed",
                                    "license_assignment_incomplete", "inventory_decrement_failed", "exception"}:
            logger.error(
                "Webhook %s (%s) failed: %s, order %s needs attention",
                event_id,
                event_type,
                outcome.error_kind,
                outcome.order_id,
            )
        else:
            logger.warning("Webhook %s (%s) %s: %s", event_id, event_type, outcome.status, outcome.error_kind)

    # Payment completed

    async def handle_checkout_completed(self, event_id: str, session: Mapping[str, Any]) -> WebhookOutcome:
        """Mark the order paid, fulfil it and notify."""
        metadata = parse_session_metadata(session.get("metadata"))
        if isinstance(metadata, MissingField):
            return _failed("missing_metadata", detail=f"session metadata missing {metadata.name}")
        meta = metadata.value
        session_id = session.get("id")

        order = await self.orders.get_order(meta.order_id)
        if not order:
            return _failed("order_not_found", detail=meta.order_id)
        order_id = order["id"]

        if order.get("stripe_session_id") and order["stripe_session_id"] != session_id:
            return _failed("session_mismatch", order_id=order_id, detail=f"event session {session_id}")

        if meta.user_id:
            if order.get("user_id") is None:
                bound = await self.orders.bind_user(order_id, meta.user_id)
                if bound is None:
                    order = await self.orders.get_order(order_id) or order
                else:
                    order = bound
            if order.get("user_id") != meta.user_id:
                return _failed("user_mismatch", order_id=order_id)

        if order.get("status") == "paid":
            return _processed(order_id, detail="already_paid")
        if order.get("status") != "pending":
            return _failed("invalid_order_status", order_id=order_id, detail=order.get("status"))

        # Delayed methods settle later through checkout.session.async_payment_succeeded
        if session.get("payment_status") == "unpaid":
            return _processed(order_id, detail="payment_pending")

        paid = await self.orders.mark_paid(order_id, session_id, session.get("payment_intent"))
        if paid is None:
            current = await self.orders.get_order(order_id)
            if current and current.get("status") == "paid":
                return _processed(order_id, detail="already_paid")
            return _failed("invalid_order_status", order_id=order_id, detail=(current or {}).get("status"))
        order = paid
        logger.info("Order %s marked paid", order_id)

        customer_email = (
            order.get("customer_email")
            or session.get("customer_email")
            or (session.get("customer_details") or {}).get("email")
        )
        locale = order.get("locale") or session.get("locale") or "en"

        if customer_email:
            confirmation = await self.notifications.send_payment_confirmation(
                customer_email, order.get("reference", order_id), event_id, locale
            )
            if not confirmation.ok:
                logger.warning("Payment confirmation for order %s not sent: %s", order_id, confirmation.error)

        items = await self.orders.get_items(order_id)
        for item in items:
            if item.get("delivery_format") in LICENSE_BACKED_FORMATS:
                assigned = await self.fulfillment.assign_licenses(order_id, item["product_id"], item["quantity"])
                if isinstance(assigned, Err):
                    return _failed(assigned.kind, order_id=order_id, detail=assigned.detail)
            decremented = await self.fulfillment.decrement_inventory(item["product_id"], item["quantity"])
            if isinstance(decremented, Err):
                return _failed(decremented.kind, order_id=order_id, detail=decremented.detail)

        await self._deliver_licenses(order, items, event_id, customer_email, locale)

        sale = await self.notifications.send_admin_sale(order, items, event_id)
        if not sale.ok:
            logger.warning("Sale notification for order %s not sent: %s", order_id, sale.error)

        return _processed(order_id)

    async def _deliver_licenses(
        self,
        order: Order,
        items: list[dict[str, Any]],
        event_id: str,
        customer_email: str | None,
        locale: str,
    ) -> None:
        order_id = order["id"]
        licenses = await self.orders.get_active_licenses(order_id)
        if not licenses:
            return
        if not customer_email:
            logger.error("Order %s has licenses but no customer email", order_id)
            return

        names = {item["product_id"]: item["product_name"] for item in items}
        delivered = [
            DeliveredLicense(product_name=names.get(lic["product_id"], lic["product_id"]), key_code=lic["key_code"])
            for lic in licenses
        ]

        proof: bytes | None = None
        try:
            proof = self.render_proof(self._proof_summary(order, items))
        except Exception as e:
            logger.warning("Proof of purchase rendering failed for order %s: %s", order_id, str(e))

        result = await self.notifications.send_license_delivery(
            customer_email, order.get("reference", order_id), event_id, delivered, locale, proof
        )
        if not result.ok:
            logger.error("License delivery email for order %s not sent: %s", order_id, result.error)

    def _proof_summary(self, order: Order, items: list[dict[str, Any]]) -> ProofOfPurchase:
        paid_at = order.get("paid_at")
        if isinstance(paid_at, str):
            paid_at = datetime.fromisoformat(paid_at.replace("Z", "+00:00"))
        return ProofOfPurchase(
            reference=order.get("reference", order["id"]),
            customer_email=order.get("customer_email") or "",
            purchased_at=paid_at or datetime.now(timezone.utc),
            currency=order.get("currency") or self.settings.store_currency,
            total=order.get("total_amount", 0),
            lines=[
                ProofLine(
                    product_name=item["product_name"],
                    variant_name=item.get("variant_name", ""),
                    quantity=item["quantity"],
                    unit_price=item["unit_price"],
                )
                for item in items
            ],
        )

    # Refunds and disputes

    async def _order_for_charge(self, obj: Mapping[str, Any], charge_id: str | None) -> Order | None:
        order = await self.orders.find_by_payment_reference(obj.get("payment_intent"), charge_id)
        if order and charge_id and not order.get("stripe_charge_id"):
            await self.orders.record_charge_id(order["id"], charge_id)
        return order

    async def handle_charge_refunded(self, charge: Mapping[str, Any]) -> WebhookOutcome:
        """Refund: order -> refunded and revoke its licenses."""
        order = await self._order_for_charge(charge, charge.get("id"))
        if not order:
            return _processed(detail="no order for charge")

        refunds = (charge.get("refunds") or {}).get("data") or []
        reason = (refunds[0].get("reason") if refunds else None) or "refunded"

        updated = await self.orders.mark_refunded(order["id"], reason)
        await self.orders.revoke_licenses(order["id"])
        return _processed(order["id"], detail=None if updated else "already_refunded")

    async def handle_dispute_created(self, dispute: Mapping[str, Any]) -> WebhookOutcome:
        """Dispute opened: order -> disputed and revoke licenses while it runs."""
        order = await self._order_for_charge(dispute, dispute.get("charge"))
        if not order:
            return _processed(detail="no order for dispute")

        updated = await self.orders.mark_disputed(order["id"], dispute.get("reason"), dispute.get("status"))
        await self.orders.revoke_licenses(order["id"])
        return _processed(order["id"], detail=None if updated else f"order was {order.get('status')}")

    async def handle_dispute_closed(self, dispute: Mapping[str, Any]) -> WebhookOutcome:
        """Dispute closed: restore access if won, refund and revoke if lost."""
        order = await self._order_for_charge(dispute, dispute.get("charge"))
        if not order:
            return _processed(detail="no order for dispute")

        outcome = dispute.get("status")
        if outcome in WON_DISPUTE_STATUSES:
            restored = await self.orders.restore_paid(order["id"], outcome)
            if restored:
                await self.orders.restore_licenses(order["id"])
                return _processed(order["id"])
            return _processed(order["id"], detail=f"order was {order.get('status')}")
        if outcome == "lost":
            await self.orders.mark_dispute_lost(order["id"], outcome)
            await self.orders.revoke_licenses(order["id"])
            return _processed(order["id"])
        return _processed(order["id"], detail=f"unhandled dispute status {outcome}")
