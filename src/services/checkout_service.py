"""Checkout session orchestration: reuse, pricing, order creation and Stripe session."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable

import stripe
from postgrest.exceptions import APIError as PostgrestAPIError

from src.api.middleware.error_handler import (
    CheckoutFailedError,
    CheckoutInProgressError,
    CheckoutValidationError,
    RateLimitError,
)
from src.core.config import Settings, get_settings
from src.core.stripe import StripeClient, session_is_reusable
from src.core.supabase import is_unique_violation
from src.models.order import Order
from src.schemas.auth import UserContext
from src.schemas.checkout import CartLine, CheckoutSessionCreate
from src.services.cart_fingerprint import compute_cart_fingerprint, normalize_cart_lines
from src.services.order_service import OrderService, utc_now
from src.services.pricing_service import PricedCart, PricingService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    session_url: str
    order_id: str
    reused: bool = False


class _Reuse(Enum):
    """Outcome of looking for an existing pending order for a cart."""

    NONE = "none"
    IN_FLIGHT = "in_flight"


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class CheckoutService:
    """Creates or reuses Stripe Checkout Sessions for a user's cart.

    One pending order exists per (user, cart fingerprint). A request for the
    same cart returns the existing session while it is still payable; a stale
    order is expired at Stripe and discarded before a new one is created.
    """

    def __init__(
        self,
        pricing: PricingService,
        orders: OrderService,
        stripe_client: StripeClient,
        settings: Settings | None = None,
    ) -> None:
        self.pricing = pricing
        self.orders = orders
        self.stripe = stripe_client
        self.settings = settings or get_settings()

    @property
    def reuse_window(self) -> timedelta:
        return timedelta(minutes=self.settings.checkout_reuse_window_minutes)

    async def create_checkout_session(self, user: UserContext, data: CheckoutSessionCreate) -> CheckoutResult:
        """Return a payable Stripe Checkout URL for the user's cart.

        Args:
            user: Authenticated caller.
            data: Validated checkout request.

        Returns:
            CheckoutResult: Session URL, order id and whether it was reused.

        Raises:
            InvalidCartError: Cart out of bounds after merging duplicates.
            ProductNotFoundError, VariantNotFoundError,
            InvalidVariantForProductError: Catalog validation failures.
            CheckoutValidationError: Missing email or shipping address.
            RateLimitError: Too many pending orders.
            CheckoutInProgressError: A concurrent checkout holds this cart.
            CheckoutFailedError: Storage or Stripe failure (state compensated).
        """
        user_id = str(user.user_id)
        lines = normalize_cart_lines(data.items)
        self.pricing.validate_bounds(lines)
        fingerprint = compute_cart_fingerprint(lines)

        reuse = await self._find_reusable(user_id, fingerprint)
        if isinstance(reuse, CheckoutResult):
            logger.info("Reusing checkout session for order %s", reuse.order_id)
            return reuse
        if reuse is _Reuse.IN_FLIGHT:
            raise CheckoutInProgressError()

        cart = await self.pricing.price_cart(lines)

        customer_email = data.email or user.email
        if not customer_email:
            raise CheckoutValidationError(
                "An email address is required to complete checkout",
                details=[{"loc": ["email"], "msg": "Email required", "type": "missing"}],
            )

        shipping: dict[str, str] | None = None
        if cart.requires_shipping:
            if data.shipping_address is None:
                raise CheckoutValidationError(
                    "A shipping address is required for DVD or USB products",
                    details=[{"loc": ["shipping_address"], "msg": "Shipping address required", "type": "missing"}],
                )
            shipping = data.shipping_address.model_dump()

        await self._enforce_pending_limit(user_id)

        try:
            order = await self.orders.create_order(
                user_id=user_id,
                customer_email=customer_email,
                cart=cart,
                fingerprint=fingerprint,
                locale=data.locale,
                shipping=shipping,
            )
        except PostgrestAPIError as e:
            if not is_unique_violation(e):
                logger.error("Order insert failed for user %s: %s", user_id, e.message)
                raise CheckoutFailedError() from e
            # Lost the race against a concurrent request for the same cart
            logger.info("Pending order conflict for user %s, checking for reusable session", user_id)
            reuse = await self._find_reusable(user_id, fingerprint)
            if isinstance(reuse, CheckoutResult):
                return reuse
            raise CheckoutInProgressError() from e
        except Exception as e:
            logger.error("Order insert failed for user %s: %s", user_id, str(e))
            raise CheckoutFailedError() from e

        order_id = order["id"]

        try:
            await self.orders.insert_items(order_id, cart)
        except Exception as e:
            logger.error("Order item insert failed for order %s: %s", order_id, str(e))
            await self._compensate(order_id)
            raise CheckoutFailedError() from e

        try:
            session = self.stripe.create_checkout_session(
                idempotency_key=f"checkout-session-{order_id}",
                **self._session_params(order, cart, user_id, customer_email, data.locale),
            )
        except stripe.StripeError as e:
            logger.error("Stripe error creating checkout session for order %s: %s", order_id, str(e))
            await self._compensate(order_id)
            raise CheckoutFailedError() from e
        except Exception as e:
            logger.error("Unexpected error creating checkout session for order %s: %s", order_id, str(e))
            await self._compensate(order_id)
            raise CheckoutFailedError() from e

        session_url = session.get("url")
        if not session_url:
            logger.error("Stripe session %s for order %s has no URL", session.get("id"), order_id)
            await self._compensate(order_id)
            raise CheckoutFailedError()

        try:
            await self.orders.attach_session_id(order_id, session["id"])
        except Exception as e:
            # The webhook locates the order through session metadata
            logger.warning("Could not store session id on order %s: %s", order_id, str(e))

        logger.info("Created checkout session for order %s", order_id)
        return CheckoutResult(session_url=session_url, order_id=order_id)

    async def resume_checkout_session(self, user: UserContext, items: Iterable[CartLine]) -> CheckoutResult | None:
        """Return the still-payable session for this cart, or None.

        Never creates an order.
        """
        lines = normalize_cart_lines(items)
        self.pricing.validate_bounds(lines)
        reuse = await self._find_reusable(str(user.user_id), compute_cart_fingerprint(lines))
        return reuse if isinstance(reuse, CheckoutResult) else None

    async def _find_reusable(self, user_id: str, fingerprint: str) -> CheckoutResult | _Reuse:
        """Reuse the pending order for this cart if its session is still payable.

        A stale pending order is expired at Stripe (if still open) and
        discarded so a fresh one can take its place.
        """
        order = await self.orders.find_latest_pending(user_id, fingerprint)
        if not order:
            return _Reuse.NONE

        created_at = _parse_timestamp(order.get("created_at"))
        in_window = created_at is not None and created_at >= utc_now() - self.reuse_window
        session_id = order.get("stripe_session_id")

        if not session_id:
            if in_window:
                # Another request is between order insert and session creation
                return _Reuse.IN_FLIGHT
            await self.orders.discard_order(order["id"])
            return _Reuse.NONE

        try:
            session = self.stripe.retrieve_checkout_session(session_id)
        except stripe.InvalidRequestError:
            logger.info("Stripe session %s no longer exists", session_id)
            session = None
        except stripe.StripeError as e:
            logger.error("Could not retrieve Stripe session %s: %s", session_id, str(e))
            raise CheckoutFailedError() from e

        if session is not None:
            if in_window and session_is_reusable(session):
                return CheckoutResult(session_url=session["url"], order_id=order["id"], reused=True)
            if session.get("status") == "complete" or session.get("payment_status") == "paid":
                # Paid; the webhook will move the order out of pending
                return _Reuse.IN_FLIGHT
            if session.get("status") == "open" and not self._expire_quietly(session_id):
                # Still payable; keep the order so a late payment can be reconciled
                return _Reuse.IN_FLIGHT

        await self.orders.discard_order(order["id"])
        return _Reuse.NONE

    def _expire_quietly(self, session_id: str) -> bool:
        try:
            self.stripe.expire_checkout_session(session_id)
            logger.info("Expired stale Stripe session %s", session_id)
            return True
        except stripe.StripeError as e:
            logger.warning("Could not expire Stripe session %s: %s", session_id, str(e))
            return False

    async def _enforce_pending_limit(self, user_id: str) -> None:
        window = timedelta(minutes=self.settings.pending_order_window_minutes)
        pending = await self.orders.count_recent_pending(user_id, window)
        if pending >= self.settings.pending_order_limit:
            logger.warning("User %s has %d recent pending orders", user_id, pending)
            raise RateLimitError(
                message="Too many pending orders. Please complete or wait before starting a new checkout.",
                retry_after=int(window.total_seconds()),
                limit=self.settings.pending_order_limit,
            )

    async def _compensate(self, order_id: str) -> None:
        try:
            await self.orders.mark_failed(order_id)
        except Exception as e:
            logger.error("Could not mark order %s failed: %s", order_id, str(e))

    def _session_params(
        self,
        order: Order,
        cart: PricedCart,
        user_id: str,
        customer_email: str,
        locale: str,
    ) -> dict[str, Any]:
        site_url = self.settings.site_url.rstrip("/")
        return {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": cart.currency,
                        "product_data": {"name": f"{line.product_name} - {line.variant_name}"},
                        "unit_amount": line.unit_price,
                    },
                    "quantity": line.quantity,
                }
                for line in cart.lines
            ],
            "success_url": f"{site_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{site_url}/checkout/cancel",
            "customer_email": customer_email,
            "client_reference_id": order["reference"],
            "locale": locale,
            "metadata": {"order_id": order["id"], "user_id": user_id},
            "expires_at": int(time.time()) + self.settings.checkout_session_expiry_seconds,
        }
