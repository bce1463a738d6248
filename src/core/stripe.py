"""Stripe client configuration and the checkout/webhook calls we rely on."""

import logging
import time
from typing import Any, Mapping

import stripe
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Retry configuration for idempotent reads
MAX_RETRIES = 3
MIN_WAIT_SECONDS = 0.5
MAX_WAIT_SECONDS = 4


def configure_stripe() -> None:
    """Configure Stripe SDK with API key, timeout and retries from settings.

    This should be called once at application startup.
    If Stripe keys are not configured, Stripe operations will fail with clear errors.
    """
    settings = get_settings()
    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key
    else:
        logger.warning("Stripe secret key not configured. Stripe features will not work.")

    stripe.max_network_retries = settings.stripe_max_network_retries
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)


class WebhookSecretMissingError(Exception):
    """STRIPE_WEBHOOK_SECRET is not configured."""


def session_is_reusable(session: Mapping[str, Any], now: float | None = None) -> bool:
    """Whether a Checkout Session can still be paid: open, unpaid, unexpired, with a URL."""
    now = time.time() if now is None else now
    expires_at = session.get("expires_at")
    return (
        session.get("status") == "open"
        and session.get("payment_status") == "unpaid"
        and bool(session.get("url"))
        and (expires_at is None or expires_at > now)
    )


class StripeClient:
    """The Stripe operations used by checkout and webhook handling.

    Wraps the module-level SDK so services receive it as a dependency and
    tests can substitute a double.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def create_checkout_session(self, idempotency_key: str, **params: Any) -> Any:
        """Create a Checkout Session; ``idempotency_key`` makes retries safe."""
        return stripe.checkout.Session.create(idempotency_key=idempotency_key, **params)

    @retry(
        retry=retry_if_exception_type((stripe.APIConnectionError, stripe.RateLimitError)),
        stop=stop_after_attempt(MAX_RETRIES),
        wait=wait_exponential(multiplier=1, min=MIN_WAIT_SECONDS, max=MAX_WAIT_SECONDS),
        reraise=True,
    )
    def retrieve_checkout_session(self, session_id: str) -> Any:
        """Retrieve a Checkout Session with retry on transient errors."""
        return stripe.checkout.Session.retrieve(session_id)

    def expire_checkout_session(self, session_id: str) -> Any:
        """Expire an open Checkout Session so it can no longer be paid."""
        return stripe.checkout.Session.expire(session_id)

    def construct_event(self, payload: bytes, sig_header: str) -> Any:
        """Verify the signature over the raw body and parse the event.

        Raises:
            WebhookSecretMissingError: If no webhook secret is configured.
            stripe.SignatureVerificationError: If the signature does not match.
            ValueError: If the payload is not valid JSON.
        """
        if not self.settings.stripe_webhook_secret:
            raise WebhookSecretMissingError("STRIPE_WEBHOOK_SECRET is not configured")
        return stripe.Webhook.construct_event(payload, sig_header, self.settings.stripe_webhook_secret)
