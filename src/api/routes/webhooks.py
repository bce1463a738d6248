"""Webhook API routes for external service integrations."""

import logging

import stripe
from fastapi import APIRouter, Request, Response, status

from src.api.deps import ClientIP, WebhookServiceDep
from src.api.middleware.error_handler import BadRequestError
from src.api.middleware.request_size import payload_too_large
from src.core.config import get_settings
from src.core.stripe import WebhookSecretMissingError
from src.schemas.webhook import WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/stripe",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Handle Stripe webhooks",
    description="Receives and processes Stripe webhook events. Requires valid signature.",
    responses={
        400: {"description": "Missing or invalid signature"},
        413: {"description": "Body too large"},
    },
)
async def stripe_webhook(
    request: Request,
    service: WebhookServiceDep,
    client_ip: ClientIP,
) -> WebhookAck | Response:
    """Handle Stripe webhook events.

    The signature is verified over the raw body before anything else. Once
    verified, the delivery is always acknowledged with 200; the outcome is
    recorded on the event row.

    Handles:
    - checkout.session.completed: marks the order paid, assigns licenses, sends emails
    - checkout.session.async_payment_succeeded: same, for delayed payment methods
    - charge.refunded: marks the order refunded and revokes its licenses
    - charge.dispute.created: marks the order disputed and revokes its licenses
    - charge.dispute.closed: restores (won) or refunds (lost) the order

    Args:
        request: FastAPI request object for reading raw body and headers.
        service: Webhook reconciler.
        client_ip: Delivery source IP.

    Returns:
        WebhookAck: Acknowledgment with the recorded outcome.

    Raises:
        BadRequestError: 400 if the signature header is missing or invalid.
    """
    max_size = get_settings().webhook_max_body_size
    payload = await request.body()
    if len(payload) > max_size:
        logger.warning("Webhook body too large: %d bytes (max: %d)", len(payload), max_size)
        return payload_too_large(max_size)

    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.error("Missing Stripe-Signature header in webhook request")
        raise BadRequestError("Missing Stripe-Signature header", error_type="invalid_signature")

    try:
        event = service.verify_event(payload, sig_header)
    except WebhookSecretMissingError as e:
        logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        raise BadRequestError("Webhook secret not configured", error_type="invalid_signature") from e
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.error("Invalid webhook signature: %s", str(e))
        raise BadRequestError("Invalid signature", error_type="invalid_signature") from e

    logger.info("Received Stripe event %s (%s)", event.get("id"), event.get("type"))
    outcome = await service.handle_event(event, client_ip)
    return WebhookAck(status=outcome.status)
