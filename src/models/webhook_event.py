"""Stripe webhook event log type definitions."""

from datetime import datetime
from typing import Literal, TypedDict


WebhookEventStatus = Literal["processing", "processed", "failed", "dropped"]


class WebhookEvent(TypedDict, total=False):
    """stripe_webhook_events table row.

    The unique event_id column is the idempotence gate for webhook side effects.
    """

    id: str
    event_id: str
    event_type: str
    order_id: str | None
    status: WebhookEventStatus
    error_kind: str | None
    error: str | None
    created_at: datetime
    processed_at: datetime | None
