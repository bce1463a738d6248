"""Stripe webhook schemas: checkout session metadata and acknowledgement body."""

from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID

from pydantic import BaseModel, Field

from src.models.results import Ok

# user_id values written for checkouts without a bound account
GUEST_USER_IDS = frozenset({"", "guest", "anonymous"})


class SessionMetadata(BaseModel):
    """Metadata we attach to every Stripe Checkout Session."""

    order_id: str = Field(description="Order UUID the session pays for")
    user_id: str | None = Field(default=None, description="Account UUID, None for guests")


@dataclass(frozen=True)
class MissingField:
    """A required metadata key was absent or malformed."""

    name: str

    @property
    def ok(self) -> bool:
        return False


def parse_session_metadata(metadata: Mapping[str, Any] | None) -> Ok[SessionMetadata] | MissingField:
    """Validate the metadata bag read back from a Stripe session.

    Args:
        metadata: Raw ``session.metadata`` mapping (may be None).

    Returns:
        Ok(SessionMetadata) or MissingField naming the first bad key.
    """
    metadata = metadata or {}

    # orderId/userId are the keys written by older checkout versions
    order_id = str(metadata.get("order_id") or metadata.get("orderId") or "").strip()
    if not order_id:
        return MissingField("order_id")
    try:
        UUID(order_id)
    except ValueError:
        return MissingField("order_id")

    user_id: str | None = str(metadata.get("user_id") or metadata.get("userId") or "").strip()
    if user_id.lower() in GUEST_USER_IDS:
        user_id = None
    else:
        try:
            UUID(user_id)
        except ValueError:
            return MissingField("user_id")

    return Ok(SessionMetadata(order_id=order_id, user_id=user_id))


class WebhookAck(BaseModel):
    """Body returned to Stripe once a delivery is authenticated."""

    received: bool = Field(default=True)
    status: str = Field(description="Internal outcome recorded for the event")
