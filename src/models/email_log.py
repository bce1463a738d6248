"""Email log type definitions."""

from datetime import datetime
from typing import Literal, TypedDict


EmailStatus = Literal["pending", "sent", "failed"]

EmailKind = Literal["payment_confirmation", "license_delivery", "admin_sale"]


class EmailLog(TypedDict, total=False):
    """email_logs table row. dedupe_key is unique."""

    id: str
    dedupe_key: str
    kind: EmailKind
    to_email: str
    subject: str
    status: EmailStatus
    provider: str
    provider_id: str | None
    error: str | None
    created_at: datetime
