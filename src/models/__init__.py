"""Database model type definitions."""

from src.models.catalog import CatalogProduct, CatalogVariant
from src.models.email_log import EmailKind, EmailLog, EmailStatus
from src.models.license import License
from src.models.order import Order, OrderCreate, OrderItem, OrderStatus
from src.models.results import Err, Ok, Result
from src.models.webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "CatalogProduct",
    "CatalogVariant",
    "EmailKind",
    "EmailLog",
    "EmailStatus",
    "Err",
    "License",
    "Ok",
    "Order",
    "OrderCreate",
    "OrderItem",
    "OrderStatus",
    "Result",
    "WebhookEvent",
    "WebhookEventStatus",
]
