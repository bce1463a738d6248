"""Request body size limiting middleware."""

import logging
from typing import Callable

from fastapi import Request, Response, status

from src.api.middleware.error_handler import create_error_response
from src.core.config import get_settings

logger = logging.getLogger(__name__)

WEBHOOK_PATH_PREFIX = "/api/v1/webhooks/"


def body_limit_for_path(path: str) -> int:
    """Maximum accepted body size for a request path."""
    settings = get_settings()
    if path.startswith(WEBHOOK_PATH_PREFIX):
        return settings.webhook_max_body_size
    return settings.max_request_body_size


def payload_too_large(max_size: int) -> Response:
    return create_error_response(
        error_type="request_too_large",
        message=f"Request body exceeds maximum size of {max_size} bytes",
        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    )


async def request_size_limit_middleware(
    request: Request,
    call_next: Callable[[Request], Response],
) -> Response:
    """Middleware to enforce request body size limits.

    Rejects requests whose declared Content-Length is larger than the
    configured maximum before the body is read. Routes that consume the raw
    body re-check its actual length.

    Args:
        request: The incoming request.
        call_next: Next middleware or route handler.

    Returns:
        Response: Either the successful response or 413 error.
    """
    max_size = body_limit_for_path(request.url.path)

    content_length = request.headers.get("content-length")
    if content_length:
        try:
            length = int(content_length)
        except ValueError:
            length = None  # Invalid content-length, let it proceed
        if length is not None and length > max_size:
            logger.warning(
                "Request body too large: %d bytes (max: %d)",
                length,
                max_size,
            )
            return payload_too_large(max_size)

    return await call_next(request)
