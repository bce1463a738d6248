"""FastAPI dependency injection functions."""

from typing import Annotated

from fastapi import Depends, Header, Request

from src.api.middleware.auth import AuthError, AuthErrorCode, decode_jwt
from src.api.middleware.error_handler import AuthenticationError, RateLimitError
from src.core.config import Settings, get_settings
from src.core.rate_limiter import InMemoryRateLimitStorage
from src.schemas.auth import UserContext
from src.services.checkout_service import CheckoutService
from src.services.order_service import OrderService
from src.services.webhook_service import WebhookService


def _token_from_request(request: Request, authorization: str | None, settings: Settings) -> str | None:
    """Extract the Supabase access token from the Authorization header or cookie."""
    if authorization:
        parts = authorization.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise AuthenticationError("Invalid authorization header format. Expected: Bearer <token>")
        return parts[1]
    return request.cookies.get(settings.auth_cookie_name)


async def get_current_user(
    request: Request,
    authorization: Annotated[str | None, Header(description="Bearer token")] = None,
) -> UserContext:
    """Extract and validate the current user from the Authorization header or auth cookie.

    Args:
        request: FastAPI request object (for the cookie fallback).
        authorization: The Authorization header value (Bearer token).

    Returns:
        UserContext: The authenticated user's context.

    Raises:
        AuthenticationError: 401 if token is missing, invalid, or expired.
    """
    token = _token_from_request(request, authorization, get_settings())
    if not token:
        raise AuthenticationError("Authentication required")

    try:
        payload = decode_jwt(token)
        return payload.to_user_context()
    except AuthError as e:
        if e.code == AuthErrorCode.TOKEN_EXPIRED:
            raise AuthenticationError("Token has expired") from e
        raise AuthenticationError(e.message) from e
    except ValueError as e:
        # sub claim is not a UUID
        raise AuthenticationError("Invalid token subject") from e


# Type alias for cleaner dependency injection
CurrentUser = Annotated[UserContext, Depends(get_current_user)]


def get_client_ip(request: Request) -> str:
    """Resolve the caller IP, honouring the first X-Forwarded-For hop behind a proxy."""
    if get_settings().trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return request.client.host if request.client else "unknown"


ClientIP = Annotated[str, Depends(get_client_ip)]


# Services built once in the application lifespan


def get_rate_limiter(request: Request) -> InMemoryRateLimitStorage:
    return request.app.state.rate_limiter


def get_checkout_service(request: Request) -> CheckoutService:
    return request.app.state.checkout_service


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


def get_webhook_service(request: Request) -> WebhookService:
    return request.app.state.webhook_service


RateLimiterDep = Annotated[InMemoryRateLimitStorage, Depends(get_rate_limiter)]
CheckoutServiceDep = Annotated[CheckoutService, Depends(get_checkout_service)]
OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
WebhookServiceDep = Annotated[WebhookService, Depends(get_webhook_service)]


# Rate limiting dependency


async def check_checkout_rate_limit(user: CurrentUser, ip: ClientIP, limiter: RateLimiterDep) -> None:
    """Apply the per-IP and per-user checkout rate limits.

    Raises:
        RateLimitError: If either key has exceeded its limit.
    """
    settings = get_settings()
    for key, max_requests in (
        (f"checkout-ip:{ip}", settings.rate_limit_checkout_ip_requests),
        (f"checkout-user:{user.user_id}", settings.rate_limit_checkout_user_requests),
    ):
        decision = await limiter.check_and_increment(
            key,
            max_requests=max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
        if not decision.allowed:
            raise RateLimitError(
                message="Too many checkout attempts. Please wait before trying again.",
                retry_after=decision.retry_after,
                limit=max_requests,
            )


CheckoutRateLimit = Annotated[None, Depends(check_checkout_rate_limit)]
