"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from src.api.middleware.error_handler import error_handler_middleware, register_exception_handlers
from src.api.middleware.request_size import request_size_limit_middleware
from src.api.routes import health, webhooks
from src.api.routes.checkout import orders_router, router as checkout_router
from src.core.config import get_settings
from src.core.rate_limiter import InMemoryRateLimitStorage, RateLimitConfig
from src.core.stripe import StripeClient, configure_stripe
from src.core.supabase import get_supabase_client
from src.services.checkout_service import CheckoutService
from src.services.email_service import NotificationService
from src.services.fulfillment_service import FulfillmentService
from src.services.order_service import OrderService
from src.services.pricing_service import PricingService
from src.services.webhook_service import WebhookService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Builds the shared clients and services once and stores them on
    ``app.state``, where the route dependencies read them.

    Args:
        app: FastAPI application instance.

    Yields:
        None: Control back to the application.
    """
    # Startup
    settings = get_settings()
    logger.info("Starting %s in %s mode", settings.app_name, settings.app_env)

    configure_stripe()
    logger.info("Stripe SDK configured (test mode: %s)", settings.is_stripe_test_mode)

    client = get_supabase_client()
    rate_limiter = InMemoryRateLimitStorage(RateLimitConfig.from_settings())
    await rate_limiter.start_cleanup_task()
    logger.info("Rate limiter initialized")

    stripe_client = StripeClient(settings)
    orders = OrderService(client, settings)
    notifications = NotificationService(client, settings)

    app.state.supabase = client
    app.state.rate_limiter = rate_limiter
    app.state.order_service = orders
    app.state.checkout_service = CheckoutService(
        pricing=PricingService(client, settings),
        orders=orders,
        stripe_client=stripe_client,
        settings=settings,
    )
    app.state.webhook_service = WebhookService(
        orders=orders,
        fulfillment=FulfillmentService(client),
        notifications=notifications,
        stripe_client=stripe_client,
        rate_limiter=rate_limiter,
        client=client,
        settings=settings,
    )

    yield
    # Shutdown
    await rate_limiter.stop_cleanup_task()
    logger.info("Rate limiter shutdown")
    logger.info("Shutting down %s", settings.app_name)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="AllKeyMasters API",
        description="License key storefront backend: checkout, orders and Stripe reconciliation",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add error handler middleware (catches errors raised by inner layers)
    app.add_middleware(BaseHTTPMiddleware, dispatch=error_handler_middleware)

    # Add request size limit middleware (rejects oversized requests early)
    app.add_middleware(BaseHTTPMiddleware, dispatch=request_size_limit_middleware)

    register_exception_handlers(app)

    # Mount health routes at root level (no prefix)
    app.include_router(health.router)

    # Create API v1 router for versioned endpoints
    api_v1_router = APIRouter(prefix="/api/v1")

    # Checkout and orders routes
    api_v1_router.include_router(checkout_router)
    api_v1_router.include_router(orders_router)

    # Webhook routes
    api_v1_router.include_router(webhooks.router)

    app.include_router(api_v1_router)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
