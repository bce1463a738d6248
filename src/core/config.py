"""Application configuration management using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Required settings will raise validation errors if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="keymasters-backend", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins",
    )

    # Supabase
    supabase_url: str = Field(..., description="Supabase project URL")
    supabase_secret_key: str = Field(..., description="Supabase secret key for backend operations")
    supabase_signing_key_jwk: str = Field(..., description="Supabase signing key JWK (JSON string) for JWT token verification")
    auth_cookie_name: str = Field(default="sb-access-token", description="Cookie carrying the Supabase access token")
    supabase_jwt_audience: str = Field(default="authenticated", description="Expected aud claim of Supabase access tokens")

    # Stripe
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    stripe_timeout_seconds: int = Field(default=10, description="Timeout for Stripe API calls")
    stripe_max_network_retries: int = Field(default=2, description="Automatic Stripe retries for idempotent requests")

    # Email (Resend)
    resend_api_key: str = Field(default="", description="Resend API key for sending emails")
    email_from_address: str = Field(
        default="AllKeyMasters <no-reply@allkeymasters.com>",
        description="From address for transactional emails",
    )
    email_reply_to_address: str = Field(default="support@allkeymasters.com", description="Reply-To for customer emails")
    admin_email_address: str = Field(default="support@allkeymasters.com", description="Recipient of internal sale alerts")
    email_timeout_seconds: float = Field(default=8.0, description="Timeout for a single email provider call")

    # Storefront
    site_url: str = Field(default="http://localhost:3000", description="Public storefront URL used for redirects")
    store_currency: str = Field(default="eur", description="ISO currency code for all prices")
    order_reference_prefix: str = Field(default="AKM", description="Prefix of human-readable order references")

    # Checkout
    max_cart_lines: int = Field(default=50, description="Maximum number of distinct cart lines")
    max_line_quantity: int = Field(default=100, description="Maximum quantity for a single cart line")
    checkout_reuse_window_minutes: int = Field(default=15, description="Window in which a pending order's session may be reused")
    checkout_session_expiry_seconds: int = Field(default=3600, description="Absolute expiry of Stripe checkout sessions")
    pending_order_limit: int = Field(default=5, description="Maximum pending orders per user inside the throttle window")
    pending_order_window_minutes: int = Field(default=10, description="Throttle window for pending orders")

    # Rate limiting
    rate_limit_window_seconds: int = Field(default=60, description="Rate limit window in seconds")
    rate_limit_checkout_ip_requests: int = Field(default=30, description="Checkout requests per window per client IP")
    rate_limit_checkout_user_requests: int = Field(default=10, description="Checkout requests per window per user")
    rate_limit_webhook_requests: int = Field(default=600, description="Webhook deliveries per window per source IP")
    trust_forwarded_for: bool = Field(default=True, description="Use X-Forwarded-For to resolve the client IP")

    # Request limits
    max_request_body_size: int = Field(default=1024 * 1024, description="Maximum request body size in bytes")
    webhook_max_body_size: int = Field(default=1024 * 1024, description="Maximum Stripe webhook body size in bytes")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_stripe_test_mode(self) -> bool:
        """Check if using Stripe test keys."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
