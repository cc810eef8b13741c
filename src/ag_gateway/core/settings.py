"""Application settings and configuration.

This module defines all configuration options for the Anti-Gravity trust gateway.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PRODUCTION = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    This class defines all configuration options for the trust gateway.
    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Anti-Gravity Trust Gateway", alias="APP_NAME")
    app_version: str = Field(default="1.0.0", alias="APP_VERSION")
    environment: str = Field(default="development", alias="AG_ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Session and CSRF tokens
    session_token_secret: str | None = Field(default=None, alias="SESSION_TOKEN_SECRET")
    session_ttl_seconds: int = Field(default=3600, alias="SESSION_TTL_SECONDS")
    csrf_ttl_seconds: int = Field(default=3600, alias="CSRF_TTL_SECONDS")
    # Unix timestamp; CSRF tokens without a purpose marker are only honoured
    # when they were issued before this instant.
    csrf_legacy_issued_before: int | None = Field(
        default=None,
        alias="CSRF_LEGACY_ISSUED_BEFORE",
    )
    protocol_signature: str | None = Field(default=None, alias="AG_PROTOCOL_SIGNATURE")
    request_timestamp_tolerance_seconds: int = Field(
        default=300,
        alias="REQUEST_TIMESTAMP_TOLERANCE_SECONDS",
    )

    # External identity (OAuth ID tokens)
    identity_jwt_secret: str | None = Field(default=None, alias="IDENTITY_JWT_SECRET")
    identity_jwks_url: str | None = Field(default=None, alias="IDENTITY_JWKS_URL")
    identity_audience: str | None = Field(default="authenticated", alias="IDENTITY_AUDIENCE")
    identity_issuer: str | None = Field(default=None, alias="IDENTITY_ISSUER")
    identity_algorithms: list[str] = Field(
        default=["RS256", "ES256"],
        alias="IDENTITY_ALGORITHMS",
    )
    jwks_cache_ttl_seconds: int = Field(default=600, alias="JWKS_CACHE_TTL_SECONDS")
    identity_http_timeout_seconds: float = Field(
        default=5.0,
        alias="IDENTITY_HTTP_TIMEOUT_SECONDS",
    )

    admin_uids: list[str] = Field(default_factory=list, alias="ADMIN_UIDS")

    # Database configuration
    database_url: str = Field(default="sqlite:///./ag_gateway.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Redis configuration for rate-limit counters
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    redis_socket_timeout_seconds: float = Field(
        default=1.0,
        alias="REDIS_SOCKET_TIMEOUT_SECONDS",
    )

    # Rate limit policies (max requests per window)
    rate_limit_global_max: int = Field(default=60, alias="RATE_LIMIT_GLOBAL_MAX")
    rate_limit_global_window_seconds: int = Field(
        default=60,
        alias="RATE_LIMIT_GLOBAL_WINDOW_SECONDS",
    )
    purchase_burst_max: int = Field(default=5, alias="PURCHASE_BURST_MAX")
    purchase_burst_window_seconds: int = Field(
        default=300,
        alias="PURCHASE_BURST_WINDOW_SECONDS",
    )
    purchase_sustained_max: int = Field(default=10, alias="PURCHASE_SUSTAINED_MAX")
    purchase_sustained_window_seconds: int = Field(
        default=3600,
        alias="PURCHASE_SUSTAINED_WINDOW_SECONDS",
    )

    # Google Play billing oracle
    google_play_package_name: str = Field(
        default="com.cryptobulla.antigravity",
        alias="GOOGLE_PLAY_PACKAGE_NAME",
    )
    google_service_account_json: str | None = Field(
        default=None,
        alias="GOOGLE_SERVICE_ACCOUNT_JSON",
    )
    google_oauth_token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        alias="GOOGLE_OAUTH_TOKEN_URI",
    )
    google_play_api_base: str = Field(
        default="https://androidpublisher.googleapis.com/androidpublisher/v3",
        alias="GOOGLE_PLAY_API_BASE",
    )
    oracle_timeout_seconds: float = Field(default=5.0, alias="ORACLE_TIMEOUT_SECONDS")
    require_subscription_acknowledgement: bool | None = Field(
        default=None,
        alias="REQUIRE_SUBSCRIPTION_ACKNOWLEDGEMENT",
    )
    subscription_products: dict[str, str] = Field(
        default={"monthly_pro_pass": "pro"},
        alias="SUBSCRIPTION_PRODUCTS",
    )
    one_time_products: dict[str, str] = Field(
        default={"lifetime_pro_access": "lifetime", "pro_access_lifetime": "lifetime"},
        alias="ONE_TIME_PRODUCTS",
    )

    # Billing webhook (server-to-server notifications)
    billing_webhook_public_key: str | None = Field(
        default=None,
        alias="BILLING_WEBHOOK_PUBLIC_KEY",
    )
    billing_webhook_signature_required: bool | None = Field(
        default=None,
        alias="BILLING_WEBHOOK_SIGNATURE_REQUIRED",
    )

    # CORS configuration for web and capacitor clients
    cors_allowed_origins: list[str] = Field(
        default=[
            "capacitor://localhost",
            "https://pdf-tools-pro.vercel.app",
            "https://pdf-tools-pro-indol.vercel.app",
        ],
        alias="CORS_ALLOWED_ORIGINS",
    )
    cors_allow_localhost: bool = Field(default=True, alias="CORS_ALLOW_LOCALHOST")
    cors_allow_methods: list[str] = Field(
        default=["POST", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=[
            "Content-Type",
            "Authorization",
            "x-ag-device-id",
            "x-ag-signature",
            "x-ag-integrity-token",
            "x-ag-timestamp",
            "x-csrf-token",
            "X-Request-ID",
        ],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def is_production(self) -> bool:
        """Return True when running with production hardening."""
        return self.environment.strip().lower() == PRODUCTION

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides.

        Returns:
            The active database URL (test database if in testing mode, otherwise production)
        """
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def acknowledgement_required(self) -> bool:
        """Whether recurring purchases must be acknowledged to count as active."""
        if self.require_subscription_acknowledgement is None:
            return self.is_production
        return self.require_subscription_acknowledgement

    @property
    def webhook_signature_required(self) -> bool:
        """Whether inbound billing notifications must carry a valid signature."""
        if self.billing_webhook_signature_required is None:
            return self.is_production
        return self.billing_webhook_signature_required

    @property
    def product_tiers(self) -> dict[str, str]:
        """Return every known product id mapped to the tier it grants."""
        return {**self.one_time_products, **self.subscription_products}


settings = Settings()  # type: ignore[call-arg]
