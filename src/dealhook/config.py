"""Configuration management for Dealhook."""

import logging
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Dealhook configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the DEALHOOK_ prefix. For example:
        DEALHOOK_QDRANT_URL=http://localhost:6333
        DEALHOOK_RETRY_BATCH_SIZE=100

    Endpoint validation:
        - In production (DEALHOOK_ENV=production), new or changed webhook
          URLs must answer a test event with a 2xx before they are saved
        - DEALHOOK_VALIDATE_ENDPOINTS overrides the environment default
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )
    validate_endpoints: bool | None = Field(
        default=None,
        description=(
            "Send a webhook.test event before saving a subscription. "
            "If not set, defaults to True in production, False otherwise."
        ),
    )

    # Storage
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant connection URL (':memory:' for in-process storage)",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        description="Qdrant API key (for cloud)",
    )
    collection_prefix: str = Field(
        default="dealhook",
        description="Prefix for Qdrant collection names",
    )

    # Delivery
    user_agent: str = Field(
        default="Dealhook-Webhook/1.0",
        description="User-Agent header sent with every delivery",
    )
    default_retry_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum delivery attempts for new subscriptions",
    )
    default_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Per-attempt HTTP timeout for new subscriptions",
    )
    validation_timeout_seconds: int = Field(
        default=10,
        ge=1,
        le=60,
        description="Timeout for the webhook.test validation request",
    )
    max_concurrent_deliveries: int = Field(
        default=10,
        ge=1,
        le=200,
        description="Maximum in-flight delivery attempts per dispatcher",
    )
    response_body_limit: int = Field(
        default=1000,
        ge=0,
        le=100000,
        description="Characters of response body kept on a delivery record",
    )

    # Retry sweep
    retry_sweep_enabled: bool = Field(
        default=True,
        description="Run the periodic retry sweep inside the API process",
    )
    retry_sweep_interval_seconds: int = Field(
        default=60,
        ge=1,
        description="Seconds between retry sweeps",
    )
    retry_batch_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Maximum due deliveries retried per sweep",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    # CORS Configuration
    cors_enabled: bool = Field(
        default=True,
        description="Enable CORS middleware",
    )
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["*"],
        description=(
            "List of allowed CORS origins. Use ['*'] for permissive mode (dev only). "
            "In production, specify exact origins like ['https://crm.example.com']."
        ),
    )
    cors_allow_methods: list[str] = Field(
        default_factory=lambda: ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        description="Allowed HTTP methods for CORS requests",
    )
    cors_allow_headers: list[str] = Field(
        default_factory=lambda: ["*"],
        description="Allowed headers for CORS requests",
    )
    cors_allow_credentials: bool = Field(
        default=False,
        description=(
            "Allow credentials (cookies, auth headers) in CORS requests. "
            "Cannot be True when cors_allow_origins is ['*']."
        ),
    )

    model_config = {
        "env_prefix": "DEALHOOK_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }

    @model_validator(mode="after")
    def validate_cors_settings(self) -> "Settings":
        """Reject credentialed CORS with a wildcard origin."""
        if self.cors_allow_credentials and "*" in self.cors_allow_origins:
            raise ValueError(
                "cors_allow_credentials cannot be True when cors_allow_origins contains '*'. "
                "List explicit origins instead."
            )
        return self

    @model_validator(mode="after")
    def resolve_endpoint_validation(self) -> "Settings":
        """Resolve validate_endpoints default based on environment."""
        if self.validate_endpoints is None:
            object.__setattr__(self, "validate_endpoints", self.env == "production")
        elif not self.validate_endpoints and self.env == "production":
            logger.warning("Webhook endpoint validation disabled in production")
        return self

    @property
    def is_endpoint_validation_enabled(self) -> bool:
        """Get resolved validate_endpoints value (always bool, never None)."""
        if self.validate_endpoints is None:
            return self.env == "production"
        return self.validate_endpoints


# Global settings instance
settings = Settings()
