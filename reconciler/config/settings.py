"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Any, List, Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from reconciler.errors import ConfigError

ConflictStrategyName = Literal["last_write_wins", "keep_existing", "reject"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Order store
    database_url: str = Field(..., description="Order store connection URL")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    orders_table: str = Field(default="orders", description="Order store table name")
    order_conflict_strategy: ConflictStrategyName = Field(
        default="last_write_wins",
        description="How a redelivered order with different items is resolved",
    )
    order_store_max_write_attempts: int = Field(
        default=5, ge=1, description="Conditional write attempts before giving up"
    )

    # Retry queue
    redis_url: str = Field(..., description="Retry queue Redis URL")
    retry_queue_key: str = Field(default="reconciler:retry:pending")
    retry_inflight_key: str = Field(default="reconciler:retry:inflight")
    retry_dead_letter_key: str = Field(default="reconciler:retry:dead_letter")
    retry_base_delay_seconds: float = Field(
        default=5.0, gt=0, description="Delay before the first redelivery"
    )
    retry_max_delay_seconds: float = Field(default=900.0, gt=0)
    retry_max_attempts: int = Field(
        default=8, ge=1, description="Redeliveries before an envelope is dead-lettered"
    )
    retry_lease_seconds: float = Field(
        default=60.0, gt=0, description="Time a claimed envelope stays invisible"
    )
    retry_poll_interval_seconds: float = Field(default=1.0, gt=0)
    retry_batch_size: int = Field(default=25, ge=1)

    # Notification channel
    notification_webhook_url: str = Field(..., description="Manual review channel endpoint")
    notification_timeout_seconds: float = Field(default=5.0, gt=0)

    # Ledger API
    ledger_base_url: str = Field(default="https://api.fiken.no/api/v2")
    ledger_company_slug: str = Field(..., description="Ledger company/tenant identifier")
    ledger_api_token: str = Field(..., description="Ledger API bearer token")
    ledger_bank_account_code: str = Field(..., description="Ledger bank account code")
    ledger_payment_account: str = Field(..., description="Ledger payment account")
    ledger_timeout_seconds: float = Field(default=10.0, gt=0)
    ledger_max_attempts: int = Field(default=3, ge=1)
    ledger_retry_base_delay: float = Field(default=0.5, ge=0)

    # Accounting
    domestic_income_account: int = Field(default=3010)
    export_income_account: int = Field(default=3110)
    domestic_vat_type: str = Field(default="HIGH")
    export_vat_type: str = Field(default="EXEMPT_IMPORT_EXPORT")
    domestic_country_aliases: str = Field(
        default="NO,NORWAY,NORGE,NOREG,NOR",
        description="Country spellings classified as domestic (comma-separated)",
    )
    invoice_due_days: int = Field(default=30, ge=0)
    suppress_duplicate_invoices: bool = Field(default=True)

    # Customer-facing locale strings
    invoice_text_domestic: str = Field(
        default="Faktura for produkter kjøpt via Pattern Magicians."
    )
    invoice_text_foreign: str = Field(
        default="Invoice for products purchased via Pattern Magicians."
    )
    receipt_subject: str = Field(default="Your receipt from Pattern Magicians")
    receipt_message_domestic: str = Field(
        default=(
            "Hei {name},\n\nDU HAR ALLEREDE BETALT, IKKE PRØV Å BETAL IGJEN\n\n"
            "Vi har mottatt din betaling.\n\nHer er din kvittering (PDF).\n\n"
            "Takk for din støtte!"
        )
    )
    receipt_message_foreign: str = Field(
        default=(
            "Dear {name},\n\nYOU HAVE PAID, PLEASE DO NOT TRY TO PAY AGAIN\n\n"
            "Please find attached your receipt (PDF) for your recent purchase.\n\n"
            "Thank you for your support!"
        )
    )
    contact_language_domestic: str = Field(default="Norwegian")
    contact_language_foreign: str = Field(default="English")

    # Payment provider
    stripe_secret_key: str = Field(..., description="Stripe secret API key")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    stripe_max_network_retries: int = Field(default=2, ge=0)

    # Inbound order stream
    allowed_order_webhook_types: str = Field(
        default="upsell_paid,product_paid,order_paid",
        description="Order webhook types that are persisted (comma-separated)",
    )

    # Application
    app_name: str = Field(default="invoice-reconciler", description="Application name")
    app_env: str = Field(default="development", description="Environment")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate the Stripe key prefix."""
        if not v.startswith(("sk_test_", "sk_live_", "rk_test_", "rk_live_")):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_' or 'rk_' "
                "followed by 'test_' or 'live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @staticmethod
    def _split(value: str) -> List[str]:
        return [part.strip() for part in value.split(",") if part.strip()]

    def get_domestic_country_aliases(self) -> frozenset[str]:
        """Upper-cased country spellings that count as the domestic market."""
        return frozenset(alias.upper() for alias in self._split(self.domestic_country_aliases))

    def get_allowed_order_webhook_types(self) -> frozenset[str]:
        """Order webhook types accepted by the normalizer."""
        return frozenset(self._split(self.allowed_order_webhook_types))


def load_settings(**overrides: Any) -> Settings:
    """
    Build settings, translating validation failures into ``ConfigError``.

    Args:
        **overrides: Explicit values that take precedence over the environment

    Returns:
        Settings: Validated settings

    Raises:
        ConfigError: If required configuration is missing or invalid
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        fields = sorted(
            ".".join(str(part) for part in error["loc"]) for error in e.errors()
        )
        raise ConfigError(
            f"Invalid or missing configuration: {', '.join(fields)}",
            fields=fields,
        ) from e


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Only process entry points use this; library code receives settings explicitly.
    """
    return load_settings()
