"""Application settings loaded from the environment."""

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration.

    Every gateway credential is optional. A gateway without credentials runs
    in simulation mode, and a missing webhook secret is only tolerated
    outside production.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./residence_payments.db"

    @field_validator("database_url", mode="after")
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Rewrite plain postgres URLs to the asyncpg driver."""
        if v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql+asyncpg://", 1)
        return v

    # Admin API
    api_key: str = ""
    public_base_url: str = "http://localhost:8000"

    # Orders
    currency: str = "EUR"
    min_order_amount: int = 50  # minor units
    max_order_amount: int = 100000

    # Reconciliation timing
    sweep_interval_minutes: int = 5
    sweep_grace_minutes: int = 5
    poll_interval_seconds: float = 3.0
    poll_timeout_seconds: float = 300.0
    daily_report_hour: int = 23
    timezone: str = "Europe/Rome"
    reports_dir: str = "reports"
    scheduler_enabled: bool = True
    # Never applied in production; None disables auto-accept
    simulator_auto_accept_seconds: Optional[float] = 10.0

    # Stripe
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""

    # Satispay
    satispay_key_id: str = ""
    satispay_private_key: str = ""  # PEM
    satispay_webhook_secret: str = ""

    # PayPal
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_webhook_id: str = ""

    # SumUp
    sumup_api_key: str = ""
    sumup_merchant_code: str = ""
    sumup_webhook_secret: str = ""

    # Nexi
    nexi_api_key: str = ""
    nexi_webhook_secret: str = ""

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return not self.is_production

