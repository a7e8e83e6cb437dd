# backend/carshare/core/config.py
import logging
import os
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug("[CONFIG] Looking for .env at: %s (exists=%s)", env_path, env_path.exists())
    load_dotenv(env_path)


class Settings(BaseSettings):
    environment: str = Field(
        default="development",
        description="Deployment environment (development|staging|production)",
    )
    database_url: str = Field(
        default="sqlite:///./carshare.db",
        description="SQLAlchemy URL for the booking store",
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Stripe Configuration
    stripe_secret_key: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key for backend API calls",
    )
    stripe_currency: str = Field(default="eur", description="Default currency for payments")
    stripe_network_timeout_seconds: int = Field(
        default=8, description="HTTP timeout used by the Stripe client"
    )

    # Payment protocol timeouts. A timed-out authorize is a decline, a timed-out
    # capture is unknown until a status poll confirms it.
    payment_authorize_timeout_seconds: float = Field(default=10.0, gt=0)
    payment_capture_timeout_seconds: float = Field(default=10.0, gt=0)
    payment_release_timeout_seconds: float = Field(default=10.0, gt=0)
    payment_status_poll_attempts: int = Field(default=3, ge=1)
    payment_status_poll_backoff_seconds: float = Field(default=0.5, ge=0)

    # Pricing policy
    service_fee_rate: float = Field(default=0.10, ge=0, description="Service fee share of base price")
    deposit_rate: float = Field(default=0.30, ge=0, description="Deposit share of base price")
    insurance_daily_rates: Dict[str, int] = Field(
        default_factory=lambda: {"basic": 50, "standard": 75, "premium": 100},
        description="Per-day insurance fee by tier, in whole currency units",
    )

    # Availability and request expiry
    availability_search_horizon_days: int = Field(default=14, ge=0)
    availability_max_suggestions: int = Field(default=3, ge=0)
    pending_request_ttl_hours: int = Field(
        default=48, description="Owner response window before a request expires"
    )
    accepted_payment_ttl_hours: int = Field(
        default=24, description="Renter payment window after acceptance"
    )

    support_user_id: str = Field(
        default="support", description="Recipient for dispute notifications"
    )

    # Periodic expiry sweep and payment reconciliation run inside the API process
    background_jobs_enabled: bool = Field(default=True)
    background_jobs_interval_seconds: int = Field(default=300, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("insurance_daily_rates")
    @classmethod
    def _require_known_tiers(cls, value: Dict[str, Any]) -> Dict[str, int]:
        missing = {"basic", "standard", "premium"} - set(value)
        if missing:
            raise ValueError(f"insurance_daily_rates is missing tiers: {sorted(missing)}")
        return {tier: int(rate) for tier, rate in value.items()}

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production"}

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key.get_secret_value())


settings = Settings()
