from pydantic import ValidationError
import pytest

from carshare.core.config import Settings, is_running_tests
from carshare.core.ulid_helper import generate_ulid, is_valid_ulid


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("PAYMENT_CAPTURE_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("ENVIRONMENT", "Production")

    configured = Settings()

    assert configured.payment_capture_timeout_seconds == 2.5
    assert configured.stripe_configured is True
    assert configured.is_production is True


def test_insurance_rates_need_every_tier(monkeypatch):
    monkeypatch.setenv("INSURANCE_DAILY_RATES", '{"basic": 50}')
    with pytest.raises(ValidationError):
        Settings()


def test_defaults_under_test_env():
    configured = Settings()
    assert configured.stripe_configured is False
    assert configured.background_jobs_enabled is False
    assert is_running_tests() is True


def test_ulid_helpers():
    value = generate_ulid()
    assert len(value) == 26
    assert is_valid_ulid(value)
    assert not is_valid_ulid("not-a-ulid")
