import pytest
from pydantic import ValidationError

from checkout.core.config import EnvironmentMode, Settings, get_settings
from checkout.services.orchestrator import CheckoutTimings
from checkout.services.payment import (
    MockMobileMoneyGateway,
    ShwaryGateway,
    get_payment_gateway,
    reset_payment_gateway,
)


@pytest.fixture
def fresh_settings(monkeypatch):
    """Rebuild cached settings and gateway around a test."""
    get_settings.cache_clear()
    reset_payment_gateway()
    yield monkeypatch
    get_settings.cache_clear()
    reset_payment_gateway()


def test_defaults_match_checkout_timings():
    settings = Settings(_env_file=None)
    timings = CheckoutTimings.from_settings(settings)

    assert timings == CheckoutTimings(
        poll_interval=4, timeout=60, manual_override_grace=15, finalize_delay=2, card_processing=3
    )


def test_env_mode_and_country_validation():
    settings = Settings(_env_file=None, env_mode="STAGING", default_country="ke")
    assert settings.env_mode == EnvironmentMode.STAGING
    assert settings.use_real_services
    assert settings.default_country == "KE"

    with pytest.raises(ValidationError):
        Settings(_env_file=None, env_mode="qa")
    with pytest.raises(ValidationError):
        Settings(_env_file=None, default_country="FR")


def test_production_config_reports_missing_credentials():
    settings = Settings(_env_file=None, env_mode="production", shwary_merchant_id="m-1")
    assert settings.validate_production_config() == ["SHWARY_MERCHANT_KEY"]


def test_development_uses_mock_gateway(fresh_settings):
    fresh_settings.setenv("ENV_MODE", "development")
    assert isinstance(get_payment_gateway(), MockMobileMoneyGateway)
    assert get_payment_gateway() is get_payment_gateway()


def test_production_uses_shwary_gateway(fresh_settings):
    fresh_settings.setenv("ENV_MODE", "production")
    fresh_settings.setenv("SHWARY_MERCHANT_ID", "m-1")
    fresh_settings.setenv("SHWARY_MERCHANT_KEY", "k-1")
    assert isinstance(get_payment_gateway(), ShwaryGateway)


def test_production_without_credentials_fails(fresh_settings):
    fresh_settings.setenv("ENV_MODE", "production")
    fresh_settings.delenv("SHWARY_MERCHANT_ID", raising=False)
    fresh_settings.delenv("SHWARY_MERCHANT_KEY", raising=False)
    with pytest.raises(ValueError):
        get_payment_gateway()
