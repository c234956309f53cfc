from unittest.mock import patch

import pytest

from voice_api.config.settings import AuthMode, Settings, get_settings

PRODUCTION_SECRETS = {
    "conversion_callback_api_key": "callback-key",
    "encryption_key": "a-strong-production-key",
}


def test_default_settings():
    """Test default settings values."""
    settings = Settings()

    assert settings.app_name == "Voice Conversion API"
    assert settings.version == "1.0.0"
    assert settings.environment == "development"
    assert settings.auth_mode == AuthMode.NONE
    assert settings.processors_enabled is False


def test_processor_defaults():
    """Retry, backoff and recovery defaults."""
    settings = Settings()

    assert settings.conversion_max_retry_attempts == 5
    assert settings.conversion_retry_delay_s == 300
    assert settings.conversion_batch_size == 10
    assert settings.webhook_max_attempts == 5
    assert settings.webhook_batch_size == 20
    assert settings.webhook_stuck_threshold_s == 300
    assert settings.webhook_max_consecutive_failures == 10


def test_production_validation_blocks_none_auth():
    """Test that production environment blocks AUTH_MODE=none."""
    with pytest.raises(ValueError, match="AUTH_MODE=none is not allowed in production"):
        Settings(environment="production", auth_mode=AuthMode.NONE, **PRODUCTION_SECRETS)


def test_production_requires_callback_key():
    with pytest.raises(ValueError, match="CONVERSION_CALLBACK_API_KEY"):
        Settings(
            environment="production",
            auth_mode=AuthMode.OIDC,
            encryption_key="a-strong-production-key",
        )


def test_production_rejects_default_encryption_key():
    with pytest.raises(ValueError, match="ENCRYPTION_KEY is insecure"):
        Settings(
            environment="production",
            auth_mode=AuthMode.OIDC,
            conversion_callback_api_key="callback-key",
        )


def test_production_allows_oidc_auth():
    """Test that production environment allows AUTH_MODE=oidc."""
    settings = Settings(environment="production", auth_mode=AuthMode.OIDC, **PRODUCTION_SECRETS)
    assert settings.environment == "production"
    assert settings.auth_mode == AuthMode.OIDC


def test_settings_dependency_injection():
    """Test the get_settings dependency function."""
    settings = get_settings()
    assert isinstance(settings, Settings)


@patch.dict(
    "os.environ",
    {"CONVERSION_MAX_RETRY_ATTEMPTS": "3", "WEBHOOK_STUCK_THRESHOLD_S": "600"},
)
def test_env_var_loading():
    """Test that environment variables are loaded correctly."""
    settings = Settings()
    assert settings.conversion_max_retry_attempts == 3
    assert settings.webhook_stuck_threshold_s == 600
