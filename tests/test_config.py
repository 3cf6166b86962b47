"""Tests for settings validation."""

from __future__ import annotations

import pytest

from campaign_bridge.config import require_valid_settings, validate_production_settings
from campaign_bridge.core.exceptions import ConfigurationError
from conftest import make_settings


def production_settings(**overrides):
    values = {
        "environment": "production",
        "voice_ai": {
            "api_key": "key",
            "phone_number_id": "pn-1",
            "webhook_secret": "s3cret",
        },
        "twilio": {"account_sid": "AC123", "auth_token": "token"},
        "redis": {"backend": "redis"},
        "webhooks": {"validate_signatures": True},
    }
    values.update(overrides)
    return make_settings(**values)


class TestValidateProductionSettings:
    def test_development_is_not_checked(self):
        assert validate_production_settings(make_settings(environment="development")) == []

    def test_complete_production_settings(self):
        assert validate_production_settings(production_settings()) == []

    def test_missing_credentials_are_reported(self):
        settings = production_settings(
            voice_ai={"api_key": "", "webhook_secret": ""},
            twilio={"auth_token": ""},
        )

        errors = validate_production_settings(settings)

        assert any("CB_VOICE_AI__API_KEY" in e for e in errors)
        assert any("CB_VOICE_AI__WEBHOOK_SECRET" in e for e in errors)
        assert any("CB_TWILIO__AUTH_TOKEN" in e for e in errors)

    def test_memory_store_rejected(self):
        errors = validate_production_settings(production_settings(redis={"backend": "memory"}))

        assert errors == ["CB_REDIS__BACKEND=memory is not shared across processes"]


class TestRequireValidSettings:
    def test_raises_configuration_error(self):
        settings = production_settings(twilio={"account_sid": ""})

        with pytest.raises(ConfigurationError) as exc_info:
            require_valid_settings(settings)

        assert exc_info.value.status_code == 503
        assert exc_info.value.details["errors"] == ["CB_TWILIO__ACCOUNT_SID must be set in production"]

    def test_returns_valid_settings(self):
        settings = production_settings()

        assert require_valid_settings(settings) is settings
