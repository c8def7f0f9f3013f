"""
Unit tests for service configuration.
"""

import pydantic
import pytest

from shared.config import get_config


class TestConfig:
    """Test cases for environment-driven configuration."""

    def test_defaults(self):
        config = get_config("metering", 8080)

        assert config.service_name == "metering"
        assert config.port == 8080
        assert config.ledger_backend == "postgres"
        assert config.jwks_cache_ttl == 3600.0
        assert config.work_timeout_seconds == 50.0
        assert config.admin_subjects == set()
        assert config.cron_secret is None

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("METER_LEDGER_BACKEND", "memory")
        monkeypatch.setenv("METER_JWT_ISSUER", "https://idp.example.com/auth/v1")
        monkeypatch.setenv("METER_WORK_TIMEOUT_SECONDS", "12.5")
        monkeypatch.setenv("METER_CRON_SECRET", "s3cret")

        config = get_config("metering", 8080)

        assert config.ledger_backend == "memory"
        assert config.jwt_issuer == "https://idp.example.com/auth/v1"
        assert config.work_timeout_seconds == 12.5
        assert config.cron_secret == "s3cret"

    def test_admin_subjects_are_comma_separated(self, monkeypatch):
        monkeypatch.setenv("METER_ADMIN_SUBJECTS", "admin-1, admin-2,,")

        config = get_config("metering", 8080)

        assert config.admin_subjects == {"admin-1", "admin-2"}

    def test_explicit_overrides_win(self, monkeypatch):
        monkeypatch.setenv("METER_DECODE_COST", "3")

        config = get_config("metering", 8080, decode_cost=7)

        assert config.decode_cost == 7

    def test_decode_cost_must_be_positive(self):
        with pytest.raises(pydantic.ValidationError):
            get_config("metering", 8080, decode_cost=0)
