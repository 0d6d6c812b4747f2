"""
Unit tests for environment-driven settings.
"""

from decimal import Decimal

from entitlement_engine.config.settings import EngineSettings, get_settings


class TestEngineSettings:
    """Tests for EngineSettings.from_env."""

    def test_defaults(self, monkeypatch):
        for name in ("ENV", "DEPOSIT_MIN_CONFIRMATIONS", "DELETION_GRACE_PERIOD_DAYS", "REFERRAL_BONUS_PERCENT"):
            monkeypatch.delenv(name, raising=False)

        settings = EngineSettings.from_env()

        assert settings.env == "development"
        assert settings.deposit_min_confirmations == 50
        assert settings.deletion_grace_period_days == 0
        assert settings.referral_bonus_percent == Decimal("7.5")
        assert settings.free_trial_notice_days == 14
        assert settings.free_trial_length_days == 21
        assert not settings.is_production

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("ENV", "production")
        monkeypatch.setenv("DEPOSIT_MIN_CONFIRMATIONS", "12")
        monkeypatch.setenv("DELETION_GRACE_PERIOD_DAYS", "3")
        monkeypatch.setenv("BASE_USD_POOL_INVERT", "false")
        monkeypatch.setenv("BASE_USD_POOL_ADDRESS", "0xpool")

        settings = EngineSettings.from_env()

        assert settings.is_production
        assert settings.deposit_min_confirmations == 12
        assert settings.deletion_grace_period_days == 3
        assert settings.base_usd_pool.address == "0xpool"
        assert settings.base_usd_pool.invert is False

    def test_invalid_integer_falls_back(self, monkeypatch):
        monkeypatch.setenv("FREE_TRIAL_LENGTH_DAYS", "three weeks")
        assert EngineSettings.from_env().free_trial_length_days == 21

    def test_singleton(self):
        assert get_settings() is get_settings()
