from datetime import timedelta

import pytest

from ordergate.config import Settings, get_env_file, get_settings


class TestGetEnvFile:
    def test_default_production(self, monkeypatch, tmp_path):
        monkeypatch.delenv("BOT_ENV", raising=False)
        monkeypatch.chdir(tmp_path)
        tmp_path.joinpath(".env").touch()
        assert get_env_file() == ".env"

    def test_staging_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BOT_ENV", "staging")
        monkeypatch.chdir(tmp_path)
        tmp_path.joinpath(".env.staging").touch()
        assert get_env_file() == ".env.staging"

    def test_unknown_environment_falls_back_to_default(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BOT_ENV", "unknown")
        monkeypatch.chdir(tmp_path)
        tmp_path.joinpath(".env").touch()
        assert get_env_file() == ".env"

    def test_no_env_file_returns_none(self, monkeypatch, tmp_path):
        monkeypatch.delenv("BOT_ENV", raising=False)
        monkeypatch.chdir(tmp_path)
        assert get_env_file() is None


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("BOT_ENV", raising=False)
        settings = Settings(_env_file=None)

        assert settings.database_path == "data/ordergate.db"
        assert settings.user_mapping_enabled is True
        assert settings.conversation_expiry_minutes == 5
        assert settings.username_max_attempts == 3
        assert settings.spam_auto_suspend_threshold == 50
        assert settings.conversation_expiry_timedelta == timedelta(minutes=5)

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("DATABASE_PATH", "/tmp/gate.db")
        monkeypatch.setenv("USER_MAPPING_ENABLED", "false")
        monkeypatch.setenv("CONVERSATION_EXPIRY_MINUTES", "10")
        monkeypatch.setenv("SUPPORT_CONTACT", "+15550001111")

        settings = Settings(_env_file=None)

        assert settings.database_path == "/tmp/gate.db"
        assert settings.user_mapping_enabled is False
        assert settings.conversation_expiry_timedelta == timedelta(minutes=10)
        assert settings.support_contact == "+15550001111"

    def test_expiry_out_of_range_rejected(self, monkeypatch):
        monkeypatch.setenv("CONVERSATION_EXPIRY_MINUTES", "0")
        with pytest.raises(ValueError, match="conversation_expiry_minutes"):
            Settings(_env_file=None)

    def test_attempts_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("USERNAME_MAX_ATTEMPTS", "0")
        with pytest.raises(ValueError, match="username_max_attempts"):
            Settings(_env_file=None)

    def test_sweep_interval_minimum(self, monkeypatch):
        monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "5")
        with pytest.raises(ValueError, match="sweep_interval_seconds"):
            Settings(_env_file=None)

    def test_get_settings_cached(self):
        get_settings.cache_clear()

        settings1 = get_settings()
        settings2 = get_settings()

        assert settings1 is settings2
        get_settings.cache_clear()

    def test_logfire_environment_auto_detection_staging(self, monkeypatch):
        monkeypatch.setenv("BOT_ENV", "staging")

        settings = Settings(_env_file=None)

        assert settings.logfire_environment == "staging"

    def test_logfire_environment_defaults_to_production(self, monkeypatch):
        monkeypatch.delenv("BOT_ENV", raising=False)

        settings = Settings(_env_file=None)

        assert settings.logfire_environment == "production"
