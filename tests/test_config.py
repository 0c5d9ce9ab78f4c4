"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from campusauth.config import Settings, get_settings, reset_settings_cache

from conftest import TEST_SECRET


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret=TEST_SECRET)
        assert settings.jwt_algorithm == "HS256"
        assert settings.access_token_ttl_minutes == 60
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.lockout_threshold == 5
        assert settings.lockout_minutes == 30
        assert settings.code_max_attempts == 3
        assert settings.code_issue_limit == 3
        assert settings.otp_ttl_seconds == 300
        assert settings.reset_ttl_seconds == 3600
        assert settings.otc_rate_limit_counts_failed_issuance is False

    def test_missing_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings()

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    def test_unknown_algorithm_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=TEST_SECRET, jwt_algorithm="RS256")

    def test_settings_are_frozen(self):
        settings = Settings(jwt_secret=TEST_SECRET)
        with pytest.raises(ValidationError):
            settings.lockout_threshold = 10

    def test_encryption_key_falls_back_to_jwt_secret(self):
        assert Settings(jwt_secret=TEST_SECRET).encryption_key_material == TEST_SECRET
        assert (
            Settings(jwt_secret=TEST_SECRET, field_encryption_key="k" * 40).encryption_key_material
            == "k" * 40
        )

    def test_pool_max_raised_to_min(self):
        settings = Settings(jwt_secret=TEST_SECRET, store_pool_min_size=4, store_pool_max_size=2)
        assert settings.store_pool_max_size == 4


class TestFromEnv:
    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("JWT_SECRET", TEST_SECRET)
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
        monkeypatch.setenv("OTC_RATE_LIMIT_COUNTS_FAILED_ISSUANCE", "true")
        monkeypatch.setenv("JWT_ALGORITHM", "hs384")

        settings = Settings.from_env()
        assert settings.lockout_threshold == 7
        assert settings.otc_rate_limit_counts_failed_issuance is True
        assert settings.jwt_algorithm == "HS384"

    def test_dotenv_file_is_read(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("LOCKOUT_MINUTES", raising=False)
        (tmp_path / ".env").write_text("LOCKOUT_MINUTES=45\n")

        assert Settings.from_env().lockout_minutes == 45

    def test_environment_beats_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("LOCKOUT_MINUTES=45\n")
        monkeypatch.setenv("LOCKOUT_MINUTES", "15")

        assert Settings.from_env().lockout_minutes == 15

    def test_get_settings_is_cached(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        reset_settings_cache()
        try:
            first = get_settings()
            assert get_settings() is first
            monkeypatch.setenv("LOCKOUT_THRESHOLD", "9")
            assert get_settings().lockout_threshold == first.lockout_threshold
            reset_settings_cache()
            assert get_settings().lockout_threshold == 9
        finally:
            reset_settings_cache()
