import pytest
from pydantic import ValidationError

from vidtube.config import Settings, get_settings, reset_settings_cache


class TestTokenSecrets:
    def test_equal_secrets_rejected(self):
        with pytest.raises(ValidationError):
            Settings(access_token_secret="same", refresh_token_secret="same")

    def test_missing_secrets_are_generated_and_distinct(self):
        settings = Settings(access_token_secret=None, refresh_token_secret=None)
        assert settings.access_token_secret
        assert settings.refresh_token_secret
        assert settings.access_token_secret != settings.refresh_token_secret


class TestTokenLifetimes:
    def test_defaults(self):
        settings = Settings(access_token_secret="a", refresh_token_secret="b")
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_minutes == 10 * 24 * 60

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError):
            Settings(access_token_secret="a", refresh_token_secret="b", access_token_ttl_minutes=0)

    def test_refresh_must_outlive_access(self):
        with pytest.raises(ValidationError):
            Settings(
                access_token_secret="a",
                refresh_token_secret="b",
                access_token_ttl_minutes=60,
                refresh_token_ttl_minutes=60,
            )


class TestEnvironmentLoading:
    def test_env_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "30")
        monkeypatch.setenv("MAX_PAGE_SIZE", "25")
        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 30
        assert settings.max_page_size == 25

    def test_blank_redis_url_disables_cache(self):
        settings = Settings(access_token_secret="a", refresh_token_secret="b", redis_url="  ")
        assert settings.redis_url is None

    def test_settings_cache_resets(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("DEFAULT_PAGE_SIZE", "7")
        reset_settings_cache()
        assert get_settings().default_page_size == 7
        reset_settings_cache()
