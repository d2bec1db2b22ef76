import pytest
from pydantic import ValidationError

from warden.config import Settings, get_settings, jwt_secret_is_strong, reset_settings_cache

STRONG = "Strong-Signing-Secret-For-Tests-0123456789"


class TestJwtSecret:
    @pytest.mark.parametrize(
        "secret,expected",
        [
            (STRONG, True),
            ("short-Secret-1", False),
            ("a" * 40, False),
            ("abcdefghijklmnopqrstuvwxyz0123456789abcd", False),
            ("abcdefghijklmnopqrstuvwxyz-0123456789abcd", True),
            (None, False),
        ],
    )
    def test_strength_rules(self, secret, expected):
        assert jwt_secret_is_strong(secret) is expected

    def test_weak_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-weak")

    def test_missing_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings()


class TestDefaults:
    def test_defaults(self):
        settings = Settings(jwt_secret=STRONG)
        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 3600
        assert settings.max_sessions_per_user == 5
        assert settings.login_rate_limit_attempts == 5
        assert settings.login_rate_limit_window_seconds == 900
        assert settings.authz_cache_ttl_seconds == 900
        assert settings.refresh_cookie_path == "/v1/auth"
        assert settings.cookie_secure is True

    @pytest.mark.parametrize(
        "field", ["access_token_ttl_seconds", "max_sessions_per_user", "store_retry_attempts"]
    )
    def test_positive_fields(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=STRONG, **{field: 0})

    def test_negative_leeway_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=STRONG, token_leeway_seconds=-1)


class TestFromEnv:
    def test_env_names_map_to_fields(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", STRONG)
        monkeypatch.setenv("MAX_REFRESH_TOKENS_PER_USER", "3")
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "7")
        monkeypatch.setenv("COOKIE_SECURE", "false")
        settings = Settings.from_env()
        assert settings.max_sessions_per_user == 3
        assert settings.failed_login_alert_threshold == 7
        assert settings.cookie_secure is False

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first
