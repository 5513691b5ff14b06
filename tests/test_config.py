import pydantic
import pytest

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.service.errors import InvalidConfiguration

GOOD_SECRET = "x" * 40


class TestSecretValidation:
    def test_missing_secret_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            Settings()

    def test_short_secret_rejected(self):
        with pytest.raises(pydantic.ValidationError) as excinfo:
            Settings(jwt_secret="too-short")
        assert "at least 32 characters" in str(excinfo.value)

    def test_from_env_wraps_error(self, monkeypatch):
        monkeypatch.delenv("JWT_SECRET", raising=False)
        monkeypatch.chdir("/")
        with pytest.raises(InvalidConfiguration, match="jwt_secret"):
            Settings.from_env()


class TestFromEnv:
    def test_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", GOOD_SECRET)
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
        monkeypatch.setenv("ACCESS_TOKEN_TTL", "15m")
        monkeypatch.setenv("REQUIRE_VERIFIED_EMAIL", "false")
        settings = Settings.from_env()
        assert settings.lockout_threshold == 7
        assert settings.access_token_ttl == "15m"
        assert settings.require_verified_email is False

    def test_bad_duration_rejected(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", GOOD_SECRET)
        monkeypatch.setenv("REFRESH_TOKEN_TTL", "thirty days")
        with pytest.raises(InvalidConfiguration, match="refresh_token_ttl"):
            Settings.from_env()

    def test_unknown_backend_rejected(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", GOOD_SECRET)
        monkeypatch.setenv("RATE_LIMIT_BACKEND", "memcached")
        with pytest.raises(InvalidConfiguration, match="rate_limit_backend"):
            Settings.from_env()

    def test_backend_is_normalised(self):
        assert Settings(jwt_secret=GOOD_SECRET, rate_limit_backend="REDIS").rate_limit_backend == "redis"

    def test_get_settings_is_cached(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", GOOD_SECRET)
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first


class TestRateLimitRules:
    def test_known_classes(self):
        settings = Settings(jwt_secret=GOOD_SECRET)
        assert settings.rate_limit_rule("login") == (10, 15)
        assert settings.rate_limit_rule("register") == (10, 60)
        assert settings.rate_limit_rule("password_reset") == (5, 60)

    def test_unknown_class_uses_default(self):
        settings = Settings(
            jwt_secret=GOOD_SECRET,
            default_rate_limit_attempts=3,
            default_rate_limit_window_minutes=2,
        )
        assert settings.rate_limit_rule("profile_update") == (3, 2)
