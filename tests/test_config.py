from datetime import timedelta

import pytest
from pydantic import ValidationError

from tessera.config import SameSite, Settings, get_settings, reset_settings_cache


class TestFromEnv:
    """Loading settings from the process environment."""

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL", "5m")
        monkeypatch.setenv("RESET_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("COOKIE_SAMESITE", "Strict")

        settings = Settings.from_env()

        assert settings.access_token_ttl == timedelta(minutes=5)
        assert settings.reset_max_attempts == 5
        assert settings.cookie_samesite is SameSite.STRICT

    def test_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("JWT_ISSUER", "other-issuer")
        reset_settings_cache()
        assert get_settings().jwt_issuer == "other-issuer"
        reset_settings_cache()

    def test_invalid_duration_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, refresh_token_ttl="forever")

    def test_attempt_budget_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, reset_max_attempts=0)


class TestSigningKeys:
    """Per-purpose key derivation and the generated secret."""

    def test_each_purpose_gets_distinct_key(self, settings):
        keys = {settings.signing_key(p) for p in ("access", "refresh", "reset_session", "csrf")}
        assert len(keys) == 4

    def test_explicit_secret_wins(self, settings):
        explicit = settings.model_copy(update={"jwt_refresh_secret": "refresh-only"})
        assert explicit.signing_key("refresh") == b"refresh-only"
        assert explicit.signing_key("access") == settings.signing_key("access")

    def test_generated_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STATE_DIR", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_state_dir_from_dotenv_holds_generated_secret(self, monkeypatch, tmp_path):
        state = tmp_path / "state"
        (tmp_path / ".env").write_text(f"STATE_DIR={state}\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("STATE_DIR", raising=False)
        monkeypatch.delenv("JWT_SECRET", raising=False)

        settings = Settings.from_env()

        assert settings.state_dir == str(state)
        assert (state / ".jwt_secret").read_text() == settings.jwt_secret


class TestCookies:
    """Cookie flag policy."""

    def test_secure_defaults_to_production_only(self, settings):
        assert not settings.secure_cookies
        assert settings.model_copy(update={"environment": "production"}).secure_cookies

    def test_samesite_none_forces_secure(self, settings):
        relaxed = settings.model_copy(
            update={"cookie_samesite": SameSite.NONE, "cookie_secure": False}
        )
        assert relaxed.secure_cookies

    def test_blank_secure_flag_is_unset(self):
        settings = Settings(jwt_secret="x" * 40, cookie_secure=" ")
        assert settings.cookie_secure is None
