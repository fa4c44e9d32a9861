import pytest
from pydantic import ValidationError

from riskgate.config import Environment, Settings, get_settings, reset_settings_cache


def test_defaults_from_environment():
    settings = get_settings()
    assert settings.test_mode
    assert settings.use_memory_store
    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.password_expire_days == 90
    assert settings.totp_issuer == "RiskRegisterApp"
    assert settings.environment is Environment.DEVELOPMENT


def test_env_overrides_are_parsed(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "Production")
    monkeypatch.setenv("PASSWORD_EXPIRE_DAYS", "30")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    reset_settings_cache()

    settings = get_settings()
    assert settings.is_production
    assert settings.password_expire_days == 30
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_refresh_cookie_lifetime_depends_on_environment(tmp_path):
    dev = Settings(shared_fs_root=str(tmp_path))
    prod = Settings(shared_fs_root=str(tmp_path), environment="production")
    assert dev.refresh_cookie_max_age_seconds == dev.refresh_token_ttl_minutes * 60
    assert prod.refresh_cookie_max_age_seconds == 3600


def test_access_ttl_may_not_exceed_refresh_ttl(tmp_path):
    with pytest.raises(ValidationError):
        Settings(
            shared_fs_root=str(tmp_path),
            access_token_ttl_minutes=120,
            refresh_token_ttl_minutes=60,
        )
    with pytest.raises(ValidationError):
        Settings(shared_fs_root=str(tmp_path), access_token_ttl_minutes=0)


def test_generated_secret_is_persisted(tmp_path):
    first = Settings(shared_fs_root=str(tmp_path))
    second = Settings(shared_fs_root=str(tmp_path))
    assert first.secret_key
    assert first.secret_key == second.secret_key
    assert (tmp_path / ".secret_key").read_text().strip() == first.secret_key
