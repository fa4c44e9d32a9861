from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from riskgate.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments that change cookie and transport behavior."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service.

    Built once per process and handed to each service constructor; nothing in
    ``riskgate.service`` reads the environment directly.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/riskgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/riskgate", "SHARED_FS_ROOT")
    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enable deterministic testing behaviors and runtime resets.",
    )
    secret_key: str | None = env_field(
        None,
        "SECRET_KEY",
        description="Server secret; generated and persisted under SHARED_FS_ROOT when unset",
    )
    totp_encryption_key: str | None = env_field(
        None,
        "TOTP_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest (defaults to SECRET_KEY)",
    )
    totp_issuer: str = env_field("RiskRegisterApp", "TOTP_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    production_refresh_cookie_minutes: int = env_field(
        60,
        "PRODUCTION_REFRESH_COOKIE_MINUTES",
        description="Refresh cookie lifetime when ENVIRONMENT=production",
    )
    password_expire_days: int = env_field(90, "PASSWORD_EXPIRE_DAYS", gt=0)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(
        65536, "ARGON2_MEMORY_COST", ge=64, description="argon2id memory cost in KiB"
    )
    enforce_verification_on_requests: bool = env_field(
        True,
        "ENFORCE_VERIFICATION_ON_REQUESTS",
        description="Reject authenticated requests from users whose account is unverified",
    )
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def refresh_cookie_max_age_seconds(self) -> int:
        if self.is_production:
            return self.production_refresh_cookie_minutes * 60
        return self.refresh_token_ttl_minutes * 60

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _validate_token_ttls(self) -> "Settings":
        if self.access_token_ttl_minutes <= 0 or self.refresh_token_ttl_minutes <= 0:
            raise ValueError("token TTLs must be positive")
        if self.access_token_ttl_minutes > self.refresh_token_ttl_minutes:
            raise ValueError("ACCESS_TOKEN_TTL_MINUTES must not exceed REFRESH_TOKEN_TTL_MINUTES")
        return self

    @model_validator(mode="after")
    def _ensure_secret_key(self) -> "Settings":
        if not self.secret_key:
            self.secret_key = _load_or_create_secret(Path(self.shared_fs_root))
        return self


def _load_or_create_secret(fs_root: Path) -> str:
    """Persist a generated secret so encrypted TOTP secrets survive restarts."""

    secret_path = fs_root / ".secret_key"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g. in a container)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_key_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=".secret_key_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_key_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist secret key; set SECRET_KEY or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("secret_key_generated", path=str(secret_path))
    return generated


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
