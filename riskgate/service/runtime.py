from __future__ import annotations

import asyncio
import math
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from riskgate.config import get_settings, reset_settings_cache
from riskgate.logging import get_logger
from riskgate.service.accounts import AccountLifecycle
from riskgate.service.guard import AuthGuard
from riskgate.service.passwords import CredentialHasher, PasswordPolicy, PasswordPolicyEngine
from riskgate.service.sessions import SessionManager
from riskgate.service.tokens import DeviceFingerprint, TokenService
from riskgate.service.totp import TwoFactorService
from riskgate.storage.memory import MemoryStore
from riskgate.storage.models import utcnow
from riskgate.storage.postgres import PostgresStore
from riskgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store and the identity services for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RedisCache | SyncRedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client under TEST_MODE: TestClient spins up its own loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for login and reset-request rate limits; start Redis "
                    "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are per-process.",
                mode=fallback_mode,
            )

        self.policy = PasswordPolicy(self.settings.password_expire_days)
        self.hasher = CredentialHasher(self.settings)
        self.tokens = TokenService(self.settings, DeviceFingerprint())
        self.two_factor = TwoFactorService(self.store, self.settings)
        self.guard = AuthGuard(self.store, self.settings, self.policy)
        self.sessions = SessionManager(
            self.store,
            self.tokens,
            self.hasher,
            self.policy,
            self.two_factor,
            self.guard,
        )
        self.passwords = PasswordPolicyEngine(
            self.store, self.settings, self.hasher, self.policy
        )
        self.accounts = AccountLifecycle(self.store, self.hasher, self.policy)
        # key -> (attempts, window opened at, window length in seconds)
        self._local_rate_limits: Dict[str, Tuple[int, datetime, int]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_token_ttl_minutes=self.settings.refresh_token_ttl_minutes,
            password_expire_days=self.settings.password_expire_days,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            runtime.store.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Fixed-window attempt limit: Redis when available, per-process otherwise.

    Every call counts as ``cost`` attempts, refused ones included.
    Returns ``(allowed, remaining, retry_after_seconds)``.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)

    now = utcnow()
    windows = runtime._local_rate_limits
    async with runtime._local_rate_limit_lock:
        expired = [
            name
            for name, (_attempts, opened_at, length) in windows.items()
            if (now - opened_at).total_seconds() >= length
        ]
        for name in expired:
            del windows[name]
        attempts, opened_at, _length = windows.get(key, (0, now, window_seconds))
        elapsed = (now - opened_at).total_seconds()
        attempts += max(1, cost)
        windows[key] = (attempts, opened_at, window_seconds)
    allowed = attempts <= limit
    retry_after = 0 if allowed else max(1, math.ceil(window_seconds - elapsed))
    return allowed, max(0, limit - attempts), retry_after
