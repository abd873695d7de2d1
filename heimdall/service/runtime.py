from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from heimdall.config import get_settings, reset_settings_cache
from heimdall.logging import get_logger
from heimdall.service.accounts import AccountService
from heimdall.service.attempts import AttemptTracker
from heimdall.service.audit import AuditRecorder
from heimdall.service.clock import Clock, SystemClock
from heimdall.service.lockout import LockoutEngine
from heimdall.service.passwords import PasswordConfig, PasswordPolicy
from heimdall.service.session import SessionGateway
from heimdall.service.tokens import TokenManager
from heimdall.storage.memory import MemoryCache, MemoryStore
from heimdall.storage.postgres import PostgresStore
from heimdall.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, clock: Optional[Clock] = None):
        self.settings = get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(clock=self.clock)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, clock=self.clock)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()

        self.passwords = PasswordPolicy(
            cost=self.settings.bcrypt_cost,
            config=PasswordConfig(
                min_length=self.settings.password_min_length,
                max_length=self.settings.password_max_length,
                require_upper=self.settings.password_require_upper,
                require_lower=self.settings.password_require_lower,
                require_digit=self.settings.password_require_digit,
                require_symbol=self.settings.password_require_symbol,
                min_classes=self.settings.password_min_classes,
            ),
        )
        self.tokens = TokenManager(
            self.settings.access_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl=timedelta(seconds=self.settings.access_expire_seconds),
            refresh_ttl=timedelta(seconds=self.settings.refresh_expire_seconds),
            leeway=timedelta(seconds=self.settings.jwt_clock_skew_seconds),
            clock=self.clock,
        )
        self.tracker = AttemptTracker(
            self.cache,
            prefix=self.settings.login_attempts_prefix,
            window_seconds=self.settings.login_attempts_ttl_seconds,
            timeout=self.settings.kv_timeout_seconds,
        )
        self.lockout = LockoutEngine(
            self.store,
            max_attempts=self.settings.max_login_attempts,
            lockout_seconds=self.settings.login_lockout_duration_seconds,
            clock=self.clock,
            store_timeout=self.settings.store_timeout_seconds,
        )
        self.audit = AuditRecorder(self.store, timeout=self.settings.store_timeout_seconds)
        self.gateway = SessionGateway(
            users=self.store,
            user_writer=self.store,
            kv=self.cache,
            passwords=self.passwords,
            tokens=self.tokens,
            tracker=self.tracker,
            lockout=self.lockout,
            audit=self.audit,
            clock=self.clock,
            kv_timeout=self.settings.kv_timeout_seconds,
            store_timeout=self.settings.store_timeout_seconds,
            refresh_rotation=self.settings.refresh_rotation,
        )
        self.accounts = AccountService(
            self.store,
            lockout=self.lockout,
            tracker=self.tracker,
            passwords=self.passwords,
            clock=self.clock,
            store_timeout=self.settings.store_timeout_seconds,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            max_login_attempts=self.settings.max_login_attempts,
            lockout_seconds=self.settings.login_lockout_duration_seconds,
        )

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.kv_timeout_seconds
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for login attempts, token revocation and sessions; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; attempt counters and "
                "revocations are process-local."
            ),
            mode=fallback_mode,
        )
        return MemoryCache(clock=self.clock)

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(clock: Optional[Clock] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime


async def check_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int) -> bool:
    """Token-bucket check against the shared cache; a zero limit disables it.

    Cache errors allow the request: the per-account attempt tracker still guards
    credentials when the bucket cannot be read.
    """
    if limit <= 0:
        return True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    try:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds)
    except Exception as exc:
        logger.warning("rate_limit_check_failed", key=key, error=str(exc))
        return True
