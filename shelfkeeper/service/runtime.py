from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from shelfkeeper.config import get_settings, reset_settings_cache
from shelfkeeper.logging import get_logger
from shelfkeeper.service.auth import AuthService
from shelfkeeper.service.email import EmailService
from shelfkeeper.service.oauth import OAuthClient
from shelfkeeper.service.passwords import PasswordHasher
from shelfkeeper.service.session_gate import SessionGate
from shelfkeeper.service.tokens import TokenCodec
from shelfkeeper.storage.memory import MemoryStore
from shelfkeeper.storage.postgres import PostgresStore
from shelfkeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(state_dir=self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are per-process only.",
                mode=fallback_mode,
            )

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )
        self.hasher = PasswordHasher()
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            frontend_url=self.settings.frontend_url,
        )
        self.oauth = OAuthClient(
            credentials={
                "google": (
                    self.settings.oauth_google_client_id,
                    self.settings.oauth_google_client_secret,
                )
            },
            redirect_uri=self.settings.oauth_redirect_uri,
        )
        self.auth = AuthService(
            self.store,
            self.codec,
            self.hasher,
            self.email,
            self.settings,
            oauth=self.oauth,
        )
        self.gate = SessionGate(self.codec, self.store)

        # key -> (tokens, last refill, window seconds)
        self._local_rate_limits: Dict[str, Tuple[float, datetime, int]] = {}
        self._local_rate_limit_lock = asyncio.Lock()
        self._local_rate_limit_last_sweep: Optional[datetime] = None

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            oauth_google_configured=self.oauth.is_configured("google"),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


LOCAL_BUCKET_SWEEP_SECONDS = 60


def _sweep_local_buckets(runtime: Runtime, now: datetime) -> int:
    """Drop buckets idle for a full window; a missing key starts full anyway.

    Caller holds ``_local_rate_limit_lock``.
    """
    last = runtime._local_rate_limit_last_sweep
    if last is not None and (now - last).total_seconds() < LOCAL_BUCKET_SWEEP_SECONDS:
        return 0
    runtime._local_rate_limit_last_sweep = now
    idle = [
        key
        for key, (_, last_ts, window) in runtime._local_rate_limits.items()
        if (now - last_ts).total_seconds() >= window
    ]
    for key in idle:
        del runtime._local_rate_limits[key]
    return len(idle)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket limit via Redis, or an in-process bucket when Redis is off.

    Returns ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)

    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        _sweep_local_buckets(runtime, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(
            key, (float(limit), now, window_seconds)
        )
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now, window_seconds)
        reset_seconds = 0 if allowed else int((cost - tokens) / refill_rate) + 1
        remaining = int(tokens)
    return allowed, remaining, reset_seconds
