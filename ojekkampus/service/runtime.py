from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from ojekkampus.config import get_settings, reset_settings_cache
from ojekkampus.logging import get_logger
from ojekkampus.service.credentials import CredentialVerifier
from ojekkampus.service.documents import DocumentStorage
from ojekkampus.service.otp import OTPManager
from ojekkampus.service.sessions import SessionManager
from ojekkampus.service.tokens import TokenIssuer
from ojekkampus.service.whatsapp import WhatsAppClient
from ojekkampus.storage.memory import MemoryStore
from ojekkampus.storage.postgres import PostgresStore
from ojekkampus.storage.redis_cache import RedisCache, SyncRedisCache

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
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
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

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to per-test event loops
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
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for request rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; request rate limits "
                    "are per-process only."
                ),
                mode=fallback_mode,
            )

        self.verifier = CredentialVerifier()
        self.tokens = TokenIssuer(self.store, self.settings)
        self.documents = DocumentStorage(self.settings.resolved_upload_dir)
        self.sessions = SessionManager(
            self.store,
            self.tokens,
            self.verifier,
            self.settings,
            documents=self.documents,
        )
        self.whatsapp = WhatsAppClient(
            api_url=self.settings.whatsapp_api_url,
            instance_id=self.settings.whatsapp_instance_id,
            token=self.settings.whatsapp_token,
            timeout=self.settings.messaging_timeout_seconds,
        )
        self.otp = OTPManager(self.store, self.whatsapp, self.settings)
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            whatsapp_configured=self.whatsapp.is_configured,
            upload_dir=self.settings.resolved_upload_dir,
        )

    async def close(self) -> None:
        await self.whatsapp.close()
        if self.cache is not None:
            await self.cache.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists, the slow path re-checks under the lock before constructing.
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            asyncio.run(runtime.cache.close())
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int
) -> Tuple[bool, int, int]:
    """Token-bucket limiter that falls back to process memory without Redis.

    Returns ``(allowed, remaining, retry_after_seconds)``; a non-positive
    ``limit`` disables limiting.
    """
    if limit <= 0:
        return (True, limit, 0)
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds)

    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= 1
        if allowed:
            tokens -= 1
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = 0 if allowed else max(1, int((1 - tokens) / refill_rate))
    return (allowed, int(tokens), reset_seconds)
