from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from fairshare.config import Settings, StoreBackend, get_settings, reset_settings_cache
from fairshare.logging import get_logger
from fairshare.service.auth import AuthService, CredentialStore
from fairshare.service.rate_limit import RateLimiter
from fairshare.storage.memory import MemoryStore
from fairshare.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

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


def build_store(settings: Settings) -> CredentialStore:
    if settings.store_backend == StoreBackend.REDIS:
        return RedisStore(settings.redis_url, socket_timeout=settings.store_timeout_seconds)
    return MemoryStore(fs_root=settings.data_dir if settings.persist_memory_store else None)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            redis_url=_mask_url_password(self.settings.redis_url)
            if self.settings.store_backend == StoreBackend.REDIS
            else None,
        )

        try:
            self.store = build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.settings.store_backend.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.auth = AuthService(self.store, self.settings)
        self.signin_limiter = RateLimiter(
            limit=self.settings.auth_rate_limit_requests,
            window=timedelta(seconds=self.settings.auth_rate_limit_window_seconds),
            max_entries=self.settings.rate_limit_max_entries,
            sweep_interval=timedelta(seconds=self.settings.rate_limit_sweep_interval_seconds),
        )

        logger.info(
            "runtime_initialized",
            store_backend=self.settings.store_backend.value,
            token_ttl_minutes=self.settings.token_ttl_minutes,
            lockout_threshold=self.settings.lockout_threshold,
            signin_rate_limit=self.settings.auth_rate_limit_requests,
            google_configured=self.auth.google.configured,
        )

    def close(self) -> None:
        try:
            self.store.close()
        except Exception as exc:
            logger.warning("runtime_store_close_failed", error=str(exc))


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing
    runtime, and a locked re-check before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(settings: Optional[Settings] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = settings or get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
