from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.auth import AuthService
from warden.storage.common import SessionStore, UserDirectory
from warden.storage.memory import MemorySessionStore, MemoryUserDirectory
from warden.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
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
    """Holds the wired service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        users: Optional[UserDirectory] = None,
        store: Optional[SessionStore] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.users = users if users is not None else MemoryUserDirectory()
        self.store = store if store is not None else self._build_store()
        self.auth = AuthService.from_settings(self.settings, self.users, self.store)
        logger.info("runtime_init_completed", store_type=type(self.store).__name__)

    def _build_store(self) -> SessionStore:
        if self.settings.use_memory_store:
            return MemorySessionStore()

        redis_error: Exception | None = None
        try:
            store = RedisSessionStore(
                self.settings.redis_url,
                socket_timeout=self.settings.store_socket_timeout,
                retry_attempts=self.settings.store_retry_attempts,
                retry_backoff_ms=self.settings.store_retry_backoff_ms,
            )
            store.verify_connection()
            return store
        except RedisError as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh tokens, revocations and login quotas; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error_type=type(redis_error).__name__,
            message=(
                f"Running without Redis under {fallback_mode}; sessions and quotas "
                "are process-local and lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemorySessionStore()


_runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global _runtime
    if _runtime is not None:
        return _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = Runtime()
        return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    with _runtime_lock:
        _runtime = runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read."""
    global _runtime
    with _runtime_lock:
        previous = _runtime
        _runtime = None
    if previous is not None and isinstance(previous.store, RedisSessionStore):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(previous.store.close())
        else:
            loop.create_task(previous.store.close())
    reset_settings_cache()
    return get_runtime()


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests", "set_runtime"]
