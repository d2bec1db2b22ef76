from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from warden.logging import get_logger
from warden.storage.common import key_namespace
from warden.storage.errors import StoreUnavailable
from warden.storage.models import QuotaDecision

T = TypeVar("T")

_TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError)


class RedisSessionStore:
    """Session store backed by Redis.

    Values are JSON documents written with ``SET ... EX``. Session indexes are
    Redis lists ordered oldest first. Transient connection failures are
    retried with exponential backoff before surfacing as ``StoreUnavailable``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume; the caller passes the clock so tests stay deterministic
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, math.floor(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, math.floor(tokens), 0}
"""

    # Trim the oldest entries beyond max_length and hand them back to the caller
    _EVICT_OLDEST_SCRIPT = """
local key = KEYS[1]
local max_length = tonumber(ARGV[1])
local length = redis.call('LLEN', key)
if length <= max_length then
  return {}
end
local overflow = length - max_length
local evicted = redis.call('LRANGE', key, 0, overflow - 1)
redis.call('LTRIM', key, overflow, -1)
return evicted
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        retry_attempts: int = 3,
        retry_backoff_ms: int = 50,
        clock: Optional[Callable[[], float]] = None,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff_ms = max(0, retry_backoff_ms)
        self._clock = clock or time.time
        self.logger = get_logger(__name__)
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._evict_oldest = self.client.register_script(self._EVICT_OLDEST_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        from redis import Redis

        # Short-lived synchronous client so the async pool is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _execute(
        self, operation: str, key: str, call: Callable[[], Awaitable[T]]
    ) -> T:
        namespace = key_namespace(key)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call()
            except _TRANSIENT_ERRORS as exc:
                if attempt >= self.retry_attempts:
                    self.logger.error(
                        "session_store_unavailable",
                        operation=operation,
                        namespace=namespace,
                        attempts=attempt,
                        error_type=type(exc).__name__,
                    )
                    raise StoreUnavailable(
                        "session store unavailable",
                        operation=operation,
                        namespace=namespace,
                    ) from exc
                delay = (self.retry_backoff_ms / 1000.0) * (2 ** (attempt - 1))
                self.logger.warning(
                    "session_store_retry",
                    operation=operation,
                    namespace=namespace,
                    attempt=attempt,
                    delay_seconds=delay,
                    error_type=type(exc).__name__,
                )
                await asyncio.sleep(delay)

    @staticmethod
    def _encode(value: Dict[str, Any]) -> str:
        return json.dumps(value, separators=(",", ":"))

    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        payload = self._encode(value)
        await self._execute(
            "put", key, lambda: self.client.set(key, payload, ex=max(1, int(ttl_seconds)))
        )

    async def put_if_absent(
        self, key: str, value: Dict[str, Any], ttl_seconds: int
    ) -> bool:
        """``SET NX EX``; only the first writer for a key gets ``True``."""
        payload = self._encode(value)
        written = await self._execute(
            "put_if_absent",
            key,
            lambda: self.client.set(key, payload, ex=max(1, int(ttl_seconds)), nx=True),
        )
        return bool(written)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._execute("get", key, lambda: self.client.get(key))
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            self.logger.warning("session_store_corrupt_value", namespace=key_namespace(key))
            return None
        return value if isinstance(value, dict) else None

    async def exists(self, key: str) -> bool:
        count = await self._execute("exists", key, lambda: self.client.exists(key))
        return bool(count)

    async def delete(self, key: str) -> None:
        await self._execute("delete", key, lambda: self.client.delete(key))

    async def list_append(self, key: str, value: str, ttl_seconds: int) -> int:
        async def _append() -> int:
            pipe = self.client.pipeline()
            pipe.rpush(key, value)
            pipe.expire(key, max(1, int(ttl_seconds)))
            length, _ = await pipe.execute()
            return int(length)

        return await self._execute("list_append", key, _append)

    async def list_evict_oldest(self, key: str, max_length: int) -> List[str]:
        evicted = await self._execute(
            "list_evict_oldest",
            key,
            lambda: self._evict_oldest(keys=[key], args=[max(0, int(max_length))]),
        )
        return list(evicted or [])

    async def list_remove(self, key: str, value: str) -> None:
        await self._execute("list_remove", key, lambda: self.client.lrem(key, 0, value))

    async def list_members(self, key: str) -> List[str]:
        members = await self._execute(
            "list_members", key, lambda: self.client.lrange(key, 0, -1)
        )
        return list(members or [])

    async def consume_quota(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> QuotaDecision:
        """Token bucket refilled at ``limit / window_seconds`` per second."""
        refill_rate = float(limit) / float(window_seconds)
        now = self._clock()
        allowed, tokens, reset_after = await self._execute(
            "consume_quota",
            key,
            lambda: self._token_bucket(
                keys=[key], args=[now, refill_rate, limit, max(1, cost)]
            ),
        )
        return QuotaDecision(
            allowed=bool(int(allowed)),
            remaining=max(0, int(tokens)),
            reset_seconds=int(reset_after) if reset_after else 0,
        )

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except _TRANSIENT_ERRORS as exc:
            self.logger.warning("session_store_ping_failed", error_type=type(exc).__name__)
            return False

    async def close(self) -> None:
        await self.client.aclose()
