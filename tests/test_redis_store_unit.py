"""Unit tests for the Redis session store against a mocked client."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from warden.storage.errors import StoreUnavailable
from warden.storage.redis_cache import RedisSessionStore


@pytest.fixture
def client():
    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.exists = AsyncMock(return_value=0)
    client.delete = AsyncMock(return_value=1)
    client.lrem = AsyncMock(return_value=1)
    client.lrange = AsyncMock(return_value=[])
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    scripts = {}

    def _register(source):
        script = AsyncMock(name="script")
        scripts["token_bucket" if "refill_rate" in source else "evict"] = script
        return script

    client.register_script.side_effect = _register
    client.scripts = scripts
    return client


@pytest.fixture
def redis_store(client, clock):
    return RedisSessionStore(
        "redis://localhost:6379/0",
        retry_attempts=3,
        retry_backoff_ms=0,
        clock=clock,
        client=client,
    )


class TestValues:
    async def test_put_serializes_json_with_ttl(self, redis_store, client):
        await redis_store.put("refresh_token:abc", {"subject_id": "u1"}, 120)
        client.set.assert_awaited_once_with(
            "refresh_token:abc", json.dumps({"subject_id": "u1"}, separators=(",", ":")), ex=120
        )

    async def test_put_clamps_ttl_to_one_second(self, redis_store, client):
        await redis_store.put("k", {}, 0)
        assert client.set.await_args.kwargs["ex"] == 1

    async def test_put_if_absent_uses_nx(self, redis_store, client):
        client.set.return_value = None
        written = await redis_store.put_if_absent("blacklist:t", {"reason": "rotated"}, 60)
        assert written is False
        assert client.set.await_args.kwargs == {"ex": 60, "nx": True}

    async def test_get_decodes_json(self, redis_store, client):
        client.get.return_value = '{"subject_id":"u1"}'
        assert await redis_store.get("refresh_token:abc") == {"subject_id": "u1"}

    async def test_get_treats_corrupt_value_as_missing(self, redis_store, client):
        client.get.return_value = "{not json"
        assert await redis_store.get("refresh_token:abc") is None

    async def test_exists(self, redis_store, client):
        client.exists.return_value = 1
        assert await redis_store.exists("blacklist:t") is True


class TestLists:
    async def test_list_append_pipelines_push_and_expire(self, redis_store, client):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[3, True])
        client.pipeline.return_value = pipe

        length = await redis_store.list_append("user_tokens:u1", "tok", 600)

        assert length == 3
        pipe.rpush.assert_called_once_with("user_tokens:u1", "tok")
        pipe.expire.assert_called_once_with("user_tokens:u1", 600)

    async def test_evict_oldest_runs_script(self, redis_store, client):
        client.scripts["evict"].return_value = ["t1", "t2"]
        evicted = await redis_store.list_evict_oldest("user_tokens:u1", 5)
        assert evicted == ["t1", "t2"]
        client.scripts["evict"].assert_awaited_once_with(
            keys=["user_tokens:u1"], args=[5]
        )

    async def test_list_remove_and_members(self, redis_store, client):
        client.lrange.return_value = ["t2"]
        await redis_store.list_remove("user_tokens:u1", "t1")
        client.lrem.assert_awaited_once_with("user_tokens:u1", 0, "t1")
        assert await redis_store.list_members("user_tokens:u1") == ["t2"]


class TestQuota:
    async def test_consume_quota_passes_clock_and_rate(self, redis_store, client, clock):
        client.scripts["token_bucket"].return_value = [0, 0, 180]

        decision = await redis_store.consume_quota("login_quota:a@example.com", 5, 900)

        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.reset_seconds == 180
        kwargs = client.scripts["token_bucket"].await_args.kwargs
        assert kwargs["keys"] == ["login_quota:a@example.com"]
        assert kwargs["args"] == [clock(), 5 / 900, 5, 1]


class TestRetries:
    async def test_transient_error_retried(self, redis_store, client):
        client.get.side_effect = [RedisConnectionError("reset"), '{"a":1}']
        assert await redis_store.get("refresh_token:abc") == {"a": 1}
        assert client.get.await_count == 2

    async def test_exhausted_retries_raise_store_unavailable(self, redis_store, client):
        client.exists.side_effect = RedisTimeoutError("slow")

        with pytest.raises(StoreUnavailable) as excinfo:
            await redis_store.exists("blacklist:secret-token-value")

        assert client.exists.await_count == 3
        assert excinfo.value.operation == "exists"
        assert excinfo.value.namespace == "blacklist"
        assert "secret-token-value" not in str(excinfo.value)

    async def test_non_transient_errors_propagate_immediately(self, redis_store, client):
        client.get.side_effect = ResponseError("WRONGTYPE")
        with pytest.raises(ResponseError):
            await redis_store.get("refresh_token:abc")
        assert client.get.await_count == 1


class TestLifecycle:
    async def test_ping_reports_failure(self, redis_store, client):
        client.ping.side_effect = RedisConnectionError("down")
        assert await redis_store.ping() is False

    async def test_close(self, redis_store, client):
        await redis_store.close()
        client.aclose.assert_awaited_once()
