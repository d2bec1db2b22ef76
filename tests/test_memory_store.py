import pytest

from warden.storage.errors import ConstraintViolation
from warden.storage.memory import MemoryUserDirectory


class TestMemorySessionStore:
    async def test_put_get_expire(self, store, clock):
        await store.put("refresh_token:abc", {"subject_id": "u1"}, 10)
        assert await store.get("refresh_token:abc") == {"subject_id": "u1"}
        clock.advance(10)
        assert await store.get("refresh_token:abc") is None
        assert not await store.exists("refresh_token:abc")

    async def test_get_returns_copy(self, store):
        await store.put("k", {"nested": {"a": 1}}, 10)
        value = await store.get("k")
        value["nested"]["a"] = 2
        assert await store.get("k") == {"nested": {"a": 1}}

    async def test_put_if_absent_first_writer_wins(self, store, clock):
        assert await store.put_if_absent("blacklist:t", {"reason": "a"}, 5) is True
        assert await store.put_if_absent("blacklist:t", {"reason": "b"}, 5) is False
        assert await store.get("blacklist:t") == {"reason": "a"}
        clock.advance(5)
        assert await store.put_if_absent("blacklist:t", {"reason": "c"}, 5) is True

    async def test_list_operations(self, store):
        for token in ["t1", "t2", "t3", "t4"]:
            await store.list_append("user_tokens:u1", token, 60)

        evicted = await store.list_evict_oldest("user_tokens:u1", 2)
        assert evicted == ["t1", "t2"]
        assert await store.list_members("user_tokens:u1") == ["t3", "t4"]
        assert await store.list_evict_oldest("user_tokens:u1", 2) == []

        await store.list_remove("user_tokens:u1", "t3")
        assert await store.list_members("user_tokens:u1") == ["t4"]
        await store.list_remove("user_tokens:u1", "t4")
        assert not await store.exists("user_tokens:u1")

    async def test_list_ttl_refreshed_on_append(self, store, clock):
        await store.list_append("user_tokens:u1", "t1", 10)
        clock.advance(8)
        await store.list_append("user_tokens:u1", "t2", 10)
        clock.advance(8)
        assert await store.list_members("user_tokens:u1") == ["t1", "t2"]

    async def test_consume_quota_token_bucket(self, store, clock):
        decisions = [await store.consume_quota("login_quota:a", 2, 60) for _ in range(3)]
        assert [d.allowed for d in decisions] == [True, True, False]
        assert decisions[1].remaining == 0
        assert 0 < decisions[2].reset_seconds <= 31

        clock.advance(31)
        assert (await store.consume_quota("login_quota:a", 2, 60)).allowed

    async def test_close_clears_state(self, store):
        await store.put("k", {"v": 1}, 10)
        await store.close()
        assert await store.get("k") is None


class TestMemoryUserDirectory:
    def test_create_and_lookup_normalizes_email(self):
        users = MemoryUserDirectory()
        user = users.create_user(" Alice@Example.COM ", "hash", role="admin")

        assert user.email == "alice@example.com"
        assert users.get_user_by_email("ALICE@example.com").id == user.id
        assert users.get_user(user.id).role == "admin"
        assert users.get_password_hash(user.id) == "hash"

    def test_duplicate_email_rejected(self):
        users = MemoryUserDirectory()
        users.create_user("alice@example.com", "hash")
        with pytest.raises(ConstraintViolation):
            users.create_user("ALICE@example.com", "hash")

    def test_set_role_and_active(self):
        users = MemoryUserDirectory()
        user = users.create_user("alice@example.com", "hash")
        users.set_role(user.id, "manager")
        users.set_active(user.id, False)
        refreshed = users.get_user(user.id)
        assert refreshed.role == "manager"
        assert refreshed.is_active is False
        assert users.set_role("missing", "admin") is None
