from __future__ import annotations

import copy
import math
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from warden.storage.errors import ConstraintViolation
from warden.storage.models import QuotaDecision, User


class MemorySessionStore:
    """In-process stand-in for the shared session store.

    Every operation runs to completion under one lock, which gives the same
    per-key atomicity Redis offers. Used in tests and as the TEST_MODE
    fallback; state is lost on restart and is not shared across processes.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        self._values: Dict[str, Tuple[Dict[str, Any], float]] = {}
        self._lists: Dict[str, Tuple[List[str], float]] = {}
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def _expired(self, expires_at: float) -> bool:
        return expires_at <= self._clock()

    def _live_value(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            self._values.pop(key, None)
            return None
        return value

    def _live_list(self, key: str) -> Optional[List[str]]:
        entry = self._lists.get(key)
        if entry is None:
            return None
        items, expires_at = entry
        if self._expired(expires_at):
            self._lists.pop(key, None)
            return None
        return items

    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (copy.deepcopy(value), self._clock() + max(1, ttl_seconds))

    async def put_if_absent(
        self, key: str, value: Dict[str, Any], ttl_seconds: int
    ) -> bool:
        with self._lock:
            if self._live_value(key) is not None:
                return False
            self._values[key] = (copy.deepcopy(value), self._clock() + max(1, ttl_seconds))
            return True

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._live_value(key)
            return copy.deepcopy(value) if value is not None else None

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_value(key) is not None or self._live_list(key) is not None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)
            self._lists.pop(key, None)
            self._buckets.pop(key, None)

    async def list_append(self, key: str, value: str, ttl_seconds: int) -> int:
        with self._lock:
            items = self._live_list(key) or []
            items.append(value)
            self._lists[key] = (items, self._clock() + max(1, ttl_seconds))
            return len(items)

    async def list_evict_oldest(self, key: str, max_length: int) -> List[str]:
        with self._lock:
            items = self._live_list(key)
            if not items or len(items) <= max_length:
                return []
            overflow = len(items) - max_length
            evicted, kept = items[:overflow], items[overflow:]
            _, expires_at = self._lists[key]
            self._lists[key] = (kept, expires_at)
            return evicted

    async def list_remove(self, key: str, value: str) -> None:
        with self._lock:
            items = self._live_list(key)
            if items is None:
                return
            remaining = [item for item in items if item != value]
            if remaining:
                _, expires_at = self._lists[key]
                self._lists[key] = (remaining, expires_at)
            else:
                self._lists.pop(key, None)

    async def list_members(self, key: str) -> List[str]:
        with self._lock:
            return list(self._live_list(key) or [])

    async def consume_quota(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> QuotaDecision:
        """Token bucket refilled at ``limit / window_seconds`` per second."""
        cost = max(1, cost)
        refill_rate = float(limit) / float(window_seconds)
        now = self._clock()
        with self._lock:
            tokens, last = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, now - last)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            if tokens < cost:
                self._buckets[key] = (tokens, now)
                reset_after = math.ceil((cost - tokens) / refill_rate)
                return QuotaDecision(False, int(tokens), max(reset_after, 1))
            tokens -= cost
            self._buckets[key] = (tokens, now)
            return QuotaDecision(True, int(tokens), 0)

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._lists.clear()
            self._buckets.clear()


class MemoryUserDirectory:
    """In-memory user records standing in for the relational user store."""

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.password_hashes: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()), email=normalized, role=role, is_active=is_active
            )
            self.users[user.id] = user
            self.password_hashes[user.id] = password_hash
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.password_hashes.get(user_id)

    def set_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return user

    def set_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return user
