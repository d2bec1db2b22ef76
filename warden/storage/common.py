from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol

from warden.storage.models import QuotaDecision, User

# Key namespaces shared by every store implementation
REFRESH_TOKEN_PREFIX = "refresh_token"
BLACKLIST_PREFIX = "blacklist"
USER_TOKENS_PREFIX = "user_tokens"
LOGIN_METRICS_PREFIX = "login_metrics"
LOGIN_QUOTA_PREFIX = "login_quota"
AUTHZ_PREFIX = "auth"


def refresh_token_key(token: str) -> str:
    return f"{REFRESH_TOKEN_PREFIX}:{token}"


def blacklist_key(token: str) -> str:
    return f"{BLACKLIST_PREFIX}:{token}"


def user_tokens_key(subject_id: str) -> str:
    return f"{USER_TOKENS_PREFIX}:{subject_id}"


def login_metrics_key(identifier: str) -> str:
    return f"{LOGIN_METRICS_PREFIX}:{identifier}"


def login_quota_key(identifier: str) -> str:
    return f"{LOGIN_QUOTA_PREFIX}:{identifier}"


def authz_decision_key(subject_id: str, role: str, required_roles: Iterable[str]) -> str:
    """Build ``auth:<subject>:<role>:<sorted,comma,joined roles>``."""
    roles = ",".join(sorted(set(required_roles)))
    return f"{AUTHZ_PREFIX}:{subject_id}:{role}:{roles}"


def key_namespace(key: str) -> str:
    """Return the prefix of a key; the remainder may be a secret token."""
    return key.split(":", 1)[0]


class SessionStore(Protocol):
    """Shared TTL key-value store holding refresh tokens, revocations and quotas.

    Implementations guarantee per-key atomicity only. Multi-key sequences
    are composed by callers and may be observed half-applied.
    """

    async def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None: ...

    async def put_if_absent(
        self, key: str, value: Dict[str, Any], ttl_seconds: int
    ) -> bool: ...

    async def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def list_append(self, key: str, value: str, ttl_seconds: int) -> int: ...

    async def list_evict_oldest(self, key: str, max_length: int) -> List[str]: ...

    async def list_remove(self, key: str, value: str) -> None: ...

    async def list_members(self, key: str) -> List[str]: ...

    async def consume_quota(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> QuotaDecision: ...

    def verify_connection(self) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class UserDirectory(Protocol):
    """Read side of the relational user store used by the core."""

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...


__all__ = [
    "SessionStore",
    "UserDirectory",
    "authz_decision_key",
    "blacklist_key",
    "key_namespace",
    "login_metrics_key",
    "login_quota_key",
    "refresh_token_key",
    "user_tokens_key",
]
