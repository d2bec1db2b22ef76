from __future__ import annotations

from typing import Dict, FrozenSet, Iterable

from warden.logging import get_logger
from warden.service.errors import AuthErrorKind
from warden.service.result import Err, Ok, Result
from warden.storage.common import SessionStore, authz_decision_key
from warden.storage.errors import StoreUnavailable

ADMIN = "admin"
MANAGER = "manager"
USER = "user"
GUEST = "guest"
ROLES = (ADMIN, MANAGER, USER, GUEST)
DEFAULT_ROLE = USER

WILDCARD = "*"

# Permission strings are ``resource.operation``; ``.self`` and ``.public``
# narrow the scope to the caller's own or public records.
ROLE_HIERARCHY: Dict[str, FrozenSet[str]] = {
    ADMIN: frozenset({WILDCARD}),
    MANAGER: frozenset(
        {
            "user.read",
            "user.write",
            "user.delete",
            "profile.read",
            "profile.write",
            "settings.read",
        }
    ),
    USER: frozenset(
        {
            "user.read",
            "user.write.self",
            "profile.read.self",
            "profile.write.self",
            "settings.read.self",
        }
    ),
    GUEST: frozenset({"user.read.public", "profile.read.public"}),
}

ALLOW = "allow"
DENY = "deny"


def has_permission(role: str, permission: str) -> bool:
    permissions = ROLE_HIERARCHY.get(role.lower(), frozenset())
    return WILDCARD in permissions or permission in permissions


def compute_decision(role: str, required_roles: Iterable[str]) -> bool:
    """Source of truth: membership in ``required_roles`` or the wildcard permission."""
    required = {r.lower() for r in required_roles}
    role = role.lower()
    return role in required or WILDCARD in ROLE_HIERARCHY.get(role, frozenset())


class AuthorizationCache:
    """Memoizes role decisions per (subject, role, required roles) for a bounded TTL.

    Entries are never invalidated on role change; a downgraded subject may
    keep a cached ``allow`` for up to ``ttl_seconds``. The store is only an
    accelerator, so store failures fall back to computing the decision.
    """

    def __init__(self, store: SessionStore, *, ttl_seconds: int) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger(__name__)

    async def is_allowed(
        self, subject_id: str, role: str, required_roles: Iterable[str]
    ) -> bool:
        required = list(required_roles)
        key = authz_decision_key(subject_id, role, required)
        try:
            cached = await self.store.get(key)
        except StoreUnavailable:
            self.logger.warning("authz_cache_read_failed", subject_id=subject_id)
            cached = None
        if cached is not None and cached.get("decision") in (ALLOW, DENY):
            return cached["decision"] == ALLOW

        allowed = compute_decision(role, required)
        try:
            await self.store.put(
                key, {"decision": ALLOW if allowed else DENY}, self.ttl_seconds
            )
        except StoreUnavailable:
            self.logger.warning("authz_cache_write_failed", subject_id=subject_id)
        return allowed

    async def authorize(
        self, subject_id: str, role: str, required_roles: Iterable[str]
    ) -> Result[None]:
        required = list(required_roles)
        if await self.is_allowed(subject_id, role, required):
            return Ok(None)
        self.logger.info(
            "authorization_denied",
            subject_id=subject_id,
            role=role,
            required_roles=sorted(set(required)),
        )
        return Err(AuthErrorKind.PERMISSION_DENIED)
