from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from warden.logging import get_logger
from warden.service.errors import AuthErrorKind
from warden.service.result import Err, Ok, Result
from warden.storage.common import (
    SessionStore,
    blacklist_key,
    refresh_token_key,
    user_tokens_key,
)
from warden.storage.errors import StoreUnavailable
from warden.storage.models import RefreshSession, RevocationEntry


class RefreshRotation:
    """Issues, rotates and revokes single-use refresh tokens.

    A refresh token moves Issued -> Active -> Rotated/Revoked. Rotation
    retires the presented token with an atomic set-if-absent on its
    blacklist key, so of two concurrent refreshes of the same token exactly
    one wins. Each subject keeps an index of live tokens ordered oldest
    first; issuing past ``max_sessions`` revokes the oldest entries.

    The individual steps touch different keys and are not wrapped in a
    transaction. A crash between them can leave an orphaned record or a
    briefly over-cap index; both self-heal through TTLs.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        refresh_ttl_seconds: int,
        max_sessions: int,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.max_sessions = max_sessions
        self._clock = clock or time.time
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def _load(self, token: str) -> Optional[RefreshSession]:
        record = await self.store.get(refresh_token_key(token))
        if record is None:
            return None
        return RefreshSession.from_record(token, record)

    async def _retire(
        self, token: str, *, reason: str, session: Optional[RefreshSession] = None
    ) -> bool:
        """Blacklist ``token`` and drop its record; ``False`` if already retired."""
        now = self._now()
        if session is None:
            session = await self._load(token)
        ttl = self.refresh_ttl_seconds
        if session is not None:
            ttl = min(ttl, max(1, session.remaining_seconds(now)))
        written = await self.store.put_if_absent(
            blacklist_key(token), RevocationEntry(now, reason).to_record(), ttl
        )
        await self.store.delete(refresh_token_key(token))
        return written

    async def issue(self, subject_id: str) -> RefreshSession:
        session = RefreshSession.new(subject_id, self.refresh_ttl_seconds, now=self._now())
        await self.store.put(
            refresh_token_key(session.token), session.to_record(), self.refresh_ttl_seconds
        )
        index_key = user_tokens_key(subject_id)
        await self.store.list_append(index_key, session.token, self.refresh_ttl_seconds)
        evicted = await self.store.list_evict_oldest(index_key, self.max_sessions)
        for token in evicted:
            await self._retire(token, reason="session_cap")
        if evicted:
            self.logger.info(
                "refresh_sessions_evicted",
                subject_id=subject_id,
                evicted=len(evicted),
                max_sessions=self.max_sessions,
            )
        self.logger.info(
            "refresh_session_issued",
            subject_id=subject_id,
            session_id=session.session_id,
        )
        return session

    async def rotate(self, token: Optional[str]) -> Result[RefreshSession]:
        """Exchange a live refresh token for its successor.

        Fails with TOKEN_REVOKED for a blacklisted token (including the
        loser of a concurrent rotation) and TOKEN_EXPIRED when no record
        exists.
        """
        if not token:
            return Err(AuthErrorKind.TOKEN_MISSING)
        if await self.is_revoked(token):
            self.logger.warning("refresh_replay_rejected", stage="blacklist")
            return Err(AuthErrorKind.TOKEN_REVOKED)

        session = await self._load(token)
        if session is None:
            # A concurrent rotation blacklists before it deletes the record
            if await self.is_revoked(token):
                self.logger.warning("refresh_replay_rejected", stage="record_gone")
                return Err(AuthErrorKind.TOKEN_REVOKED)
            return Err(AuthErrorKind.TOKEN_EXPIRED)
        if session.remaining_seconds(self._now()) <= 0:
            await self.store.delete(refresh_token_key(token))
            return Err(AuthErrorKind.TOKEN_EXPIRED)

        if not await self._retire(token, reason="rotated", session=session):
            self.logger.warning(
                "refresh_replay_rejected",
                stage="rotation_race",
                subject_id=session.subject_id,
            )
            return Err(AuthErrorKind.TOKEN_REVOKED)
        await self.store.list_remove(user_tokens_key(session.subject_id), token)

        successor = await self.issue(session.subject_id)
        self.logger.info(
            "refresh_session_rotated",
            subject_id=session.subject_id,
            previous_session_id=session.session_id,
            session_id=successor.session_id,
        )
        return Ok(successor)

    async def revoke(self, token: str, *, reason: str = "logout") -> bool:
        session = await self._load(token)
        revoked = await self._retire(token, reason=reason, session=session)
        if session is not None:
            await self.store.list_remove(user_tokens_key(session.subject_id), token)
            self.logger.info(
                "refresh_session_revoked",
                subject_id=session.subject_id,
                session_id=session.session_id,
                reason=reason,
            )
        return revoked

    async def revoke_access_token(self, access_token: str, remaining_seconds: int) -> None:
        """Blacklist an access token until it would have expired anyway."""
        if remaining_seconds <= 0:
            return
        await self.store.put_if_absent(
            blacklist_key(access_token),
            RevocationEntry(self._now(), "logout").to_record(),
            remaining_seconds,
        )

    async def logout(
        self,
        refresh_token: Optional[str],
        access_token: Optional[str] = None,
        *,
        access_remaining_seconds: int = 0,
    ) -> None:
        """Revoke both tokens independently.

        A store failure on one revocation does not skip the other; the first
        failure is re-raised once both have been attempted.
        """
        failure: Optional[StoreUnavailable] = None
        if refresh_token:
            try:
                await self.revoke(refresh_token, reason="logout")
            except StoreUnavailable as exc:
                failure = exc
        if access_token:
            try:
                await self.revoke_access_token(access_token, access_remaining_seconds)
            except StoreUnavailable as exc:
                failure = failure or exc
        if failure is not None:
            raise failure

    async def revoke_all(self, subject_id: str, *, reason: str = "logout_all") -> int:
        index_key = user_tokens_key(subject_id)
        tokens = await self.store.list_members(index_key)
        for token in tokens:
            await self._retire(token, reason=reason)
        await self.store.delete(index_key)
        self.logger.info(
            "refresh_sessions_revoked_all", subject_id=subject_id, count=len(tokens)
        )
        return len(tokens)

    async def is_revoked(self, token: str) -> bool:
        return await self.store.exists(blacklist_key(token))

    async def list_sessions(self, subject_id: str) -> List[RefreshSession]:
        """Live sessions for a subject, oldest first; stale index entries are pruned."""
        index_key = user_tokens_key(subject_id)
        now = self._now()
        sessions: List[RefreshSession] = []
        for token in await self.store.list_members(index_key):
            session = await self._load(token)
            if session is None or session.remaining_seconds(now) <= 0:
                await self.store.list_remove(index_key, token)
                continue
            sessions.append(session)
        return sessions
