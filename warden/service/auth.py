from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from warden.config import Settings
from warden.logging import get_logger, mask_identifier
from warden.service.authz import AuthorizationCache
from warden.service.errors import AuthErrorKind
from warden.service.passwords import CredentialVerifier
from warden.service.result import Err, Ok, Result
from warden.service.sessions import RefreshRotation
from warden.service.throttle import LoginThrottle, normalize_identifier
from warden.service.tokens import TokenClaims, TokenCodec, extract_bearer
from warden.storage.common import SessionStore, UserDirectory
from warden.storage.errors import StoreUnavailable
from warden.storage.models import RefreshSession, TokenPair, User

logger = get_logger(__name__)


@dataclass
class AuthenticatedSession:
    user: User
    tokens: TokenPair
    session: RefreshSession
    needs_rehash: bool = False


class AuthService:
    """Login, refresh, logout and request authentication over injected collaborators.

    Every entry point returns ``Ok``/``Err`` except ``logout``, which never
    fails from the caller's perspective. Store outages surface as
    ``STORE_UNAVAILABLE`` rather than as an authentication failure.
    """

    def __init__(
        self,
        users: UserDirectory,
        store: SessionStore,
        *,
        codec: TokenCodec,
        verifier: CredentialVerifier,
        rotation: RefreshRotation,
        throttle: LoginThrottle,
        authz: AuthorizationCache,
        access_ttl_seconds: int,
    ) -> None:
        self.users = users
        self.store = store
        self.codec = codec
        self.verifier = verifier
        self.rotation = rotation
        self.throttle = throttle
        self.authz = authz
        self.access_ttl_seconds = access_ttl_seconds
        self.logger = logger

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        users: UserDirectory,
        store: SessionStore,
        *,
        clock: Optional[Callable[[], float]] = None,
        verifier: Optional[CredentialVerifier] = None,
    ) -> "AuthService":
        return cls(
            users,
            store,
            codec=TokenCodec(
                settings.jwt_secret,
                issuer=settings.jwt_issuer,
                audience=settings.jwt_audience,
                leeway_seconds=settings.token_leeway_seconds,
                clock=clock,
            ),
            verifier=verifier
            or CredentialVerifier(time_cost=settings.password_hash_time_cost),
            rotation=RefreshRotation(
                store,
                refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
                max_sessions=settings.max_sessions_per_user,
                clock=clock,
            ),
            throttle=LoginThrottle(
                store,
                attempts=settings.login_rate_limit_attempts,
                window_seconds=settings.login_rate_limit_window_seconds,
                ip_attempts=settings.login_ip_rate_limit_attempts,
                metrics_ttl_seconds=settings.login_metrics_ttl_seconds,
                alert_threshold=settings.failed_login_alert_threshold,
                clock=clock,
            ),
            authz=AuthorizationCache(store, ttl_seconds=settings.authz_cache_ttl_seconds),
            access_ttl_seconds=settings.access_token_ttl_seconds,
        )

    def _store_failure(self, operation: str, exc: StoreUnavailable) -> Err:
        self.logger.error(
            "auth_store_unavailable",
            operation=operation,
            store_operation=exc.operation,
            namespace=exc.namespace,
        )
        return Err(AuthErrorKind.STORE_UNAVAILABLE)

    def _issue_access(self, user: User) -> str:
        return self.codec.issue(user.id, user.email, user.role, self.access_ttl_seconds)

    async def login(
        self, email: str, password: str, *, client_ip: Optional[str] = None
    ) -> Result[AuthenticatedSession]:
        identifier = normalize_identifier(email)
        try:
            admitted = await self.throttle.try_consume(identifier, client_ip=client_ip)
            if isinstance(admitted, Err):
                await self.throttle.record_attempt(identifier, success=False)
                return admitted

            user = self.users.get_user_by_email(identifier)
            stored_hash = self.users.get_password_hash(user.id) if user else None
            # Unknown accounts still pay for a full hash verification
            matched = await asyncio.to_thread(self.verifier.verify, password, stored_hash)
            if not matched or user is None or not user.is_active:
                reason = (
                    "unknown_account"
                    if user is None
                    else ("bad_password" if not matched else "inactive_account")
                )
                await self.throttle.record_attempt(identifier, success=False)
                self.logger.warning(
                    "login_failed", identifier=mask_identifier(identifier), reason=reason
                )
                return Err(AuthErrorKind.CREDENTIAL_INVALID)

            await self.throttle.record_attempt(identifier, success=True)
            session = await self.rotation.issue(user.id)
        except StoreUnavailable as exc:
            return self._store_failure("login", exc)

        tokens = TokenPair(
            access_token=self._issue_access(user),
            refresh_token=session.token,
            expires_in=self.access_ttl_seconds,
        )
        needs_rehash = bool(stored_hash) and self.verifier.needs_rehash(stored_hash)
        self.logger.info(
            "login_succeeded",
            subject_id=user.id,
            session_id=session.session_id,
            needs_rehash=needs_rehash,
        )
        return Ok(AuthenticatedSession(user, tokens, session, needs_rehash))

    async def refresh(self, refresh_token: Optional[str]) -> Result[AuthenticatedSession]:
        try:
            rotated = await self.rotation.rotate(refresh_token)
            if isinstance(rotated, Err):
                self.logger.info("refresh_rejected", reason=rotated.kind.value)
                return rotated
            session = rotated.value
            user = self.users.get_user(session.subject_id)
            if user is None or not user.is_active:
                await self.rotation.revoke(session.token, reason="subject_inactive")
                self.logger.warning(
                    "refresh_rejected",
                    reason="subject_inactive",
                    subject_id=session.subject_id,
                )
                return Err(AuthErrorKind.CREDENTIAL_INVALID)
        except StoreUnavailable as exc:
            return self._store_failure("refresh", exc)

        tokens = TokenPair(
            access_token=self._issue_access(user),
            refresh_token=session.token,
            expires_in=self.access_ttl_seconds,
        )
        return Ok(AuthenticatedSession(user, tokens, session))

    async def logout(
        self, refresh_token: Optional[str], access_token: Optional[str] = None
    ) -> None:
        """Revoke what was presented; store failures are logged, never raised."""
        access_remaining = 0
        if access_token:
            verified = self.codec.verify(access_token)
            if isinstance(verified, Ok):
                access_remaining = self.codec.remaining_seconds(verified.value)
            else:
                access_token = None
        try:
            await self.rotation.logout(
                refresh_token, access_token, access_remaining_seconds=access_remaining
            )
        except StoreUnavailable as exc:
            self.logger.error(
                "logout_revocation_failed",
                store_operation=exc.operation,
                namespace=exc.namespace,
            )

    async def authenticate_token(self, token: Optional[str]) -> Result[TokenClaims]:
        verified = self.codec.verify(token)
        if isinstance(verified, Err):
            self.logger.info("access_token_rejected", reason=verified.kind.value)
            return verified
        try:
            if await self.rotation.is_revoked(token):
                self.logger.info(
                    "access_token_rejected",
                    reason=AuthErrorKind.TOKEN_REVOKED.value,
                    subject_id=verified.value.sub,
                )
                return Err(AuthErrorKind.TOKEN_REVOKED)
        except StoreUnavailable as exc:
            return self._store_failure("authenticate", exc)
        return verified

    async def authenticate_bearer(self, authorization: Optional[str]) -> Result[TokenClaims]:
        token = extract_bearer(authorization)
        if isinstance(token, Err):
            return token
        return await self.authenticate_token(token.value)

    async def authorize(
        self, claims: TokenClaims, required_roles: Iterable[str]
    ) -> Result[None]:
        return await self.authz.authorize(claims.sub, claims.role, required_roles)

    async def logout_all(self, claims: TokenClaims) -> Result[int]:
        try:
            return Ok(await self.rotation.revoke_all(claims.sub))
        except StoreUnavailable as exc:
            return self._store_failure("logout_all", exc)

    async def sessions(self, claims: TokenClaims) -> Result[List[RefreshSession]]:
        try:
            return Ok(await self.rotation.list_sessions(claims.sub))
        except StoreUnavailable as exc:
            return self._store_failure("list_sessions", exc)
