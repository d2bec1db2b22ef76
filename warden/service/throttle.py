from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable, Optional

from warden.logging import get_logger, mask_identifier
from warden.service.errors import AuthErrorKind
from warden.service.result import Err, Ok, Result
from warden.storage.common import SessionStore, login_metrics_key, login_quota_key
from warden.storage.models import LoginMetrics, QuotaDecision


def normalize_identifier(identifier: str) -> str:
    return identifier.strip().lower()


class LoginThrottle:
    """Gate login attempts with per-identifier token buckets.

    Each account email gets ``attempts`` per ``window_seconds``, refilled
    continuously, so there is a hard ceiling per window. Client IPs get a
    separate, larger bucket. Failure metrics are recorded separately and
    never influence admission.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        attempts: int,
        window_seconds: int,
        ip_attempts: int,
        metrics_ttl_seconds: int,
        alert_threshold: int,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.attempts = attempts
        self.window_seconds = window_seconds
        self.ip_attempts = ip_attempts
        self.metrics_ttl_seconds = metrics_ttl_seconds
        self.alert_threshold = alert_threshold
        self._clock = clock or time.time
        self.logger = get_logger(__name__)

    async def try_consume(
        self, identifier: str, *, client_ip: Optional[str] = None
    ) -> Result[QuotaDecision]:
        """Consume one attempt; both the IP and the account bucket must admit.

        The IP bucket is consulted first so that attempts an IP ceiling rejects
        do not drain the targeted account's quota.
        """
        normalized = normalize_identifier(identifier)
        if client_ip:
            ip_decision = await self.store.consume_quota(
                login_quota_key(f"ip:{client_ip}"), self.ip_attempts, self.window_seconds
            )
            if not ip_decision.allowed:
                self.logger.warning(
                    "login_rate_limited",
                    scope="ip",
                    client=mask_identifier(client_ip),
                    retry_after=ip_decision.reset_seconds,
                )
                return Err(
                    AuthErrorKind.RATE_LIMIT_EXCEEDED,
                    retry_after=ip_decision.reset_seconds,
                )
        decision = await self.store.consume_quota(
            login_quota_key(normalized), self.attempts, self.window_seconds
        )
        if not decision.allowed:
            self.logger.warning(
                "login_rate_limited",
                scope="account",
                identifier=mask_identifier(normalized),
                retry_after=decision.reset_seconds,
            )
            return Err(
                AuthErrorKind.RATE_LIMIT_EXCEEDED, retry_after=decision.reset_seconds
            )
        return Ok(decision)

    async def get_metrics(self, identifier: str) -> LoginMetrics:
        record = await self.store.get(login_metrics_key(normalize_identifier(identifier)))
        return LoginMetrics.from_record(record)

    async def record_attempt(self, identifier: str, success: bool) -> LoginMetrics:
        """Update failure counters for alerting.

        This is a read-modify-write; concurrent attempts may undercount,
        which only affects observability.
        """
        normalized = normalize_identifier(identifier)
        metrics = await self.get_metrics(normalized)
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        metrics.last_attempt = now
        if success:
            metrics.failed_attempts = 0
            metrics.successful_logins += 1
            metrics.last_login = now
        else:
            metrics.failed_attempts += 1
        await self.store.put(
            login_metrics_key(normalized), metrics.to_record(), self.metrics_ttl_seconds
        )
        if not success and metrics.failed_attempts >= self.alert_threshold:
            self.logger.warning(
                "security_alert_failed_logins",
                identifier=mask_identifier(normalized),
                failed_attempts=metrics.failed_attempts,
                threshold=self.alert_threshold,
            )
        return metrics
