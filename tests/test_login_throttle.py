import pytest
from structlog.testing import capture_logs

from warden.service.errors import AuthErrorKind
from warden.service.result import Err, Ok
from warden.service.throttle import LoginThrottle


@pytest.fixture
def throttle(store, clock):
    return LoginThrottle(
        store,
        attempts=5,
        window_seconds=900,
        ip_attempts=100,
        metrics_ttl_seconds=86400,
        alert_threshold=5,
        clock=clock,
    )


class TestQuota:
    async def test_ceiling_per_window(self, throttle):
        for _ in range(5):
            assert isinstance(await throttle.try_consume("alice@example.com"), Ok)

        denied = await throttle.try_consume("alice@example.com")
        assert isinstance(denied, Err)
        assert denied.kind is AuthErrorKind.RATE_LIMIT_EXCEEDED
        assert denied.retry_after > 0

    async def test_window_elapsing_readmits(self, throttle, clock):
        for _ in range(5):
            await throttle.try_consume("alice@example.com")
        assert not (await throttle.try_consume("alice@example.com")).ok

        clock.advance(900)
        assert (await throttle.try_consume("alice@example.com")).ok

    async def test_identifier_is_normalized(self, throttle):
        for _ in range(5):
            await throttle.try_consume("Alice@Example.com ")
        assert not (await throttle.try_consume("alice@example.com")).ok

    async def test_accounts_are_independent(self, throttle):
        for _ in range(5):
            await throttle.try_consume("alice@example.com")
        assert (await throttle.try_consume("bob@example.com")).ok

    async def test_ip_quota_applies_across_accounts(self, store, clock):
        throttle = LoginThrottle(
            store,
            attempts=5,
            window_seconds=900,
            ip_attempts=3,
            metrics_ttl_seconds=86400,
            alert_threshold=5,
            clock=clock,
        )
        for n in range(3):
            assert (await throttle.try_consume(f"user{n}@example.com", client_ip="10.0.0.1")).ok
        denied = await throttle.try_consume("fresh@example.com", client_ip="10.0.0.1")
        assert denied.kind is AuthErrorKind.RATE_LIMIT_EXCEEDED
        assert (await throttle.try_consume("fresh@example.com", client_ip="10.0.0.2")).ok

    async def test_ip_denial_does_not_drain_account_quota(self, store, clock):
        throttle = LoginThrottle(
            store,
            attempts=2,
            window_seconds=900,
            ip_attempts=1,
            metrics_ttl_seconds=86400,
            alert_threshold=5,
            clock=clock,
        )
        assert (await throttle.try_consume("alice@example.com", client_ip="10.0.0.1")).ok
        for _ in range(5):
            denied = await throttle.try_consume("alice@example.com", client_ip="10.0.0.1")
            assert denied.kind is AuthErrorKind.RATE_LIMIT_EXCEEDED

        assert (await throttle.try_consume("alice@example.com", client_ip="10.0.0.2")).ok
        exhausted = await throttle.try_consume("alice@example.com", client_ip="10.0.0.3")
        assert exhausted.kind is AuthErrorKind.RATE_LIMIT_EXCEEDED


class TestMetrics:
    async def test_failures_accumulate_and_reset_on_success(self, throttle):
        await throttle.record_attempt("alice@example.com", success=False)
        metrics = await throttle.record_attempt("alice@example.com", success=False)
        assert metrics.failed_attempts == 2
        assert metrics.last_attempt is not None
        assert metrics.last_login is None

        metrics = await throttle.record_attempt("alice@example.com", success=True)
        assert metrics.failed_attempts == 0
        assert metrics.successful_logins == 1
        assert metrics.last_login is not None

        stored = await throttle.get_metrics("alice@example.com")
        assert stored.failed_attempts == 0
        assert stored.successful_logins == 1

    async def test_metrics_do_not_gate_admission(self, throttle):
        for _ in range(10):
            await throttle.record_attempt("alice@example.com", success=False)
        assert (await throttle.try_consume("alice@example.com")).ok

    async def test_alert_logged_at_threshold(self, throttle):
        with capture_logs() as logs:
            for _ in range(5):
                await throttle.record_attempt("alice@example.com", success=False)

        alerts = [e for e in logs if e["event"] == "security_alert_failed_logins"]
        assert len(alerts) == 1
        assert alerts[0]["failed_attempts"] == 5
        assert alerts[0]["identifier"] == "al***@example.com"
