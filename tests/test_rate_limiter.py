"""
Unit tests for the rate limiter.

Tests:
- Sliding window limits and retry_after
- Independent identities and reset
- Idle key eviction
- Shared store failure handling
"""
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from auth.clock import ManualClock
from auth.errors import RateLimitExceeded
from security.rate_limiter import InMemoryRateLimitStore, RateLimiter, RateLimitScope, RedisRateLimitStore


class UnreachableRedis:
    """Client whose scripts always fail to reach the server."""

    def register_script(self, script):
        def run(keys=None, args=None):
            raise RedisConnectionError("connection refused")
        return run

    def delete(self, key):
        raise RedisConnectionError("connection refused")


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


class TestSlidingWindow:
    """Tests for in-process limiting."""

    def test_login_allows_ten_then_denies(self, limiter):
        """Test the eleventh login in the window is denied."""
        for i in range(10):
            decision = limiter.check(RateLimitScope.LOGIN, "203.0.113.1")
            assert decision.allowed
            assert decision.remaining == 9 - i

        denied = limiter.check(RateLimitScope.LOGIN, "203.0.113.1")

        assert denied.allowed is False
        assert denied.retry_after == 900

    def test_retry_after_tracks_oldest_call(self, limiter, clock):
        """Test retry_after counts down to when the oldest call leaves the window."""
        for _ in range(10):
            limiter.check(RateLimitScope.LOGIN, "203.0.113.1")

        clock.advance(timedelta(seconds=300))

        assert limiter.check(RateLimitScope.LOGIN, "203.0.113.1").retry_after == 600

    def test_window_slides(self, limiter, clock):
        """Test calls are allowed again once the window has passed."""
        for _ in range(3):
            limiter.check(RateLimitScope.PASSWORD_RESET, "203.0.113.1")
        assert not limiter.check(RateLimitScope.PASSWORD_RESET, "203.0.113.1").allowed

        clock.advance(timedelta(seconds=3600))

        assert limiter.check(RateLimitScope.PASSWORD_RESET, "203.0.113.1").allowed

    def test_denied_calls_not_counted(self, limiter, clock):
        """Test hammering while denied does not extend the lockout."""
        for _ in range(5):
            limiter.check(RateLimitScope.MFA_VERIFY, "203.0.113.1")
        for _ in range(20):
            limiter.check(RateLimitScope.MFA_VERIFY, "203.0.113.1")

        clock.advance(timedelta(seconds=900))

        assert limiter.check(RateLimitScope.MFA_VERIFY, "203.0.113.1").allowed

    def test_identities_independent(self, limiter):
        """Test one IP's usage does not affect another's."""
        for _ in range(5):
            limiter.check(RateLimitScope.REGISTER, "203.0.113.1")

        assert not limiter.check(RateLimitScope.REGISTER, "203.0.113.1").allowed
        assert limiter.check(RateLimitScope.REGISTER, "203.0.113.2").allowed

    def test_enforce_raises(self, limiter):
        """Test enforce raises with retry_after when denied."""
        limiter.enforce(RateLimitScope.TEST_EMAIL_COOLDOWN, "usr_1")

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.enforce(RateLimitScope.TEST_EMAIL_COOLDOWN, "usr_1")

        assert exc_info.value.retry_after == 30
        assert exc_info.value.details["retry_after"] == 30

    def test_reset(self, limiter):
        """Test reset clears the counters."""
        for _ in range(3):
            limiter.check(RateLimitScope.PASSWORD_RESET, "203.0.113.1")

        limiter.reset(RateLimitScope.PASSWORD_RESET, "203.0.113.1")

        assert limiter.check(RateLimitScope.PASSWORD_RESET, "203.0.113.1").allowed

    def test_unknown_scope_allowed(self, limiter):
        """Test scopes without a policy are not limited."""
        assert limiter.check("no-such-scope", "x").allowed


class TestIdleKeys:
    """Tests for dropping idle keys from the in-process store."""

    def test_sweep_drops_expired_keys(self):
        """Test keys whose calls all left their own window are dropped."""
        store = InMemoryRateLimitStore()
        store.hit("login:203.0.113.1", 0, 900, 10)
        store.hit("test-email-cooldown:usr_1", 0, 30, 1)

        assert store.sweep(60) == 1
        assert len(store) == 1

        assert store.sweep(900) == 1
        assert len(store) == 0

    def test_distinct_clients_do_not_accumulate(self):
        """Test one-off clients are dropped as traffic continues."""
        store = InMemoryRateLimitStore()
        for i in range(InMemoryRateLimitStore.SWEEP_EVERY * 4):
            store.hit(f"login:client-{i}", float(i), 10, 10)

        assert len(store) <= InMemoryRateLimitStore.SWEEP_EVERY + 10

    def test_limit_survives_sweep(self):
        """Test a key still inside its window keeps its count after a sweep."""
        store = InMemoryRateLimitStore()
        store.hit("test-email-cooldown:usr_1", 0, 30, 1)

        store.sweep(10)

        assert store.hit("test-email-cooldown:usr_1", 10, 30, 1) == (False, 0, 20)


class TestSharedStoreFailure:
    """Tests for behaviour when Redis is unreachable."""

    @pytest.fixture
    def limiter(self, clock):
        store = RedisRateLimitStore(client=UnreachableRedis())
        return RateLimiter(shared_store=store, clock=clock)

    @pytest.mark.parametrize("scope", [RateLimitScope.LOGIN, RateLimitScope.MFA_VERIFY])
    def test_fail_closed_scopes_deny(self, limiter, scope):
        """Test login and MFA verification deny for a full window."""
        decision = limiter.check(scope, "203.0.113.1")

        assert decision.allowed is False
        assert decision.retry_after == 900

    def test_fail_open_scopes_use_local_store(self, limiter):
        """Test other scopes fall back to the in-process limiter."""
        for _ in range(3):
            assert limiter.check(RateLimitScope.PASSWORD_RESET, "203.0.113.1").allowed

        assert not limiter.check(RateLimitScope.PASSWORD_RESET, "203.0.113.1").allowed

    def test_reset_tolerates_outage(self, limiter):
        """Test reset still clears the local counters."""
        limiter.reset(RateLimitScope.PASSWORD_RESET, "203.0.113.1")
