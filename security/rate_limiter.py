"""
Rate limiting for externally reachable operations.

Sliding-window log keyed by (scope, identity):
- the scope selects a policy row (window, max, identity kind)
- the identity is a client IP or a principal id
- denied calls are not recorded, so a blocked client recovers once the
  oldest recorded call leaves the window

Counters live in Redis when RATE_LIMITER_URL is set. If Redis is
unreachable, fail-open scopes fall back to the in-process store and
fail-closed scopes (login, mfa-verify) deny for a full window.
"""
import logging
import math
import secrets
import threading
from collections import deque
from typing import Deque, Dict, Optional, Tuple

from pydantic import BaseModel, Field
from redis import Redis
from redis.exceptions import RedisError

from auth.clock import Clock, RequestContext, check_deadline
from auth.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


class RateLimitScope:
    """Rate limit scopes."""
    REGISTER = "register"
    LOGIN = "login"
    PASSWORD_RESET = "password-reset"
    EMAIL_VERIFY = "email-verify"
    MFA_VERIFY = "mfa-verify"
    TEST_EMAIL_COOLDOWN = "test-email-cooldown"
    TEST_EMAIL_DAILY = "test-email-daily"


class RateLimitPolicy(BaseModel):
    """One policy row."""

    window_seconds: int = Field(gt=0, description="Sliding window length")
    max_requests: int = Field(gt=0, description="Calls allowed per window")
    identity: str = Field(default="ip", description="ip or principal")
    fail_closed: bool = Field(default=False, description="Deny when the shared store is unreachable")


DEFAULT_POLICIES: Dict[str, RateLimitPolicy] = {
    RateLimitScope.REGISTER: RateLimitPolicy(window_seconds=3600, max_requests=5),
    RateLimitScope.LOGIN: RateLimitPolicy(window_seconds=900, max_requests=10, fail_closed=True),
    RateLimitScope.PASSWORD_RESET: RateLimitPolicy(window_seconds=3600, max_requests=3),
    RateLimitScope.EMAIL_VERIFY: RateLimitPolicy(window_seconds=3600, max_requests=5),
    RateLimitScope.MFA_VERIFY: RateLimitPolicy(window_seconds=900, max_requests=5, fail_closed=True),
    RateLimitScope.TEST_EMAIL_COOLDOWN: RateLimitPolicy(window_seconds=30, max_requests=1, identity="principal"),
    RateLimitScope.TEST_EMAIL_DAILY: RateLimitPolicy(window_seconds=86400, max_requests=25, identity="principal"),
}


class RateLimitDecision(BaseModel):
    """Outcome of a rate limit check."""

    allowed: bool
    remaining: int
    retry_after: int = Field(default=0, description="Seconds until the next call may succeed")


class InMemoryRateLimitStore:
    """Single-process sliding-window log."""

    # Hits between sweeps of idle keys
    SWEEP_EVERY = 256

    def __init__(self):
        self._windows: Dict[str, Deque[float]] = {}
        self._spans: Dict[str, int] = {}
        self._hits = 0
        self._lock = threading.Lock()

    def hit(self, key: str, now: float, window: int, limit: int) -> Tuple[bool, int, int]:
        """
        Record a call if under the limit.

        Returns:
            (allowed, remaining, retry_after)
        """
        with self._lock:
            self._hits += 1
            if self._hits % self.SWEEP_EVERY == 0:
                self._sweep(now)

            calls = self._windows.setdefault(key, deque())
            self._spans[key] = window
            self._prune(calls, now - window)

            if len(calls) >= limit:
                retry_after = max(1, math.ceil(calls[0] + window - now))
                return False, 0, retry_after

            calls.append(now)
            return True, limit - len(calls), 0

    def sweep(self, now: float) -> int:
        """
        Drop keys with no calls left inside their window.

        Returns:
            Number of keys dropped
        """
        with self._lock:
            return self._sweep(now)

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)
            self._spans.pop(key, None)

    def __len__(self) -> int:
        return len(self._windows)

    @staticmethod
    def _prune(calls: Deque[float], cutoff: float) -> None:
        while calls and calls[0] <= cutoff:
            calls.popleft()

    def _sweep(self, now: float) -> int:
        idle = []
        for key, calls in self._windows.items():
            self._prune(calls, now - self._spans[key])
            if not calls:
                idle.append(key)
        for key in idle:
            del self._windows[key]
            del self._spans[key]
        if idle:
            logger.debug(f"Dropped {len(idle)} idle rate limit keys")
        return len(idle)


class RedisRateLimitStore:
    """Shared sliding-window log in a Redis sorted set."""

    # Atomic prune + count + conditional add
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_after = window
  if oldest[2] then
    retry_after = math.ceil(tonumber(oldest[2]) + window - now)
  end
  return {0, 0, math.max(retry_after, 1)}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, window)
return {1, limit - count - 1, 0}
"""

    def __init__(self, redis_url: Optional[str] = None, *, client: Optional[Redis] = None,
                 socket_timeout: float = 0.5, prefix: str = "ratelimit:"):
        """
        Initialize Redis store.

        Args:
            redis_url: Redis connection URL
            client: Pre-built client (tests)
            socket_timeout: Per-command timeout in seconds
            prefix: Key prefix
        """
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.prefix = prefix
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def hit(self, key: str, now: float, window: int, limit: int) -> Tuple[bool, int, int]:
        member = f"{now}:{secrets.token_hex(4)}"
        allowed, remaining, retry_after = self._sliding_window(
            keys=[self.prefix + key],
            args=[now, window, limit, member],
        )
        return bool(int(allowed)), int(remaining), int(retry_after)

    def reset(self, key: str) -> None:
        self.client.delete(self.prefix + key)


class RateLimiter:
    """Sliding-window rate limiter with shared and in-process stores."""

    def __init__(
        self,
        shared_store: Optional[RedisRateLimitStore] = None,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize rate limiter.

        Args:
            shared_store: Redis store; None means in-process only
            policies: Scope -> policy (defaults applied for missing scopes)
            clock: Time source
        """
        self.shared_store = shared_store
        self.local_store = InMemoryRateLimitStore()
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self.clock = clock or Clock()

    @classmethod
    def from_url(cls, redis_url: Optional[str], clock: Optional[Clock] = None) -> "RateLimiter":
        store = RedisRateLimitStore(redis_url) if redis_url else None
        return cls(shared_store=store, clock=clock)

    def check(self, scope: str, identity: str, ctx: Optional[RequestContext] = None) -> RateLimitDecision:
        """
        Count a call against (scope, identity).

        Args:
            scope: Policy scope
            identity: IP address or principal id
            ctx: Request context (deadline)

        Returns:
            Decision with remaining calls or retry_after
        """
        check_deadline(ctx)

        policy = self.policies.get(scope)
        if policy is None:
            logger.warning(f"Unknown rate limit scope: {scope}")
            return RateLimitDecision(allowed=True, remaining=0)

        key = f"{scope}:{identity}"
        now = float(self.clock.timestamp())

        if self.shared_store is not None:
            try:
                allowed, remaining, retry_after = self.shared_store.hit(
                    key, now, policy.window_seconds, policy.max_requests
                )
                return self._decision(scope, identity, allowed, remaining, retry_after)
            except RedisError as e:
                if policy.fail_closed:
                    logger.error(f"Rate limiter store unavailable, denying {scope}: {e}")
                    return RateLimitDecision(allowed=False, remaining=0, retry_after=policy.window_seconds)
                logger.warning(f"Rate limiter store unavailable, using in-process limiter for {scope}: {e}")

        allowed, remaining, retry_after = self.local_store.hit(
            key, now, policy.window_seconds, policy.max_requests
        )
        return self._decision(scope, identity, allowed, remaining, retry_after)

    @staticmethod
    def _decision(scope: str, identity: str, allowed: bool, remaining: int, retry_after: int) -> RateLimitDecision:
        if not allowed:
            logger.warning(f"Rate limit exceeded: {scope} for {identity}, retry after {retry_after}s")
        return RateLimitDecision(allowed=allowed, remaining=remaining, retry_after=retry_after)

    def enforce(self, scope: str, identity: str, ctx: Optional[RequestContext] = None) -> RateLimitDecision:
        """
        Count a call and raise when denied.

        Raises:
            RateLimitExceeded: If the limit is exhausted
        """
        decision = self.check(scope, identity, ctx)
        if not decision.allowed:
            raise RateLimitExceeded(retry_after=decision.retry_after, scope=scope)
        return decision

    def reset(self, scope: str, identity: str) -> None:
        """Clear the counters for (scope, identity)."""
        key = f"{scope}:{identity}"
        self.local_store.reset(key)
        if self.shared_store is not None:
            try:
                self.shared_store.reset(key)
            except RedisError as e:
                logger.warning(f"Could not reset shared rate limit {key}: {e}")

        logger.info(f"Rate limit reset: {scope} for {identity}")
