"""
Clock, randomness helpers and per-request context.

All timestamps in the core are naive UTC datetimes. Services take a Clock so
tests can drive time explicitly through ManualClock.
"""
import secrets
import string
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.errors import AuthError, ErrorKind


class Clock:
    """System wall clock (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def timestamp(self) -> int:
        return int(self.now().replace(tzinfo=timezone.utc).timestamp())

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 15, 12, 0, 0)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        return self.timestamp()

    def advance(self, delta: timedelta) -> None:
        with self._lock:
            self._now = self._now + delta

    def set(self, moment: datetime) -> None:
        with self._lock:
            self._now = moment


def new_id(prefix: str) -> str:
    """Opaque random identifier, e.g. usr_3f2a..."""
    return f"{prefix}_{secrets.token_hex(12)}"


def random_digits(length: int) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def random_from_alphabet(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


class Deadline:
    """Absolute point on the monotonic clock after which work must stop."""

    def __init__(self, expires_at: float, clock: Optional[Clock] = None):
        self.expires_at = expires_at
        self._clock = clock or Clock()

    @classmethod
    def after(cls, seconds: float, clock: Optional[Clock] = None) -> "Deadline":
        clock = clock or Clock()
        return cls(clock.monotonic() + seconds, clock)

    def remaining(self) -> float:
        return self.expires_at - self._clock.monotonic()

    def expired(self) -> bool:
        return self.remaining() <= 0


class RequestContext(BaseModel):
    """Caller facts the core needs: network origin, device and deadline."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    ip_address: str = Field(default="0.0.0.0", description="Client IP address")
    user_agent: str = Field(default="", description="Raw User-Agent header")
    location: Optional[str] = Field(default=None, description="Approximate location")
    deadline: Optional[Deadline] = Field(default=None, description="Operation deadline")

    def check_deadline(self) -> None:
        """
        Raise if the request deadline has passed.

        Raises:
            AuthError: deadline_exceeded
        """
        if self.deadline is not None and self.deadline.expired():
            raise AuthError(ErrorKind.DEADLINE_EXCEEDED)


def check_deadline(ctx: Optional[RequestContext]) -> None:
    """Deadline check tolerant of callers without a context."""
    if ctx is not None:
        ctx.check_deadline()
