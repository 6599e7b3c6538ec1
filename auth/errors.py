"""
Typed errors raised by the identity core.

Every failure inside the core surfaces as an AuthError carrying an
ErrorKind. The HTTP boundary maps kinds to status codes via ERROR_STATUS.
"""
from enum import Enum
from typing import Any, Dict, Optional

SESSION_TIMEOUT = "SESSION_TIMEOUT"
GENERIC_AUTH_MESSAGE = "Invalid credentials"


class ErrorKind(str, Enum):
    """Error kinds surfaced to callers."""
    INVALID_INPUT = "invalid_input"
    INVALID_CREDENTIALS = "invalid_credentials"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    CHALLENGE_INVALID = "challenge_invalid"
    CHALLENGE_EXPIRED = "challenge_expired"
    CHALLENGE_EXHAUSTED = "challenge_exhausted"
    CODE_INVALID = "code_invalid"
    CODE_EXPIRED = "code_expired"
    CODE_ATTEMPTS_EXHAUSTED = "code_attempts_exhausted"
    SESSION_EXPIRED = "session_expired"
    SESSION_FORBIDDEN = "session_forbidden"
    CANNOT_REVOKE_CURRENT = "cannot_revoke_current"
    LOCKED = "locked"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"
    INTERNAL = "internal"


ERROR_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.CANNOT_REVOKE_CURRENT: 400,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.CHALLENGE_INVALID: 401,
    ErrorKind.CHALLENGE_EXPIRED: 401,
    ErrorKind.CHALLENGE_EXHAUSTED: 401,
    ErrorKind.CODE_INVALID: 401,
    ErrorKind.CODE_EXPIRED: 401,
    ErrorKind.CODE_ATTEMPTS_EXHAUSTED: 401,
    ErrorKind.SESSION_EXPIRED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.SESSION_FORBIDDEN: 403,
    ErrorKind.LOCKED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTERNAL: 500,
    ErrorKind.DEPENDENCY_UNAVAILABLE: 503,
    ErrorKind.DEADLINE_EXCEEDED: 504,
}

DEFAULT_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_INPUT: "Invalid request",
    ErrorKind.INVALID_CREDENTIALS: GENERIC_AUTH_MESSAGE,
    ErrorKind.CONFLICT: "Resource already exists",
    ErrorKind.FORBIDDEN: "Insufficient permissions",
    ErrorKind.NOT_FOUND: "Not found",
    ErrorKind.RATE_LIMITED: "Too many requests",
    ErrorKind.CHALLENGE_INVALID: "Invalid MFA challenge",
    ErrorKind.CHALLENGE_EXPIRED: "MFA challenge expired, please log in again",
    ErrorKind.CHALLENGE_EXHAUSTED: "MFA challenge already used",
    ErrorKind.CODE_INVALID: "Invalid code",
    ErrorKind.CODE_EXPIRED: "Code expired",
    ErrorKind.CODE_ATTEMPTS_EXHAUSTED: "Too many attempts, request a new code",
    ErrorKind.SESSION_EXPIRED: SESSION_TIMEOUT,
    ErrorKind.SESSION_FORBIDDEN: "Session belongs to another user",
    ErrorKind.CANNOT_REVOKE_CURRENT: "Cannot revoke the current session",
    ErrorKind.LOCKED: "MFA temporarily locked",
    ErrorKind.DEADLINE_EXCEEDED: "Request deadline exceeded",
    ErrorKind.DEPENDENCY_UNAVAILABLE: "Service temporarily unavailable",
    ErrorKind.INTERNAL: "Internal server error",
}


class AuthError(Exception):
    """Single typed error raised by the core."""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None, **details: Any):
        self.kind = kind
        self.message = message or DEFAULT_MESSAGES[kind]
        self.details = details
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return ERROR_STATUS[self.kind]

    def __repr__(self) -> str:
        return f"AuthError(kind={self.kind.value}, message={self.message!r})"


class RateLimitExceeded(AuthError):
    """Raised when a rate limit is exceeded."""

    def __init__(self, retry_after: int, scope: Optional[str] = None):
        self.retry_after = retry_after
        self.scope = scope
        super().__init__(
            ErrorKind.RATE_LIMITED,
            f"Rate limit exceeded. Retry after {retry_after} seconds",
            retry_after=retry_after,
        )


def invalid_credentials() -> AuthError:
    """Generic login failure; never says which part was wrong."""
    return AuthError(ErrorKind.INVALID_CREDENTIALS)
