"""
Security event recording.

Three append-only logs:
- login attempts (every authentication outcome)
- security events (user-visible alerts, acknowledgeable)
- audit entries (admin actions)

Writes are handed to an EventSink so a slow or failing store never fails
the request that produced the record. Failed writes are logged and dropped.
"""
import logging
import queue
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from auth.clock import Clock, RequestContext
from auth.errors import AuthError, ErrorKind
from database.connection import Database
from database.repositories import (
    AuditEntryRepository,
    LoginAttemptRepository,
    SecurityEventRepository,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SecurityEventType(str, Enum):
    """User-visible security event types."""
    NEW_LOCATION = "new-location"
    NEW_DEVICE = "new-device"
    BRUTE_FORCE = "brute-force"
    SUSPICIOUS = "suspicious"
    MFA_ENABLED = "mfa-enabled"
    MFA_DISABLED = "mfa-disabled"
    PASSWORD_CHANGED = "password-changed"
    ACCOUNT_DELETED = "account-deleted"
    ROLE_CHANGED = "role-changed"


class Severity(str, Enum):
    """Security event severity."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AuditAction(str, Enum):
    """Admin actions recorded in the audit log."""
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    ROLE_CHANGED = "role_changed"
    USER_ARCHIVED = "user_archived"
    USER_RESTORED = "user_restored"
    USER_ANONYMIZED = "user_anonymized"
    MFA_POLICY_UPDATED = "mfa_policy_updated"
    MFA_POLICY_RESET = "mfa_policy_reset"
    ROLE_POLICY_UPDATED = "mfa_role_policy_updated"
    MFA_UNLOCKED = "mfa_unlocked"
    GRACE_EXTENDED = "mfa_grace_extended"


class LoginAttemptView(BaseModel):
    """Login attempt as shown to its owner."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    email: Optional[str] = None
    ip_address: Optional[str] = None
    location: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    success: bool
    failure_reason: Optional[str] = None
    mfa_used: bool
    created_at: datetime


class SecurityEventView(BaseModel):
    """Security event as shown to its owner."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    principal_id: Optional[str] = None
    event_type: str
    severity: str
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    created_at: datetime
    acknowledged_at: Optional[datetime] = None


class AuditEntryView(BaseModel):
    """Admin audit entry."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    actor_id: Optional[str] = None
    action: str
    target_type: str
    target_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class Page(BaseModel, Generic[T]):
    """One page of a paginated listing."""

    items: List[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 0


# ========== Sinks ==========

class EventSink:
    """Destination for deferred event writes."""

    def __init__(self):
        self.dropped = 0

    def submit(self, job: Callable[[], None]) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        """Block until every submitted job has run."""

    def close(self) -> None:
        """Stop accepting work."""


class InlineSink(EventSink):
    """Run jobs immediately on the caller's thread."""

    def submit(self, job: Callable[[], None]) -> None:
        try:
            job()
        except Exception:
            self.dropped += 1
            logger.error("Event write failed, dropping", exc_info=True)


class BackgroundSink(EventSink):
    """Bounded queue drained by one worker thread; drops when full."""

    def __init__(self, maxsize: int = 1000):
        super().__init__()
        self._queue: "queue.Queue[Optional[Callable[[], None]]]" = queue.Queue(maxsize=maxsize)
        self._worker = threading.Thread(target=self._run, name="event-sink", daemon=True)
        self._worker.start()

    def submit(self, job: Callable[[], None]) -> None:
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Event sink full, dropped event (total dropped={self.dropped})")

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    return
                job()
            except Exception:
                self.dropped += 1
                logger.error("Event write failed, dropping", exc_info=True)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        self._queue.join()

    def close(self) -> None:
        self._queue.put(None)
        self._worker.join(timeout=5)


# ========== Recorder ==========

class EventRecorder:
    """Append-only event trail with paginated queries."""

    def __init__(self, database: Database, clock: Optional[Clock] = None,
                 sink: Optional[EventSink] = None):
        """
        Initialize event recorder.

        Args:
            database: Relational store
            clock: Time source
            sink: Where deferred writes run (inline by default)
        """
        self.database = database
        self.clock = clock or Clock()
        self.sink = sink or InlineSink()

    @property
    def dropped(self) -> int:
        return self.sink.dropped

    def defer(self, job: Callable[[], None]) -> None:
        """Run a write job through the sink."""
        self.sink.submit(job)

    # ----- writes -----

    def write_login_attempt(
        self,
        email: Optional[str],
        success: bool,
        principal_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        mfa_used: bool = False,
        ctx: Optional[RequestContext] = None,
        device: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Insert a login attempt now (on the calling thread)."""
        device = device or {}
        with self.database.session_scope() as db:
            LoginAttemptRepository(db).create({
                "principal_id": principal_id,
                "email": email.strip().lower() if email else None,
                "ip_address": ctx.ip_address if ctx else None,
                "user_agent": ctx.user_agent if ctx else None,
                "location": ctx.location if ctx else None,
                "device_type": device.get("device_type"),
                "browser": device.get("browser"),
                "os": device.get("os"),
                "success": success,
                "failure_reason": failure_reason,
                "mfa_used": mfa_used,
                "created_at": self.clock.now(),
            })

        level = logging.INFO if success else logging.WARNING
        logger.log(
            level,
            f"[LOGIN] principal={principal_id or 'N/A'}, success={success}, "
            f"reason={failure_reason or 'N/A'}, mfa={mfa_used}"
        )

    def record_login_attempt(self, email: Optional[str], success: bool, **kwargs) -> None:
        """Record a login attempt through the sink."""
        self.defer(lambda: self.write_login_attempt(email, success, **kwargs))

    def write_security_event(
        self,
        principal_id: Optional[str],
        event_type: SecurityEventType,
        severity: Severity,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """Insert a security event now (on the calling thread)."""
        with self.database.session_scope() as db:
            SecurityEventRepository(db).create({
                "principal_id": principal_id,
                "event_type": event_type.value,
                "severity": severity.value,
                "details": details or {},
                "ip_address": ip_address,
                "created_at": self.clock.now(),
            })

        level = logging.WARNING if severity != Severity.INFO else logging.INFO
        logger.log(level, f"[SECURITY] {event_type.value} ({severity.value}) principal={principal_id or 'N/A'}")

    def record_security_event(
        self,
        principal_id: Optional[str],
        event_type: SecurityEventType,
        severity: Severity,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """Record a security event through the sink."""
        self.defer(lambda: self.write_security_event(principal_id, event_type, severity, details, ip_address))

    def write_audit(
        self,
        actor_id: Optional[str],
        action: AuditAction,
        target_type: str,
        target_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
        ctx: Optional[RequestContext] = None,
    ) -> None:
        """
        Insert an audit entry in its own transaction.

        Raises:
            SQLAlchemyError: If the write fails (callers decide whether to proceed)
        """
        with self.database.session_scope() as db:
            AuditEntryRepository(db).create({
                "actor_id": actor_id,
                "action": action.value,
                "target_type": target_type,
                "target_id": target_id,
                "details": details or {},
                "ip_address": ctx.ip_address if ctx else None,
                "user_agent": ctx.user_agent if ctx else None,
                "created_at": self.clock.now(),
            })

        logger.info(f"[AUDIT] {action.value} actor={actor_id or 'system'} target={target_type}:{target_id}")

    def record_audit(
        self,
        actor_id: Optional[str],
        action: AuditAction,
        target_type: str,
        target_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
        ctx: Optional[RequestContext] = None,
    ) -> None:
        """Record an audit entry through the sink (after the mutation committed)."""
        self.defer(lambda: self.write_audit(actor_id, action, target_type, target_id, details, ctx))

    # ----- queries -----

    @staticmethod
    def _bounds(page: int, page_size: int) -> tuple:
        page = max(1, page)
        page_size = min(max(1, page_size), 100)
        return page, page_size, (page - 1) * page_size

    def login_history(self, principal_id: str, page: int = 1, page_size: int = 20) -> Page[LoginAttemptView]:
        """Paginated login attempts of a principal, newest first."""
        page, page_size, offset = self._bounds(page, page_size)
        with self.database.session_scope() as db:
            items, total = LoginAttemptRepository(db).list_for(principal_id, offset, page_size)
            views = [LoginAttemptView.model_validate(item) for item in items]
        return Page[LoginAttemptView](items=views, total=total, page=page, page_size=page_size)

    def login_statistics(self, principal_id: str, days: int = 30) -> Dict[str, Any]:
        """Successful and failed login counts over the last N days."""
        since = self.clock.now() - timedelta(days=days)
        with self.database.session_scope() as db:
            repo = LoginAttemptRepository(db)
            stats = repo.statistics(principal_id, since)
            successes = repo.successes_since(principal_id, since)
            last_login = successes[0].created_at if successes else None
            devices = {(s.browser, s.os, s.device_type) for s in successes}
            locations = {s.location for s in successes if s.location}

        return {
            "period_days": days,
            "successful_logins": stats["successful"],
            "failed_logins": stats["failed"],
            "unique_devices": len(devices),
            "unique_locations": len(locations),
            "last_login_at": last_login,
        }

    def security_events(
        self,
        principal_id: str,
        page: int = 1,
        page_size: int = 20,
        severity: Optional[Severity] = None,
        unacknowledged_only: bool = False,
    ) -> Page[SecurityEventView]:
        """Paginated security events of a principal, newest first."""
        page, page_size, offset = self._bounds(page, page_size)
        with self.database.session_scope() as db:
            items, total = SecurityEventRepository(db).list_for(
                principal_id,
                severity.value if severity else None,
                unacknowledged_only,
                offset,
                page_size,
            )
            views = [SecurityEventView.model_validate(item) for item in items]
        return Page[SecurityEventView](items=views, total=total, page=page, page_size=page_size)

    def acknowledge(self, event_id: int, principal_id: str) -> None:
        """
        Acknowledge an event.

        Raises:
            AuthError: not_found if the event does not exist or is not owned
        """
        with self.database.session_scope() as db:
            found = SecurityEventRepository(db).acknowledge(event_id, principal_id, self.clock.now())
        if not found:
            raise AuthError(ErrorKind.NOT_FOUND, "Security event not found")

    def audit_entries(
        self,
        actor_id: Optional[str] = None,
        target_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Page[AuditEntryView]:
        """Paginated audit entries, newest first."""
        page, page_size, offset = self._bounds(page, page_size)
        with self.database.session_scope() as db:
            items, total = AuditEntryRepository(db).list(
                actor_id=actor_id,
                target_id=target_id,
                action=action.value if action else None,
                offset=offset,
                limit=page_size,
            )
            views = [AuditEntryView.model_validate(item) for item in items]
        return Page[AuditEntryView](items=views, total=total, page=page, page_size=page_size)

    def recent_failures(self, email: str, minutes: int = 15) -> int:
        """Failed login attempts for an email in the last N minutes."""
        since = self.clock.now() - timedelta(minutes=minutes)
        with self.database.session_scope() as db:
            return LoginAttemptRepository(db).count_failures_for_email(email.strip().lower(), since)
