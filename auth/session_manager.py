"""
Session management system.

Features:
- Device-bound sessions keyed by a fingerprint of browser, OS and IP class
- Reuse of an existing session when the same device logs in again
- Inactivity expiry (SESSION_TIMEOUT) and explicit revocation
- Logout from all other devices
- Trusted devices for MFA exemption
- Cleanup of stale rows
"""
import hashlib
import ipaddress
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from auth.clock import Clock, RequestContext, check_deadline, new_id
from auth.errors import AuthError, ErrorKind
from database.connection import Database
from database.models import SessionModel
from database.repositories import RefreshFamilyRepository, SessionRepository

logger = logging.getLogger(__name__)

INACTIVITY_REASON = "inactivity_timeout"


class DeviceInfo(BaseModel):
    """Device/client information derived from a request."""

    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_type: str = "desktop"  # mobile, desktop, tablet
    device_name: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    location: Optional[str] = None

    @classmethod
    def from_context(cls, ctx: RequestContext) -> "DeviceInfo":
        parsed = parse_user_agent(ctx.user_agent or "")
        return cls(
            user_agent=ctx.user_agent,
            ip_address=ctx.ip_address,
            device_type=parsed["device_type"],
            os=parsed["os"],
            browser=parsed["browser"],
            device_name=f"{parsed['browser'] or 'Unknown browser'} on {parsed['os'] or 'unknown OS'}",
            location=ctx.location,
        )

    def summary(self) -> Dict[str, Optional[str]]:
        return {"device_type": self.device_type, "os": self.os, "browser": self.browser}


class SessionView(BaseModel):
    """Session as exposed to callers."""

    model_config = ConfigDict(from_attributes=True)

    session_id: str
    principal_id: str
    device_name: Optional[str] = None
    device_type: str
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    location: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    trusted: bool = False
    trusted_until: Optional[datetime] = None

    is_current: bool = Field(default=False, description="Whether this is the caller's session")
    is_new: bool = Field(default=False, exclude=True, description="Created (not reused) by this login")


def ip_class(ip_address: Optional[str]) -> str:
    """IPv4 /24 or IPv6 /64 network of an address."""
    if not ip_address:
        return "unknown"
    try:
        address = ipaddress.ip_address(ip_address)
    except ValueError:
        return ip_address
    prefix = 24 if address.version == 4 else 64
    return str(ipaddress.ip_network(f"{address}/{prefix}", strict=False))


def device_fingerprint(user_agent: Optional[str], ip_address: Optional[str]) -> str:
    """
    Deterministic device fingerprint.

    Args:
        user_agent: Raw User-Agent header
        ip_address: Client IP

    Returns:
        SHA-256 hex digest of browser family, OS and IP class
    """
    parsed = parse_user_agent(user_agent or "")
    raw = f"{parsed['browser'] or 'unknown'}|{parsed['os'] or 'unknown'}|{ip_class(ip_address)}"
    return hashlib.sha256(raw.encode()).hexdigest()


class SessionManager:
    """Manage device sessions."""

    def __init__(
        self,
        database: Database,
        clock: Optional[Clock] = None,
        inactivity_timeout_seconds: int = 30 * 60,
        session_ttl_seconds: int = 30 * 24 * 60 * 60,
        max_sessions_per_principal: int = 10,
    ):
        """
        Initialize session manager.

        Args:
            database: Relational store
            clock: Time source
            inactivity_timeout_seconds: Idle time after which a session expires
            session_ttl_seconds: Absolute session lifetime
            max_sessions_per_principal: Concurrent session cap
        """
        self.database = database
        self.clock = clock or Clock()
        self.inactivity_timeout = timedelta(seconds=inactivity_timeout_seconds)
        self.session_ttl = timedelta(seconds=session_ttl_seconds)
        self.max_sessions_per_principal = max_sessions_per_principal

    def _idle_cutoff(self, now: datetime) -> datetime:
        return now - self.inactivity_timeout

    @staticmethod
    def _view(session: SessionModel, current_session_id: Optional[str] = None) -> SessionView:
        view = SessionView.model_validate(session)
        view.is_current = session.session_id == current_session_id
        return view

    def create(self, principal_id: str, ctx: RequestContext) -> SessionView:
        """
        Create a session, or reuse the active one for the same device.

        Args:
            principal_id: Owner
            ctx: Request context (device, network, deadline)

        Returns:
            Session view; is_new tells whether a row was created
        """
        check_deadline(ctx)

        now = self.clock.now()
        device = DeviceInfo.from_context(ctx)
        fingerprint = device_fingerprint(ctx.user_agent, ctx.ip_address)

        with self.database.session_scope() as db:
            repo = SessionRepository(db)
            existing = repo.find_active_by_fingerprint(principal_id, fingerprint, now, self._idle_cutoff(now))

            if existing is not None:
                existing.last_activity_at = now
                existing.ip_address = ctx.ip_address
                existing.location = ctx.location or existing.location
                db.flush()
                logger.info(f"Session reused for principal {principal_id}: {existing.session_id}")
                return self._view(existing)

            session = repo.create({
                "session_id": new_id("sess"),
                "principal_id": principal_id,
                "fingerprint": fingerprint,
                "device_name": device.device_name,
                "device_type": device.device_type,
                "browser": device.browser,
                "os": device.os,
                "user_agent": ctx.user_agent,
                "ip_address": ctx.ip_address,
                "location": ctx.location,
                "created_at": now,
                "last_activity_at": now,
                "expires_at": now + self.session_ttl,
            })

            self._enforce_session_limit(repo, principal_id, now)

            view = self._view(session)
            view.is_new = True

        logger.info(
            f"Session created for principal {principal_id}: {view.session_id}, "
            f"expires at {view.expires_at.isoformat()}"
        )

        return view

    def _enforce_session_limit(self, repo: SessionRepository, principal_id: str, now: datetime) -> None:
        """Revoke the least recently used sessions beyond the cap."""
        sessions = repo.list_active(principal_id, now, self._idle_cutoff(now))
        excess = sessions[self.max_sessions_per_principal:]

        for session in excess:
            repo.revoke(session.session_id, now, "session_limit_exceeded")

        if excess:
            RefreshFamilyRepository(repo.db).revoke_for_sessions(
                [s.session_id for s in excess], now, "session_limit_exceeded"
            )
            logger.info(
                f"Enforced session limit for principal {principal_id}: "
                f"revoked {len(excess)} oldest sessions"
            )

    def get(self, session_id: str) -> Optional[SessionView]:
        with self.database.session_scope() as db:
            session = SessionRepository(db).get(session_id)
            return self._view(session) if session else None

    def validate(self, session_id: str, principal_id: str,
                 ctx: Optional[RequestContext] = None) -> SessionView:
        """
        Check that a presented session is usable and record activity.

        Args:
            session_id: Session presented by the caller
            principal_id: Principal the credential belongs to
            ctx: Request context (deadline)

        Returns:
            Session view

        Raises:
            AuthError: session_expired (revoked, expired or idle) or session_forbidden
        """
        check_deadline(ctx)

        now = self.clock.now()

        with self.database.session_scope() as db:
            repo = SessionRepository(db)
            session = repo.get(session_id)

            if session is None or session.revoked_at is not None:
                raise AuthError(ErrorKind.SESSION_EXPIRED)

            if session.principal_id != principal_id:
                raise AuthError(ErrorKind.SESSION_FORBIDDEN)

            if now >= session.expires_at:
                raise AuthError(ErrorKind.SESSION_EXPIRED)

            if now - session.last_activity_at > self.inactivity_timeout:
                repo.revoke(session_id, now, INACTIVITY_REASON)
                RefreshFamilyRepository(db).revoke_for_sessions([session_id], now, INACTIVITY_REASON)
                db.commit()
                logger.info(f"Session {session_id} expired after inactivity")
                raise AuthError(ErrorKind.SESSION_EXPIRED)

            view = self._view(session, current_session_id=session_id)

        self.touch(session_id)
        return view

    def touch(self, session_id: str) -> None:
        """Record activity. Best effort: failures are logged, never raised."""
        try:
            with self.database.session_scope() as db:
                SessionRepository(db).touch(session_id, self.clock.now())
        except SQLAlchemyError:
            logger.warning(f"Could not record activity for session {session_id}", exc_info=True)

    def list_for(self, principal_id: str, current_session_id: Optional[str] = None) -> List[SessionView]:
        """
        List active sessions, most recently used first.

        Args:
            principal_id: Owner
            current_session_id: Session of the caller (flagged is_current)

        Returns:
            Active sessions
        """
        now = self.clock.now()
        with self.database.session_scope() as db:
            sessions = SessionRepository(db).list_active(principal_id, now, self._idle_cutoff(now))
            return [self._view(s, current_session_id) for s in sessions]

    def revoke(self, session_id: str, by_principal: str, current_session_id: Optional[str] = None,
               reason: str = "revoked", ctx: Optional[RequestContext] = None) -> None:
        """
        Revoke one session (and its refresh family).

        Args:
            session_id: Session to revoke
            by_principal: Principal asking for the revocation
            current_session_id: Caller's own session, which cannot be revoked this way
            reason: Revocation reason
            ctx: Request context (deadline)

        Raises:
            AuthError: not_found, session_forbidden or cannot_revoke_current
        """
        check_deadline(ctx)

        if current_session_id is not None and session_id == current_session_id:
            raise AuthError(ErrorKind.CANNOT_REVOKE_CURRENT)

        now = self.clock.now()

        with self.database.session_scope() as db:
            repo = SessionRepository(db)
            session = repo.get(session_id)

            if session is None:
                raise AuthError(ErrorKind.NOT_FOUND, "Session not found")

            if session.principal_id != by_principal:
                logger.warning(f"Principal {by_principal} tried to revoke session of another principal")
                raise AuthError(ErrorKind.SESSION_FORBIDDEN)

            repo.revoke(session_id, now, reason)
            RefreshFamilyRepository(db).revoke_for_sessions([session_id], now, reason)

        logger.info(f"Session revoked: {session_id} for principal {by_principal}, reason: {reason}")

    def revoke_all_except(self, principal_id: str, keep_id: Optional[str],
                          reason: str = "revoked_by_user", ctx: Optional[RequestContext] = None) -> int:
        """
        Revoke every session but one.

        Returns:
            Number of sessions revoked
        """
        check_deadline(ctx)

        now = self.clock.now()

        with self.database.session_scope() as db:
            revoked = SessionRepository(db).revoke_all_except(principal_id, keep_id, now, reason)
            RefreshFamilyRepository(db).revoke_for_sessions(revoked, now, reason)

        logger.info(f"Revoked {len(revoked)} sessions for principal {principal_id}, reason: {reason}")

        return len(revoked)

    def revoke_all(self, principal_id: str, reason: str, ctx: Optional[RequestContext] = None) -> int:
        """Revoke every session of a principal."""
        return self.revoke_all_except(principal_id, None, reason, ctx)

    def find_by_fingerprint(self, principal_id: str, fingerprint: str) -> Optional[SessionView]:
        now = self.clock.now()
        with self.database.session_scope() as db:
            session = SessionRepository(db).find_active_by_fingerprint(
                principal_id, fingerprint, now, self._idle_cutoff(now)
            )
            return self._view(session) if session else None

    # ========== Device trust ==========

    def mark_trusted(self, session_id: str, days: int, max_trusted: int) -> Optional[datetime]:
        """
        Trust a session's device for MFA purposes.

        Args:
            session_id: Session whose fingerprint becomes trusted
            days: Trust duration
            max_trusted: Cap on trusted devices; oldest entries are evicted

        Returns:
            Trust expiry, or None if the session does not exist
        """
        now = self.clock.now()
        trusted_until = now + timedelta(days=days)

        with self.database.session_scope() as db:
            repo = SessionRepository(db)
            session = repo.get(session_id)
            if session is None:
                return None

            # One trust entry per device
            for other in repo.list_trusted(session.principal_id, now):
                if other.fingerprint == session.fingerprint and other.session_id != session_id:
                    repo.clear_trust(session.principal_id, other.session_id)

            session.trusted = True
            session.trusted_at = now
            session.trusted_until = trusted_until
            db.flush()

            trusted = repo.list_trusted(session.principal_id, now)
            overflow = len(trusted) - max_trusted
            for evicted in trusted[:max(0, overflow)]:
                repo.clear_trust(session.principal_id, evicted.session_id)
                logger.info(f"Evicted trusted device {evicted.session_id} for principal {session.principal_id}")

        logger.info(f"Device trusted for session {session_id} until {trusted_until.isoformat()}")

        return trusted_until

    def find_trusted(self, principal_id: str, fingerprint: str) -> Optional[datetime]:
        """Trust expiry for a device, if it is currently trusted."""
        with self.database.session_scope() as db:
            session = SessionRepository(db).find_trusted(principal_id, fingerprint, self.clock.now())
            return session.trusted_until if session else None

    def list_trusted(self, principal_id: str) -> List[SessionView]:
        with self.database.session_scope() as db:
            return [self._view(s) for s in SessionRepository(db).list_trusted(principal_id, self.clock.now())]

    def clear_trust(self, principal_id: str, session_id: Optional[str] = None) -> int:
        """Remove device trust (one session or all)."""
        with self.database.session_scope() as db:
            cleared = SessionRepository(db).clear_trust(principal_id, session_id)

        if cleared:
            logger.info(f"Cleared trust on {cleared} devices for principal {principal_id}")

        return cleared

    def fingerprint_seen(self, principal_id: str, fingerprint: str, days: int = 30,
                         exclude_session_id: Optional[str] = None) -> bool:
        """Whether the device was active for this principal in the last N days."""
        since = self.clock.now() - timedelta(days=days)
        with self.database.session_scope() as db:
            return SessionRepository(db).fingerprint_seen_since(principal_id, fingerprint, since, exclude_session_id)

    def cleanup_expired(self, retention_days: int = 30) -> int:
        """
        Delete sessions expired or revoked more than retention_days ago.

        Returns:
            Number of sessions removed
        """
        cutoff = self.clock.now() - timedelta(days=retention_days)
        with self.database.session_scope() as db:
            removed = SessionRepository(db).delete_stale(cutoff)

        if removed:
            logger.info(f"Cleaned up {removed} expired/revoked sessions")

        return removed


def parse_user_agent(user_agent: str) -> Dict[str, Optional[str]]:
    """
    Parse user agent string to extract device info.

    Args:
        user_agent: User agent string

    Returns:
        Dictionary with device_type, os, browser
    """
    ua_lower = user_agent.lower()

    # Detect device type
    device_type = "desktop"
    if "ipad" in ua_lower or "tablet" in ua_lower or ("android" in ua_lower and "mobile" not in ua_lower):
        device_type = "tablet"
    elif "mobile" in ua_lower or "iphone" in ua_lower:
        device_type = "mobile"

    # Detect OS (iOS and Android before their desktop relatives)
    os = None
    if "iphone" in ua_lower or "ipad" in ua_lower:
        os = "iOS"
    elif "android" in ua_lower:
        os = "Android"
    elif "windows" in ua_lower:
        os = "Windows"
    elif "mac os" in ua_lower or "macos" in ua_lower:
        os = "macOS"
    elif "linux" in ua_lower:
        os = "Linux"

    # Detect browser
    browser = None
    if "edg" in ua_lower:
        browser = "Edge"
    elif "firefox" in ua_lower or "fxios" in ua_lower:
        browser = "Firefox"
    elif "chrome" in ua_lower or "crios" in ua_lower:
        browser = "Chrome"
    elif "safari" in ua_lower:
        browser = "Safari"

    return {
        "device_type": device_type,
        "os": os,
        "browser": browser
    }
