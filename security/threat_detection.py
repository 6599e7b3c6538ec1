"""
Login threat detection.

Runs after each login outcome and raises user-visible security events:
- new-device: browser, OS and device type not seen on a successful login in 30 days
- new-location: location (or IP network) not seen on a successful login in 30 days
- brute-force: 5 or more failures for an email within 15 minutes

Detection jobs go through the event sink so they never slow down or fail
a login.
"""
import logging
from datetime import timedelta
from typing import List, Optional

from auth.clock import Clock, RequestContext
from auth.session_manager import DeviceInfo, SessionView, ip_class
from database.connection import Database
from database.repositories import LoginAttemptRepository, SecurityEventRepository, SessionRepository
from security.audit_logger import EventRecorder, SecurityEventType, Severity

logger = logging.getLogger(__name__)

LOOKBACK_DAYS = 30
BRUTE_FORCE_THRESHOLD = 5
BRUTE_FORCE_WINDOW_MINUTES = 15


class ThreatDetector:
    """Derive security events from login activity."""

    def __init__(self, database: Database, events: EventRecorder, clock: Optional[Clock] = None,
                 brute_force_threshold: int = BRUTE_FORCE_THRESHOLD,
                 brute_force_window_minutes: int = BRUTE_FORCE_WINDOW_MINUTES):
        self.database = database
        self.events = events
        self.clock = clock or Clock()
        self.brute_force_threshold = brute_force_threshold
        self.brute_force_window = timedelta(minutes=brute_force_window_minutes)

    def on_success(self, principal_id: str, session: SessionView, ctx: RequestContext) -> None:
        """
        Schedule new-device and new-location checks for a successful login.

        Must be called before the login attempt itself is recorded, so the
        check only sees earlier logins.
        """
        if not session.is_new:
            return
        device = DeviceInfo.from_context(ctx)
        self.events.defer(lambda: self.check_new_device(principal_id, session.session_id, device))

    def on_failure(self, email: str, principal_id: Optional[str], ctx: RequestContext) -> None:
        """Schedule a brute-force check after a failed attempt was recorded."""
        self.events.defer(lambda: self.check_brute_force(email, principal_id, ctx.ip_address))

    def check_new_device(self, principal_id: str, session_id: str, device: DeviceInfo) -> List[SecurityEventType]:
        """
        Emit new-device / new-location events for a freshly created session.

        Returns:
            Event types emitted
        """
        since = self.clock.now() - timedelta(days=LOOKBACK_DAYS)

        with self.database.session_scope() as db:
            session = SessionRepository(db).get(session_id)
            if session is None:
                return []
            seen = SessionRepository(db).fingerprint_seen_since(
                principal_id, session.fingerprint, since, exclude_id=session_id
            )
            prior = LoginAttemptRepository(db).successes_since(principal_id, since)
            known_devices = {(p.browser, p.os, p.device_type) for p in prior}
            known_places = {p.location or ip_class(p.ip_address) for p in prior}

        # First login ever is not "new"
        if seen or not prior:
            return []

        emitted = []
        details = {
            "browser": device.browser,
            "os": device.os,
            "device_type": device.device_type,
            "location": device.location,
        }

        if (device.browser, device.os, device.device_type) not in known_devices:
            self.events.write_security_event(
                principal_id, SecurityEventType.NEW_DEVICE, Severity.WARNING, details, device.ip_address
            )
            emitted.append(SecurityEventType.NEW_DEVICE)

        place = device.location or ip_class(device.ip_address)
        if place not in known_places:
            self.events.write_security_event(
                principal_id, SecurityEventType.NEW_LOCATION, Severity.WARNING, details, device.ip_address
            )
            emitted.append(SecurityEventType.NEW_LOCATION)

        return emitted

    def check_brute_force(self, email: str, principal_id: Optional[str],
                          ip_address: Optional[str] = None) -> bool:
        """
        Emit a brute-force event once the failure threshold is reached.

        Returns:
            True if an event was emitted
        """
        since = self.clock.now() - self.brute_force_window
        email = email.strip().lower()

        with self.database.session_scope() as db:
            failures = LoginAttemptRepository(db).count_failures_for_email(email, since)
            if failures < self.brute_force_threshold:
                return False
            if principal_id is None:
                logger.warning(f"Repeated failed logins for unknown account ({failures} in window)")
                return False
            already = SecurityEventRepository(db).exists_since(
                principal_id, SecurityEventType.BRUTE_FORCE.value, since
            )

        if already:
            return False

        self.events.write_security_event(
            principal_id,
            SecurityEventType.BRUTE_FORCE,
            Severity.CRITICAL,
            {
                "failure_count": failures,
                "window_minutes": int(self.brute_force_window.total_seconds() // 60),
            },
            ip_address,
        )
        return True
