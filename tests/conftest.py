"""
Shared fixtures: in-memory SQLite store, manual clock, recording mailer and
a fully wired service graph with cheap hashing parameters.
"""
from typing import List, Optional

import pyotp
import pytest

from api.dependencies import Services
from auth.auth_middleware import Actor
from auth.clock import ManualClock, RequestContext
from auth.mailer import Mailer, MailMessage
from auth.password_hasher import PasswordHasher
from config.settings import Settings
from database.connection import Database
from security.audit_logger import InlineSink

SIGNING_KEY = "test-signing-key-0123456789abcdef0123456789abcdef"
PASSWORD = "Passw0rd!"

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"


class RecordingMailer(Mailer):
    """Keeps every message so tests can read the mailed codes."""

    def __init__(self):
        self.messages: List[MailMessage] = []

    def send(self, message: MailMessage) -> bool:
        self.messages.append(message)
        return True

    def last_code(self, template: Optional[str] = None, to: Optional[str] = None) -> str:
        for message in reversed(self.messages):
            if template is not None and message.template != template:
                continue
            if to is not None and message.to != to:
                continue
            return message.context["code"]
        raise AssertionError(f"No mail sent (template={template}, to={to})")


def make_ctx(ip: str = "198.51.100.10", user_agent: str = CHROME_WINDOWS,
             location: Optional[str] = None) -> RequestContext:
    return RequestContext(ip_address=ip, user_agent=user_agent, location=location)


def totp_code(secret: str, clock: ManualClock) -> str:
    return pyotp.TOTP(secret).at(clock.timestamp())


@pytest.fixture
def clock():
    """Clock pinned to 2024-01-15 12:00 UTC."""
    return ManualClock()


@pytest.fixture
def database():
    """Fresh in-memory database per test."""
    db = Database("sqlite://")
    db.create_tables()
    yield db
    db.drop_tables()
    db.dispose()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", signing_key_current=SIGNING_KEY)


@pytest.fixture
def hasher():
    """Argon2id with test-sized cost."""
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def services(settings, database, clock, mailer, hasher):
    """Every core service wired against the in-memory store."""
    return Services(
        settings,
        database=database,
        clock=clock,
        mailer=mailer,
        sink=InlineSink(),
        hasher=hasher,
        backup_code_iterations=1000,
    )


@pytest.fixture
def alice(services):
    """Registered user alice@example.com."""
    return services.principals.register("alice", "alice@example.com", PASSWORD)


@pytest.fixture
def admin(services):
    """Registered admin and the actor representing it."""
    principal = services.principals.register("admin", "admin@example.com", PASSWORD, role="admin")
    return Actor(principal_id=principal.principal_id, role="admin", session_id="sess_admin", email=principal.email)


@pytest.fixture
def super_admin(services):
    """Registered super_admin and the actor representing it."""
    principal = services.principals.register("root", "root@example.com", PASSWORD, role="super_admin")
    return Actor(
        principal_id=principal.principal_id, role="super_admin", session_id="sess_root", email=principal.email
    )


def enroll_totp(services: Services, principal_id: str, clock: ManualClock) -> tuple:
    """Enable TOTP for a principal; returns (secret, backup_codes)."""
    setup = services.enrollment.begin_totp_setup(principal_id)
    codes = services.enrollment.confirm_totp_setup(principal_id, totp_code(setup.secret, clock))
    return setup.secret, codes
