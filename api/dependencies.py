"""
Service wiring and FastAPI dependencies.

Services are built once per application from Settings and stored on
app.state; endpoints receive them through Depends().
"""
import logging
from typing import Optional

from fastapi import Depends, Header, Request

from auth.auth_middleware import Actor, AuthMiddleware, Permissions, require_permission
from auth.clock import Clock, Deadline, RequestContext
from auth.credentials import CredentialService
from auth.jwt_handler import JWTConfig, TokenMinter
from auth.login_flow import LoginFlow
from auth.mailer import LoggingMailer, Mailer
from auth.mfa_policy import MfaRequirementService, PolicyStore
from auth.password_hasher import PasswordHasher
from auth.password_reset import PasswordResetManager
from auth.session_manager import SessionManager
from auth.two_factor import (
    BACKUP_CODE_ITERATIONS,
    BackupCodeManager,
    MfaEnrollmentManager,
    SecretCipher,
    TotpVerifier,
)
from auth.user_manager import PrincipalService
from auth.verification_codes import CodeStore
from config.settings import Settings
from control_plane.admin_manager import AdminService
from database.connection import Database
from security.audit_logger import BackgroundSink, EventRecorder, EventSink
from security.rate_limiter import RateLimiter
from security.threat_detection import ThreatDetector

logger = logging.getLogger(__name__)


class Services:
    """Every core service, wired from one Settings object."""

    def __init__(
        self,
        settings: Settings,
        database: Optional[Database] = None,
        clock: Optional[Clock] = None,
        mailer: Optional[Mailer] = None,
        sink: Optional[EventSink] = None,
        rate_limiter: Optional[RateLimiter] = None,
        hasher: Optional[PasswordHasher] = None,
        backup_code_iterations: int = BACKUP_CODE_ITERATIONS,
    ):
        """
        Build the service graph.

        Args:
            settings: Process configuration
            database: Relational store (built from settings.database_url if omitted)
            clock: Time source
            mailer: Outbound mail (logging mailer if omitted)
            sink: Event sink (background sink if omitted)
            rate_limiter: Rate limiter (built from settings.rate_limiter_url if omitted)
            hasher: Password hasher (built from settings.kdf_cost if omitted)
            backup_code_iterations: PBKDF2 iterations for stored backup codes
        """
        self.settings = settings
        self.clock = clock or Clock()
        self.database = database or Database(settings.database_url)
        self.mailer = mailer or LoggingMailer()

        self.hasher = hasher or PasswordHasher(time_cost=settings.kdf_cost)
        self.minter = TokenMinter(
            JWTConfig(
                signing_key_current=settings.signing_key_current,
                signing_key_previous=settings.signing_key_previous,
                signing_key_grace_seconds=settings.signing_key_grace,
                access_ttl_seconds=settings.access_ttl,
                refresh_ttl_seconds=settings.refresh_ttl,
                challenge_ttl_seconds=settings.challenge_ttl,
                issuer=settings.token_issuer,
                audience=settings.token_audience,
            ),
            self.clock,
        )

        self.events = EventRecorder(self.database, self.clock, sink or BackgroundSink(settings.event_sink_size))
        self.rate_limiter = rate_limiter or RateLimiter.from_url(settings.rate_limiter_url, self.clock)
        self.code_store = CodeStore(self.database, self.clock)
        self.sessions = SessionManager(
            self.database,
            self.clock,
            inactivity_timeout_seconds=settings.inactivity_timeout,
            session_ttl_seconds=settings.refresh_ttl,
        )
        self.policy_store = PolicyStore(self.database, self.clock)
        self.requirements = MfaRequirementService(self.database, self.policy_store, self.clock)
        self.credentials = CredentialService(self.database, self.minter, self.sessions, self.events, self.clock)

        self.principals = PrincipalService(
            self.database, self.hasher, self.code_store, self.credentials, self.events,
            self.rate_limiter, self.mailer, self.clock,
        )
        self.password_reset = PasswordResetManager(
            self.principals, self.code_store, self.rate_limiter, self.mailer, self.clock,
        )

        self.backup_codes = BackupCodeManager(self.database, self.clock, iterations=backup_code_iterations)
        self.enrollment = MfaEnrollmentManager(
            self.database,
            TotpVerifier(settings.totp_issuer, self.clock),
            SecretCipher(settings.encryption_key_material),
            self.backup_codes,
            self.code_store,
            self.hasher,
            self.events,
            self.policy_store,
            self.mailer,
            self.clock,
        )
        self.threats = ThreatDetector(self.database, self.events, self.clock)

        self.login = LoginFlow(
            self.database,
            self.hasher,
            self.minter,
            self.policy_store,
            self.requirements,
            self.sessions,
            self.credentials,
            self.enrollment,
            self.backup_codes,
            self.code_store,
            self.events,
            self.threats,
            self.rate_limiter,
            self.clock,
        )
        self.middleware = AuthMiddleware(self.credentials)
        self.admin = AdminService(
            self.database, self.principals, self.credentials, self.policy_store, self.events, self.clock,
        )

    def close(self) -> None:
        """Drain the event sink and release connections."""
        self.events.sink.flush()
        self.events.sink.close()
        self.database.dispose()


def get_services(request: Request) -> Services:
    return request.app.state.services


def client_ip(request: Request) -> str:
    """Client IP (first X-Forwarded-For hop when behind a proxy)."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "0.0.0.0"


def get_request_context(request: Request, services: Services = Depends(get_services)) -> RequestContext:
    """Network origin, device and deadline of the current request."""
    return RequestContext(
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        location=request.headers.get("x-client-location"),
        deadline=Deadline.after(services.settings.request_deadline, services.clock),
    )


def get_current_actor(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
) -> Actor:
    """
    Resolve the bearer token to an actor (token, epoch and session checks).

    Raises:
        AuthError: invalid_credentials, session_expired or session_forbidden
    """
    return services.middleware.authenticate_request(authorization, ctx)


def requires(permission: str):
    """Dependency factory: the current actor must hold a permission."""

    def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        require_permission(actor, permission)
        return actor

    return dependency


require_admin = requires(Permissions.READ_USERS)
