"""
Credential lifecycle: bearer pairs, refresh rotation, logout.

Refresh tokens belong to a family. Each refresh advances the family's
current_version with a compare-and-set; presenting an older version means
the token leaked, so the whole family is revoked.

Access tokens carry the principal's credential epoch. Bumping the epoch
(logout everywhere, password or role change) invalidates every access
token issued before it.
"""
import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.clock import Clock, RequestContext, check_deadline, new_id
from auth.errors import AuthError, ErrorKind, invalid_credentials
from auth.jwt_handler import AccessClaims, RefreshClaims, TokenError, TokenKind, TokenMinter
from auth.session_manager import SessionManager, SessionView
from database.connection import Database
from database.models import PrincipalModel
from database.repositories import PrincipalRepository, RefreshFamilyRepository, SessionRepository
from security.audit_logger import EventRecorder, SecurityEventType, Severity

logger = logging.getLogger(__name__)

REUSE_REASON = "refresh_reuse_detected"


class Credentials(BaseModel):
    """Bearer credential pair."""

    access_token: str = Field(description="Short-lived access token")
    refresh_token: str = Field(description="Refresh token")
    token_type: str = Field(default="Bearer", description="Token type")
    expires_in: int = Field(description="Access token lifetime in seconds")
    refresh_expires_in: int = Field(description="Refresh token lifetime in seconds")
    session_id: str = Field(description="Session the pair is bound to")


class AuthContext(BaseModel):
    """Authenticated caller resolved from a bearer token."""

    principal_id: str
    role: str
    session_id: str
    email: str
    token_jti: str


class CredentialService:
    """Issue, rotate and revoke credentials."""

    def __init__(
        self,
        database: Database,
        minter: TokenMinter,
        sessions: SessionManager,
        events: EventRecorder,
        clock: Optional[Clock] = None,
    ):
        self.database = database
        self.minter = minter
        self.sessions = sessions
        self.events = events
        self.clock = clock or Clock()

    def _load_active(self, db: Session, principal_id: str) -> PrincipalModel:
        principal = PrincipalRepository(db).get_by_id(principal_id)
        if principal is None or not principal.is_active or principal.archived_at is not None:
            raise invalid_credentials()
        return principal

    def issue(self, principal_id: str, session: SessionView, ctx: Optional[RequestContext] = None) -> Credentials:
        """
        Mint a fresh pair for a session and open a new refresh family.

        Args:
            principal_id: Subject
            session: Session the credentials are bound to
            ctx: Request context (deadline)

        Returns:
            Credentials
        """
        check_deadline(ctx)

        family_id = new_id("fam")

        with self.database.session_scope() as db:
            principal = self._load_active(db, principal_id)
            role, epoch = principal.role, principal.credential_epoch
            RefreshFamilyRepository(db).create({
                "family_id": family_id,
                "principal_id": principal_id,
                "session_id": session.session_id,
                "current_version": 1,
                "created_at": self.clock.now(),
            })

        access = self.minter.mint_access(principal_id, role, session.session_id, epoch, ctx)
        refresh = self.minter.mint_refresh(principal_id, family_id, 1, session.session_id, ctx)

        logger.info(f"Issued credentials for principal {principal_id}, session {session.session_id}")

        return Credentials(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=access.expires_in,
            refresh_expires_in=refresh.expires_in,
            session_id=session.session_id,
        )

    def refresh(self, refresh_token: str, ctx: Optional[RequestContext] = None) -> Credentials:
        """
        Rotate a refresh token.

        Args:
            refresh_token: Presented refresh token
            ctx: Request context

        Returns:
            New access token and refresh token (version + 1)

        Raises:
            AuthError: invalid_credentials (bad token, revoked or reused family),
                session_expired (session idle or revoked)
        """
        check_deadline(ctx)

        try:
            claims: RefreshClaims = self.minter.verify(refresh_token, TokenKind.REFRESH, ctx)
        except TokenError as e:
            logger.warning(f"Refresh rejected: {e.reason}")
            raise invalid_credentials()

        now = self.clock.now()

        with self.database.session_scope() as db:
            repo = RefreshFamilyRepository(db)
            family = repo.get(claims.family)

            if family is None or family.principal_id != claims.sub or family.revoked_at is not None:
                raise invalid_credentials()

            if claims.version != family.current_version or not repo.rotate(claims.family, claims.version, now):
                repo.revoke(claims.family, now, REUSE_REASON)
                db.commit()
                self._reuse_detected(claims, ctx)
                raise invalid_credentials()

            principal = self._load_active(db, claims.sub)
            role, epoch = principal.role, principal.credential_epoch

        # Session must still be usable (inactivity, revocation)
        self.sessions.validate(claims.sid, claims.sub, ctx)

        access = self.minter.mint_access(claims.sub, role, claims.sid, epoch, ctx)
        refresh = self.minter.mint_refresh(claims.sub, claims.family, claims.version + 1, claims.sid, ctx)

        logger.info(f"Refreshed credentials for principal {claims.sub}, family {claims.family} v{claims.version + 1}")

        return Credentials(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=access.expires_in,
            refresh_expires_in=refresh.expires_in,
            session_id=claims.sid,
        )

    def _reuse_detected(self, claims: RefreshClaims, ctx: Optional[RequestContext]) -> None:
        logger.warning(f"Refresh token reuse for principal {claims.sub}, family {claims.family} revoked")
        self.events.record_security_event(
            claims.sub,
            SecurityEventType.SUSPICIOUS,
            Severity.CRITICAL,
            {"reason": REUSE_REASON, "family": claims.family, "presented_version": claims.version},
            ctx.ip_address if ctx else None,
        )

    def logout(self, principal_id: str, session_id: str, ctx: Optional[RequestContext] = None) -> None:
        """Revoke the caller's session and its refresh families."""
        check_deadline(ctx)

        now = self.clock.now()

        with self.database.session_scope() as db:
            session = SessionRepository(db).get(session_id)
            if session is None or session.principal_id != principal_id:
                raise AuthError(ErrorKind.SESSION_FORBIDDEN)
            SessionRepository(db).revoke(session_id, now, "logout")
            RefreshFamilyRepository(db).revoke_for_sessions([session_id], now, "logout")

        logger.info(f"Principal {principal_id} logged out of session {session_id}")

    def logout_everywhere(self, principal_id: str, reason: str = "logout_everywhere",
                          ctx: Optional[RequestContext] = None) -> int:
        """
        Revoke every session and refresh family, clear device trust and bump the epoch.

        Returns:
            Number of sessions revoked
        """
        check_deadline(ctx)

        now = self.clock.now()

        with self.database.session_scope() as db:
            revoked = SessionRepository(db).revoke_all_except(principal_id, None, now, reason)
            RefreshFamilyRepository(db).revoke_all_for(principal_id, now, reason)
            SessionRepository(db).clear_trust(principal_id)
            self.bump_epoch(principal_id, db)

        logger.info(f"Logged out principal {principal_id} everywhere ({len(revoked)} sessions), reason: {reason}")

        return len(revoked)

    def bump_epoch(self, principal_id: str, db: Optional[Session] = None) -> None:
        """Invalidate every access token issued so far for a principal."""
        if db is None:
            with self.database.session_scope() as session:
                return self.bump_epoch(principal_id, session)

        updated = db.query(PrincipalModel).filter(PrincipalModel.principal_id == principal_id).update(
            {
                PrincipalModel.credential_epoch: PrincipalModel.credential_epoch + 1,
                PrincipalModel.version: PrincipalModel.version + 1,
                PrincipalModel.updated_at: self.clock.now(),
            },
            synchronize_session=False,
        )
        if updated != 1:
            raise AuthError(ErrorKind.NOT_FOUND, "User not found")

        logger.info(f"Credential epoch bumped for principal {principal_id}")

    def verify_access(self, token: str, ctx: Optional[RequestContext] = None) -> AccessClaims:
        """
        Verify an access token against the signature, expiry and the principal's epoch.

        Raises:
            AuthError: invalid_credentials
        """
        try:
            claims: AccessClaims = self.minter.verify(token, TokenKind.ACCESS, ctx)
        except TokenError as e:
            logger.debug(f"Access token rejected: {e.reason}")
            raise AuthError(ErrorKind.INVALID_CREDENTIALS, "Invalid or expired token", reason=e.reason)

        with self.database.session_scope() as db:
            principal = self._load_active(db, claims.sub)
            if claims.epoch < principal.credential_epoch:
                logger.info(f"Access token for principal {claims.sub} predates credential epoch")
                raise AuthError(ErrorKind.INVALID_CREDENTIALS, "Invalid or expired token", reason="revoked")

        return claims

    def authenticate(self, token: str, ctx: Optional[RequestContext] = None) -> AuthContext:
        """
        Resolve a bearer token to the caller: token checks plus session lookup.

        Raises:
            AuthError: invalid_credentials, session_expired or session_forbidden
        """
        claims = self.verify_access(token, ctx)
        self.sessions.validate(claims.sid, claims.sub, ctx)

        with self.database.session_scope() as db:
            principal = self._load_active(db, claims.sub)
            role, email = principal.role, principal.email

        return AuthContext(
            principal_id=claims.sub,
            role=role,
            session_id=claims.sid,
            email=email,
            token_jti=claims.jti,
        )

    def touch_login(self, principal_id: str, at: Optional[datetime] = None) -> None:
        """Record the last successful login time."""
        with self.database.session_scope() as db:
            db.query(PrincipalModel).filter(PrincipalModel.principal_id == principal_id).update(
                {PrincipalModel.last_login_at: at or self.clock.now()},
                synchronize_session=False,
            )
