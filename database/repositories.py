"""
Database repositories for the identity core.

Implements the repository pattern over a caller-owned session. Repositories
flush but never commit: the unit of work belongs to Database.session_scope().
Conditional writes (compare-and-set) return whether this caller won.
"""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from database.models import (
    AuditEntryModel,
    BackupCodeModel,
    LinkedIdentityModel,
    LoginAttemptModel,
    MfaChallengeModel,
    MfaEnrollmentModel,
    MfaPolicyModel,
    MfaRolePolicyModel,
    PrincipalModel,
    RefreshFamilyModel,
    SecurityEventModel,
    SessionModel,
    VerificationCodeModel,
)


class PrincipalRepository:
    """Principal repository for database operations."""

    SORT_COLUMNS = {
        "created_at": PrincipalModel.created_at,
        "email": PrincipalModel.email,
        "handle": PrincipalModel.handle,
    }

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def create(self, principal_data: dict) -> PrincipalModel:
        """Create new principal."""
        principal = PrincipalModel(**principal_data)
        self.db.add(principal)
        self.db.flush()
        return principal

    def get_by_id(self, principal_id: str) -> Optional[PrincipalModel]:
        """Get principal by ID."""
        return self.db.query(PrincipalModel).filter(
            PrincipalModel.principal_id == principal_id
        ).first()

    def get_by_email(self, email: str) -> Optional[PrincipalModel]:
        """Get principal by email (case-insensitive)."""
        return self.db.query(PrincipalModel).filter(
            PrincipalModel.email == email.strip().lower()
        ).first()

    def get_by_handle(self, handle: str) -> Optional[PrincipalModel]:
        """Get principal by handle."""
        return self.db.query(PrincipalModel).filter(PrincipalModel.handle == handle).first()

    def search(
        self,
        role: Optional[str] = None,
        status: str = "all",
        search: Optional[str] = None,
        sort_by: str = "created_at",
        descending: bool = True,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[PrincipalModel], int]:
        """Filtered, sorted page of principals plus total count."""
        query = self.db.query(PrincipalModel)

        if role:
            query = query.filter(PrincipalModel.role == role)

        if status == "active":
            query = query.filter(PrincipalModel.is_active.is_(True))
        elif status == "inactive":
            query = query.filter(
                PrincipalModel.is_active.is_(False),
                PrincipalModel.archived_at.is_(None),
            )
        elif status == "archived":
            query = query.filter(
                PrincipalModel.archived_at.isnot(None),
                PrincipalModel.anonymized_at.is_(None),
            )
        elif status == "anonymized":
            query = query.filter(PrincipalModel.anonymized_at.isnot(None))

        if search:
            pattern = f"%{search.strip().lower()}%"
            query = query.filter(
                or_(
                    func.lower(PrincipalModel.email).like(pattern),
                    func.lower(PrincipalModel.handle).like(pattern),
                )
            )

        total = query.count()

        column = self.SORT_COLUMNS.get(sort_by, PrincipalModel.created_at)
        order = column.desc() if descending else column.asc()

        items = query.order_by(order, PrincipalModel.principal_id).offset(offset).limit(limit).all()
        return items, total

    def count_by_role(self) -> Dict[str, int]:
        """Count active principals per role."""
        rows = self.db.query(PrincipalModel.role, func.count(PrincipalModel.principal_id)).filter(
            PrincipalModel.is_active.is_(True)
        ).group_by(PrincipalModel.role).all()
        return {role: count for role, count in rows}

    def list_active(self) -> List[PrincipalModel]:
        """All active principals."""
        return self.db.query(PrincipalModel).filter(PrincipalModel.is_active.is_(True)).all()


class LinkedIdentityRepository:
    """Linked identity repository."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, identity_data: dict) -> LinkedIdentityModel:
        identity = LinkedIdentityModel(**identity_data)
        self.db.add(identity)
        self.db.flush()
        return identity

    def get(self, provider: str, provider_subject: str) -> Optional[LinkedIdentityModel]:
        """Get identity by (provider, subject)."""
        return self.db.query(LinkedIdentityModel).filter(
            and_(
                LinkedIdentityModel.provider == provider,
                LinkedIdentityModel.provider_subject == provider_subject
            )
        ).first()

    def list_for(self, principal_id: str) -> List[LinkedIdentityModel]:
        return self.db.query(LinkedIdentityModel).filter(
            LinkedIdentityModel.principal_id == principal_id
        ).order_by(LinkedIdentityModel.linked_at).all()

    def delete(self, principal_id: str, provider: str) -> int:
        return self.db.query(LinkedIdentityModel).filter(
            LinkedIdentityModel.principal_id == principal_id,
            LinkedIdentityModel.provider == provider,
        ).delete(synchronize_session=False)

    def delete_all_for(self, principal_id: str) -> int:
        """Detach every identity of a principal."""
        return self.db.query(LinkedIdentityModel).filter(
            LinkedIdentityModel.principal_id == principal_id
        ).delete(synchronize_session=False)


class MfaEnrollmentRepository:
    """MFA enrollment repository."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, principal_id: str) -> Optional[MfaEnrollmentModel]:
        return self.db.query(MfaEnrollmentModel).filter(
            MfaEnrollmentModel.principal_id == principal_id
        ).first()

    def get_or_create(self, principal_id: str, now: datetime) -> MfaEnrollmentModel:
        """Get the enrollment row, creating an empty one if absent."""
        enrollment = self.get(principal_id)
        if enrollment is None:
            enrollment = MfaEnrollmentModel(principal_id=principal_id, updated_at=now)
            self.db.add(enrollment)
            self.db.flush()
        return enrollment

    def record_failure(self, principal_id: str, now: datetime) -> int:
        """Atomically increment failed_attempts; returns the new count."""
        self.db.query(MfaEnrollmentModel).filter(
            MfaEnrollmentModel.principal_id == principal_id
        ).update(
            {
                MfaEnrollmentModel.failed_attempts: MfaEnrollmentModel.failed_attempts + 1,
                MfaEnrollmentModel.version: MfaEnrollmentModel.version + 1,
                MfaEnrollmentModel.updated_at: now,
            },
            synchronize_session=False,
        )
        count = self.db.query(MfaEnrollmentModel.failed_attempts).filter(
            MfaEnrollmentModel.principal_id == principal_id
        ).scalar()
        return count or 0

    def set_lock(self, principal_id: str, locked_until: Optional[datetime],
                 requires_admin: bool, reset_counter: bool, now: datetime) -> None:
        values = {
            MfaEnrollmentModel.locked_until: locked_until,
            MfaEnrollmentModel.lock_requires_admin: requires_admin,
            MfaEnrollmentModel.version: MfaEnrollmentModel.version + 1,
            MfaEnrollmentModel.updated_at: now,
        }
        if reset_counter:
            values[MfaEnrollmentModel.failed_attempts] = 0
        self.db.query(MfaEnrollmentModel).filter(
            MfaEnrollmentModel.principal_id == principal_id
        ).update(values, synchronize_session=False)

    def reset_failures(self, principal_id: str, now: datetime) -> None:
        """Zero the failure counter and clear any lock."""
        self.db.query(MfaEnrollmentModel).filter(
            MfaEnrollmentModel.principal_id == principal_id
        ).update(
            {
                MfaEnrollmentModel.failed_attempts: 0,
                MfaEnrollmentModel.locked_until: None,
                MfaEnrollmentModel.lock_requires_admin: False,
                MfaEnrollmentModel.version: MfaEnrollmentModel.version + 1,
                MfaEnrollmentModel.updated_at: now,
            },
            synchronize_session=False,
        )

    def count_enrolled(self) -> Dict[str, int]:
        """Enrollment counts per method."""
        totp = self.db.query(func.count(MfaEnrollmentModel.principal_id)).filter(
            MfaEnrollmentModel.totp_enabled.is_(True)
        ).scalar()
        email = self.db.query(func.count(MfaEnrollmentModel.principal_id)).filter(
            MfaEnrollmentModel.email_2fa_enabled.is_(True)
        ).scalar()
        return {"totp": totp or 0, "email": email or 0}

    def enrolled_principal_ids(self) -> List[str]:
        rows = self.db.query(MfaEnrollmentModel.principal_id).filter(
            or_(
                MfaEnrollmentModel.totp_enabled.is_(True),
                MfaEnrollmentModel.email_2fa_enabled.is_(True),
            )
        ).all()
        return [row[0] for row in rows]

    def delete(self, principal_id: str) -> int:
        return self.db.query(MfaEnrollmentModel).filter(
            MfaEnrollmentModel.principal_id == principal_id
        ).delete(synchronize_session=False)


class BackupCodeRepository:
    """Backup code repository."""

    def __init__(self, db: Session):
        self.db = db

    def replace_all(self, principal_id: str, code_hashes: List[str], now: datetime) -> None:
        """Replace the full code set inside the caller's transaction."""
        self.delete_all(principal_id)
        for code_hash in code_hashes:
            self.db.add(BackupCodeModel(principal_id=principal_id, code_hash=code_hash, created_at=now))
        self.db.flush()

    def list_unconsumed(self, principal_id: str) -> List[BackupCodeModel]:
        return self.db.query(BackupCodeModel).filter(
            BackupCodeModel.principal_id == principal_id,
            BackupCodeModel.consumed_at.is_(None),
        ).order_by(BackupCodeModel.id).all()

    def consume(self, code_id: int, now: datetime) -> bool:
        """Mark consumed only if still unconsumed."""
        updated = self.db.query(BackupCodeModel).filter(
            BackupCodeModel.id == code_id,
            BackupCodeModel.consumed_at.is_(None),
        ).update({BackupCodeModel.consumed_at: now}, synchronize_session=False)
        return updated == 1

    def count_unconsumed(self, principal_id: str) -> int:
        return self.db.query(func.count(BackupCodeModel.id)).filter(
            BackupCodeModel.principal_id == principal_id,
            BackupCodeModel.consumed_at.is_(None),
        ).scalar() or 0

    def delete_all(self, principal_id: str) -> int:
        return self.db.query(BackupCodeModel).filter(
            BackupCodeModel.principal_id == principal_id
        ).delete(synchronize_session=False)


class VerificationCodeRepository:
    """Verification code repository."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, code_data: dict) -> VerificationCodeModel:
        code = VerificationCodeModel(**code_data)
        self.db.add(code)
        self.db.flush()
        return code

    def get_open(self, principal_id: str, purpose: str) -> Optional[VerificationCodeModel]:
        """Newest unconsumed code for (principal, purpose)."""
        return self.db.query(VerificationCodeModel).filter(
            VerificationCodeModel.principal_id == principal_id,
            VerificationCodeModel.purpose == purpose,
            VerificationCodeModel.consumed_at.is_(None),
        ).order_by(VerificationCodeModel.id.desc()).first()

    def invalidate_open(self, principal_id: str, purpose: str, now: datetime) -> int:
        """Consume every outstanding code for (principal, purpose)."""
        return self.db.query(VerificationCodeModel).filter(
            VerificationCodeModel.principal_id == principal_id,
            VerificationCodeModel.purpose == purpose,
            VerificationCodeModel.consumed_at.is_(None),
        ).update({VerificationCodeModel.consumed_at: now}, synchronize_session=False)

    def increment_attempts(self, code_id: int) -> None:
        self.db.query(VerificationCodeModel).filter(
            VerificationCodeModel.id == code_id
        ).update(
            {VerificationCodeModel.attempts: VerificationCodeModel.attempts + 1},
            synchronize_session=False,
        )

    def consume(self, code_id: int, now: datetime) -> bool:
        """Mark consumed only if still unconsumed."""
        updated = self.db.query(VerificationCodeModel).filter(
            VerificationCodeModel.id == code_id,
            VerificationCodeModel.consumed_at.is_(None),
        ).update({VerificationCodeModel.consumed_at: now}, synchronize_session=False)
        return updated == 1

    def delete_expired(self, before: datetime) -> int:
        return self.db.query(VerificationCodeModel).filter(
            or_(
                VerificationCodeModel.expires_at < before,
                VerificationCodeModel.consumed_at.isnot(None),
            )
        ).delete(synchronize_session=False)

    def delete_all_for(self, principal_id: str) -> int:
        return self.db.query(VerificationCodeModel).filter(
            VerificationCodeModel.principal_id == principal_id
        ).delete(synchronize_session=False)


class SessionRepository:
    """Session repository."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, session_data: dict) -> SessionModel:
        session = SessionModel(**session_data)
        self.db.add(session)
        self.db.flush()
        return session

    def get(self, session_id: str) -> Optional[SessionModel]:
        return self.db.query(SessionModel).filter(SessionModel.session_id == session_id).first()

    def _active(self, principal_id: str, now: datetime, idle_cutoff: datetime):
        return self.db.query(SessionModel).filter(
            SessionModel.principal_id == principal_id,
            SessionModel.revoked_at.is_(None),
            SessionModel.expires_at > now,
            SessionModel.last_activity_at > idle_cutoff,
        )

    def list_active(self, principal_id: str, now: datetime, idle_cutoff: datetime) -> List[SessionModel]:
        """Active sessions, most recently used first."""
        return self._active(principal_id, now, idle_cutoff).order_by(
            SessionModel.last_activity_at.desc()
        ).all()

    def find_active_by_fingerprint(self, principal_id: str, fingerprint: str,
                                   now: datetime, idle_cutoff: datetime) -> Optional[SessionModel]:
        return self._active(principal_id, now, idle_cutoff).filter(
            SessionModel.fingerprint == fingerprint
        ).order_by(SessionModel.last_activity_at.desc()).first()

    def touch(self, session_id: str, now: datetime) -> None:
        self.db.query(SessionModel).filter(
            SessionModel.session_id == session_id,
            SessionModel.revoked_at.is_(None),
        ).update({SessionModel.last_activity_at: now}, synchronize_session=False)

    def revoke(self, session_id: str, now: datetime, reason: str) -> bool:
        updated = self.db.query(SessionModel).filter(
            SessionModel.session_id == session_id,
            SessionModel.revoked_at.is_(None),
        ).update(
            {SessionModel.revoked_at: now, SessionModel.revoke_reason: reason},
            synchronize_session=False,
        )
        return updated == 1

    def revoke_all_except(self, principal_id: str, keep_id: Optional[str],
                          now: datetime, reason: str) -> List[str]:
        """Revoke all unrevoked sessions but one; returns revoked ids."""
        query = self.db.query(SessionModel).filter(
            SessionModel.principal_id == principal_id,
            SessionModel.revoked_at.is_(None),
        )
        if keep_id:
            query = query.filter(SessionModel.session_id != keep_id)
        sessions = query.all()
        for session in sessions:
            session.revoked_at = now
            session.revoke_reason = reason
        self.db.flush()
        return [session.session_id for session in sessions]

    def list_trusted(self, principal_id: str, now: datetime) -> List[SessionModel]:
        """Unexpired trust entries, oldest first."""
        return self.db.query(SessionModel).filter(
            SessionModel.principal_id == principal_id,
            SessionModel.trusted.is_(True),
            SessionModel.trusted_until > now,
        ).order_by(SessionModel.trusted_at.asc()).all()

    def find_trusted(self, principal_id: str, fingerprint: str, now: datetime) -> Optional[SessionModel]:
        return self.db.query(SessionModel).filter(
            SessionModel.principal_id == principal_id,
            SessionModel.fingerprint == fingerprint,
            SessionModel.trusted.is_(True),
            SessionModel.trusted_until > now,
        ).order_by(SessionModel.trusted_until.desc()).first()

    def clear_trust(self, principal_id: str, session_id: Optional[str] = None) -> int:
        query = self.db.query(SessionModel).filter(
            SessionModel.principal_id == principal_id,
            SessionModel.trusted.is_(True),
        )
        if session_id:
            query = query.filter(SessionModel.session_id == session_id)
        return query.update(
            {
                SessionModel.trusted: False,
                SessionModel.trusted_at: None,
                SessionModel.trusted_until: None,
            },
            synchronize_session=False,
        )

    def redact_for(self, principal_id: str, now: datetime) -> None:
        """Strip device and network details from a principal's sessions."""
        self.db.query(SessionModel).filter(SessionModel.principal_id == principal_id).update(
            {
                SessionModel.ip_address: None,
                SessionModel.location: None,
                SessionModel.user_agent: None,
                SessionModel.device_name: None,
                SessionModel.revoked_at: func.coalesce(SessionModel.revoked_at, now),
            },
            synchronize_session=False,
        )

    def delete_stale(self, before: datetime) -> int:
        """Delete sessions expired or revoked before a cutoff."""
        return self.db.query(SessionModel).filter(
            or_(
                SessionModel.expires_at < before,
                SessionModel.revoked_at < before,
            ),
            or_(SessionModel.trusted.is_(False), SessionModel.trusted_until < before),
        ).delete(synchronize_session=False)

    def fingerprint_seen_since(self, principal_id: str, fingerprint: str,
                               since: datetime, exclude_id: Optional[str] = None) -> bool:
        query = self.db.query(SessionModel.session_id).filter(
            SessionModel.principal_id == principal_id,
            SessionModel.fingerprint == fingerprint,
            SessionModel.last_activity_at >= since,
        )
        if exclude_id:
            query = query.filter(SessionModel.session_id != exclude_id)
        return query.first() is not None


class RefreshFamilyRepository:
    """Refresh family repository."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, family_data: dict) -> RefreshFamilyModel:
        family = RefreshFamilyModel(**family_data)
        self.db.add(family)
        self.db.flush()
        return family

    def get(self, family_id: str) -> Optional[RefreshFamilyModel]:
        return self.db.query(RefreshFamilyModel).filter(RefreshFamilyModel.family_id == family_id).first()

    def rotate(self, family_id: str, expected_version: int, now: datetime) -> bool:
        """Advance the family version only if it still equals expected_version."""
        updated = self.db.query(RefreshFamilyModel).filter(
            RefreshFamilyModel.family_id == family_id,
            RefreshFamilyModel.current_version == expected_version,
            RefreshFamilyModel.revoked_at.is_(None),
        ).update(
            {
                RefreshFamilyModel.current_version: RefreshFamilyModel.current_version + 1,
                RefreshFamilyModel.rotated_at: now,
            },
            synchronize_session=False,
        )
        return updated == 1

    def revoke(self, family_id: str, now: datetime, reason: str) -> bool:
        updated = self.db.query(RefreshFamilyModel).filter(
            RefreshFamilyModel.family_id == family_id,
            RefreshFamilyModel.revoked_at.is_(None),
        ).update(
            {RefreshFamilyModel.revoked_at: now, RefreshFamilyModel.revoke_reason: reason},
            synchronize_session=False,
        )
        return updated == 1

    def revoke_for_sessions(self, session_ids: List[str], now: datetime, reason: str) -> int:
        if not session_ids:
            return 0
        return self.db.query(RefreshFamilyModel).filter(
            RefreshFamilyModel.session_id.in_(session_ids),
            RefreshFamilyModel.revoked_at.is_(None),
        ).update(
            {RefreshFamilyModel.revoked_at: now, RefreshFamilyModel.revoke_reason: reason},
            synchronize_session=False,
        )

    def revoke_all_for(self, principal_id: str, now: datetime, reason: str) -> int:
        return self.db.query(RefreshFamilyModel).filter(
            RefreshFamilyModel.principal_id == principal_id,
            RefreshFamilyModel.revoked_at.is_(None),
        ).update(
            {RefreshFamilyModel.revoked_at: now, RefreshFamilyModel.revoke_reason: reason},
            synchronize_session=False,
        )


class ChallengeRepository:
    """MFA challenge repository."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, challenge_data: dict) -> MfaChallengeModel:
        challenge = MfaChallengeModel(**challenge_data)
        self.db.add(challenge)
        self.db.flush()
        return challenge

    def get(self, jti: str) -> Optional[MfaChallengeModel]:
        return self.db.query(MfaChallengeModel).filter(MfaChallengeModel.jti == jti).first()

    def consume(self, jti: str, now: datetime) -> bool:
        """First caller to consume wins."""
        updated = self.db.query(MfaChallengeModel).filter(
            MfaChallengeModel.jti == jti,
            MfaChallengeModel.consumed_at.is_(None),
        ).update({MfaChallengeModel.consumed_at: now}, synchronize_session=False)
        return updated == 1

    def invalidate_for(self, principal_id: str, now: datetime) -> int:
        return self.db.query(MfaChallengeModel).filter(
            MfaChallengeModel.principal_id == principal_id,
            MfaChallengeModel.consumed_at.is_(None),
        ).update({MfaChallengeModel.consumed_at: now}, synchronize_session=False)

    def delete_expired(self, before: datetime) -> int:
        return self.db.query(MfaChallengeModel).filter(
            MfaChallengeModel.expires_at < before
        ).delete(synchronize_session=False)


class LoginAttemptRepository:
    """Append-only login attempt log."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, attempt_data: dict) -> LoginAttemptModel:
        attempt = LoginAttemptModel(**attempt_data)
        self.db.add(attempt)
        self.db.flush()
        return attempt

    def list_for(self, principal_id: str, offset: int, limit: int) -> Tuple[List[LoginAttemptModel], int]:
        query = self.db.query(LoginAttemptModel).filter(LoginAttemptModel.principal_id == principal_id)
        total = query.count()
        items = query.order_by(
            LoginAttemptModel.created_at.desc(), LoginAttemptModel.id.desc()
        ).offset(offset).limit(limit).all()
        return items, total

    def count_failures_for_email(self, email: str, since: datetime) -> int:
        return self.db.query(func.count(LoginAttemptModel.id)).filter(
            LoginAttemptModel.email == email,
            LoginAttemptModel.success.is_(False),
            LoginAttemptModel.created_at >= since,
        ).scalar() or 0

    def successes_since(self, principal_id: str, since: datetime) -> List[LoginAttemptModel]:
        return self.db.query(LoginAttemptModel).filter(
            LoginAttemptModel.principal_id == principal_id,
            LoginAttemptModel.success.is_(True),
            LoginAttemptModel.created_at >= since,
        ).order_by(LoginAttemptModel.created_at.desc(), LoginAttemptModel.id.desc()).all()

    def statistics(self, principal_id: str, since: datetime) -> Dict[str, int]:
        rows = self.db.query(LoginAttemptModel.success, func.count(LoginAttemptModel.id)).filter(
            LoginAttemptModel.principal_id == principal_id,
            LoginAttemptModel.created_at >= since,
        ).group_by(LoginAttemptModel.success).all()
        counts = {bool(success): count for success, count in rows}
        return {"successful": counts.get(True, 0), "failed": counts.get(False, 0)}

    def redact_for(self, principal_id: str) -> None:
        """Strip PII from a principal's attempts (anonymization)."""
        self.db.query(LoginAttemptModel).filter(LoginAttemptModel.principal_id == principal_id).update(
            {
                LoginAttemptModel.email: None,
                LoginAttemptModel.ip_address: None,
                LoginAttemptModel.user_agent: None,
                LoginAttemptModel.location: None,
            },
            synchronize_session=False,
        )


class SecurityEventRepository:
    """Append-only security event log (acknowledgement is the only update)."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, event_data: dict) -> SecurityEventModel:
        event = SecurityEventModel(**event_data)
        self.db.add(event)
        self.db.flush()
        return event

    def list_for(
        self,
        principal_id: str,
        severity: Optional[str],
        unacknowledged_only: bool,
        offset: int,
        limit: int,
    ) -> Tuple[List[SecurityEventModel], int]:
        query = self.db.query(SecurityEventModel).filter(SecurityEventModel.principal_id == principal_id)
        if severity:
            query = query.filter(SecurityEventModel.severity == severity)
        if unacknowledged_only:
            query = query.filter(SecurityEventModel.acknowledged_at.is_(None))
        total = query.count()
        items = query.order_by(
            SecurityEventModel.created_at.desc(), SecurityEventModel.id.desc()
        ).offset(offset).limit(limit).all()
        return items, total

    def acknowledge(self, event_id: int, principal_id: str, now: datetime) -> bool:
        """Acknowledge an event owned by principal_id."""
        event = self.db.query(SecurityEventModel).filter(
            SecurityEventModel.id == event_id,
            SecurityEventModel.principal_id == principal_id,
        ).first()
        if event is None:
            return False
        if event.acknowledged_at is None:
            event.acknowledged_at = now
            self.db.flush()
        return True

    def redact_for(self, principal_id: str) -> None:
        """Strip network and device details from a principal's events (anonymization)."""
        self.db.query(SecurityEventModel).filter(SecurityEventModel.principal_id == principal_id).update(
            {
                SecurityEventModel.ip_address: None,
                SecurityEventModel.details: {},
            },
            synchronize_session=False,
        )

    def exists_since(self, principal_id: str, event_type: str, since: datetime) -> bool:
        return self.db.query(SecurityEventModel.id).filter(
            SecurityEventModel.principal_id == principal_id,
            SecurityEventModel.event_type == event_type,
            SecurityEventModel.created_at >= since,
        ).first() is not None


class AuditEntryRepository:
    """Append-only admin audit log. There is no update or delete path."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, entry_data: dict) -> AuditEntryModel:
        entry = AuditEntryModel(**entry_data)
        self.db.add(entry)
        self.db.flush()
        return entry

    def list(
        self,
        actor_id: Optional[str] = None,
        target_id: Optional[str] = None,
        action: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[AuditEntryModel], int]:
        query = self.db.query(AuditEntryModel)
        if actor_id:
            query = query.filter(AuditEntryModel.actor_id == actor_id)
        if target_id:
            query = query.filter(AuditEntryModel.target_id == target_id)
        if action:
            query = query.filter(AuditEntryModel.action == action)
        total = query.count()
        items = query.order_by(
            AuditEntryModel.created_at.desc(), AuditEntryModel.id.desc()
        ).offset(offset).limit(limit).all()
        return items, total


class PolicyRepository:
    """MFA policy repository (singleton row plus role rows)."""

    POLICY_ID = 1

    def __init__(self, db: Session):
        self.db = db

    def get(self) -> Optional[MfaPolicyModel]:
        return self.db.query(MfaPolicyModel).filter(MfaPolicyModel.id == self.POLICY_ID).first()

    def save(self, policy_data: dict, now: datetime, updated_by: Optional[str]) -> MfaPolicyModel:
        """Insert or overwrite the singleton policy."""
        policy = self.get()
        if policy is None:
            policy = MfaPolicyModel(id=self.POLICY_ID)
            self.db.add(policy)
        for key, value in policy_data.items():
            setattr(policy, key, value)
        policy.updated_at = now
        policy.updated_by = updated_by
        self.db.flush()
        return policy

    def list_roles(self) -> List[MfaRolePolicyModel]:
        return self.db.query(MfaRolePolicyModel).order_by(MfaRolePolicyModel.role).all()

    def upsert_role(self, role: str, mfa_mode: Optional[str], exempt: bool, now: datetime) -> MfaRolePolicyModel:
        row = self.db.query(MfaRolePolicyModel).filter(MfaRolePolicyModel.role == role).first()
        if row is None:
            row = MfaRolePolicyModel(role=role)
            self.db.add(row)
        row.mfa_mode = mfa_mode
        row.exempt_from_enforcement = exempt
        row.updated_at = now
        self.db.flush()
        return row

    def clear_roles(self) -> int:
        return self.db.query(MfaRolePolicyModel).delete(synchronize_session=False)
