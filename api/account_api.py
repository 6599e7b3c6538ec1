"""
FastAPI endpoints for the authenticated principal's own account.

Endpoints:
- Sessions and trusted devices
- Login history and security events
- Password change
- MFA enrollment (TOTP, email, alternate email, backup codes)
- Linked identities
- Mail delivery test
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr

from api.dependencies import Services, get_current_actor, get_request_context, get_services
from api.responses import ok
from auth.auth_middleware import Actor
from auth.clock import RequestContext
from auth.mfa_policy import MfaMethod
from security.audit_logger import Severity

logger = logging.getLogger(__name__)

router = APIRouter(tags=["account"])


# ============================================================
# Request/Response Models
# ============================================================

class PasswordChangeRequest(BaseModel):
    """Password change request."""
    current_password: str
    new_password: str


class CodeRequest(BaseModel):
    code: str


class PasswordConfirmRequest(BaseModel):
    """Re-authentication for sensitive MFA changes."""
    password: str


class AlternateEmailRequest(BaseModel):
    email: EmailStr


class PreferredMethodRequest(BaseModel):
    method: MfaMethod


# ============================================================
# Sessions
# ============================================================

@router.get("/sessions")
def list_sessions(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    """List active sessions; the caller's own session is flagged is_current."""
    sessions = services.sessions.list_for(actor.principal_id, actor.session_id)
    return ok(sessions)


@router.delete("/sessions/{session_id}")
def revoke_session(
    session_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Revoke another session of the caller."""
    services.sessions.revoke(session_id, actor.principal_id, actor.session_id, reason="user_revoked", ctx=ctx)
    return ok(message="Session revoked")


@router.post("/sessions/revoke-others")
def revoke_other_sessions(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Revoke every session except the current one."""
    count = services.sessions.revoke_all_except(actor.principal_id, actor.session_id, "revoke_others", ctx)
    return ok({"revoked_count": count})


@router.get("/sessions/trusted-devices")
def list_trusted_devices(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return ok(services.sessions.list_trusted(actor.principal_id))


@router.delete("/sessions/trusted-devices")
def clear_trusted_devices(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    """Forget every trusted device; the next login will ask for MFA again."""
    count = services.sessions.clear_trust(actor.principal_id)
    return ok({"cleared_count": count})


# ============================================================
# Security history
# ============================================================

@router.get("/security/login-history")
def login_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    """Paginated login attempts, newest first."""
    return ok(services.events.login_history(actor.principal_id, page, page_size))


@router.get("/security/login-statistics")
def login_statistics(
    days: int = Query(30, ge=1, le=365),
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return ok(services.events.login_statistics(actor.principal_id, days))


@router.get("/security/events")
def security_events(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    severity: Optional[Severity] = Query(None),
    unacknowledged: bool = Query(False),
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    """Paginated security events, optionally filtered by severity or acknowledgement."""
    events = services.events.security_events(
        actor.principal_id, page, page_size, severity=severity, unacknowledged_only=unacknowledged
    )
    return ok(events)


@router.post("/security/events/{event_id}/acknowledge")
def acknowledge_event(
    event_id: int,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    services.events.acknowledge(event_id, actor.principal_id)
    return ok(message="Event acknowledged")


# ============================================================
# Account
# ============================================================

@router.get("/account/me")
def get_me(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return ok(services.principals.get(actor.principal_id))


@router.post("/account/password")
def change_password(
    request_data: PasswordChangeRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Change password.

    Every session is revoked, including the current one; the caller must
    log in again.
    """
    count = services.principals.change_password(
        actor.principal_id, request_data.current_password, request_data.new_password, ctx
    )
    return ok({"revoked_count": count}, message="Password changed successfully")


@router.get("/account/identities")
def list_identities(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return ok(services.principals.list_identities(actor.principal_id))


@router.delete("/account/identities/{provider}")
def unlink_identity(
    provider: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    services.principals.unlink_identity(actor.principal_id, provider)
    return ok(message=f"{provider} unlinked")


@router.post("/account/test-email")
def send_test_email(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Send a test message to the caller's primary email."""
    recipient = services.principals.send_test_email(actor.principal_id, ctx)
    return ok({"to": recipient}, message="Test email sent")


# ============================================================
# MFA enrollment
# ============================================================

@router.get("/account/mfa")
def mfa_status(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return ok(services.enrollment.status(actor.principal_id))


@router.post("/account/mfa/totp/setup")
def setup_totp(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Setup TOTP (authenticator app) 2FA.

    Returns the secret and provisioning URI for the authenticator app.
    """
    return ok(services.enrollment.begin_totp_setup(actor.principal_id, ctx))


@router.post("/account/mfa/totp/confirm")
def confirm_totp(
    request_data: CodeRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Enable TOTP after verifying a first code. Backup codes are shown once."""
    backup_codes = services.enrollment.confirm_totp_setup(actor.principal_id, request_data.code, ctx)
    return ok({"backup_codes": backup_codes}, message="TOTP enabled")


@router.post("/account/mfa/totp/disable")
def disable_totp(
    request_data: PasswordConfirmRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    services.enrollment.disable_totp(actor.principal_id, request_data.password, ctx)
    return ok(message="TOTP disabled")


@router.post("/account/mfa/email/setup")
def setup_email_mfa(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    return ok(services.enrollment.begin_email_setup(actor.principal_id, ctx), message="Verification code sent")


@router.post("/account/mfa/email/confirm")
def confirm_email_mfa(
    request_data: CodeRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    backup_codes = services.enrollment.confirm_email_setup(actor.principal_id, request_data.code, ctx)
    return ok({"backup_codes": backup_codes}, message="Email 2FA enabled")


@router.post("/account/mfa/email/disable")
def disable_email_mfa(
    request_data: PasswordConfirmRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    services.enrollment.disable_email(actor.principal_id, request_data.password, ctx)
    return ok(message="Email 2FA disabled")


@router.post("/account/mfa/alternate-email")
def set_alternate_email(
    request_data: AlternateEmailRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Register an alternate address for MFA codes; a confirmation code is sent to it."""
    delivery = services.enrollment.set_alternate_email(actor.principal_id, request_data.email, ctx)
    return ok(delivery, message="Verification code sent")


@router.post("/account/mfa/alternate-email/verify")
def verify_alternate_email(
    request_data: CodeRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    address = services.enrollment.verify_alternate_email(actor.principal_id, request_data.code, ctx)
    return ok({"alternate_email": address}, message="Alternate email verified")


@router.put("/account/mfa/preferred-method")
def set_preferred_method(
    request_data: PreferredMethodRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    services.enrollment.set_preferred_method(actor.principal_id, request_data.method)
    return ok(message="Preferred method updated")


@router.post("/account/mfa/backup-codes")
def regenerate_backup_codes(
    request_data: PasswordConfirmRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Replace every backup code. The new set is shown once."""
    backup_codes = services.enrollment.regenerate_backup_codes(actor.principal_id, request_data.password, ctx)
    return ok({"backup_codes": backup_codes})
