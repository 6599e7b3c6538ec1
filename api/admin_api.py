"""
FastAPI endpoints for administrators.

Endpoints:
- List / view / create / update principals
- Archive, restore, anonymize
- MFA policy (global and per role), unlocks and grace extensions
- Audit log
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from api.dependencies import Services, get_request_context, get_services, require_admin
from api.responses import ok
from auth.auth_middleware import Actor
from auth.clock import RequestContext
from auth.mfa_policy import MfaMode, MfaPolicyUpdate, RolePolicy
from control_plane.admin_manager import (
    DEFAULT_PAGE_SIZE,
    MAX_GRACE_EXTENSION_DAYS,
    MAX_PAGE_SIZE,
    PrincipalCreate,
    PrincipalQuery,
    PrincipalUpdate,
)
from security.audit_logger import AuditAction

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class RolePolicyRequest(BaseModel):
    """Per-role MFA override."""
    mfa_mode: Optional[MfaMode] = None
    exempt_from_enforcement: bool = False


class GraceExtensionRequest(BaseModel):
    days: int = Field(ge=1, le=MAX_GRACE_EXTENSION_DAYS)


# ============================================================
# Principals
# ============================================================

@router.get("/users")
def list_users(
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
    role: Optional[str] = Query(None),
    status_filter: str = Query("all", alias="status"),
    search: Optional[str] = Query(None),
    sort_by: str = Query("created_at", alias="sortBy"),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Paginated principal listing with filters."""
    query = PrincipalQuery(
        page=page,
        page_size=page_size,
        role=role,
        status=status_filter,
        search=search,
        sort_by=sort_by,
        descending=order == "desc",
    )
    return ok(services.admin.list_principals(actor, query))


@router.post("/users", status_code=status.HTTP_201_CREATED)
def create_user(
    request_data: PrincipalCreate,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    return ok(services.admin.create_principal(actor, request_data, ctx), message="User created")


@router.get("/users/{principal_id}")
def get_user(
    principal_id: str,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return ok(services.admin.get_principal(actor, principal_id))


@router.patch("/users/{principal_id}")
def update_user(
    principal_id: str,
    request_data: PrincipalUpdate,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Update handle, email, role or active flag."""
    return ok(services.admin.update_principal(actor, principal_id, request_data, ctx))


@router.post("/users/{principal_id}/archive")
def archive_user(
    principal_id: str,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    return ok(services.admin.archive(actor, principal_id, ctx), message="User archived")


@router.post("/users/{principal_id}/restore")
def restore_user(
    principal_id: str,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    return ok(services.admin.restore(actor, principal_id, ctx), message="User restored")


@router.post("/users/{principal_id}/anonymize")
def anonymize_user(
    principal_id: str,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Irreversibly anonymize an archived principal (super_admin only)."""
    return ok(services.admin.anonymize(actor, principal_id, ctx), message="User anonymized")


@router.post("/users/{principal_id}/mfa/unlock")
def unlock_mfa(
    principal_id: str,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    services.admin.unlock_mfa(actor, principal_id, ctx)
    return ok(message="MFA unlocked")


@router.post("/users/{principal_id}/mfa/grace")
def extend_grace(
    principal_id: str,
    request_data: GraceExtensionRequest,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    deadline = services.admin.extend_grace_period(actor, principal_id, request_data.days, ctx)
    return ok({"grace_until": deadline})


# ============================================================
# MFA policy
# ============================================================

@router.get("/mfa/config")
def get_mfa_config(
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return ok(services.admin.get_policy(actor))


@router.put("/mfa/config")
def update_mfa_config(
    request_data: MfaPolicyUpdate,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    """Partial update; omitted fields keep their current value."""
    return ok(services.admin.update_policy(actor, request_data, ctx), message="MFA policy updated")


@router.post("/mfa/config/reset")
def reset_mfa_config(
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    return ok(services.admin.reset_policy(actor, ctx), message="MFA policy reset to defaults")


@router.put("/mfa/roles/{role}")
def set_role_policy(
    role: str,
    request_data: RolePolicyRequest,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
):
    role_policy = RolePolicy(
        role=role,
        mfa_mode=request_data.mfa_mode,
        exempt_from_enforcement=request_data.exempt_from_enforcement,
    )
    return ok(services.admin.set_role_policy(actor, role_policy, ctx))


@router.get("/mfa/statistics")
def mfa_statistics(
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return ok(services.admin.enforcement_statistics(actor))


# ============================================================
# Audit
# ============================================================

@router.get("/audit")
def list_audit_entries(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
    actor_id: Optional[str] = Query(None),
    target_id: Optional[str] = Query(None),
    action: Optional[AuditAction] = Query(None),
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    entries = services.admin.list_audit_entries(
        actor, actor_id=actor_id, target_id=target_id, action=action, page=page, page_size=page_size
    )
    return ok(entries)
