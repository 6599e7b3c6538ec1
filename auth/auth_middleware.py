"""
Authentication and authorization checks for API requests.

Integrates with:
- Bearer token validation (signature, expiry, credential epoch)
- Session lookup (inactivity expiry, revocation)
- Role-based access control (RBAC)
"""
import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from auth.clock import RequestContext
from auth.credentials import CredentialService
from auth.errors import AuthError, ErrorKind
from auth.jwt_handler import extract_token_from_header

logger = logging.getLogger(__name__)


# Role definitions
class Roles:
    """Standard role definitions."""

    USER = "user"  # Own account only
    ADMIN = "admin"  # Manage principals and MFA policy
    SUPER_ADMIN = "super_admin"  # Admin plus anonymization and granting super_admin

    ALL = (USER, ADMIN, SUPER_ADMIN)


# Permission definitions
class Permissions:
    """Standard permission definitions."""

    MANAGE_OWN_ACCOUNT = "manage:own_account"

    READ_USERS = "read:users"
    WRITE_USERS = "write:users"
    ARCHIVE_USERS = "archive:users"
    ANONYMIZE_USERS = "anonymize:users"
    GRANT_SUPER_ADMIN = "grant:super_admin"

    READ_MFA_POLICY = "read:mfa_policy"
    WRITE_MFA_POLICY = "write:mfa_policy"
    UNLOCK_MFA = "unlock:mfa"

    READ_AUDIT = "read:audit"


_ADMIN_PERMISSIONS = [
    Permissions.MANAGE_OWN_ACCOUNT,
    Permissions.READ_USERS,
    Permissions.WRITE_USERS,
    Permissions.ARCHIVE_USERS,
    Permissions.READ_MFA_POLICY,
    Permissions.WRITE_MFA_POLICY,
    Permissions.UNLOCK_MFA,
    Permissions.READ_AUDIT,
]

# Role-to-permission mapping
ROLE_PERMISSIONS = {
    Roles.USER: [
        Permissions.MANAGE_OWN_ACCOUNT,
    ],
    Roles.ADMIN: _ADMIN_PERMISSIONS,
    Roles.SUPER_ADMIN: _ADMIN_PERMISSIONS + [
        Permissions.ANONYMIZE_USERS,
        Permissions.GRANT_SUPER_ADMIN,
    ],
}


def get_permissions_for_roles(roles: List[str]) -> List[str]:
    """
    Get all permissions for a list of roles.

    Args:
        roles: List of role names

    Returns:
        Combined list of unique permissions
    """
    permissions = set()

    for role in roles:
        role_perms = ROLE_PERMISSIONS.get(role, [])
        permissions.update(role_perms)

    return list(permissions)


class Actor(BaseModel):
    """Authenticated caller handed to the core."""

    principal_id: str = Field(description="Caller principal")
    role: str = Field(description="Caller role (current, not as issued)")
    session_id: str = Field(description="Caller session")
    email: str = Field(description="Caller email")

    @property
    def permissions(self) -> List[str]:
        return get_permissions_for_roles([self.role])

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


def require_role(actor: Actor, roles: List[str]) -> None:
    """
    Check that the actor has one of the roles.

    Raises:
        AuthError: forbidden
    """
    if actor.role not in roles:
        logger.warning(f"Principal {actor.principal_id} lacks any of required roles: {roles}")
        raise AuthError(ErrorKind.FORBIDDEN)

    logger.debug(f"Principal has one of required roles: {roles}")


def require_permission(actor: Actor, permission: str) -> None:
    """
    Check that the actor holds a permission.

    Raises:
        AuthError: forbidden
    """
    if not actor.has_permission(permission):
        logger.warning(f"Principal {actor.principal_id} lacks required permission: {permission}")
        raise AuthError(ErrorKind.FORBIDDEN)


class AuthMiddleware:
    """Resolve Authorization headers to actors."""

    def __init__(self, credentials: CredentialService):
        """
        Initialize auth middleware.

        Args:
            credentials: Credential service (token and session checks)
        """
        self.credentials = credentials

    def authenticate_request(self, authorization_header: Optional[str],
                             ctx: Optional[RequestContext] = None) -> Actor:
        """
        Authenticate a request from its Authorization header.

        Args:
            authorization_header: Raw header value ("Bearer <token>")
            ctx: Request context

        Returns:
            Actor

        Raises:
            AuthError: invalid_credentials, session_expired or session_forbidden
        """
        token = extract_token_from_header(authorization_header)

        if not token:
            raise AuthError(ErrorKind.INVALID_CREDENTIALS, "Missing authentication token")

        auth = self.credentials.authenticate(token, ctx)

        logger.debug(f"Authenticated request: principal={auth.principal_id}, role={auth.role}")

        return Actor(
            principal_id=auth.principal_id,
            role=auth.role,
            session_id=auth.session_id,
            email=auth.email,
        )
