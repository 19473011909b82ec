"""Authentication and authorization.

Tokens are issued by the tenant directory; this service only verifies them
and turns the claims into a Principal.
"""
from dataclasses import dataclass
from typing import Optional
import logging
import time
from uuid import UUID
from jose import JWTError, jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from .config import settings
from .domain_errors import AccessDenied, AuthenticationRequired

logger = logging.getLogger(__name__)

# Bearer token scheme (missing header -> 401 via our own error, not FastAPI's 403)
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as asserted by the directory token."""

    user_id: UUID
    tenant_id: Optional[UUID]
    role: str

    @property
    def is_site_admin(self) -> bool:
        return self.role == "site_admin"


def decode_token(token: str) -> dict:
    """Decode JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        raise AuthenticationRequired()

    now = int(time.time())
    exp = payload.get("exp")
    if exp is None:
        raise AuthenticationRequired()
    try:
        exp_int = int(exp)
    except (TypeError, ValueError):
        raise AuthenticationRequired()
    if now > exp_int + int(settings.JWT_LEEWAY_SECONDS):
        raise AuthenticationRequired("Token expired")

    iat = payload.get("iat")
    if iat is not None:
        try:
            iat_int = int(iat)
        except (TypeError, ValueError):
            raise AuthenticationRequired()
        # Reject tokens issued far in the future (clock skew / malicious tokens).
        if iat_int > now + int(settings.JWT_LEEWAY_SECONDS):
            raise AuthenticationRequired()
    return payload


def _parse_uuid_claim(payload: dict, claim: str, *, required: bool) -> Optional[UUID]:
    value = payload.get(claim)
    if not value:
        if required:
            raise AuthenticationRequired()
        return None
    try:
        return UUID(str(value))
    except ValueError:
        raise AuthenticationRequired()


def principal_from_payload(payload: dict) -> Principal:
    """Build a Principal from verified claims."""
    role = payload.get("role")
    if role not in ROLE_PERMISSIONS:
        raise AuthenticationRequired("Unknown role in token")

    user_id = _parse_uuid_claim(payload, "sub", required=True)
    tenant_id = _parse_uuid_claim(payload, "tenant_id", required=role != "site_admin")
    return Principal(user_id=user_id, tenant_id=tenant_id, role=role)


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    """Get current authenticated principal."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationRequired("Not authenticated")
    payload = decode_token(credentials.credentials)
    return principal_from_payload(payload)


# Permission checks
class PermissionChecker:
    """Check principal permissions based on role."""

    def __init__(self, required_permission: str):
        self.required_permission = required_permission

    def __call__(self, principal: Principal = Depends(get_current_principal)) -> Principal:
        """Check if principal has required permission."""
        if not check_permission(principal, self.required_permission):
            logger.info(
                "Permission %s denied for role %s",
                self.required_permission,
                principal.role,
            )
            raise AccessDenied(f"Permission denied: {self.required_permission} required")
        return principal


# Role permissions matrix
ROLE_PERMISSIONS = {
    "site_admin": {
        "canAnswerQuestions": True,
        "canOverrideStage": True,
        "canManageStages": True,
        "canManageGlobalStages": True,
        "canManageTasks": True,
        "canViewTasks": True,
        "canViewAudit": True,
    },
    "owner": {
        "canAnswerQuestions": True,
        "canOverrideStage": True,
        "canManageStages": True,
        "canManageGlobalStages": False,
        "canManageTasks": True,
        "canViewTasks": True,
        "canViewAudit": True,
    },
    "admin": {
        "canAnswerQuestions": True,
        "canOverrideStage": False,
        "canManageStages": True,
        "canManageGlobalStages": False,
        "canManageTasks": True,
        "canViewTasks": True,
        "canViewAudit": True,
    },
    "foreman": {
        "canAnswerQuestions": True,
        "canOverrideStage": False,
        "canManageStages": False,
        "canManageGlobalStages": False,
        "canManageTasks": True,
        "canViewTasks": True,
        "canViewAudit": True,
    },
    "worker": {
        "canAnswerQuestions": True,
        "canOverrideStage": False,
        "canManageStages": False,
        "canManageGlobalStages": False,
        "canManageTasks": True,
        "canViewTasks": True,
        "canViewAudit": False,
    },
    "client": {
        "canAnswerQuestions": False,
        "canOverrideStage": False,
        "canManageStages": False,
        "canManageGlobalStages": False,
        "canManageTasks": False,
        "canViewTasks": True,
        "canViewAudit": False,
    },
}


def check_permission(principal: Principal, permission: str) -> bool:
    """Check if principal has specific permission."""
    permissions = ROLE_PERMISSIONS.get(principal.role, {})
    return permissions.get(permission, False)
