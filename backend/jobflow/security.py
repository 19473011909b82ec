"""Security helpers (RBAC and multi-tenant scoping)."""

from __future__ import annotations

from uuid import UUID

from .auth import Principal, check_permission
from .domain_errors import AccessDenied


def require_permission(principal: Principal, permission: str) -> None:
    """Enforce a role permission server-side."""
    if not check_permission(principal, permission):
        raise AccessDenied(f"Permission denied: {permission} required")


def can_access_tenant(principal: Principal, tenant_id: UUID | None) -> bool:
    """site_admin crosses tenants; everyone else is confined to their own."""
    if principal.is_site_admin:
        return True
    return tenant_id is not None and principal.tenant_id == tenant_id


def require_tenant_access(principal: Principal, tenant_id: UUID | None) -> None:
    if not can_access_tenant(principal, tenant_id):
        raise AccessDenied("Access denied", code="TENANT_ACCESS_DENIED")


def can_view_task(principal: Principal, task) -> bool:
    """Clients only see tasks flagged as client-visible."""
    if principal.role != "client":
        return True
    return bool(task.client_visible)
