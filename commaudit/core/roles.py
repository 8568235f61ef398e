"""Caller roles and organization scoping.

Roles:
- DIRECTOR: organization director, sees own organization's communications
- FINANCE: organization finance user, sees own organization's communications
- staff (``Settings.staff_role``): manufacturer staff, cross-organization view
"""
from __future__ import annotations

from uuid import UUID

from commaudit.core.errors import ValidationError
from commaudit.core.settings import get_settings

ORGANIZATION_ROLES = ["Director", "Finance"]


def staff_role() -> str:
    return get_settings().staff_role


def valid_roles() -> frozenset[str]:
    return frozenset(ORGANIZATION_ROLES) | {staff_role()}


def is_staff(role: str | None) -> bool:
    return role is not None and role == staff_role()


def scope_organization(
    role: str | None,
    caller_organization_id: UUID | None,
    requested_organization_id,
):
    """Return the organization filter a caller is allowed to use.

    Staff may pass any organization id, or ``None`` for a cross-organization
    view; the requested value is returned untouched.  Every other role is
    forced to its own organization regardless of what was requested, and
    fails with ``ValidationError`` when it has none.
    """
    if is_staff(role):
        return requested_organization_id
    if caller_organization_id is None:
        raise ValidationError(
            "organizationId is required for organization-scoped callers",
            field="organizationId",
        )
    return caller_organization_id
