"""
Canonical permissions matrix for autonomous action governance.

IMPORTANT: This is the single source of truth for all permissions.
All permission checks MUST reference these constants.
UI permission gating is UX only - server-side enforcement is security.

Role Hierarchy:
- Merchant roles: MERCHANT_ADMIN > MERCHANT_VIEWER (single tenant access)
- Agency roles: AGENCY_ADMIN > AGENCY_VIEWER (acting on a client store)
- SUPER_ADMIN: platform-level administrative override
- AUTOMATION_AGENT: proposal source service account (submit only)
"""

from enum import Enum
from typing import FrozenSet

from autopilot.models.base import assert_exhaustive


class Role(str, Enum):
    """User roles carried in the JWT."""
    MERCHANT_ADMIN = "merchant_admin"
    MERCHANT_VIEWER = "merchant_viewer"
    AGENCY_ADMIN = "agency_admin"
    AGENCY_VIEWER = "agency_viewer"
    SUPER_ADMIN = "super_admin"
    # Service account used by the proposal source
    AUTOMATION_AGENT = "automation_agent"


class Permission(str, Enum):
    """
    All permissions in the governance service.

    Naming convention: RESOURCE_ACTION
    """
    APPROVALS_VIEW = "approvals:view"
    APPROVALS_DECIDE = "approvals:decide"
    APPROVALS_AUDIT = "approvals:audit"
    APPROVALS_EXECUTE = "approvals:execute"  # Retry execution of approved actions

    AUTOMATION_SETTINGS_VIEW = "automation:settings:view"
    AUTOMATION_SETTINGS_MANAGE = "automation:settings:manage"

    PROPOSALS_SUBMIT = "proposals:submit"  # Proposal source (agent service account)


_VIEW = frozenset({
    Permission.APPROVALS_VIEW,
    Permission.APPROVALS_AUDIT,
    Permission.AUTOMATION_SETTINGS_VIEW,
})

_ADMIN = _VIEW | frozenset({
    Permission.APPROVALS_DECIDE,
    Permission.APPROVALS_EXECUTE,
    Permission.AUTOMATION_SETTINGS_MANAGE,
})


ROLE_PERMISSIONS: dict[Role, FrozenSet[Permission]] = {
    Role.MERCHANT_ADMIN: _ADMIN,
    Role.AGENCY_ADMIN: _ADMIN,
    Role.MERCHANT_VIEWER: _VIEW,
    Role.AGENCY_VIEWER: _VIEW,
    Role.SUPER_ADMIN: frozenset(Permission),
    Role.AUTOMATION_AGENT: frozenset({Permission.PROPOSALS_SUBMIT}),
}

assert_exhaustive(ROLE_PERMISSIONS, Role, "ROLE_PERMISSIONS")


def get_permissions_for_roles(roles: list[str]) -> set[Permission]:
    """Union of permissions for role names from the JWT. Unknown names are ignored."""
    permissions: set[Permission] = set()
    for role_name in roles:
        try:
            role = Role(role_name.lower())
        except ValueError:
            continue
        permissions.update(ROLE_PERMISSIONS[role])
    return permissions


def roles_have_permission(roles: list[str], permission: Permission) -> bool:
    return permission in get_permissions_for_roles(roles)


def can_decide_approvals(roles: list[str]) -> bool:
    """Check if any of the given roles can approve/reject pending actions."""
    return roles_have_permission(roles, Permission.APPROVALS_DECIDE)


def can_manage_automation_settings(roles: list[str]) -> bool:
    return roles_have_permission(roles, Permission.AUTOMATION_SETTINGS_MANAGE)
