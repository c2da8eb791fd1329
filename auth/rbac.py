"""
auth/rbac.py -- Role-based access control for the four HR roles.

Roles are flat (no inheritance): each role maps to an explicit permission
set. admin holds the wildcard. Self-service operations (own profile, own
sessions, own password) need authentication only and are not listed here.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    admin = "admin"
    hr = "hr"
    manager = "manager"
    employee = "employee"


class Permission(str, Enum):
    USERS_READ = "users:read"
    USERS_CREATE = "users:create"
    USERS_UPDATE = "users:update"
    AUDIT_READ = "audit:read"

    ALL = "*"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.admin: frozenset({Permission.ALL}),
    Role.hr: frozenset({Permission.USERS_READ, Permission.USERS_CREATE, Permission.AUDIT_READ}),
    Role.manager: frozenset({Permission.USERS_READ}),
    Role.employee: frozenset(),
}

ROLE_NAMES: tuple[str, ...] = tuple(r.value for r in Role)


def has_permission(role: str, permission: Permission) -> bool:
    """Return True if role grants permission. Unknown roles grant nothing."""
    try:
        granted = ROLE_PERMISSIONS[Role(role)]
    except ValueError:
        return False
    return Permission.ALL in granted or permission in granted
