"""Roles, permissions and the acting-user capability.

Permissions are ``resource:action`` strings.  Every role carries a default
set; ``<resource>:manage`` implies every action on that resource, and
SUPER_ADMIN implicitly holds everything.  Individual users may have explicit
grants or denials layered on top of their role.

Service functions never look up "the current user" themselves.  Callers
build an :class:`Actor` once per request and pass it in, and the service
checks the permission it needs against that actor.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import PermissionDenied, ValidationError
from .models import Permission, User, UserPermission, UserStatus, db

logger = logging.getLogger(__name__)


class Role(enum.IntEnum):
    """User roles ranked by privilege; comparisons follow the rank."""

    USER = 0
    MANAGER = 1
    ADMIN = 2
    SUPER_ADMIN = 3

    @classmethod
    def parse(cls, value) -> 'Role':
        if isinstance(value, Role):
            return value
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ValidationError(f"Unknown role: {value}", field='role') from None

    @property
    def display_name(self) -> str:
        return ROLE_DISPLAY_NAMES[self]


ROLE_DISPLAY_NAMES = {
    Role.USER: 'User',
    Role.MANAGER: 'Manager',
    Role.ADMIN: 'Administrator',
    Role.SUPER_ADMIN: 'Super Administrator',
}

ROLE_DESCRIPTIONS = {
    Role.USER: 'Regular user with booking and review capabilities',
    Role.MANAGER: 'Can run the booking workflow and view reports',
    Role.ADMIN: 'Full management access except permission management',
    Role.SUPER_ADMIN: 'Complete system access including permissions',
}

ACTIONS = ('create', 'read', 'update', 'delete', 'manage')

RESOURCES = {
    'users': ACTIONS,
    'vehicles': ACTIONS,
    'bookings': ACTIONS,
    'reviews': ACTIONS,
    'packages': ACTIONS,
    'policies': ACTIONS,
    'payments': ('read', 'update', 'manage'),
    'permissions': ('read', 'manage'),
    'audit_logs': ('read',),
}

ALL_PERMISSIONS = [f"{resource}:{action}"
                   for resource, actions in RESOURCES.items()
                   for action in actions]

ROLE_PERMISSIONS = {
    Role.USER: {
        'vehicles:read', 'packages:read', 'policies:read',
        'bookings:create', 'bookings:read',
        'reviews:create', 'reviews:read', 'reviews:update',
    },
    Role.MANAGER: {
        'vehicles:read', 'vehicles:update', 'packages:read', 'policies:read',
        'bookings:create', 'bookings:read', 'bookings:update',
        'reviews:create', 'reviews:read', 'reviews:update', 'reviews:delete',
        'users:read', 'payments:read', 'payments:update',
    },
    Role.ADMIN: {
        'users:create', 'users:read', 'users:update',
        'vehicles:manage', 'bookings:manage', 'reviews:manage',
        'packages:manage', 'policies:manage', 'payments:manage',
        'audit_logs:read',
    },
    Role.SUPER_ADMIN: set(ALL_PERMISSIONS),
}


def _split(permission: str):
    resource, _, action = permission.partition(':')
    if not resource or action not in ACTIONS:
        raise ValidationError(f"Malformed permission: {permission}", field='permission')
    return resource, action


def role_has_permission(role, permission: str) -> bool:
    role = Role.parse(role)
    if role is Role.SUPER_ADMIN:
        return True
    granted = ROLE_PERMISSIONS.get(role, set())
    resource, _ = _split(permission)
    return permission in granted or f"{resource}:manage" in granted


def can_manage_user(manager_role, target_role) -> bool:
    """Only a strictly higher role may manage a user; only SUPER_ADMIN
    manages SUPER_ADMINs."""
    manager_role, target_role = Role.parse(manager_role), Role.parse(target_role)
    if manager_role is Role.SUPER_ADMIN:
        return True
    if target_role is Role.SUPER_ADMIN:
        return False
    return manager_role > target_role


def can_assign_role(assigner_role, role) -> bool:
    assigner_role, role = Role.parse(assigner_role), Role.parse(role)
    if assigner_role is Role.SUPER_ADMIN:
        return True
    return assigner_role > role


def assignable_roles(assigner_role) -> List[Role]:
    return [role for role in Role if can_assign_role(assigner_role, role)]


def permissions_for_role(role) -> List[str]:
    role = Role.parse(role)
    if role is Role.SUPER_ADMIN:
        return list(ALL_PERMISSIONS)
    return sorted(ROLE_PERMISSIONS[role])


# ---------------------------------------------------------------------------
# Acting user

@dataclass(frozen=True)
class PermissionCheck:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class Actor:
    """The user on whose behalf an operation runs."""

    user_id: int
    role: Role
    status: str = UserStatus.ACTIVE
    # permission name -> granted flag
    overrides: Dict[str, bool] = field(default_factory=dict)

    @classmethod
    def from_user(cls, user: User) -> 'Actor':
        overrides = {up.permission.name: up.granted for up in user.permission_overrides}
        return cls(user_id=user.id, role=Role.parse(user.role),
                   status=user.status, overrides=overrides)

    @property
    def is_staff(self) -> bool:
        return self.role >= Role.MANAGER

    def check(self, permission: str, own_resource: bool = False,
              target_role=None) -> PermissionCheck:
        return check_permission(self, permission, own_resource=own_resource,
                                target_role=target_role)

    def can(self, permission: str, **kwargs) -> bool:
        return self.check(permission, **kwargs).allowed

    def require(self, permission: str, **kwargs) -> None:
        result = self.check(permission, **kwargs)
        if not result.allowed:
            raise PermissionDenied(result.reason or 'Forbidden', permission=permission)


# Actions a user may always take on their own records.
_OWN_RESOURCE_ACTIONS = {
    'users': {'read', 'update'},
    'bookings': {'read'},
    'reviews': {'read', 'update', 'delete'},
}


def check_permission(actor: Actor, permission: str, own_resource: bool = False,
                     target_role=None) -> PermissionCheck:
    """Decide whether ``actor`` may exercise ``permission``.

    Order of evaluation: account status, SUPER_ADMIN, user hierarchy for
    ``users:*`` on another user, own-resource allowances, an explicit
    per-user override, and finally the role defaults.
    """
    resource, action = _split(permission)
    if actor.status != UserStatus.ACTIVE:
        return PermissionCheck(False, f"Account is {actor.status.lower()}")
    if actor.role is Role.SUPER_ADMIN:
        return PermissionCheck(True)
    if target_role is not None and resource == 'users':
        if not can_manage_user(actor.role, target_role):
            return PermissionCheck(False, 'Cannot manage users with equal or higher role')
    if own_resource and action in _OWN_RESOURCE_ACTIONS.get(resource, ()):
        return PermissionCheck(True)

    override = actor.overrides.get(permission)
    if override is False:
        return PermissionCheck(False, f"Permission {permission} explicitly denied for this user")
    if override or actor.overrides.get(f"{resource}:manage"):
        return PermissionCheck(True)
    if role_has_permission(actor.role, permission):
        return PermissionCheck(True)
    return PermissionCheck(False, f"Role {actor.role.name} does not have permission {permission}")


def effective_permissions(user: User) -> List[str]:
    """Role permissions with the user's own grants added and denials removed."""
    perms = set(permissions_for_role(user.role))
    for up in user.permission_overrides:
        if up.granted:
            perms.add(up.permission.name)
        else:
            perms.discard(up.permission.name)
    return sorted(perms)


# ---------------------------------------------------------------------------
# Per-user overrides

def get_or_create_permission(name: str) -> Permission:
    resource, action = _split(name)
    permission = Permission.query.filter_by(name=name).first()
    if permission is None:
        permission = Permission(name=name, resource=resource, action=action,
                                description=f"{action.capitalize()} {resource.replace('_', ' ')}")
        db.session.add(permission)
        db.session.flush()
    return permission


def set_user_permission(user: User, name: str, granted: bool = True) -> UserPermission:
    """Record an explicit grant (or denial) for ``user``. Caller commits."""
    permission = get_or_create_permission(name)
    override = UserPermission.query.filter_by(user_id=user.id,
                                              permission_id=permission.id).first()
    if override is None:
        override = UserPermission(user=user, permission=permission, granted=granted)
        db.session.add(override)
    else:
        override.granted = granted
    logger.info("permission %s %s for user %s", name,
                'granted' if granted else 'denied', user.id)
    return override


def revoke_user_permission(user: User, name: str) -> bool:
    """Drop an override so the user falls back to role defaults."""
    permission = Permission.query.filter_by(name=name).first()
    if permission is None:
        return False
    override = UserPermission.query.filter_by(user_id=user.id,
                                              permission_id=permission.id).first()
    if override is None:
        return False
    user.permission_overrides.remove(override)
    return True


def sync_permission_catalogue() -> int:
    """Make sure every known permission has a row; returns rows created."""
    existing = {p.name for p in Permission.query.all()}
    created = 0
    for name in ALL_PERMISSIONS:
        if name not in existing:
            get_or_create_permission(name)
            created += 1
    return created
