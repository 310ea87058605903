"""
Permission and Role-Based Access Control (RBAC) for Ultra BMS.

This module provides:
- Permission definitions as ``resource:action[:scope]`` strings
- The static role -> permission map
- PermissionResolver, which answers authorization questions against it

The map is an immutable value injected into the resolver, so tests can
swap it. Unknown roles resolve to the empty set, never to "everything".
"""

import uuid
from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType

from bms_auth.models.enums import UserRole


class Permission(str, Enum):
    """Every permission a role can be granted."""

    # User management
    USER_CREATE = "user:create"
    USER_READ = "user:read"
    USER_UPDATE = "user:update"
    USER_DELETE = "user:delete"
    USER_MANAGE_ALL = "user:manage:all"

    # Properties
    PROPERTY_CREATE = "property:create"
    PROPERTY_READ = "property:read"
    PROPERTY_READ_ALL = "property:read:all"
    PROPERTY_READ_ASSIGNED = "property:read:assigned"
    PROPERTY_UPDATE = "property:update"
    PROPERTY_DELETE = "property:delete"

    # Tenants
    TENANT_CREATE = "tenant:create"
    TENANT_READ = "tenant:read"
    TENANT_READ_OWN = "tenant:read:own"
    TENANT_UPDATE = "tenant:update"
    TENANT_DELETE = "tenant:delete"

    # Work orders
    WORKORDER_CREATE = "workorder:create"
    WORKORDER_READ = "workorder:read"
    WORKORDER_UPDATE = "workorder:update"
    WORKORDER_ASSIGN = "workorder:assign"
    WORKORDER_DELETE = "workorder:delete"

    # Vendors
    VENDOR_CREATE = "vendor:create"
    VENDOR_READ = "vendor:read"
    VENDOR_UPDATE = "vendor:update"
    VENDOR_DELETE = "vendor:delete"
    VENDOR_PERFORMANCE = "vendor:performance"

    # Finance
    FINANCIAL_READ = "financial:read"
    FINANCIAL_CREATE = "financial:create"
    FINANCIAL_UPDATE = "financial:update"
    FINANCIAL_REPORT = "financial:report"
    FINANCIAL_PDC = "financial:pdc"

    # Payments
    PAYMENT_PROCESS = "payment:process"
    PAYMENT_REFUND = "payment:refund"
    PAYMENT_MAKE = "payment:make"

    # Amenities
    AMENITY_BOOK = "amenity:book"

    # System
    SYSTEM_ADMIN = "system:admin"
    SYSTEM_CONFIG = "system:config"


class ResourceType(str, Enum):
    """Resource families with a coarse per-type access rule."""

    USER = "user"
    PROPERTY = "property"
    TENANT = "tenant"
    WORKORDER = "workorder"
    VENDOR = "vendor"
    FINANCIAL = "financial"


class ResourceAction(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Role always granted everything, checked before the map
ADMIN_ROLE = UserRole.SUPER_ADMIN

_ROLE_PERMISSIONS: dict[UserRole, frozenset[Permission]] = {
    UserRole.SUPER_ADMIN: frozenset(Permission),
    UserRole.PROPERTY_MANAGER: frozenset(
        {
            Permission.USER_READ,
            Permission.PROPERTY_READ,
            Permission.PROPERTY_READ_ASSIGNED,
            Permission.PROPERTY_UPDATE,
            Permission.TENANT_CREATE,
            Permission.TENANT_READ,
            Permission.TENANT_UPDATE,
            Permission.WORKORDER_CREATE,
            Permission.WORKORDER_READ,
            Permission.WORKORDER_UPDATE,
            Permission.WORKORDER_ASSIGN,
            Permission.VENDOR_READ,
            Permission.FINANCIAL_READ,
            Permission.FINANCIAL_REPORT,
        }
    ),
    UserRole.MAINTENANCE_SUPERVISOR: frozenset(
        {
            Permission.PROPERTY_READ_ASSIGNED,
            Permission.WORKORDER_CREATE,
            Permission.WORKORDER_READ,
            Permission.WORKORDER_UPDATE,
            Permission.WORKORDER_ASSIGN,
            Permission.VENDOR_READ,
            Permission.VENDOR_UPDATE,
            Permission.VENDOR_PERFORMANCE,
        }
    ),
    UserRole.FINANCE_MANAGER: frozenset(
        {
            Permission.PROPERTY_READ,
            Permission.PROPERTY_READ_ALL,
            Permission.TENANT_READ,
            Permission.FINANCIAL_READ,
            Permission.FINANCIAL_CREATE,
            Permission.FINANCIAL_UPDATE,
            Permission.FINANCIAL_REPORT,
            Permission.FINANCIAL_PDC,
            Permission.PAYMENT_PROCESS,
            Permission.PAYMENT_REFUND,
            Permission.VENDOR_READ,
        }
    ),
    UserRole.TENANT: frozenset(
        {
            Permission.TENANT_READ_OWN,
            Permission.WORKORDER_CREATE,
            Permission.WORKORDER_READ,
            Permission.PAYMENT_MAKE,
            Permission.AMENITY_BOOK,
        }
    ),
    UserRole.VENDOR: frozenset(
        {
            Permission.WORKORDER_READ,
            Permission.WORKORDER_UPDATE,
        }
    ),
}

# Read-only view; every UserRole has an entry
ROLE_PERMISSIONS: Mapping[UserRole, frozenset[Permission]] = MappingProxyType(_ROLE_PERMISSIONS)

# Coarse per-resource-type rule: any one of these permissions allows the action
RESOURCE_RULES: Mapping[tuple[ResourceType, ResourceAction], tuple[Permission, ...]] = (
    MappingProxyType(
        {
            (ResourceType.USER, ResourceAction.READ): (Permission.USER_READ,),
            (ResourceType.USER, ResourceAction.CREATE): (Permission.USER_CREATE,),
            (ResourceType.USER, ResourceAction.UPDATE): (Permission.USER_UPDATE,),
            (ResourceType.USER, ResourceAction.DELETE): (Permission.USER_DELETE,),
            (ResourceType.PROPERTY, ResourceAction.READ): (
                Permission.PROPERTY_READ,
                Permission.PROPERTY_READ_ALL,
                Permission.PROPERTY_READ_ASSIGNED,
            ),
            (ResourceType.PROPERTY, ResourceAction.CREATE): (Permission.PROPERTY_CREATE,),
            (ResourceType.PROPERTY, ResourceAction.UPDATE): (Permission.PROPERTY_UPDATE,),
            (ResourceType.PROPERTY, ResourceAction.DELETE): (Permission.PROPERTY_DELETE,),
            (ResourceType.TENANT, ResourceAction.READ): (
                Permission.TENANT_READ,
                Permission.TENANT_READ_OWN,
            ),
            (ResourceType.TENANT, ResourceAction.CREATE): (Permission.TENANT_CREATE,),
            (ResourceType.TENANT, ResourceAction.UPDATE): (Permission.TENANT_UPDATE,),
            (ResourceType.TENANT, ResourceAction.DELETE): (Permission.TENANT_DELETE,),
            (ResourceType.WORKORDER, ResourceAction.READ): (Permission.WORKORDER_READ,),
            (ResourceType.WORKORDER, ResourceAction.CREATE): (Permission.WORKORDER_CREATE,),
            (ResourceType.WORKORDER, ResourceAction.UPDATE): (
                Permission.WORKORDER_UPDATE,
                Permission.WORKORDER_ASSIGN,
            ),
            (ResourceType.WORKORDER, ResourceAction.DELETE): (Permission.WORKORDER_DELETE,),
            (ResourceType.VENDOR, ResourceAction.READ): (Permission.VENDOR_READ,),
            (ResourceType.VENDOR, ResourceAction.CREATE): (Permission.VENDOR_CREATE,),
            (ResourceType.VENDOR, ResourceAction.UPDATE): (Permission.VENDOR_UPDATE,),
            (ResourceType.VENDOR, ResourceAction.DELETE): (Permission.VENDOR_DELETE,),
            (ResourceType.FINANCIAL, ResourceAction.READ): (Permission.FINANCIAL_READ,),
            (ResourceType.FINANCIAL, ResourceAction.CREATE): (Permission.FINANCIAL_CREATE,),
            (ResourceType.FINANCIAL, ResourceAction.UPDATE): (Permission.FINANCIAL_UPDATE,),
        }
    )
)

# Permissions that grant a read on any record of the type / on the caller's own record
_ALL_SCOPE: Mapping[ResourceType, tuple[Permission, ...]] = MappingProxyType(
    {
        ResourceType.USER: (Permission.USER_MANAGE_ALL,),
        ResourceType.PROPERTY: (Permission.PROPERTY_READ_ALL,),
        ResourceType.TENANT: (Permission.TENANT_READ,),
        ResourceType.WORKORDER: (),
        ResourceType.VENDOR: (Permission.VENDOR_READ,),
        ResourceType.FINANCIAL: (Permission.FINANCIAL_READ,),
    }
)
_OWN_SCOPE: Mapping[ResourceType, tuple[Permission, ...]] = MappingProxyType(
    {
        ResourceType.TENANT: (Permission.TENANT_READ_OWN,),
        ResourceType.WORKORDER: (Permission.WORKORDER_READ,),
    }
)


def _permission_value(permission: "Permission | str | None") -> str | None:
    if permission is None:
        return None
    if isinstance(permission, Permission):
        return permission.value
    return str(permission)


class PermissionResolver:
    """
    Answers "does this role have permission P" against a static map.

    The administrator role short-circuits every ``has*`` check to True. It is
    gated on the role name, not on any permission.
    """

    def __init__(
        self,
        role_permissions: Mapping[UserRole, frozenset[Permission]] = ROLE_PERMISSIONS,
        admin_role: UserRole | None = ADMIN_ROLE,
    ):
        self._role_permissions: Mapping[UserRole, frozenset[str]] = MappingProxyType(
            {
                role: frozenset(p.value for p in role_permissions.get(role, frozenset()))
                for role in UserRole
            }
        )
        self.admin_role = admin_role

    def permissions_for(self, role: "UserRole | str | None") -> frozenset[str]:
        """Permission strings for a role; empty for unknown roles."""
        role_enum = UserRole.parse(role)
        if role_enum is None:
            return frozenset()
        return self._role_permissions[role_enum]

    def permission_strings(self, role: "UserRole | str | None") -> list[str]:
        """Sorted permission snapshot, as embedded in access tokens."""
        return sorted(self.permissions_for(role))

    def is_admin(self, role: "UserRole | str | None") -> bool:
        return self.admin_role is not None and UserRole.parse(role) == self.admin_role

    def has(self, role: "UserRole | str | None", permission: "Permission | str | None") -> bool:
        value = _permission_value(permission)
        if value is None:
            return False
        if self.is_admin(role):
            return True
        return value in self.permissions_for(role)

    def has_any(self, role: "UserRole | str | None", *permissions: "Permission | str") -> bool:
        if self.is_admin(role):
            return True
        granted = self.permissions_for(role)
        return any(_permission_value(p) in granted for p in permissions)

    def has_all(self, role: "UserRole | str | None", *permissions: "Permission | str") -> bool:
        if self.is_admin(role):
            return True
        granted = self.permissions_for(role)
        return all(_permission_value(p) in granted for p in permissions)

    def granted(
        self,
        role: "UserRole | str | None",
        snapshot: "frozenset[str] | tuple[str, ...]",
        *permissions: "Permission | str",
    ) -> bool:
        """Check a token's permission snapshot (any of ``permissions``).

        The snapshot is what the token was issued with; it is not
        re-resolved against the current map.
        """
        if self.is_admin(role):
            return True
        return any(_permission_value(p) in snapshot for p in permissions)

    def can_access(
        self,
        role: "UserRole | str | None",
        resource_type: ResourceType,
        action: ResourceAction,
    ) -> bool:
        """Coarse rule: may this role perform ``action`` on ``resource_type`` at all?"""
        if self.is_admin(role):
            return True
        required = RESOURCE_RULES.get((resource_type, action))
        if not required:
            return False
        return self.has_any(role, *required)

    def can_access_record(
        self,
        role: "UserRole | str | None",
        user_id: uuid.UUID | str,
        resource_type: ResourceType,
        owner_id: uuid.UUID | str | None,
    ) -> bool:
        """Read access to one specific record.

        Deny unless explicitly granted: administrators, roles holding an
        all-records permission for the type, or an own-records permission
        when the caller owns the record. Assignment-scoped access
        (e.g. ``property:read:assigned``) needs assignment data this service
        does not hold, so it never grants record access here.
        """
        if self.is_admin(role):
            return True
        if self.has_any(role, *_ALL_SCOPE.get(resource_type, ())):
            return True
        own = _OWN_SCOPE.get(resource_type, ())
        if own and owner_id is not None and str(owner_id) == str(user_id):
            return self.has_any(role, *own)
        return False


_default_resolver = PermissionResolver()


def get_permission_resolver() -> PermissionResolver:
    """Resolver over the built-in role map."""
    return _default_resolver
