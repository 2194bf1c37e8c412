"""
Visit policy

Two tables drive every admission decision:

- ENTITY_POLICIES: per entity type limits, exempt purposes and host rules.
  One generic visit model is parameterized by these instead of carrying a
  copy of the quota logic per type.
- ROLE_PERMISSIONS: the capability matrix enforced on callers. Deployments
  extend it through ``settings.capability_overrides`` without code changes.

Roles:
- administrator: everything
- general_manager: registrations, attendance, cancellations, entity admin
- chairman: registrations and cancellations
- reception: front-desk registrations and attendance
- gate: sign-in and sign-out only
- member: registers and cancels their own guests
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set

from vms.core.config import Settings, settings as default_settings
from vms.core.errors import CapabilityError
from vms.models.entity import Entity, EntityStatus, EntityType, StatusSource
from vms.models.visit import VisitPurpose


@dataclass(frozen=True)
class EntityPolicy:
    """Limits and rules for one entity type. ``None`` disables a limit."""

    entity_type: EntityType
    monthly_limit: Optional[int] = None
    yearly_limit: Optional[int] = None
    exempt_purposes: FrozenSet[str] = frozenset()
    allowed_purposes: Optional[FrozenSet[str]] = None
    requires_host: bool = False
    host_capacity_applies: bool = False
    can_host: bool = False
    quota_suspension_blocks_registration: bool = False

    @property
    def has_quota(self) -> bool:
        return self.monthly_limit is not None or self.yearly_limit is not None

    def counts_purpose(self, purpose: Optional[str]) -> bool:
        return purpose not in self.exempt_purposes

    def blocks_registration(self, entity: Entity) -> bool:
        if entity.is_admin_blocked:
            return True
        return (
            self.quota_suspension_blocks_registration
            and entity.status == EntityStatus.SUSPENDED
            and entity.status_source == StatusSource.SYSTEM
        )

    def blocks_sign_in(self, entity: Entity) -> bool:
        return entity.is_admin_blocked


def build_entity_policies(config: Optional[Settings] = None) -> Dict[EntityType, EntityPolicy]:
    """Build the per-type policy table from settings."""
    config = config or default_settings
    exempt = frozenset(config.exempt_purposes)
    member_purposes = frozenset(p.value for p in VisitPurpose)
    return {
        EntityType.GUEST: EntityPolicy(
            entity_type=EntityType.GUEST,
            monthly_limit=config.guest_monthly_limit,
            yearly_limit=config.guest_yearly_limit,
            requires_host=True,
            host_capacity_applies=True,
        ),
        EntityType.RECIPROCATING_MEMBER: EntityPolicy(
            entity_type=EntityType.RECIPROCATING_MEMBER,
            yearly_limit=config.member_yearly_limit,
            exempt_purposes=exempt,
            allowed_purposes=member_purposes,
        ),
        EntityType.MEMBER: EntityPolicy(entity_type=EntityType.MEMBER, can_host=True),
        EntityType.EMPLOYEE: EntityPolicy(entity_type=EntityType.EMPLOYEE, can_host=True),
        EntityType.SUPPLIER: EntityPolicy(entity_type=EntityType.SUPPLIER),
        EntityType.ACCOMMODATION_GUEST: EntityPolicy(entity_type=EntityType.ACCOMMODATION_GUEST),
    }


ENTITY_POLICIES = build_entity_policies()


def policy_for(entity_type: str, policies: Optional[Dict[EntityType, EntityPolicy]] = None) -> EntityPolicy:
    policies = policies or ENTITY_POLICIES
    return policies[EntityType(entity_type)]


class Permission(str, Enum):
    """Available permissions in the system."""
    # Registration, one per entity type plus courtesy visits
    REGISTER_GUEST = "visit:register:guest"
    REGISTER_MEMBER = "visit:register:member"
    REGISTER_EMPLOYEE = "visit:register:employee"
    REGISTER_SUPPLIER = "visit:register:supplier"
    REGISTER_ACCOMMODATION_GUEST = "visit:register:accommodation_guest"
    REGISTER_RECIPROCATING_MEMBER = "visit:register:reciprocating_member"
    REGISTER_COURTESY = "visit:register:courtesy"

    # Attendance
    SIGN_IN = "visit:sign_in"
    SIGN_OUT = "visit:sign_out"

    VISIT_CANCEL = "visit:cancel"
    VISIT_VIEW = "visit:view"

    # Entities
    ENTITY_VIEW = "entity:view"
    ENTITY_MANAGE = "entity:manage"

    RECALCULATION_RUN = "recalculation:run"

    ADMIN_FULL = "admin:full"

    @classmethod
    def register_for(cls, entity_type: str) -> "Permission":
        return cls(f"visit:register:{EntityType(entity_type).value}")


_ALL_REGISTRATIONS = {
    Permission.REGISTER_GUEST, Permission.REGISTER_MEMBER, Permission.REGISTER_EMPLOYEE,
    Permission.REGISTER_SUPPLIER, Permission.REGISTER_ACCOMMODATION_GUEST,
    Permission.REGISTER_RECIPROCATING_MEMBER, Permission.REGISTER_COURTESY,
}

ROLE_PERMISSIONS: Dict[str, Set[Permission]] = {
    "administrator": {Permission.ADMIN_FULL},
    "general_manager": _ALL_REGISTRATIONS | {
        Permission.SIGN_IN, Permission.SIGN_OUT,
        Permission.VISIT_CANCEL, Permission.VISIT_VIEW,
        Permission.ENTITY_VIEW, Permission.ENTITY_MANAGE,
        Permission.RECALCULATION_RUN,
    },
    "chairman": {
        Permission.REGISTER_GUEST, Permission.REGISTER_COURTESY,
        Permission.REGISTER_RECIPROCATING_MEMBER,
        Permission.VISIT_CANCEL, Permission.VISIT_VIEW,
        Permission.ENTITY_VIEW,
    },
    "reception": {
        Permission.REGISTER_GUEST, Permission.REGISTER_SUPPLIER,
        Permission.REGISTER_ACCOMMODATION_GUEST, Permission.REGISTER_RECIPROCATING_MEMBER,
        Permission.SIGN_IN, Permission.SIGN_OUT,
        Permission.VISIT_CANCEL, Permission.VISIT_VIEW,
        Permission.ENTITY_VIEW,
    },
    "gate": {
        Permission.SIGN_IN, Permission.SIGN_OUT,
        Permission.VISIT_VIEW, Permission.ENTITY_VIEW,
    },
    "member": {
        Permission.REGISTER_GUEST,
        Permission.VISIT_CANCEL, Permission.VISIT_VIEW,
    },
}


@dataclass
class CapabilityPolicy:
    """
    Capability matrix lookup.

    Built from ROLE_PERMISSIONS merged with configured overrides, so adding a
    role or granting a permission is a configuration change.
    """

    table: Dict[str, Set[Permission]] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "CapabilityPolicy":
        config = config or default_settings
        table = {role: set(perms) for role, perms in ROLE_PERMISSIONS.items()}
        for role, perms in config.capability_overrides.items():
            table.setdefault(role, set()).update(Permission(p) for p in perms)
        return cls(table=table)

    def get_role_permissions(self, role: str) -> Set[Permission]:
        return self.table.get(role, set())

    def has_permission(self, role: str, permission: Permission) -> bool:
        """Check if role has specific permission."""
        granted = self.get_role_permissions(role)
        if Permission.ADMIN_FULL in granted:
            return True
        return permission in granted

    def require(self, role: str, permission: Permission) -> None:
        if not self.has_permission(role, permission):
            raise CapabilityError(role, permission.value)

