"""
roles.py - Static role catalog.

Every role lives at exactly one scope and carries a numeric level.
Role adequacy checks compare levels; nothing compares role-name lists.

    system_admin   system        100
    org_admin      organization   50
    event_admin    event          40
    responder      event          20
    org_viewer     organization   10
    reporter       event           5
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType


SYSTEM_SCOPE_ID = "SYSTEM"


class ScopeType(str, Enum):
    SYSTEM = "system"
    ORGANIZATION = "organization"
    EVENT = "event"


class RoleName(str, Enum):
    SYSTEM_ADMIN = "system_admin"
    ORG_ADMIN = "org_admin"
    ORG_VIEWER = "org_viewer"
    EVENT_ADMIN = "event_admin"
    RESPONDER = "responder"
    REPORTER = "reporter"

    @property
    def level(self) -> int:
        return ROLE_CATALOG[self].level

    @property
    def scope(self) -> ScopeType:
        return ROLE_CATALOG[self].scope


@dataclass(frozen=True)
class RoleDefinition:
    name: RoleName
    scope: ScopeType
    level: int
    description: str


ROLE_CATALOG = MappingProxyType(
    {
        RoleName.SYSTEM_ADMIN: RoleDefinition(
            RoleName.SYSTEM_ADMIN, ScopeType.SYSTEM, 100, "System administrator with global access"
        ),
        RoleName.ORG_ADMIN: RoleDefinition(
            RoleName.ORG_ADMIN, ScopeType.ORGANIZATION, 50, "Organization administrator"
        ),
        RoleName.EVENT_ADMIN: RoleDefinition(
            RoleName.EVENT_ADMIN, ScopeType.EVENT, 40, "Event administrator"
        ),
        RoleName.RESPONDER: RoleDefinition(
            RoleName.RESPONDER, ScopeType.EVENT, 20, "Incident responder"
        ),
        RoleName.ORG_VIEWER: RoleDefinition(
            RoleName.ORG_VIEWER, ScopeType.ORGANIZATION, 10, "Organization viewer"
        ),
        RoleName.REPORTER: RoleDefinition(
            RoleName.REPORTER, ScopeType.EVENT, 5, "Incident reporter"
        ),
    }
)


class LegacyRole(str, Enum):
    """Display names used before roles were unified."""

    SUPER_ADMIN = "SuperAdmin"
    EVENT_ADMIN = "Event Admin"
    RESPONDER = "Responder"
    REPORTER = "Reporter"


LEGACY_ROLE_MAP = MappingProxyType(
    {
        LegacyRole.SUPER_ADMIN: RoleName.SYSTEM_ADMIN,
        LegacyRole.EVENT_ADMIN: RoleName.EVENT_ADMIN,
        LegacyRole.RESPONDER: RoleName.RESPONDER,
        LegacyRole.REPORTER: RoleName.REPORTER,
    }
)

# An unmapped legacy name or uncatalogued role fails at import, not at request time.
_missing = set(LegacyRole) - set(LEGACY_ROLE_MAP)
if _missing:
    raise RuntimeError(f"Legacy roles without a unified mapping: {sorted(m.value for m in _missing)}")
_missing = set(RoleName) - set(ROLE_CATALOG)
if _missing:
    raise RuntimeError(f"Roles missing from catalog: {sorted(m.value for m in _missing)}")
del _missing


def to_role_name(value: "str | RoleName | LegacyRole") -> RoleName:
    """
    Resolve a unified or legacy role name.

    Raises:
        ValueError: If the name is neither a unified nor a legacy role.
    """
    if isinstance(value, RoleName):
        return value
    if isinstance(value, LegacyRole):
        return LEGACY_ROLE_MAP[value]
    try:
        return RoleName(value)
    except ValueError:
        return LEGACY_ROLE_MAP[LegacyRole(value)]


def parse_role_names(values) -> frozenset[RoleName]:
    """Resolve a collection of names, dropping the ones that are not roles."""
    resolved = set()
    for value in values:
        try:
            resolved.add(to_role_name(value))
        except ValueError:
            continue
    return frozenset(resolved)


def canonical_scope_id(scope_type: ScopeType, scope_id: str | None) -> str | None:
    """System scope always stores the canonical SYSTEM id."""
    if ScopeType(scope_type) == ScopeType.SYSTEM:
        return SYSTEM_SCOPE_ID
    return scope_id
