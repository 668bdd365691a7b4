"""
authorization.py - Unified RBAC engine.

Answers "does user U hold one of roles R at scope S?" with inheritance:

    system_admin (system)         -> everything
    org_admin (organization O)    -> event_admin on every event owned by O
    direct event role (event E)   -> that role at E

Every check fails closed: storage errors are logged and answered with
False / empty, never raised to the caller.
"""

import logging
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from incidentdesk.core.roles import (
    ROLE_CATALOG,
    SYSTEM_SCOPE_ID,
    RoleName,
    ScopeType,
    canonical_scope_id,
    parse_role_names,
    to_role_name,
)
from incidentdesk.database import utcnow
from incidentdesk.models import Event, Role, UserRole

logger = logging.getLogger(__name__)

DEFAULT_ORG_ROLES = (RoleName.ORG_ADMIN, RoleName.ORG_VIEWER)
DEFAULT_EVENT_ROLES = (RoleName.EVENT_ADMIN, RoleName.RESPONDER, RoleName.REPORTER)


@dataclass(frozen=True)
class RoleGrant:
    """One role held by a user at one scope."""

    role: str
    level: int
    scope_type: str
    scope_id: str
    granted_by_id: str | None = None
    granted_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "level": self.level,
            "scope_type": self.scope_type,
            "scope_id": self.scope_id,
            "granted_by_id": self.granted_by_id,
            "granted_at": self.granted_at,
        }


@dataclass
class _CacheEntry:
    grants: tuple[RoleGrant, ...]
    created_at: float


class RoleCache:
    """
    Per-user role cache shared by every AuthorizationService in the process.

    Entries expire after ttl_seconds; grant/revoke drop the affected user's
    entry immediately.
    """

    def __init__(self, ttl_seconds: float = 300.0):
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.RLock()

    def get(self, user_id: str) -> tuple[RoleGrant, ...] | None:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            if time.monotonic() - entry.created_at >= self.ttl_seconds:
                del self._entries[user_id]
                return None
            return entry.grants

    def set(self, user_id: str, grants: Iterable[RoleGrant]) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[user_id] = _CacheEntry(tuple(grants), time.monotonic())

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class AuthorizationService:
    """RBAC checks over one session; the role cache outlives the session."""

    def __init__(self, db: Session, cache: RoleCache | None = None):
        self.db = db
        self.cache = cache if cache is not None else RoleCache(ttl_seconds=0)

    # =========================================================
    # ROLE LOOKUPS
    # =========================================================

    def _load_grants(self, user_id: str) -> tuple[RoleGrant, ...]:
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached

        stmt = (
            select(UserRole, Role)
            .join(Role, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id)
            .order_by(Role.level.desc())
        )
        grants = tuple(
            RoleGrant(
                role=role.name,
                level=role.level,
                scope_type=user_role.scope_type,
                scope_id=user_role.scope_id,
                granted_by_id=user_role.granted_by_id,
                granted_at=user_role.granted_at,
            )
            for user_role, role in self.db.execute(stmt).all()
        )
        self.cache.set(user_id, grants)
        return grants

    def get_user_roles(
        self,
        user_id: str | None,
        scope_type: ScopeType | str | None = None,
        scope_id: str | None = None,
    ) -> list[RoleGrant]:
        if not user_id:
            return []
        try:
            grants = self._load_grants(user_id)
        except SQLAlchemyError:
            logger.exception("Failed to load roles for user %s", user_id)
            return []

        if scope_type is not None:
            try:
                scope_type = ScopeType(scope_type)
            except ValueError:
                logger.warning("Unknown scope type %r in role lookup", scope_type)
                return []
            scope_id = canonical_scope_id(scope_type, scope_id)
            grants = [g for g in grants if g.scope_type == scope_type.value]
        if scope_id is not None:
            grants = [g for g in grants if g.scope_id == scope_id]
        return list(grants)

    def get_all_user_roles(self, user_id: str) -> dict:
        """Role names grouped by scope, for display."""
        grouped: dict = {"system": [], "organizations": {}, "events": {}}
        for grant in self.get_user_roles(user_id):
            if grant.scope_type == ScopeType.SYSTEM.value:
                grouped["system"].append(grant.role)
            elif grant.scope_type == ScopeType.ORGANIZATION.value:
                grouped["organizations"].setdefault(grant.scope_id, []).append(grant.role)
            elif grant.scope_type == ScopeType.EVENT.value:
                grouped["events"].setdefault(grant.scope_id, []).append(grant.role)
        return grouped

    @staticmethod
    def get_role_level(role_name: str | RoleName) -> int:
        try:
            return ROLE_CATALOG[to_role_name(role_name)].level
        except (KeyError, ValueError):
            return 0

    # =========================================================
    # ROLE CHECKS
    # =========================================================

    def has_role(
        self,
        user_id: str | None,
        role_names: Iterable[str | RoleName],
        scope_type: ScopeType | str | None = None,
        scope_id: str | None = None,
    ) -> bool:
        wanted = {r.value for r in parse_role_names(role_names)}
        if not wanted:
            return False
        return any(g.role in wanted for g in self.get_user_roles(user_id, scope_type, scope_id))

    def is_system_admin(self, user_id: str | None) -> bool:
        return self.has_role(user_id, [RoleName.SYSTEM_ADMIN], ScopeType.SYSTEM, SYSTEM_SCOPE_ID)

    def has_org_role(
        self,
        user_id: str | None,
        organization_id: str,
        role_names: Iterable[str | RoleName] = DEFAULT_ORG_ROLES,
    ) -> bool:
        if self.is_system_admin(user_id):
            return True
        return self.has_role(user_id, role_names, ScopeType.ORGANIZATION, organization_id)

    def _event_organization_id(self, event_id: str) -> str | None:
        return self.db.scalar(select(Event.organization_id).where(Event.id == event_id))

    def _is_owning_org_admin(self, user_id: str, event_id: str, grants: Iterable[RoleGrant]) -> bool:
        org_admin_scopes = {
            g.scope_id
            for g in grants
            if g.scope_type == ScopeType.ORGANIZATION.value and g.role == RoleName.ORG_ADMIN.value
        }
        if not org_admin_scopes:
            return False
        organization_id = self._event_organization_id(event_id)
        return organization_id is not None and organization_id in org_admin_scopes

    def has_event_role(
        self,
        user_id: str | None,
        event_id: str,
        role_names: Iterable[str | RoleName] = DEFAULT_EVENT_ROLES,
    ) -> bool:
        """
        True for a system admin, a direct holder of one of role_names at the
        event, or an org_admin of the organization that owns the event.
        """
        if not user_id or not event_id:
            return False
        wanted = {r.value for r in parse_role_names(role_names)}
        try:
            grants = self._load_grants(user_id)
            if any(
                g.role == RoleName.SYSTEM_ADMIN.value and g.scope_type == ScopeType.SYSTEM.value
                for g in grants
            ):
                return True
            if any(
                g.scope_type == ScopeType.EVENT.value and g.scope_id == event_id and g.role in wanted
                for g in grants
            ):
                return True
            return self._is_owning_org_admin(user_id, event_id, grants)
        except SQLAlchemyError:
            logger.exception("Event role check failed for user %s on event %s", user_id, event_id)
            return False

    def event_level(self, user_id: str | None, event_id: str) -> int:
        """Effective role level at an event, inheritance applied. 0 means no role."""
        if not user_id or not event_id:
            return 0
        try:
            grants = self._load_grants(user_id)
            if any(
                g.role == RoleName.SYSTEM_ADMIN.value and g.scope_type == ScopeType.SYSTEM.value
                for g in grants
            ):
                return RoleName.SYSTEM_ADMIN.level

            level = max(
                (g.level for g in grants if g.scope_type == ScopeType.EVENT.value and g.scope_id == event_id),
                default=0,
            )
            if level < RoleName.EVENT_ADMIN.level and self._is_owning_org_admin(user_id, event_id, grants):
                level = RoleName.EVENT_ADMIN.level
            return level
        except SQLAlchemyError:
            logger.exception("Event level lookup failed for user %s on event %s", user_id, event_id)
            return 0

    def has_event_level(self, user_id: str | None, event_id: str, minimum: RoleName) -> bool:
        return self.event_level(user_id, event_id) >= minimum.level

    def resolve_event_roles(self, user_id: str | None, event_id: str) -> list[str]:
        """Direct event roles plus the inherited ones, highest first."""
        if not user_id or not event_id:
            return []
        roles = [g.role for g in self.get_user_roles(user_id, ScopeType.EVENT, event_id)]
        try:
            if self.is_system_admin(user_id):
                roles.append(RoleName.SYSTEM_ADMIN.value)
            if RoleName.EVENT_ADMIN.value not in roles and self._is_owning_org_admin(
                user_id, event_id, self._load_grants(user_id)
            ):
                roles.append(RoleName.EVENT_ADMIN.value)
        except SQLAlchemyError:
            logger.exception("Inherited role lookup failed for user %s on event %s", user_id, event_id)
        return sorted(set(roles), key=self.get_role_level, reverse=True)

    def has_minimum_level(
        self,
        user_id: str | None,
        min_level: int,
        scope_type: ScopeType | str | None = None,
        scope_id: str | None = None,
    ) -> bool:
        grants = self.get_user_roles(user_id, scope_type, scope_id)
        return any(g.level >= min_level for g in grants)

    # =========================================================
    # GRANT / REVOKE
    # =========================================================

    def _find_role(self, role_name: str | RoleName) -> Role | None:
        try:
            name = to_role_name(role_name)
        except ValueError:
            return None
        return self.db.scalar(select(Role).where(Role.name == name.value))

    def grant_role(
        self,
        user_id: str,
        role_name: str | RoleName,
        scope_type: ScopeType | str,
        scope_id: str | None,
        granted_by: str | None = None,
    ) -> bool:
        """Idempotent; re-granting refreshes granted_at and granted_by."""
        try:
            scope_type = ScopeType(scope_type)
        except ValueError:
            logger.warning("Refusing grant with unknown scope type %r", scope_type)
            return False
        scope_id = canonical_scope_id(scope_type, scope_id)
        if not scope_id:
            return False
        try:
            role_scope = ROLE_CATALOG[to_role_name(role_name)].scope
        except ValueError:
            logger.error("Role not found: %s", role_name)
            return False
        if role_scope != scope_type:
            logger.warning(
                "Refusing grant of %s at %s scope; it is a %s role", role_name, scope_type.value, role_scope.value
            )
            return False

        try:
            role = self._find_role(role_name)
            if role is None:
                logger.error("Role not found: %s", role_name)
                return False

            existing = self.db.scalar(
                select(UserRole).where(
                    UserRole.user_id == user_id,
                    UserRole.role_id == role.id,
                    UserRole.scope_type == scope_type.value,
                    UserRole.scope_id == scope_id,
                )
            )
            if existing is None:
                self.db.add(
                    UserRole(
                        user_id=user_id,
                        role_id=role.id,
                        scope_type=scope_type.value,
                        scope_id=scope_id,
                        granted_by_id=granted_by,
                        granted_at=utcnow(),
                    )
                )
            else:
                existing.granted_by_id = granted_by
                existing.granted_at = utcnow()
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to grant %s to user %s", role_name, user_id)
            return False
        finally:
            self.cache.invalidate(user_id)

        logger.info("Granted %s on %s:%s to user %s", role.name, scope_type.value, scope_id, user_id)
        return True

    def revoke_role(
        self,
        user_id: str,
        role_name: str | RoleName,
        scope_type: ScopeType | str,
        scope_id: str | None,
    ) -> bool:
        try:
            scope_type = ScopeType(scope_type)
        except ValueError:
            return False
        scope_id = canonical_scope_id(scope_type, scope_id)

        try:
            role = self._find_role(role_name)
            if role is None:
                logger.error("Role not found: %s", role_name)
                return False

            self.db.execute(
                delete(UserRole).where(
                    UserRole.user_id == user_id,
                    UserRole.role_id == role.id,
                    UserRole.scope_type == scope_type.value,
                    UserRole.scope_id == scope_id,
                )
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to revoke %s from user %s", role_name, user_id)
            return False
        finally:
            self.cache.invalidate(user_id)

        logger.info("Revoked %s on %s:%s from user %s", role.name, scope_type.value, scope_id, user_id)
        return True

    def clear_user_cache(self, user_id: str) -> None:
        self.cache.invalidate(user_id)

    def clear_all_cache(self) -> None:
        self.cache.clear()
