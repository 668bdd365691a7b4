from sqlalchemy import select
from sqlalchemy.orm import Session

from incidentdesk.core.roles import ROLE_CATALOG

from .audit_log import AuditLog
from .comment import IncidentComment
from .event import Event
from .incident import Incident, incident_tags
from .organization import Organization
from .related_file import RelatedFile
from .role import Role, UserRole
from .search_token import SearchToken
from .tag import Tag
from .user import User

__all__ = [
    "AuditLog",
    "Event",
    "Incident",
    "IncidentComment",
    "Organization",
    "RelatedFile",
    "Role",
    "SearchToken",
    "Tag",
    "User",
    "UserRole",
    "incident_tags",
    "seed_roles",
]


def seed_roles(db: Session) -> int:
    """Insert catalog roles missing from the roles table. Returns the number added."""
    existing = set(db.scalars(select(Role.name)))
    added = 0
    for definition in ROLE_CATALOG.values():
        if definition.name.value in existing:
            continue
        db.add(
            Role(
                name=definition.name.value,
                scope=definition.scope.value,
                level=definition.level,
                description=definition.description,
            )
        )
        added += 1
    if added:
        db.commit()
    return added
