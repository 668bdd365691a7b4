"""
visibility.py - Field-level projection of incident records.

Privileged viewers and the incident's own reporter get the full record.
Everyone else gets an allow-list; fields added to the incident later stay
hidden until they are added here.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from incidentdesk.core.roles import RoleName

PRIVILEGED_ROLES = frozenset(
    {RoleName.RESPONDER.value, RoleName.EVENT_ADMIN.value, RoleName.SYSTEM_ADMIN.value}
)

PUBLIC_FIELDS = (
    "id",
    "title",
    "state",
    "severity",
    "incident_at",
    "created_at",
    "event_id",
    "event",
    "tags",
    "user_roles",
    "comment_count",
)


def is_privileged(user_roles: Iterable[str]) -> bool:
    return any(role in PRIVILEGED_ROLES for role in user_roles)


def filter_incident_fields(
    incident: Mapping[str, Any],
    user_roles: Iterable[str],
    is_reporter: bool,
    user_id: str | None,
) -> dict[str, Any]:
    if is_privileged(user_roles):
        return dict(incident)

    if is_reporter and user_id is not None and incident.get("reporter_id") == user_id:
        return dict(incident)

    return {name: incident[name] for name in PUBLIC_FIELDS if name in incident}
