"""
tags.py - Event-scoped incident tags.

Responders and above manage an event's tags; anyone with a role at the
event can list them. Names are unique per event regardless of case, and a
tag still attached to an incident cannot be deleted.
"""

import logging
import re
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from incidentdesk.core.errors import AccessDenied, NotFound, ValidationFailed
from incidentdesk.core.roles import RoleName
from incidentdesk.core.workflow import TAG_NAME_MAX_LENGTH
from incidentdesk.database import utcnow
from incidentdesk.models import Event, Tag, incident_tags
from incidentdesk.services.audit import AuditDispatcher, AuditRecord, NullAuditSink
from incidentdesk.services.authorization import AuthorizationService
from incidentdesk.services.incidents import IncidentQuery, IncidentService
from incidentdesk.services.results import ServiceResult, service_operation

logger = logging.getLogger(__name__)

TARGET_TAG = "tag"
HEX_COLOR = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")
MANAGE_DENIED = "Insufficient permissions. Only responders and above can manage tags."


class TagService:
    def __init__(
        self,
        db: Session,
        authz: AuthorizationService,
        incidents: IncidentService,
        audit: AuditDispatcher | None = None,
    ):
        self.db = db
        self.authz = authz
        self.incidents = incidents
        self.audit = audit or AuditDispatcher(NullAuditSink())

    @staticmethod
    def serialize(tag: Tag, incident_count: int | None = None) -> dict[str, Any]:
        record = {
            "id": tag.id,
            "event_id": tag.event_id,
            "name": tag.name,
            "color": tag.color,
            "created_at": tag.created_at,
            "updated_at": tag.updated_at,
        }
        if incident_count is not None:
            record["incident_count"] = incident_count
        return record

    # =========================================================
    # HELPERS
    # =========================================================

    def _get_tag(self, tag_id: str) -> Tag:
        tag = self.db.get(Tag, tag_id)
        if tag is None:
            raise NotFound("Tag not found.")
        return tag

    def _require_manager(self, user_id: str | None, event_id: str) -> None:
        if not self.authz.has_event_level(user_id, event_id, RoleName.RESPONDER):
            raise AccessDenied(MANAGE_DENIED)

    def _require_member(self, user_id: str | None, event_id: str) -> None:
        if not self.authz.has_event_role(user_id, event_id):
            raise AccessDenied("No access to this event.")

    @staticmethod
    def _validate_name(name: Any) -> str:
        if not isinstance(name, str) or not (1 <= len(name.strip()) <= TAG_NAME_MAX_LENGTH):
            raise ValidationFailed(f"Tag name must be between 1 and {TAG_NAME_MAX_LENGTH} characters.")
        return name.strip()

    @staticmethod
    def _validate_color(color: Any) -> str:
        if not isinstance(color, str) or not HEX_COLOR.match(color):
            raise ValidationFailed("Invalid color format. Must be a valid hex color (e.g., #FF0000).")
        return color

    def _ensure_unique_name(self, event_id: str, name: str, exclude_id: str | None = None) -> None:
        stmt = select(Tag.id).where(Tag.event_id == event_id, func.lower(Tag.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Tag.id != exclude_id)
        if self.db.scalar(stmt) is not None:
            raise ValidationFailed("A tag with this name already exists for this event.", code="DUPLICATE_TAG")

    def _usage_count(self, tag_id: str) -> int:
        stmt = select(func.count()).select_from(incident_tags).where(incident_tags.c.tag_id == tag_id)
        return self.db.scalar(stmt) or 0

    def _audit(self, action: str, tag_id: str, event_id: str, user_id: str | None) -> None:
        self.audit.dispatch(
            AuditRecord(action=action, target_type=TARGET_TAG, target_id=tag_id, event_id=event_id, user_id=user_id)
        )

    # =========================================================
    # OPERATIONS
    # =========================================================

    @service_operation("Failed to create tag.")
    def create_tag(self, event_id: str, name: str, color: str, user_id: str | None) -> ServiceResult:
        if not event_id or not name or not color:
            raise ValidationFailed("Missing required fields: name, color, event_id")
        if self.db.get(Event, event_id) is None:
            raise NotFound("Event not found.")
        self._require_manager(user_id, event_id)
        color = self._validate_color(color)
        name = self._validate_name(name)
        self._ensure_unique_name(event_id, name)

        tag = Tag(event_id=event_id, name=name, color=color)
        self.db.add(tag)
        self.db.commit()
        logger.info("Tag %s created for event %s", tag.id, event_id)

        self._audit("create_tag", tag.id, event_id, user_id)
        return ServiceResult.ok({"tag": self.serialize(tag)})

    @service_operation("Failed to fetch tags.")
    def get_tags_by_event(self, event_id: str, user_id: str | None) -> ServiceResult:
        """Tags ordered by name, each with the number of incidents carrying it."""
        self._require_member(user_id, event_id)
        usage = (
            select(incident_tags.c.tag_id, func.count().label("incident_count"))
            .group_by(incident_tags.c.tag_id)
            .subquery()
        )
        rows = self.db.execute(
            select(Tag, func.coalesce(usage.c.incident_count, 0))
            .outerjoin(usage, usage.c.tag_id == Tag.id)
            .where(Tag.event_id == event_id)
            .order_by(Tag.name)
        ).all()
        return ServiceResult.ok({"tags": [self.serialize(tag, count) for tag, count in rows]})

    @service_operation("Failed to update tag.")
    def update_tag(self, tag_id: str, changes: dict[str, Any], user_id: str | None) -> ServiceResult:
        """Rename and/or recolor. Keys other than name and color are ignored."""
        tag = self._get_tag(tag_id)
        self._require_manager(user_id, tag.event_id)

        if changes.get("name") is not None:
            name = self._validate_name(changes["name"])
            self._ensure_unique_name(tag.event_id, name, exclude_id=tag.id)
            tag.name = name
        if changes.get("color") is not None:
            tag.color = self._validate_color(changes["color"])

        tag.updated_at = utcnow()
        self.db.commit()
        self._audit("update_tag", tag.id, tag.event_id, user_id)
        return ServiceResult.ok({"tag": self.serialize(tag)})

    @service_operation("Failed to delete tag.")
    def delete_tag(self, tag_id: str, user_id: str | None) -> ServiceResult:
        tag = self._get_tag(tag_id)
        self._require_manager(user_id, tag.event_id)

        in_use = self._usage_count(tag.id)
        if in_use:
            raise ValidationFailed(
                f"Cannot delete tag. It is currently used by {in_use} incident(s).", code="TAG_IN_USE"
            )

        event_id = tag.event_id
        self.db.delete(tag)
        self.db.commit()
        logger.info("Tag %s deleted from event %s", tag_id, event_id)

        self._audit("delete_tag", tag_id, event_id, user_id)
        return ServiceResult.ok({"message": "Tag deleted successfully."})

    @service_operation("Failed to fetch incidents by tag.")
    def get_incidents_by_tag(
        self, tag_id: str, user_id: str | None, query: IncidentQuery | None = None
    ) -> ServiceResult:
        """
        Incidents carrying the tag, with the same scoping and field
        projection as the event listing: reporters only see their own.
        """
        tag = self._get_tag(tag_id)
        self._require_member(user_id, tag.event_id)
        query = query or IncidentQuery()
        query.tag_id = tag.id
        return self.incidents.get_event_incidents(tag.event_id, user_id, query)
