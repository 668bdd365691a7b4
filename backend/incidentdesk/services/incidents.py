"""
incidents.py - Incident aggregate service.

INVARIANTS:
1. description, parties and location are encrypted before they reach storage
   and decrypted before they leave this service
2. A state change, its audit rows and its notes comment commit together or
   not at all
3. Every field edit has its own authorization rule (see _FIELD_RULES)
4. Bulk updates validate everything first and then either apply to every
   target in one statement or apply nothing
5. Audit writes for everything except state changes happen after commit
   and never fail the operation

FAILURE SEMANTICS:
- Bad input, illegal transition, unmet precondition -> validation
- Caller lacks the role for this operation -> forbidden
- Incident missing or in another event -> not_found ("Report not found for this event.")
- Storage / encryption failure -> internal + full rollback
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from incidentdesk.core.encryption import FieldCipher
from incidentdesk.core.errors import AccessDenied, NotFound, ValidationFailed
from incidentdesk.core.roles import RoleName
from incidentdesk.core.workflow import (
    DESCRIPTION_MAX_LENGTH,
    LOCATION_MAX_LENGTH,
    PARTIES_MAX_LENGTH_ON_CREATE,
    PARTIES_MAX_LENGTH_ON_UPDATE,
    RESOLUTION_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    TITLE_MIN_LENGTH,
    CommentVisibility,
    ContactPreference,
    IncidentState,
    IncidentType,
    can_transition,
    is_too_far_in_future,
    missing_requirement,
    parse_contact_preference,
    parse_incident_type,
    parse_severity,
    parse_state,
)
from incidentdesk.database import utcnow
from incidentdesk.models import (
    AuditLog,
    Event,
    Incident,
    IncidentComment,
    RelatedFile,
    Tag,
    User,
)
from incidentdesk.services.audit import AuditDispatcher, AuditRecord, NullAuditSink, audit_row
from incidentdesk.services.authorization import AuthorizationService
from incidentdesk.services.results import ServiceResult, service_operation
from incidentdesk.services.search_index import SearchIndex
from incidentdesk.services.visibility import PRIVILEGED_ROLES, filter_incident_fields

logger = logging.getLogger(__name__)

ENCRYPTED_FIELDS = ("description", "parties", "location")
INCIDENT_NOT_FOUND = "Report not found for this event."
TARGET_INCIDENT = "incident"
TARGET_RELATED_FILE = "related_file"
TARGET_COMMENT = "comment"

MAX_RELATED_FILE_SIZE = 10 * 1024 * 1024
MAX_PAGE_SIZE = 100
SORTABLE_FIELDS = ("created_at", "updated_at", "title", "state", "severity", "incident_at")
BULK_ACTIONS = ("assign", "status", "delete")

_STATE_CHANGE = re.compile(r"^State changed from (\w+) to (\w+)$")


@dataclass
class RelatedFileUpload:
    filename: str
    mimetype: str
    data: bytes
    uploader_id: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class IncidentQuery:
    page: int = 1
    limit: int = 20
    search: str | None = None
    status: str | None = None
    severity: str | None = None
    assigned: str | None = None  # "me" | "unassigned"
    sort: str = "created_at"
    order: str = "desc"
    reporter_id: str | None = None
    incident_ids: list[str] = field(default_factory=list)
    tag_id: str | None = None
    include_stats: bool = False


def _normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


def parse_incident_at(value: Any) -> datetime | None:
    """None/empty clears the date. Aware datetimes are stored as naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _normalize_datetime(value)
    if isinstance(value, str):
        try:
            return _normalize_datetime(datetime.fromisoformat(value))
        except ValueError:
            pass
    raise ValidationFailed("Invalid incident date format.", code="INVALID_DATE")


def _user_summary(user: User | None) -> dict | None:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "email": user.email}


class IncidentService:
    """
    Incident lifecycle over one session.

    Collaborators are injected by the composition root; the cipher and the
    search index are process-wide, the authorization service shares this
    service's session.
    """

    def __init__(
        self,
        db: Session,
        authz: AuthorizationService,
        cipher: FieldCipher,
        audit: AuditDispatcher | None = None,
        search_index: SearchIndex | None = None,
    ):
        self.db = db
        self.authz = authz
        self.cipher = cipher
        self.audit = audit or AuditDispatcher(NullAuditSink())
        self.search_index = search_index or SearchIndex(cipher)

    # =========================================================
    # SERIALIZATION
    # =========================================================

    def serialize(self, incident: Incident) -> dict[str, Any]:
        """Full decrypted record. Callers project it for the viewer."""
        record = {
            "id": incident.id,
            "event_id": incident.event_id,
            "event": incident.event.summary() if incident.event else None,
            "reporter_id": incident.reporter_id,
            "reporter": _user_summary(incident.reporter),
            "assigned_responder_id": incident.assigned_responder_id,
            "assigned_responder": _user_summary(incident.assigned_responder),
            "title": incident.title,
            "description": incident.description,
            "state": incident.state,
            "type": incident.type,
            "severity": incident.severity,
            "resolution": incident.resolution,
            "contact_preference": incident.contact_preference,
            "incident_at": incident.incident_at,
            "parties": incident.parties,
            "location": incident.location,
            "tags": [tag.summary() for tag in incident.tags],
            "related_files": [f.summary() for f in incident.related_files],
            "created_at": incident.created_at,
            "updated_at": incident.updated_at,
        }
        return self.cipher.decrypt_fields(record, ENCRYPTED_FIELDS)

    # =========================================================
    # LOOKUPS
    # =========================================================

    def _get_incident(self, incident_id: str, event_id: str | None = None, lock: bool = False) -> Incident:
        stmt = select(Incident).where(Incident.id == incident_id)
        if lock:
            stmt = stmt.with_for_update()
        incident = self.db.execute(stmt).scalar_one_or_none()

        if incident is None:
            raise NotFound(INCIDENT_NOT_FOUND if event_id else "Report not found.")
        if event_id is not None and incident.event_id != event_id:
            # Same message as missing: existence in other events is not disclosed
            raise NotFound(INCIDENT_NOT_FOUND)
        return incident

    def _tags_for_event(self, event_id: str, tag_ids: list[str]) -> list[Tag]:
        unique_ids = list(dict.fromkeys(tag_ids))
        if not unique_ids:
            return []
        tags = self.db.scalars(select(Tag).where(Tag.id.in_(unique_ids), Tag.event_id == event_id)).all()
        if len(tags) != len(unique_ids):
            raise ValidationFailed("One or more tags do not belong to this event.", code="INVALID_TAGS")
        by_id = {tag.id: tag for tag in tags}
        return [by_id[tag_id] for tag_id in unique_ids]

    def _visible_comment_counts(self, incidents: list[Incident], viewer_id: str | None, privileged: bool) -> dict[str, int]:
        if not incidents:
            return {}
        rows = self.db.execute(
            select(IncidentComment.incident_id, IncidentComment.visibility, func.count(IncidentComment.id))
            .where(IncidentComment.incident_id.in_([i.id for i in incidents]))
            .group_by(IncidentComment.incident_id, IncidentComment.visibility)
        ).all()
        assigned = {i.id for i in incidents if viewer_id and i.assigned_responder_id == viewer_id}

        counts = {i.id: 0 for i in incidents}
        for incident_id, visibility, count in rows:
            if (
                privileged
                or visibility == CommentVisibility.PUBLIC.value
                or incident_id in assigned
            ):
                counts[incident_id] += count
        return counts

    # =========================================================
    # VALIDATION
    # =========================================================

    @staticmethod
    def _validate_title(title: Any) -> str:
        if not isinstance(title, str) or not (TITLE_MIN_LENGTH <= len(title) <= TITLE_MAX_LENGTH):
            raise ValidationFailed(
                f"title must be {TITLE_MIN_LENGTH}-{TITLE_MAX_LENGTH} characters.", code="INVALID_TITLE"
            )
        return title

    @staticmethod
    def _validate_description(description: Any) -> str:
        if not isinstance(description, str) or not description.strip():
            raise ValidationFailed("Description is required.", code="MISSING_DESCRIPTION")
        if len(description) > DESCRIPTION_MAX_LENGTH:
            raise ValidationFailed(
                f"Description must be less than {DESCRIPTION_MAX_LENGTH} characters.", code="DESCRIPTION_TOO_LONG"
            )
        return description

    @staticmethod
    def _validate_incident_at(value: Any) -> datetime | None:
        incident_at = parse_incident_at(value)
        if incident_at is not None and is_too_far_in_future(incident_at, utcnow()):
            raise ValidationFailed(
                "Incident date cannot be more than 24 hours in the future.", code="FUTURE_DATE"
            )
        return incident_at

    @staticmethod
    def _validate_optional_text(value: Any, max_length: int, label: str) -> str | None:
        if value is None or value == "":
            return None
        if not isinstance(value, str):
            raise ValidationFailed(f"{label} must be a string.")
        if len(value) > max_length:
            raise ValidationFailed(f"{label} must be less than {max_length} characters.")
        return value

    @staticmethod
    def _validate_tag_ids(tag_ids: Any) -> list[str]:
        if tag_ids is None:
            return []
        if not isinstance(tag_ids, (list, tuple)) or not all(isinstance(t, str) for t in tag_ids):
            raise ValidationFailed("tag_ids must be a list of tag ids.", code="INVALID_TAGS")
        return list(tag_ids)

    @staticmethod
    def _validate_incident_type(value: Any) -> IncidentType:
        incident_type = parse_incident_type(value)
        if incident_type is None:
            raise ValidationFailed("Invalid report type. Must be: harassment, safety, or other.")
        return incident_type

    @staticmethod
    def _validate_contact_preference(value: Any) -> ContactPreference:
        preference = parse_contact_preference(value)
        if preference is None:
            raise ValidationFailed("Invalid contact preference. Must be: email, phone, in_person, or no_contact.")
        return preference

    @staticmethod
    def _validate_files(files: list[RelatedFileUpload]) -> None:
        for upload in files:
            if not upload.filename:
                raise ValidationFailed("Related file is missing a filename.")
            if upload.size > MAX_RELATED_FILE_SIZE:
                raise ValidationFailed(
                    f"File {upload.filename} exceeds the {MAX_RELATED_FILE_SIZE // (1024 * 1024)}MB limit."
                )

    # =========================================================
    # CREATE
    # =========================================================

    @service_operation("Failed to submit incident.")
    def create_incident(
        self, data: dict[str, Any], related_files: list[RelatedFileUpload] | None = None
    ) -> ServiceResult:
        """
        Validate, encrypt and persist a new incident with its related files.

        data keys: event_id, title, description (required); reporter_id, type,
        contact_preference, urgency, incident_at, parties, location, tag_ids
        (optional). type defaults to other, contact_preference to email.
        """
        event_id = data.get("event_id")
        title = data.get("title")
        description = data.get("description")
        reporter_id = data.get("reporter_id")
        related_files = related_files or []

        if not event_id or not title or not description:
            raise ValidationFailed("Missing required fields: event_id, title, description", code="MISSING_FIELDS")

        self._validate_title(title)
        self._validate_description(description)

        urgency = data.get("urgency")
        severity = parse_severity(urgency or "low")
        if severity is None:
            raise ValidationFailed("Invalid urgency level. Must be: low, medium, high, or critical.")

        incident_type = self._validate_incident_type(data.get("type") or IncidentType.OTHER.value)
        contact_preference = self._validate_contact_preference(
            data.get("contact_preference") or ContactPreference.EMAIL.value
        )
        incident_at = self._validate_incident_at(data.get("incident_at"))
        parties = self._validate_optional_text(data.get("parties"), PARTIES_MAX_LENGTH_ON_CREATE, "Parties involved")
        location = self._validate_optional_text(data.get("location"), LOCATION_MAX_LENGTH, "Location")
        tag_ids = self._validate_tag_ids(data.get("tag_ids"))
        self._validate_files(related_files)

        if self.db.get(Event, event_id) is None:
            raise NotFound("Event not found.")
        if reporter_id and self.db.get(User, reporter_id) is None:
            raise ValidationFailed("Reporter not found.")

        tags = self._tags_for_event(event_id, tag_ids)

        incident = Incident(
            event_id=event_id,
            reporter_id=reporter_id,
            type=incident_type.value,
            title=title,
            description=self.cipher.encrypt_field(description),
            state=IncidentState.SUBMITTED.value,
            severity=severity.value,
            contact_preference=contact_preference.value,
            incident_at=incident_at,
            parties=self.cipher.encrypt_field(parties),
            location=self.cipher.encrypt_field(location),
        )
        incident.tags = tags
        self.db.add(incident)
        self.db.flush()

        stored_files = [
            RelatedFile(
                incident_id=incident.id,
                filename=upload.filename,
                mimetype=upload.mimetype,
                size=upload.size,
                data=upload.data,
                uploader_id=upload.uploader_id or reporter_id,
            )
            for upload in related_files
        ]
        self.db.add_all(stored_files)
        self.search_index.index_field(self.db, TARGET_INCIDENT, incident.id, "description", description)
        self.db.commit()

        logger.info("Incident %s submitted for event %s (%d files)", incident.id, event_id, len(stored_files))

        self.audit.dispatch(
            AuditRecord(
                action="create_incident",
                target_type=TARGET_INCIDENT,
                target_id=incident.id,
                event_id=event_id,
                user_id=reporter_id,
            )
        )
        for stored in stored_files:
            self.audit.dispatch(
                AuditRecord(
                    action="upload_related_file",
                    target_type=TARGET_RELATED_FILE,
                    target_id=stored.id,
                    event_id=event_id,
                    user_id=stored.uploader_id,
                )
            )

        self.db.refresh(incident)
        return ServiceResult.ok({"incident": self.serialize(incident)})

    # =========================================================
    # STATE MACHINE
    # =========================================================

    @service_operation("Failed to update report state.")
    def update_incident_state(
        self,
        event_id: str,
        incident_id: str,
        state: str,
        user_id: str | None,
        notes: str | None = None,
        assigned_to_user_id: str | None = None,
    ) -> ServiceResult:
        """
        Move an incident to ``state`` in a single transaction.

        Writes the state (and assignment), a "State changed from X to Y"
        audit row, an assignment audit row when the assignee changed, and an
        internal comment holding the notes. Nothing is written when any
        check fails.
        """
        target = parse_state(state)
        if target is None:
            raise ValidationFailed("Invalid or missing state.", code="INVALID_STATE")

        incident = self._get_incident(incident_id, event_id, lock=True)

        if not self.authz.has_event_level(user_id, event_id, RoleName.RESPONDER):
            raise AccessDenied("Insufficient permissions to change the state of this report.")

        current = IncidentState(incident.state)
        if current == target:
            raise ValidationFailed(f"Report is already {current.value}.", code="NO_TRANSITION")
        if not can_transition(current, target):
            raise ValidationFailed(
                f"Cannot transition report from {current.value} to {target.value}.",
                code="INVALID_TRANSITION",
                details={"allowed": sorted(s.value for s in IncidentState if can_transition(current, s))},
            )

        message = missing_requirement(target, notes, assigned_to_user_id)
        if message:
            raise ValidationFailed(message, code="TRANSITION_REQUIREMENT")

        assignee = None
        if assigned_to_user_id:
            assignee = self.db.get(User, assigned_to_user_id)
            if assignee is None:
                raise ValidationFailed("Assigned user not found.")
            if not self.authz.has_event_role(
                assigned_to_user_id, event_id, [RoleName.RESPONDER, RoleName.EVENT_ADMIN]
            ):
                raise ValidationFailed("Assigned user must have Responder or Event Admin role for this event.")

        original_state = incident.state
        original_assignee = incident.assigned_responder_id

        incident.state = target.value
        if assignee is not None:
            incident.assigned_responder_id = assignee.id

        self.db.add(
            audit_row(
                AuditRecord(
                    action=f"State changed from {original_state} to {target.value}",
                    target_type=TARGET_INCIDENT,
                    target_id=incident.id,
                    event_id=event_id,
                    user_id=user_id,
                )
            )
        )
        if assignee is not None and assignee.id != original_assignee:
            self.db.add(
                audit_row(
                    AuditRecord(
                        action=f"Report assigned to {assignee.name or 'Unknown'}",
                        target_type=TARGET_INCIDENT,
                        target_id=incident.id,
                        event_id=event_id,
                        user_id=user_id,
                    )
                )
            )

        if notes and notes.strip():
            body = f"**State changed from {original_state} to {target.value}**\n\n{notes}"
            comment = IncidentComment(
                incident_id=incident.id,
                author_id=user_id,
                body=self.cipher.encrypt_field(body),
                visibility=CommentVisibility.INTERNAL.value,
                is_markdown=True,
            )
            self.db.add(comment)
            self.db.flush()
            self.search_index.index_field(self.db, TARGET_COMMENT, comment.id, "body", body)

        self.db.commit()
        logger.info(
            "Incident %s: %s -> %s by %s", incident.id, original_state, target.value, user_id
        )

        self.db.refresh(incident)
        return ServiceResult.ok(
            {
                "incident": self.serialize(incident),
                "original_state": original_state,
                "original_assigned_responder_id": original_assignee,
            }
        )

    @service_operation("Failed to fetch state history.")
    def get_incident_state_history(self, incident_id: str) -> ServiceResult:
        rows = self.db.execute(
            select(AuditLog, User)
            .outerjoin(User, AuditLog.user_id == User.id)
            .where(
                AuditLog.target_type == TARGET_INCIDENT,
                AuditLog.target_id == incident_id,
                AuditLog.action.like("State changed from %"),
            )
            .order_by(AuditLog.timestamp.desc())
        ).all()

        history = []
        for log, user in rows:
            match = _STATE_CHANGE.match(log.action)
            history.append(
                {
                    "id": log.id,
                    "from_state": match.group(1) if match else "",
                    "to_state": match.group(2) if match else "",
                    "changed_by": (user.display_name if user else None) or "Unknown",
                    "changed_at": log.timestamp,
                }
            )
        return ServiceResult.ok({"history": history})

    # =========================================================
    # ACCESS CHECKS
    # =========================================================

    @service_operation("Failed to check report access.")
    def check_incident_access(self, user_id: str | None, incident_id: str, event_id: str | None = None) -> ServiceResult:
        incident = self._get_incident(incident_id, event_id)
        is_reporter = bool(incident.reporter_id and user_id == incident.reporter_id)
        roles = self.authz.resolve_event_roles(user_id, incident.event_id)
        has_access = is_reporter or any(role in PRIVILEGED_ROLES for role in roles)
        return ServiceResult.ok({"has_access": has_access, "is_reporter": is_reporter, "roles": roles})

    def _can_edit(self, user_id: str | None, incident: Incident) -> bool:
        if not user_id:
            return False
        if incident.reporter_id and user_id == incident.reporter_id:
            return True
        return self.authz.has_event_level(user_id, incident.event_id, RoleName.EVENT_ADMIN)

    @service_operation("Failed to check report edit access.")
    def check_incident_edit_access(self, user_id: str | None, incident_id: str, event_id: str) -> ServiceResult:
        """Reporter of the incident, or event_admin and above at its event."""
        can_edit = self._can_edit(user_id, self._get_incident(incident_id, event_id))
        result: dict[str, Any] = {"can_edit": can_edit}
        if not can_edit:
            result["reason"] = "Insufficient permissions to edit this report title."
        return ServiceResult.ok(result)

    # =========================================================
    # READS
    # =========================================================

    @service_operation("Failed to fetch report.")
    def get_incident(
        self, incident_id: str, event_id: str | None = None, viewer_id: str | None = None
    ) -> ServiceResult:
        """
        Decrypted incident. With a viewer, the record is projected for that
        viewer and carries their roles and visible comment count.
        """
        incident = self._get_incident(incident_id, event_id)
        record = self.serialize(incident)
        if viewer_id is None:
            return ServiceResult.ok({"incident": record})

        roles = self.authz.resolve_event_roles(viewer_id, incident.event_id)
        is_reporter = incident.reporter_id == viewer_id
        if not roles and not is_reporter:
            raise AccessDenied("Access denied. User does not have permission for this report.")

        privileged = any(role in PRIVILEGED_ROLES for role in roles)
        record["user_roles"] = roles
        record["comment_count"] = self._visible_comment_counts([incident], viewer_id, privileged)[incident.id]
        return ServiceResult.ok({"incident": filter_incident_fields(record, roles, is_reporter, viewer_id)})

    @service_operation("Failed to fetch event reports.")
    def get_event_incidents(self, event_id: str, user_id: str, query: IncidentQuery | None = None) -> ServiceResult:
        query = query or IncidentQuery()
        if query.page < 1 or query.limit < 1:
            raise ValidationFailed("Invalid pagination parameters")
        limit = min(query.limit, MAX_PAGE_SIZE)
        if query.sort not in SORTABLE_FIELDS:
            raise ValidationFailed("Invalid sort field")
        if query.order not in ("asc", "desc"):
            raise ValidationFailed("Invalid sort order")

        if not self.authz.has_event_role(user_id, event_id):
            raise AccessDenied("Access denied. User does not have permission for this event.")
        privileged = self.authz.has_event_level(user_id, event_id, RoleName.RESPONDER)

        conditions = [Incident.event_id == event_id]
        if not privileged and not query.reporter_id:
            conditions.append(Incident.reporter_id == user_id)
        if query.reporter_id:
            conditions.append(Incident.reporter_id == query.reporter_id)
        if query.status:
            if parse_state(query.status) is None:
                raise ValidationFailed("Invalid status filter")
            conditions.append(Incident.state == query.status)
        if query.severity:
            if parse_severity(query.severity) is None:
                raise ValidationFailed("Invalid severity filter")
            conditions.append(Incident.severity == query.severity)
        if query.assigned == "me":
            conditions.append(Incident.assigned_responder_id == user_id)
        elif query.assigned == "unassigned":
            conditions.append(Incident.assigned_responder_id.is_(None))
        if query.incident_ids:
            conditions.append(Incident.id.in_(query.incident_ids))
        if query.tag_id:
            conditions.append(Incident.tags.any(Tag.id == query.tag_id))
        if query.search and query.search.strip():
            term = query.search.strip()
            title_match = Incident.title.ilike(f"%{term}%")
            description_ids = self.search_index.matching_ids(TARGET_INCIDENT, "description", term)
            if description_ids is not None:
                conditions.append(title_match | Incident.id.in_(description_ids))
            else:
                conditions.append(title_match)

        total = self.db.scalar(select(func.count(Incident.id)).where(*conditions)) or 0

        sort_column = getattr(Incident, query.sort)
        ordering = sort_column.asc() if query.order == "asc" else sort_column.desc()
        incidents = self.db.scalars(
            select(Incident)
            .where(*conditions)
            .order_by(ordering, Incident.id)
            .offset((query.page - 1) * limit)
            .limit(limit)
        ).all()

        roles = self.authz.resolve_event_roles(user_id, event_id)
        counts = self._visible_comment_counts(list(incidents), user_id, privileged)
        items = []
        for incident in incidents:
            record = self.serialize(incident)
            record["comment_count"] = counts[incident.id]
            record["user_roles"] = roles
            items.append(
                filter_incident_fields(record, roles, incident.reporter_id == user_id, user_id)
            )

        data: dict[str, Any] = {
            "incidents": items,
            "total": total,
            "page": query.page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit,
        }
        if query.include_stats:
            stats = {state.value: 0 for state in IncidentState}
            stats["total"] = 0
            for state, count in self.db.execute(
                select(Incident.state, func.count(Incident.id)).where(*conditions).group_by(Incident.state)
            ).all():
                stats[state] = count
                stats["total"] += count
            data["stats"] = stats
        return ServiceResult.ok(data)

    # =========================================================
    # FIELD UPDATES
    # =========================================================

    def _authorize_field_edit(
        self, incident: Incident, user_id: str | None, minimum: RoleName, reporter_allowed: bool, what: str
    ) -> None:
        if not user_id:
            raise AccessDenied(f"Insufficient permissions to edit this report {what}.")
        if reporter_allowed and incident.reporter_id and incident.reporter_id == user_id:
            return
        if not self.authz.has_event_level(user_id, incident.event_id, minimum):
            raise AccessDenied(f"Insufficient permissions to edit this report {what}.")

    def _finish_field_update(self, incident: Incident, action: str, user_id: str | None) -> ServiceResult:
        incident.updated_at = utcnow()
        self.db.commit()
        self.audit.dispatch(
            AuditRecord(
                action=action,
                target_type=TARGET_INCIDENT,
                target_id=incident.id,
                event_id=incident.event_id,
                user_id=user_id,
            )
        )
        self.db.refresh(incident)
        return ServiceResult.ok({"incident": self.serialize(incident)})

    @service_operation("Failed to update report title.")
    def update_incident_title(self, event_id: str, incident_id: str, title: str, user_id: str | None) -> ServiceResult:
        self._validate_title(title)
        incident = self._get_incident(incident_id, event_id)
        if not self._can_edit(user_id, incident):
            raise AccessDenied("Insufficient permissions to edit this report title.")
        incident.title = title
        return self._finish_field_update(incident, "update_incident_title", user_id)

    @service_operation("Failed to update report description.")
    def update_incident_description(
        self, event_id: str, incident_id: str, description: str, user_id: str | None
    ) -> ServiceResult:
        description = self._validate_description(description).strip()
        incident = self._get_incident(incident_id, event_id)
        self._authorize_field_edit(incident, user_id, RoleName.EVENT_ADMIN, True, "description")
        incident.description = self.cipher.encrypt_field(description)
        self.search_index.index_field(self.db, TARGET_INCIDENT, incident.id, "description", description)
        return self._finish_field_update(incident, "update_incident_description", user_id)

    @service_operation("Failed to update report location.")
    def update_incident_location(
        self, event_id: str, incident_id: str, location: str | None, user_id: str | None
    ) -> ServiceResult:
        location = self._validate_optional_text(location, LOCATION_MAX_LENGTH, "Location")
        incident = self._get_incident(incident_id, event_id)
        self._authorize_field_edit(incident, user_id, RoleName.RESPONDER, True, "location")
        incident.location = self.cipher.encrypt_field(location)
        return self._finish_field_update(incident, "update_incident_location", user_id)

    @service_operation("Failed to update report incident date.")
    def update_incident_incident_date(
        self, event_id: str, incident_id: str, incident_at: Any, user_id: str | None
    ) -> ServiceResult:
        parsed = self._validate_incident_at(incident_at)
        incident = self._get_incident(incident_id, event_id)
        self._authorize_field_edit(incident, user_id, RoleName.RESPONDER, True, "incident date")
        incident.incident_at = parsed
        return self._finish_field_update(incident, "update_incident_incident_date", user_id)

    @service_operation("Failed to update report parties.")
    def update_incident_parties(
        self, event_id: str, incident_id: str, parties: str | None, user_id: str | None
    ) -> ServiceResult:
        parties = self._validate_optional_text(parties, PARTIES_MAX_LENGTH_ON_UPDATE, "Parties involved")
        incident = self._get_incident(incident_id, event_id)
        self._authorize_field_edit(incident, user_id, RoleName.RESPONDER, True, "parties")
        incident.parties = self.cipher.encrypt_field(parties)
        return self._finish_field_update(incident, "update_incident_parties", user_id)

    @service_operation("Failed to update report severity.")
    def update_incident_severity(
        self, event_id: str, incident_id: str, severity: str, user_id: str | None
    ) -> ServiceResult:
        parsed = parse_severity(severity)
        if parsed is None:
            raise ValidationFailed("Invalid severity. Must be: low, medium, high, or critical.")
        incident = self._get_incident(incident_id, event_id)
        self._authorize_field_edit(incident, user_id, RoleName.RESPONDER, False, "severity")
        incident.severity = parsed.value
        return self._finish_field_update(incident, "update_incident_severity", user_id)

    @service_operation("Failed to update report tags.")
    def update_incident_tags(
        self, event_id: str, incident_id: str, tag_ids: list[str], user_id: str | None
    ) -> ServiceResult:
        incident = self._get_incident(incident_id, event_id)
        self._authorize_field_edit(incident, user_id, RoleName.RESPONDER, False, "tags")
        incident.tags = self._tags_for_event(incident.event_id, self._validate_tag_ids(tag_ids))
        return self._finish_field_update(incident, "update_incident_tags", user_id)

    @service_operation("Failed to update report type.")
    def update_incident_type(
        self, event_id: str, incident_id: str, incident_type: str, user_id: str | None
    ) -> ServiceResult:
        parsed = self._validate_incident_type(incident_type)
        incident = self._get_incident(incident_id, event_id)
        self._authorize_field_edit(incident, user_id, RoleName.RESPONDER, True, "type")
        incident.type = parsed.value
        return self._finish_field_update(incident, "update_incident_type", user_id)

    @service_operation("Failed to update report contact preference.")
    def update_incident_contact_preference(
        self, event_id: str, incident_id: str, contact_preference: str, user_id: str | None
    ) -> ServiceResult:
        """Only the reporter decides how they want to be contacted."""
        parsed = self._validate_contact_preference(contact_preference)
        incident = self._get_incident(incident_id, event_id)
        if not user_id or incident.reporter_id != user_id:
            raise AccessDenied("Only the reporter can edit contact preference.")
        incident.contact_preference = parsed.value
        return self._finish_field_update(incident, "update_incident_contact_preference", user_id)

    @service_operation("Failed to update incident.")
    def update_incident_assignment(
        self, event_id: str, incident_id: str, changes: dict[str, Any], user_id: str | None
    ) -> ServiceResult:
        """
        Update any of assigned_responder_id, severity and resolution.

        Only keys present in ``changes`` are applied; None clears the
        assignee or the resolution. State is not accepted here and only
        moves through update_incident_state. Returns the incident with its
        original assignee and state so callers can decide what to notify.
        """
        unknown = set(changes) - {"assigned_responder_id", "severity", "resolution"}
        if unknown:
            raise ValidationFailed(f"Cannot update {', '.join(sorted(unknown))} here.")
        if not changes:
            raise ValidationFailed("No fields to update.")

        incident = self._get_incident(incident_id, event_id, lock=True)
        self._authorize_field_edit(incident, user_id, RoleName.RESPONDER, False, "assignment")

        original_assignee = incident.assigned_responder_id
        original_state = incident.state
        actions = []

        if "assigned_responder_id" in changes:
            assignee_id = changes["assigned_responder_id"] or None
            if assignee_id is not None:
                if self.db.get(User, assignee_id) is None:
                    raise ValidationFailed("Assigned user not found.")
                if not self.authz.has_event_role(assignee_id, event_id, [RoleName.RESPONDER, RoleName.EVENT_ADMIN]):
                    raise ValidationFailed("Assigned user must have Responder or Event Admin role for this event.")
            if assignee_id != original_assignee:
                incident.assigned_responder_id = assignee_id
                actions.append("assign_incident" if assignee_id else "unassign_incident")

        if "severity" in changes:
            severity = parse_severity(changes["severity"])
            if severity is None:
                raise ValidationFailed("Invalid severity. Must be: low, medium, high, or critical.")
            incident.severity = severity.value
            actions.append("update_incident_severity")

        if "resolution" in changes:
            incident.resolution = self._validate_optional_text(
                changes["resolution"], RESOLUTION_MAX_LENGTH, "Resolution"
            )
            actions.append("update_incident_resolution")

        incident.updated_at = utcnow()
        self.db.commit()
        for action in actions:
            self.audit.dispatch(
                AuditRecord(
                    action=action,
                    target_type=TARGET_INCIDENT,
                    target_id=incident.id,
                    event_id=event_id,
                    user_id=user_id,
                )
            )

        self.db.refresh(incident)
        return ServiceResult.ok(
            {
                "incident": self.serialize(incident),
                "original_state": original_state,
                "original_assigned_responder_id": original_assignee,
            }
        )

    # =========================================================
    # BULK
    # =========================================================

    def _validate_bulk_action(
        self, event_id: str, action: str, incidents: list[Incident], options: dict[str, Any]
    ) -> tuple[dict[str, Any], list[str]]:
        """Column values for the bulk statement plus per-incident errors."""
        errors: list[str] = []

        if action == "assign":
            assigned_to = options.get("assigned_to")
            if not assigned_to:
                return {}, [f"Report {i.id}: assigned_to is required for assign action" for i in incidents]
            if self.db.get(User, assigned_to) is None or not self.authz.has_event_role(
                assigned_to, event_id, [RoleName.RESPONDER, RoleName.EVENT_ADMIN]
            ):
                return {}, ["Assigned user must have Responder or Event Admin role for this event."]
            return {"assigned_responder_id": assigned_to}, errors

        if action == "status":
            target = parse_state(options.get("status"))
            if target is None:
                return {}, [f"Report {i.id}: Invalid status {options.get('status')}" for i in incidents]
            for incident in incidents:
                current = IncidentState(incident.state)
                if not can_transition(current, target):
                    errors.append(f"Report {incident.id}: Cannot transition from {current.value} to {target.value}")
                    continue
                message = missing_requirement(target, options.get("notes"), incident.assigned_responder_id)
                if message:
                    errors.append(f"Report {incident.id}: {message}")
            return {"state": target.value}, errors

        return {}, errors

    @service_operation("Failed to perform bulk update")
    def bulk_update_incidents(
        self, event_id: str, incident_ids: list[str], action: str, options: dict[str, Any]
    ) -> ServiceResult:
        """
        Apply one action to many incidents, all or nothing.

        Validation errors (missing ids, bad action fields) are collected and
        returned with updated=0 instead of failing the call. Target rows stay
        locked from validation through the write.
        """
        user_id = options.get("user_id")
        if action not in BULK_ACTIONS:
            raise ValidationFailed(f"Unknown action {action}")
        minimum = RoleName.EVENT_ADMIN if action == "delete" else RoleName.RESPONDER
        if not self.authz.has_event_level(user_id, event_id, minimum):
            raise AccessDenied("Access denied: Insufficient permissions for bulk operations")

        unique_ids = list(dict.fromkeys(incident_ids or []))
        if not unique_ids:
            raise ValidationFailed("No incidents selected.")

        incidents = self.db.scalars(
            select(Incident)
            .where(Incident.id.in_(unique_ids), Incident.event_id == event_id)
            .with_for_update()
        ).all()
        found = {incident.id for incident in incidents}
        errors = [f"Report {i} not found or not in this event" for i in unique_ids if i not in found]

        values, action_errors = self._validate_bulk_action(event_id, action, list(incidents), options)
        errors.extend(action_errors)
        if errors:
            self.db.rollback()
            return ServiceResult.ok({"updated": 0, "errors": errors})

        original_states = {incident.id: incident.state for incident in incidents}
        if action == "delete":
            comment_ids = self.db.scalars(
                select(IncidentComment.id).where(IncidentComment.incident_id.in_(unique_ids))
            ).all()
            self.search_index.remove(self.db, TARGET_COMMENT, comment_ids)
            self.search_index.remove(self.db, TARGET_INCIDENT, unique_ids)
            self.db.execute(
                delete(Incident).where(Incident.id.in_(unique_ids)).execution_options(synchronize_session="fetch")
            )
        else:
            values["updated_at"] = utcnow()
            self.db.execute(
                update(Incident)
                .where(Incident.id.in_(unique_ids))
                .values(**values)
                .execution_options(synchronize_session="fetch")
            )
        self.db.commit()
        logger.info("Bulk %s applied to %d incidents in event %s", action, len(unique_ids), event_id)

        for incident_id in unique_ids:
            if action == "status":
                audit_action = f"State changed from {original_states[incident_id]} to {values['state']}"
            else:
                audit_action = {"assign": "assign_incident", "delete": "delete_incident"}[action]
            self.audit.dispatch(
                AuditRecord(
                    action=audit_action,
                    target_type=TARGET_INCIDENT,
                    target_id=incident_id,
                    event_id=event_id,
                    user_id=user_id,
                )
            )

        return ServiceResult.ok({"updated": len(unique_ids), "errors": []})

    # =========================================================
    # RELATED FILES
    # =========================================================

    def _require_access(self, user_id: str | None, incident: Incident) -> list[str]:
        is_reporter = bool(user_id and incident.reporter_id == user_id)
        roles = self.authz.resolve_event_roles(user_id, incident.event_id)
        if not is_reporter and not any(role in PRIVILEGED_ROLES for role in roles):
            raise AccessDenied("Access denied. User does not have permission for this report.")
        return roles

    def _get_file(self, file_id: str) -> RelatedFile:
        stored = self.db.get(RelatedFile, file_id)
        if stored is None:
            raise NotFound("Related file not found.")
        return stored

    @service_operation("Failed to upload related files.")
    def upload_related_files(
        self, incident_id: str, files: list[RelatedFileUpload], user_id: str | None
    ) -> ServiceResult:
        if not files:
            raise ValidationFailed("No files uploaded.")
        self._validate_files(files)
        incident = self._get_incident(incident_id)
        self._require_access(user_id, incident)

        stored_files = [
            RelatedFile(
                incident_id=incident.id,
                filename=upload.filename,
                mimetype=upload.mimetype,
                size=upload.size,
                data=upload.data,
                uploader_id=upload.uploader_id or user_id,
            )
            for upload in files
        ]
        self.db.add_all(stored_files)
        self.db.commit()

        for stored in stored_files:
            self.audit.dispatch(
                AuditRecord(
                    action="upload_related_file",
                    target_type=TARGET_RELATED_FILE,
                    target_id=stored.id,
                    event_id=incident.event_id,
                    user_id=stored.uploader_id,
                )
            )
        return ServiceResult.ok({"files": [stored.summary() for stored in stored_files]})

    @service_operation("Failed to fetch related files.")
    def list_related_files(self, incident_id: str, user_id: str | None) -> ServiceResult:
        incident = self._get_incident(incident_id)
        self._require_access(user_id, incident)
        files = self.db.scalars(
            select(RelatedFile).where(RelatedFile.incident_id == incident.id).order_by(RelatedFile.created_at)
        ).all()
        return ServiceResult.ok({"files": [stored.summary() for stored in files]})

    @service_operation("Failed to fetch related file.")
    def get_related_file(self, file_id: str, user_id: str | None) -> ServiceResult:
        stored = self._get_file(file_id)
        self._require_access(user_id, stored.incident)
        return ServiceResult.ok(
            {
                "filename": stored.filename,
                "mimetype": stored.mimetype,
                "size": stored.size,
                "data": stored.data,
            }
        )

    @service_operation("Failed to delete related file.")
    def delete_related_file(self, file_id: str, user_id: str | None) -> ServiceResult:
        stored = self._get_file(file_id)
        incident = stored.incident
        is_uploader = bool(user_id and stored.uploader_id == user_id)
        if not is_uploader and not self.authz.has_event_level(user_id, incident.event_id, RoleName.EVENT_ADMIN):
            raise AccessDenied("Only the uploader or an event admin can delete this file.")

        self.db.delete(stored)
        self.db.commit()
        self.audit.dispatch(
            AuditRecord(
                action="delete_related_file",
                target_type=TARGET_RELATED_FILE,
                target_id=file_id,
                event_id=incident.event_id,
                user_id=user_id,
            )
        )
        return ServiceResult.ok({"message": "Related file deleted."})
