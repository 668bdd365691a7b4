"""
comments.py - Incident comments.

Bodies are encrypted at rest and indexed in the blind search index.
Visibility for a viewer:

    responder and above      public + internal
    assigned responder       public + internal (whatever their role)
    anyone else with access  public

Only the author may edit or delete a comment.
"""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from incidentdesk.core.encryption import FieldCipher
from incidentdesk.core.errors import AccessDenied, NotFound, ValidationFailed
from incidentdesk.core.roles import RoleName
from incidentdesk.core.workflow import CommentVisibility
from incidentdesk.models import Incident, IncidentComment
from incidentdesk.services.audit import AuditDispatcher, AuditRecord, NullAuditSink
from incidentdesk.services.authorization import AuthorizationService
from incidentdesk.services.results import ServiceResult, service_operation
from incidentdesk.services.search_index import SearchIndex

logger = logging.getLogger(__name__)

TARGET_COMMENT = "comment"
COMMENT_BODY_MAX_LENGTH = 5000
MAX_PAGE_SIZE = 100


@dataclass
class CommentQuery:
    page: int = 1
    limit: int = 10
    visibility: str | None = None
    author_id: str | None = None
    search: str | None = None
    sort_by: str = "created_at"
    sort_order: str = "asc"


def _parse_visibility(value: Any) -> CommentVisibility:
    try:
        return CommentVisibility(value)
    except ValueError:
        raise ValidationFailed("Invalid visibility. Must be: public or internal.") from None


class CommentService:
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

    def serialize(self, comment: IncidentComment) -> dict[str, Any]:
        author = comment.author
        return {
            "id": comment.id,
            "incident_id": comment.incident_id,
            "author_id": comment.author_id,
            "author": {"id": author.id, "name": author.name, "email": author.email} if author else None,
            "body": self.cipher.decrypt_field(comment.body),
            "visibility": comment.visibility,
            "is_markdown": comment.is_markdown,
            "created_at": comment.created_at,
            "updated_at": comment.updated_at,
        }

    # =========================================================
    # VISIBILITY
    # =========================================================

    def visible_visibilities(self, incident: Incident, viewer_id: str | None) -> list[CommentVisibility]:
        if self.authz.has_event_level(viewer_id, incident.event_id, RoleName.RESPONDER):
            return [CommentVisibility.PUBLIC, CommentVisibility.INTERNAL]
        if viewer_id and incident.assigned_responder_id == viewer_id:
            return [CommentVisibility.PUBLIC, CommentVisibility.INTERNAL]
        return [CommentVisibility.PUBLIC]

    def _can_view_incident(self, incident: Incident, viewer_id: str | None) -> bool:
        if not viewer_id:
            return False
        if viewer_id in (incident.reporter_id, incident.assigned_responder_id):
            return True
        return self.authz.has_event_level(viewer_id, incident.event_id, RoleName.RESPONDER)

    def _get_incident(self, incident_id: str) -> Incident:
        incident = self.db.get(Incident, incident_id)
        if incident is None:
            raise NotFound("Report not found")
        return incident

    def _get_comment(self, comment_id: str) -> IncidentComment:
        comment = self.db.get(IncidentComment, comment_id)
        if comment is None:
            raise NotFound("Comment not found")
        return comment

    @staticmethod
    def _validate_body(body: Any) -> str:
        if not isinstance(body, str) or not body.strip():
            raise ValidationFailed("Comment body is required.")
        if len(body) > COMMENT_BODY_MAX_LENGTH:
            raise ValidationFailed(f"Comment must be less than {COMMENT_BODY_MAX_LENGTH} characters.")
        return body

    @staticmethod
    def _validate_page(query: CommentQuery) -> int:
        if query.page < 1 or query.limit < 1:
            raise ValidationFailed("Invalid pagination parameters")
        if query.sort_by not in ("created_at", "updated_at"):
            raise ValidationFailed("Invalid sort field")
        if query.sort_order not in ("asc", "desc"):
            raise ValidationFailed("Invalid sort order")
        return min(query.limit, MAX_PAGE_SIZE)

    def _page(self, conditions: list, query: CommentQuery, limit: int) -> dict[str, Any]:
        if query.search and query.search.strip():
            matching = self.search_index.matching_ids(TARGET_COMMENT, "body", query.search)
            if matching is not None:
                conditions.append(IncidentComment.id.in_(matching))

        total = self.db.scalar(select(func.count(IncidentComment.id)).where(*conditions)) or 0
        column = getattr(IncidentComment, query.sort_by)
        ordering = column.asc() if query.sort_order == "asc" else column.desc()
        comments = self.db.scalars(
            select(IncidentComment)
            .where(*conditions)
            .order_by(ordering, IncidentComment.id)
            .offset((query.page - 1) * limit)
            .limit(limit)
        ).all()
        return {
            "comments": [self.serialize(c) for c in comments],
            "pagination": {
                "page": query.page,
                "limit": limit,
                "total": total,
                "total_pages": (total + limit - 1) // limit,
            },
        }

    # =========================================================
    # OPERATIONS
    # =========================================================

    @service_operation("Failed to create comment.")
    def create_comment(
        self,
        incident_id: str,
        author_id: str | None,
        body: str,
        visibility: str = CommentVisibility.PUBLIC.value,
        is_markdown: bool = False,
    ) -> ServiceResult:
        """
        Add a comment. With an author, the author must be able to see the
        incident, and internal comments need the internal visibility.
        """
        body = self._validate_body(body)
        parsed_visibility = _parse_visibility(visibility)
        incident = self._get_incident(incident_id)

        if author_id is not None:
            if not self._can_view_incident(incident, author_id):
                raise AccessDenied("Access denied. User does not have permission for this report.")
            if parsed_visibility not in self.visible_visibilities(incident, author_id):
                raise AccessDenied("Only responders and event admins can add internal comments.")

        comment = IncidentComment(
            incident_id=incident.id,
            author_id=author_id,
            body=self.cipher.encrypt_field(body),
            visibility=parsed_visibility.value,
            is_markdown=bool(is_markdown),
        )
        self.db.add(comment)
        self.db.flush()
        self.search_index.index_field(self.db, TARGET_COMMENT, comment.id, "body", body)
        self.db.commit()

        self.audit.dispatch(
            AuditRecord(
                action="comment_created",
                target_type=TARGET_COMMENT,
                target_id=comment.id,
                event_id=incident.event_id,
                user_id=author_id,
            )
        )
        self.db.refresh(comment)
        return ServiceResult.ok({"comment": self.serialize(comment)})

    @service_operation("Failed to fetch comments.")
    def get_incident_comments(
        self, incident_id: str, viewer_id: str | None, query: CommentQuery | None = None
    ) -> ServiceResult:
        query = query or CommentQuery()
        limit = self._validate_page(query)
        incident = self._get_incident(incident_id)
        if not self._can_view_incident(incident, viewer_id):
            raise AccessDenied("Access denied. User does not have permission for this report.")

        allowed = [v.value for v in self.visible_visibilities(incident, viewer_id)]
        if query.visibility:
            requested = _parse_visibility(query.visibility).value
            allowed = [v for v in allowed if v == requested]

        conditions = [IncidentComment.incident_id == incident.id, IncidentComment.visibility.in_(allowed)]
        if query.author_id:
            conditions.append(IncidentComment.author_id == query.author_id)
        return ServiceResult.ok(self._page(conditions, query, limit))

    @service_operation("Failed to fetch comment.")
    def get_comment(self, comment_id: str, viewer_id: str | None) -> ServiceResult:
        comment = self._get_comment(comment_id)
        incident = comment.incident
        if not self._can_view_incident(incident, viewer_id):
            raise AccessDenied("Access denied. User does not have permission for this report.")
        if CommentVisibility(comment.visibility) not in self.visible_visibilities(incident, viewer_id):
            raise NotFound("Comment not found")
        return ServiceResult.ok({"comment": self.serialize(comment)})

    def _require_author(self, comment: IncidentComment, user_id: str | None, verb: str) -> None:
        if not user_id:
            raise AccessDenied(f"Authentication required to {verb} comments.")
        if comment.author_id != user_id:
            raise AccessDenied(f"Not authorized to {verb} this comment")

    @service_operation("Failed to update comment.")
    def update_comment(self, comment_id: str, data: dict[str, Any], user_id: str | None) -> ServiceResult:
        comment = self._get_comment(comment_id)
        self._require_author(comment, user_id, "update")

        if data.get("body") is not None:
            body = self._validate_body(data["body"])
            comment.body = self.cipher.encrypt_field(body)
            self.search_index.index_field(self.db, TARGET_COMMENT, comment.id, "body", body)
        if data.get("visibility") is not None:
            visibility = _parse_visibility(data["visibility"])
            if visibility not in self.visible_visibilities(comment.incident, user_id):
                raise AccessDenied("Only responders and event admins can add internal comments.")
            comment.visibility = visibility.value
        if data.get("is_markdown") is not None:
            comment.is_markdown = bool(data["is_markdown"])
        self.db.commit()

        self.audit.dispatch(
            AuditRecord(
                action="comment_updated",
                target_type=TARGET_COMMENT,
                target_id=comment.id,
                event_id=comment.incident.event_id,
                user_id=user_id,
            )
        )
        self.db.refresh(comment)
        return ServiceResult.ok({"comment": self.serialize(comment)})

    @service_operation("Failed to delete comment.")
    def delete_comment(self, comment_id: str, user_id: str | None) -> ServiceResult:
        comment = self._get_comment(comment_id)
        self._require_author(comment, user_id, "delete")
        event_id = comment.incident.event_id

        self.search_index.remove(self.db, TARGET_COMMENT, comment.id)
        self.db.delete(comment)
        self.db.commit()

        self.audit.dispatch(
            AuditRecord(
                action="comment_deleted",
                target_type=TARGET_COMMENT,
                target_id=comment_id,
                event_id=event_id,
                user_id=user_id,
            )
        )
        return ServiceResult.ok({"message": "Comment deleted successfully"})

    @service_operation("Failed to fetch comments.")
    def get_comments_by_author(self, author_id: str, query: CommentQuery | None = None) -> ServiceResult:
        query = query or CommentQuery()
        limit = self._validate_page(query)
        conditions = [IncidentComment.author_id == author_id]
        if query.visibility:
            conditions.append(IncidentComment.visibility == _parse_visibility(query.visibility).value)
        return ServiceResult.ok(self._page(conditions, query, limit))
