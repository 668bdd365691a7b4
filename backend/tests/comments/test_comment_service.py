"""
test_comment_service.py - Comment visibility and authorship rules.
"""

import uuid

import pytest
from sqlalchemy import select

from incidentdesk.core.errors import ErrorKind
from incidentdesk.core.roles import RoleName
from incidentdesk.models import AuditLog, IncidentComment
from incidentdesk.services.comments import CommentQuery


@pytest.fixture
def incident(create_incident):
    return create_incident()


def _bodies(result) -> list[str]:
    return [c["body"] for c in result.data["comments"]]


class TestCreateComment:
    def test_body_is_encrypted_at_rest(self, comment_service, incident, reporter, db):
        result = comment_service.create_comment(incident["id"], reporter.id, "I saw it too")

        assert result.success
        assert result.data["comment"]["body"] == "I saw it too"
        stored = db.get(IncidentComment, result.data["comment"]["id"])
        assert stored.body != "I saw it too"

    def test_reporter_cannot_post_internal(self, comment_service, incident, reporter):
        result = comment_service.create_comment(incident["id"], reporter.id, "psst", visibility="internal")

        assert result.kind == ErrorKind.FORBIDDEN

    def test_user_without_access_cannot_comment(self, comment_service, incident, event, make_user, grant):
        other = make_user("Other Reporter")
        grant(other, RoleName.REPORTER, event.id)

        result = comment_service.create_comment(incident["id"], other.id, "hello")

        assert result.kind == ErrorKind.FORBIDDEN

    @pytest.mark.parametrize("body,visibility", [("   ", "public"), ("x" * 5001, "public"), ("ok", "secret")])
    def test_invalid_input(self, comment_service, incident, responder, body, visibility):
        result = comment_service.create_comment(incident["id"], responder.id, body, visibility=visibility)

        assert result.kind == ErrorKind.VALIDATION

    def test_unknown_incident(self, comment_service, responder):
        assert comment_service.create_comment(str(uuid.uuid4()), responder.id, "hello").kind == ErrorKind.NOT_FOUND

    def test_creation_is_audited(self, comment_service, incident, responder, db):
        comment_id = comment_service.create_comment(incident["id"], responder.id, "hello").data["comment"]["id"]

        actions = db.scalars(select(AuditLog.action).where(AuditLog.target_id == comment_id)).all()
        assert actions == ["comment_created"]


class TestVisibility:
    @pytest.fixture
    def thread(self, comment_service, incident, responder):
        comment_service.create_comment(incident["id"], responder.id, "public reply")
        comment_service.create_comment(incident["id"], responder.id, "internal triage", visibility="internal")

    def test_responder_sees_internal(self, comment_service, incident, responder, thread):
        result = comment_service.get_incident_comments(incident["id"], responder.id)

        assert _bodies(result) == ["public reply", "internal triage"]
        assert result.data["pagination"]["total"] == 2

    def test_reporter_sees_public_only(self, comment_service, incident, reporter, thread):
        result = comment_service.get_incident_comments(incident["id"], reporter.id)

        assert _bodies(result) == ["public reply"]

    def test_assigned_reporter_sees_internal(
        self, comment_service, incident_service, incident, event, reporter, responder, grant, thread
    ):
        """A reporter who is also the assignee sees internal comments on that incident."""
        grant(reporter, RoleName.RESPONDER, event.id)
        incident_service.update_incident_state(
            event.id, incident["id"], "investigating", responder.id, notes="over to Rita", assigned_to_user_id=reporter.id
        )
        comment_service.authz.revoke_role(reporter.id, RoleName.RESPONDER, "event", event.id)

        result = comment_service.get_incident_comments(incident["id"], reporter.id)

        assert "internal triage" in _bodies(result)

    def test_hidden_comment_looks_missing(self, comment_service, incident, responder, reporter):
        internal = comment_service.create_comment(incident["id"], responder.id, "triage", visibility="internal")

        result = comment_service.get_comment(internal.data["comment"]["id"], reporter.id)

        assert result.kind == ErrorKind.NOT_FOUND

    def test_visibility_filter(self, comment_service, incident, responder, thread):
        result = comment_service.get_incident_comments(
            incident["id"], responder.id, CommentQuery(visibility="internal")
        )

        assert _bodies(result) == ["internal triage"]

    def test_stranger_cannot_list(self, comment_service, incident, make_user):
        result = comment_service.get_incident_comments(incident["id"], make_user().id)

        assert result.kind == ErrorKind.FORBIDDEN


class TestListing:
    def test_pagination_and_order(self, comment_service, incident, responder):
        for n in range(3):
            comment_service.create_comment(incident["id"], responder.id, f"comment {n}")

        page = comment_service.get_incident_comments(
            incident["id"], responder.id, CommentQuery(page=2, limit=2, sort_order="asc")
        )

        assert _bodies(page) == ["comment 2"]
        assert page.data["pagination"]["total_pages"] == 2

    def test_search_by_word(self, comment_service, incident, responder):
        comment_service.create_comment(incident["id"], responder.id, "Spoke with venue security")
        comment_service.create_comment(incident["id"], responder.id, "Follow up tomorrow")

        result = comment_service.get_incident_comments(incident["id"], responder.id, CommentQuery(search="security"))

        assert _bodies(result) == ["Spoke with venue security"]

    def test_invalid_sort(self, comment_service, incident, responder):
        result = comment_service.get_incident_comments(incident["id"], responder.id, CommentQuery(sort_by="body"))

        assert result.kind == ErrorKind.VALIDATION

    def test_comments_by_author(self, comment_service, create_incident, reporter, responder):
        first, second = create_incident(), create_incident(title="Another report here")
        comment_service.create_comment(first["id"], reporter.id, "mine one")
        comment_service.create_comment(second["id"], reporter.id, "mine two")
        comment_service.create_comment(first["id"], responder.id, "not mine")

        result = comment_service.get_comments_by_author(reporter.id, CommentQuery(sort_order="asc"))

        assert _bodies(result) == ["mine one", "mine two"]


class TestAuthorship:
    @pytest.fixture
    def comment(self, comment_service, incident, responder):
        return comment_service.create_comment(incident["id"], responder.id, "first draft").data["comment"]

    def test_author_updates(self, comment_service, comment, responder):
        result = comment_service.update_comment(comment["id"], {"body": "second draft"}, responder.id)

        assert result.data["comment"]["body"] == "second draft"

    def test_event_admin_cannot_edit_others(self, comment_service, comment, event_admin):
        result = comment_service.update_comment(comment["id"], {"body": "edited"}, event_admin.id)

        assert result.kind == ErrorKind.FORBIDDEN
        assert result.error == "Not authorized to update this comment"

    def test_missing_user_is_rejected(self, comment_service, comment):
        update = comment_service.update_comment(comment["id"], {"body": "edited"}, None)
        delete = comment_service.delete_comment(comment["id"], None)

        assert update.error == "Authentication required to update comments."
        assert delete.error == "Authentication required to delete comments."

    def test_author_deletes(self, comment_service, comment, responder, db):
        result = comment_service.delete_comment(comment["id"], responder.id)

        assert result.success
        assert db.get(IncidentComment, comment["id"]) is None
        assert comment_service.get_comment(comment["id"], responder.id).kind == ErrorKind.NOT_FOUND
