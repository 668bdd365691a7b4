"""
test_incident_service.py - Incident lifecycle through IncidentService.

Covers creation and validation, the forward-only state machine, per-field
edit permissions, listing and search, and all-or-nothing bulk updates.
"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from incidentdesk.core.errors import ErrorKind
from incidentdesk.core.roles import RoleName
from incidentdesk.database import utcnow
from incidentdesk.models import AuditLog, Incident, IncidentComment
from incidentdesk.services.incidents import INCIDENT_NOT_FOUND, IncidentQuery, RelatedFileUpload


# =========================================================
# CREATE
# =========================================================


class TestCreateIncident:
    def test_new_incident_defaults(self, create_incident, db):
        """Fresh incidents start submitted/low; description is stored encrypted."""
        incident = create_incident()

        assert incident["state"] == "submitted"
        assert incident["severity"] == "low"
        assert incident["type"] == "other"
        assert incident["contact_preference"] == "email"
        assert incident["description"] == "detailed text"

        stored = db.get(Incident, incident["id"])
        assert stored.description != "detailed text"
        assert len(stored.description.split(":")) == 4

    def test_optional_fields_are_encrypted(self, create_incident, db):
        incident = create_incident(parties="Alex and Sam", location="Hall B", urgency="high")

        assert incident["parties"] == "Alex and Sam"
        assert incident["location"] == "Hall B"
        assert incident["severity"] == "high"
        stored = db.get(Incident, incident["id"])
        assert stored.parties != "Alex and Sam"
        assert stored.location != "Hall B"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"title": "too short"},
            {"title": "x" * 71},
            {"description": "   "},
            {"description": "d" * 5001},
            {"urgency": "apocalyptic"},
            {"parties": "p" * 501},
            {"location": "l" * 201},
            {"incident_at": "not a date"},
            {"type": "gossip"},
            {"contact_preference": "carrier pigeon"},
            {"tag_ids": 5},
            {"tag_ids": "not-a-list"},
            {"tag_ids": [1, 2]},
        ],
    )
    def test_invalid_input_is_rejected(self, incident_service, event, reporter, overrides):
        data = {
            "event_id": event.id,
            "reporter_id": reporter.id,
            "title": "Something happened here",
            "description": "detailed text",
        }
        data.update(overrides)

        result = incident_service.create_incident(data)

        assert not result.success
        assert result.kind == ErrorKind.VALIDATION

    def test_missing_required_fields(self, incident_service, event):
        result = incident_service.create_incident({"event_id": event.id, "title": "Something happened here"})

        assert not result.success
        assert "Missing required fields" in result.error

    def test_incident_date_too_far_in_future(self, incident_service, event, reporter):
        result = incident_service.create_incident(
            {
                "event_id": event.id,
                "reporter_id": reporter.id,
                "title": "Something happened here",
                "description": "detailed text",
                "incident_at": (utcnow() + timedelta(days=3)).isoformat(),
            }
        )

        assert not result.success
        assert "24 hours" in result.error

    def test_incident_date_within_a_day_is_accepted(self, create_incident):
        when = utcnow() + timedelta(hours=2)
        incident = create_incident(incident_at=when.isoformat())

        assert incident["incident_at"] == when

    def test_unknown_event(self, incident_service, reporter):
        result = incident_service.create_incident(
            {
                "event_id": str(uuid.uuid4()),
                "reporter_id": reporter.id,
                "title": "Something happened here",
                "description": "detailed text",
            }
        )

        assert result.kind == ErrorKind.NOT_FOUND

    def test_tags_must_belong_to_event(self, incident_service, event, reporter, make_event, make_tag):
        own = make_tag(event, "harassment")
        foreign = make_tag(make_event("Other"), "safety")
        data = {
            "event_id": event.id,
            "reporter_id": reporter.id,
            "title": "Something happened here",
            "description": "detailed text",
        }

        ok = incident_service.create_incident({**data, "tag_ids": [own.id]})
        bad = incident_service.create_incident({**data, "tag_ids": [own.id, foreign.id]})

        assert [t["name"] for t in ok.data["incident"]["tags"]] == ["harassment"]
        assert bad.kind == ErrorKind.VALIDATION

    def test_non_list_tag_ids_fail_as_validation(self, incident_service, event, reporter):
        result = incident_service.create_incident(
            {
                "event_id": event.id,
                "reporter_id": reporter.id,
                "title": "Something happened here",
                "description": "detailed text",
                "tag_ids": 5,
            }
        )

        assert result.kind == ErrorKind.VALIDATION
        assert result.error == "tag_ids must be a list of tag ids."

    def test_related_files_are_stored(self, incident_service, event, reporter):
        upload = RelatedFileUpload(filename="photo.png", mimetype="image/png", data=b"\x89PNG")

        result = incident_service.create_incident(
            {
                "event_id": event.id,
                "reporter_id": reporter.id,
                "title": "Something happened here",
                "description": "detailed text",
            },
            related_files=[upload],
        )

        files = result.data["incident"]["related_files"]
        assert len(files) == 1
        assert files[0]["filename"] == "photo.png"
        assert files[0]["size"] == 4

    def test_oversized_related_file(self, incident_service, event, reporter):
        upload = RelatedFileUpload(filename="big.bin", mimetype="application/octet-stream", data=b"0" * (10 * 1024 * 1024 + 1))

        result = incident_service.create_incident(
            {
                "event_id": event.id,
                "reporter_id": reporter.id,
                "title": "Something happened here",
                "description": "detailed text",
            },
            related_files=[upload],
        )

        assert result.kind == ErrorKind.VALIDATION
        assert db_count(incident_service, Incident) == 0

    def test_creation_is_audited(self, create_incident, db):
        incident = create_incident()

        actions = db.scalars(select(AuditLog.action).where(AuditLog.target_id == incident["id"])).all()
        assert actions == ["create_incident"]


def db_count(service, model) -> int:
    return len(service.db.scalars(select(model)).all())


# =========================================================
# STATE MACHINE
# =========================================================


class TestStateTransitions:
    def test_acknowledge(self, incident_service, create_incident, event, responder):
        incident = create_incident()

        result = incident_service.update_incident_state(event.id, incident["id"], "acknowledged", responder.id)

        assert result.success
        assert result.data["incident"]["state"] == "acknowledged"
        assert result.data["original_state"] == "submitted"

    def test_investigating_requires_assignment(self, incident_service, create_incident, event, responder, db):
        """Notes are given but no assignee: rejected and nothing changes."""
        incident = create_incident()

        result = incident_service.update_incident_state(
            event.id, incident["id"], "investigating", responder.id, notes="looking"
        )

        assert not result.success
        assert "requires assignment" in result.error
        assert db.get(Incident, incident["id"]).state == "submitted"
        assert db.scalars(select(AuditLog).where(AuditLog.action.like("State changed%"))).all() == []

    def test_investigating_requires_notes(self, incident_service, create_incident, event, responder):
        incident = create_incident()

        result = incident_service.update_incident_state(
            event.id, incident["id"], "investigating", responder.id, assigned_to_user_id=responder.id
        )

        assert not result.success
        assert "requires notes" in result.error

    def test_transition_with_notes_writes_internal_comment(
        self, incident_service, comment_service, create_incident, event, responder, db
    ):
        incident = create_incident()

        result = incident_service.update_incident_state(
            event.id,
            incident["id"],
            "investigating",
            responder.id,
            notes="Talked to both parties",
            assigned_to_user_id=responder.id,
        )

        assert result.success
        assert result.data["incident"]["assigned_responder_id"] == responder.id

        comments = db.scalars(select(IncidentComment).where(IncidentComment.incident_id == incident["id"])).all()
        assert len(comments) == 1
        assert comments[0].visibility == "internal"
        assert comments[0].is_markdown
        body = comment_service.serialize(comments[0])["body"]
        assert body == "**State changed from submitted to investigating**\n\nTalked to both parties"

        actions = db.scalars(select(AuditLog.action).where(AuditLog.target_id == incident["id"])).all()
        assert "State changed from submitted to investigating" in actions
        assert "Report assigned to Ray Responder" in actions

    @pytest.mark.parametrize("notes", [None, "", "   "])
    def test_resolved_without_real_notes_writes_nothing(
        self, incident_service, create_incident, event, responder, db, notes
    ):
        incident = create_incident()

        result = incident_service.update_incident_state(
            event.id, incident["id"], "resolved", responder.id, notes=notes
        )

        assert result.kind == ErrorKind.VALIDATION
        assert "requires notes" in result.error
        assert db.get(Incident, incident["id"]).state == "submitted"
        actions = db.scalars(select(AuditLog.action).where(AuditLog.target_id == incident["id"])).all()
        assert actions == ["create_incident"]
        assert db.scalars(select(IncidentComment).where(IncidentComment.incident_id == incident["id"])).all() == []

    def test_no_backward_transitions(self, incident_service, create_incident, event, responder):
        incident = create_incident()
        incident_service.update_incident_state(event.id, incident["id"], "closed", responder.id)

        result = incident_service.update_incident_state(event.id, incident["id"], "acknowledged", responder.id)

        assert not result.success
        assert "Cannot transition report from closed to acknowledged" in result.error

    def test_same_state_is_rejected(self, incident_service, create_incident, event, responder):
        incident = create_incident()

        result = incident_service.update_incident_state(event.id, incident["id"], "submitted", responder.id)

        assert result.kind == ErrorKind.VALIDATION

    def test_reporter_cannot_change_state(self, incident_service, create_incident, event, reporter):
        incident = create_incident()

        result = incident_service.update_incident_state(event.id, incident["id"], "acknowledged", reporter.id)

        assert result.kind == ErrorKind.FORBIDDEN

    def test_assignee_must_hold_responder_role(self, incident_service, create_incident, event, responder, reporter):
        incident = create_incident()

        result = incident_service.update_incident_state(
            event.id, incident["id"], "investigating", responder.id, notes="n", assigned_to_user_id=reporter.id
        )

        assert result.kind == ErrorKind.VALIDATION
        assert "Responder or Event Admin" in result.error

    def test_incident_from_other_event_is_not_found(
        self, incident_service, create_incident, make_event, make_user, grant
    ):
        incident = create_incident()
        other = make_event("Other")
        outsider = make_user()
        grant(outsider, RoleName.EVENT_ADMIN, other.id)

        result = incident_service.update_incident_state(other.id, incident["id"], "acknowledged", outsider.id)

        assert result.kind == ErrorKind.NOT_FOUND
        assert result.error == INCIDENT_NOT_FOUND

    def test_state_history_newest_first(self, incident_service, create_incident, event, responder):
        incident = create_incident()
        incident_service.update_incident_state(event.id, incident["id"], "acknowledged", responder.id)
        incident_service.update_incident_state(event.id, incident["id"], "resolved", responder.id, notes="done")

        history = incident_service.get_incident_state_history(incident["id"]).data["history"]

        assert [(h["from_state"], h["to_state"]) for h in history] == [
            ("acknowledged", "resolved"),
            ("submitted", "acknowledged"),
        ]
        assert history[0]["changed_by"] == "Ray Responder"


# =========================================================
# FIELD UPDATES
# =========================================================


class TestFieldUpdates:
    def test_reporter_edits_own_title_and_description(self, incident_service, create_incident, event, reporter):
        incident = create_incident()

        title = incident_service.update_incident_title(event.id, incident["id"], "A corrected title", reporter.id)
        description = incident_service.update_incident_description(
            event.id, incident["id"], "  more detail  ", reporter.id
        )

        assert title.data["incident"]["title"] == "A corrected title"
        assert description.data["incident"]["description"] == "more detail"

    def test_responder_cannot_edit_title(self, incident_service, create_incident, event, responder):
        incident = create_incident()

        result = incident_service.update_incident_title(event.id, incident["id"], "A corrected title", responder.id)

        assert result.kind == ErrorKind.FORBIDDEN

    def test_event_admin_edits_title(self, incident_service, create_incident, event, event_admin):
        incident = create_incident()

        result = incident_service.update_incident_title(event.id, incident["id"], "Admin fixed title", event_admin.id)

        assert result.success

    def test_reporter_cannot_change_severity(self, incident_service, create_incident, event, reporter, db):
        incident = create_incident()

        result = incident_service.update_incident_severity(event.id, incident["id"], "high", reporter.id)

        assert result.kind == ErrorKind.FORBIDDEN
        assert db.get(Incident, incident["id"]).severity == "low"

    def test_responder_changes_severity(self, incident_service, create_incident, event, responder):
        incident = create_incident()

        result = incident_service.update_incident_severity(event.id, incident["id"], "critical", responder.id)

        assert result.data["incident"]["severity"] == "critical"

    def test_location_and_parties(self, incident_service, create_incident, event, responder, reporter, db):
        incident = create_incident()

        location = incident_service.update_incident_location(event.id, incident["id"], "Room 4", responder.id)
        parties = incident_service.update_incident_parties(event.id, incident["id"], "Two people", reporter.id)
        cleared = incident_service.update_incident_location(event.id, incident["id"], "", reporter.id)

        assert location.data["incident"]["location"] == "Room 4"
        assert parties.data["incident"]["parties"] == "Two people"
        assert cleared.data["incident"]["location"] is None
        assert db.get(Incident, incident["id"]).parties != "Two people"

    def test_other_reporter_cannot_edit(self, incident_service, create_incident, event, make_user, grant):
        incident = create_incident()
        stranger = make_user("Other Reporter")
        grant(stranger, RoleName.REPORTER, event.id)

        result = incident_service.update_incident_location(event.id, incident["id"], "Room 4", stranger.id)

        assert result.kind == ErrorKind.FORBIDDEN

    def test_missing_user_is_denied(self, incident_service, create_incident, event):
        incident = create_incident()

        result = incident_service.update_incident_parties(event.id, incident["id"], "Someone", None)

        assert result.kind == ErrorKind.FORBIDDEN

    def test_incident_date_update(self, incident_service, create_incident, event, reporter):
        incident = create_incident()

        result = incident_service.update_incident_incident_date(
            event.id, incident["id"], "2026-03-01T10:00:00+02:00", reporter.id
        )

        assert result.data["incident"]["incident_at"].isoformat() == "2026-03-01T08:00:00"

    def test_tags_replace_existing(self, incident_service, create_incident, event, responder, make_tag):
        first, second = make_tag(event, "alpha"), make_tag(event, "beta")
        incident = create_incident(tag_ids=[first.id])

        result = incident_service.update_incident_tags(event.id, incident["id"], [second.id], responder.id)

        assert [t["name"] for t in result.data["incident"]["tags"]] == ["beta"]

    def test_responder_cannot_edit_description(self, incident_service, create_incident, event, responder, db):
        """Description edits are limited to the reporter and event admins."""
        incident = create_incident()

        result = incident_service.update_incident_description(event.id, incident["id"], "rewritten", responder.id)

        assert result.kind == ErrorKind.FORBIDDEN
        stored = db.get(Incident, incident["id"])
        assert incident_service.cipher.decrypt_field(stored.description) == "detailed text"

    def test_tags_from_other_event_are_rejected_wholesale(
        self, incident_service, create_incident, event, responder, make_event, make_tag
    ):
        kept, own = make_tag(event, "alpha"), make_tag(event, "beta")
        foreign = make_tag(make_event("Other"), "gamma")
        incident = create_incident(tag_ids=[kept.id])

        result = incident_service.update_incident_tags(event.id, incident["id"], [own.id, foreign.id], responder.id)

        assert result.kind == ErrorKind.VALIDATION
        current = incident_service.get_incident(incident["id"], event.id).data["incident"]
        assert [t["name"] for t in current["tags"]] == ["alpha"]

    def test_reporter_cannot_change_tags(self, incident_service, create_incident, event, reporter, make_tag):
        tag = make_tag(event, "alpha")
        incident = create_incident()

        result = incident_service.update_incident_tags(event.id, incident["id"], [tag.id], reporter.id)

        assert result.kind == ErrorKind.FORBIDDEN
        assert incident_service.get_incident(incident["id"], event.id).data["incident"]["tags"] == []

    def test_non_list_tag_ids_on_update(self, incident_service, create_incident, event, responder):
        incident = create_incident()

        result = incident_service.update_incident_tags(event.id, incident["id"], "abc", responder.id)

        assert result.kind == ErrorKind.VALIDATION

    def test_type_update(self, incident_service, create_incident, event, reporter, responder, make_user, grant):
        incident = create_incident()
        other = make_user("Other Reporter")
        grant(other, RoleName.REPORTER, event.id)

        by_reporter = incident_service.update_incident_type(event.id, incident["id"], "safety", reporter.id)
        by_responder = incident_service.update_incident_type(event.id, incident["id"], "harassment", responder.id)
        by_other = incident_service.update_incident_type(event.id, incident["id"], "other", other.id)
        invalid = incident_service.update_incident_type(event.id, incident["id"], "gossip", responder.id)

        assert by_reporter.data["incident"]["type"] == "safety"
        assert by_responder.data["incident"]["type"] == "harassment"
        assert by_other.kind == ErrorKind.FORBIDDEN
        assert invalid.kind == ErrorKind.VALIDATION

    def test_only_reporter_sets_contact_preference(
        self, incident_service, create_incident, event, reporter, event_admin, db
    ):
        incident = create_incident()

        mine = incident_service.update_incident_contact_preference(event.id, incident["id"], "phone", reporter.id)
        admin = incident_service.update_incident_contact_preference(event.id, incident["id"], "email", event_admin.id)
        invalid = incident_service.update_incident_contact_preference(event.id, incident["id"], "fax", reporter.id)

        assert mine.data["incident"]["contact_preference"] == "phone"
        assert admin.kind == ErrorKind.FORBIDDEN
        assert admin.error == "Only the reporter can edit contact preference."
        assert invalid.kind == ErrorKind.VALIDATION
        assert db.get(Incident, incident["id"]).contact_preference == "phone"

    def test_edit_access_check(self, incident_service, create_incident, event, reporter, responder):
        incident = create_incident()

        assert incident_service.check_incident_edit_access(reporter.id, incident["id"], event.id).data == {
            "can_edit": True
        }
        denied = incident_service.check_incident_edit_access(responder.id, incident["id"], event.id).data
        assert denied["can_edit"] is False
        assert "reason" in denied


# =========================================================
# ASSIGNMENT / RESOLUTION
# =========================================================


class TestAssignmentUpdates:
    def test_assign_then_clear(self, incident_service, create_incident, event, responder, event_admin, db):
        incident = create_incident()

        assigned = incident_service.update_incident_assignment(
            event.id, incident["id"], {"assigned_responder_id": responder.id}, event_admin.id
        )
        cleared = incident_service.update_incident_assignment(
            event.id, incident["id"], {"assigned_responder_id": None}, event_admin.id
        )

        assert assigned.data["incident"]["assigned_responder_id"] == responder.id
        assert assigned.data["original_assigned_responder_id"] is None
        assert cleared.data["incident"]["assigned_responder_id"] is None
        assert cleared.data["original_assigned_responder_id"] == responder.id
        actions = db.scalars(select(AuditLog.action).where(AuditLog.target_id == incident["id"])).all()
        assert "assign_incident" in actions
        assert "unassign_incident" in actions

    def test_resolution_and_severity(self, incident_service, create_incident, event, responder):
        incident = create_incident()

        result = incident_service.update_incident_assignment(
            event.id, incident["id"], {"resolution": "Spoke with both parties", "severity": "high"}, responder.id
        )
        cleared = incident_service.update_incident_assignment(
            event.id, incident["id"], {"resolution": None}, responder.id
        )

        assert result.data["incident"]["resolution"] == "Spoke with both parties"
        assert result.data["incident"]["severity"] == "high"
        assert result.data["original_state"] == "submitted"
        assert cleared.data["incident"]["resolution"] is None
        assert cleared.data["incident"]["severity"] == "high"

    def test_reporter_is_denied(self, incident_service, create_incident, event, reporter):
        incident = create_incident()

        result = incident_service.update_incident_assignment(
            event.id, incident["id"], {"resolution": "done"}, reporter.id
        )

        assert result.kind == ErrorKind.FORBIDDEN

    def test_assignee_must_be_responder(self, incident_service, create_incident, event, responder, reporter, db):
        incident = create_incident()

        result = incident_service.update_incident_assignment(
            event.id, incident["id"], {"assigned_responder_id": reporter.id, "resolution": "x"}, responder.id
        )

        assert result.kind == ErrorKind.VALIDATION
        stored = db.get(Incident, incident["id"])
        assert stored.assigned_responder_id is None
        assert stored.resolution is None

    @pytest.mark.parametrize("changes", [{}, {"state": "closed"}, {"severity": "apocalyptic"}])
    def test_invalid_changes(self, incident_service, create_incident, event, responder, db, changes):
        incident = create_incident()

        result = incident_service.update_incident_assignment(event.id, incident["id"], changes, responder.id)

        assert result.kind == ErrorKind.VALIDATION
        stored = db.get(Incident, incident["id"])
        assert (stored.state, stored.severity) == ("submitted", "low")


# =========================================================
# READS
# =========================================================


class TestReads:
    def test_reporter_lists_only_own_incidents(
        self, incident_service, create_incident, event, reporter, make_user, grant
    ):
        create_incident()
        other = make_user("Other")
        grant(other, RoleName.REPORTER, event.id)
        create_incident(reporter_id=other.id, title="Another report here")

        mine = incident_service.get_event_incidents(event.id, reporter.id)

        assert mine.data["total"] == 1
        assert mine.data["incidents"][0]["reporter_id"] == reporter.id

    def test_responder_lists_everything_with_stats(self, incident_service, create_incident, event, responder):
        first = create_incident()
        create_incident(title="Another report here")
        incident_service.update_incident_state(event.id, first["id"], "acknowledged", responder.id)

        result = incident_service.get_event_incidents(event.id, responder.id, IncidentQuery(include_stats=True))

        assert result.data["total"] == 2
        assert result.data["stats"]["submitted"] == 1
        assert result.data["stats"]["acknowledged"] == 1
        assert result.data["stats"]["total"] == 2

    def test_search_matches_encrypted_description_words(self, incident_service, create_incident, event, responder):
        hit = create_incident(description="The projector cable was cut during the keynote")
        create_incident(description="Nothing to see")

        by_word = incident_service.get_event_incidents(event.id, responder.id, IncidentQuery(search="Projector"))
        by_words = incident_service.get_event_incidents(event.id, responder.id, IncidentQuery(search="cable keynote"))
        by_prefix = incident_service.get_event_incidents(event.id, responder.id, IncidentQuery(search="proj"))

        assert [i["id"] for i in by_word.data["incidents"]] == [hit["id"]]
        assert [i["id"] for i in by_words.data["incidents"]] == [hit["id"]]
        assert by_prefix.data["total"] == 0

    def test_search_matches_title_substring(self, incident_service, create_incident, event, responder):
        hit = create_incident(title="Badge scanner broken")
        create_incident()

        result = incident_service.get_event_incidents(event.id, responder.id, IncidentQuery(search="scanner"))

        assert [i["id"] for i in result.data["incidents"]] == [hit["id"]]

    @pytest.mark.parametrize(
        "query",
        [
            IncidentQuery(page=0),
            IncidentQuery(sort="description"),
            IncidentQuery(order="sideways"),
            IncidentQuery(status="lost"),
        ],
    )
    def test_invalid_list_query(self, incident_service, event, responder, query):
        assert incident_service.get_event_incidents(event.id, responder.id, query).kind == ErrorKind.VALIDATION

    def test_listing_requires_event_role(self, incident_service, event, make_user):
        result = incident_service.get_event_incidents(event.id, make_user().id)

        assert result.kind == ErrorKind.FORBIDDEN

    def test_limit_is_capped(self, incident_service, event, responder):
        result = incident_service.get_event_incidents(event.id, responder.id, IncidentQuery(limit=500))

        assert result.data["limit"] == 100

    def test_get_incident_without_role_is_denied(self, incident_service, create_incident, make_user):
        incident = create_incident()

        result = incident_service.get_incident(incident["id"], viewer_id=make_user().id)

        assert result.kind == ErrorKind.FORBIDDEN

    def test_comment_count_follows_visibility(
        self, incident_service, comment_service, create_incident, event, responder, reporter
    ):
        incident = create_incident()
        comment_service.create_comment(incident["id"], responder.id, "public note")
        comment_service.create_comment(incident["id"], responder.id, "internal note", visibility="internal")

        as_responder = incident_service.get_incident(incident["id"], event.id, responder.id)
        as_reporter = incident_service.get_incident(incident["id"], event.id, reporter.id)

        assert as_responder.data["incident"]["comment_count"] == 2
        assert as_reporter.data["incident"]["comment_count"] == 1


# =========================================================
# BULK
# =========================================================


class TestBulkUpdates:
    def test_one_bad_id_applies_nothing(self, incident_service, create_incident, event, responder, db):
        incident = create_incident()
        missing = str(uuid.uuid4())

        result = incident_service.bulk_update_incidents(
            event.id, [incident["id"], missing], "status", {"user_id": responder.id, "status": "acknowledged"}
        )

        assert result.success
        assert result.data["updated"] == 0
        assert result.data["errors"] == [f"Report {missing} not found or not in this event"]
        assert db.get(Incident, incident["id"]).state == "submitted"

    def test_status_applies_to_all(self, incident_service, create_incident, event, responder, db):
        ids = [create_incident()["id"], create_incident(title="Another report here")["id"]]

        result = incident_service.bulk_update_incidents(
            event.id, ids, "status", {"user_id": responder.id, "status": "acknowledged"}
        )

        assert result.data == {"updated": 2, "errors": []}
        assert {db.get(Incident, i).state for i in ids} == {"acknowledged"}
        history = incident_service.get_incident_state_history(ids[0]).data["history"]
        assert history[0]["to_state"] == "acknowledged"

    def test_status_checks_requirements_per_incident(self, incident_service, create_incident, event, responder):
        incident = create_incident()

        result = incident_service.bulk_update_incidents(
            event.id, [incident["id"]], "status", {"user_id": responder.id, "status": "resolved"}
        )

        assert result.data["updated"] == 0
        assert "requires notes" in result.data["errors"][0]

    def test_assign(self, incident_service, create_incident, event, responder, event_admin, db):
        incident = create_incident()

        result = incident_service.bulk_update_incidents(
            event.id, [incident["id"]], "assign", {"user_id": event_admin.id, "assigned_to": responder.id}
        )

        assert result.data["updated"] == 1
        assert db.get(Incident, incident["id"]).assigned_responder_id == responder.id

    def test_assign_to_non_responder(self, incident_service, create_incident, event, responder, reporter):
        incident = create_incident()

        result = incident_service.bulk_update_incidents(
            event.id, [incident["id"]], "assign", {"user_id": responder.id, "assigned_to": reporter.id}
        )

        assert result.data["updated"] == 0

    def test_delete_requires_event_admin(self, incident_service, create_incident, event, responder):
        incident = create_incident()

        result = incident_service.bulk_update_incidents(event.id, [incident["id"]], "delete", {"user_id": responder.id})

        assert result.kind == ErrorKind.FORBIDDEN

    def test_delete_removes_incidents_and_comments(
        self, incident_service, comment_service, create_incident, event, event_admin, responder, db
    ):
        incident = create_incident()
        comment_service.create_comment(incident["id"], responder.id, "note")

        result = incident_service.bulk_update_incidents(
            event.id, [incident["id"]], "delete", {"user_id": event_admin.id}
        )

        assert result.data["updated"] == 1
        db.expire_all()
        assert db.scalars(select(Incident)).all() == []
        assert db.scalars(select(IncidentComment)).all() == []

    def test_reporter_cannot_bulk_update(self, incident_service, create_incident, event, reporter):
        incident = create_incident()

        result = incident_service.bulk_update_incidents(
            event.id, [incident["id"]], "status", {"user_id": reporter.id, "status": "closed"}
        )

        assert result.kind == ErrorKind.FORBIDDEN


# =========================================================
# RELATED FILES
# =========================================================


class TestRelatedFiles:
    def test_upload_list_download_delete(self, incident_service, create_incident, reporter, event_admin):
        incident = create_incident()
        upload = RelatedFileUpload(filename="notes.txt", mimetype="text/plain", data=b"hello")

        uploaded = incident_service.upload_related_files(incident["id"], [upload], reporter.id)
        file_id = uploaded.data["files"][0]["id"]

        listed = incident_service.list_related_files(incident["id"], reporter.id)
        downloaded = incident_service.get_related_file(file_id, event_admin.id)
        deleted = incident_service.delete_related_file(file_id, event_admin.id)

        assert [f["id"] for f in listed.data["files"]] == [file_id]
        assert downloaded.data["data"] == b"hello"
        assert deleted.success

    def test_only_uploader_or_admin_deletes(self, incident_service, create_incident, reporter, responder):
        incident = create_incident()
        upload = RelatedFileUpload(filename="notes.txt", mimetype="text/plain", data=b"hello")
        file_id = incident_service.upload_related_files(incident["id"], [upload], reporter.id).data["files"][0]["id"]

        result = incident_service.delete_related_file(file_id, responder.id)

        assert result.kind == ErrorKind.FORBIDDEN

    def test_stranger_cannot_download(self, incident_service, create_incident, reporter, make_user):
        incident = create_incident()
        upload = RelatedFileUpload(filename="notes.txt", mimetype="text/plain", data=b"hello")
        file_id = incident_service.upload_related_files(incident["id"], [upload], reporter.id).data["files"][0]["id"]

        assert incident_service.get_related_file(file_id, make_user().id).kind == ErrorKind.FORBIDDEN
