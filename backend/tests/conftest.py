"""Test configuration and fixtures."""

import os
import uuid

import pytest

# Set test settings BEFORE incidentdesk.config is imported.
TEST_ENCRYPTION_KEY = "test-master-key-7f3a9c1e5b2d8f4a6c0e"
os.environ["ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"

from incidentdesk.config import Settings
from incidentdesk.core.encryption import FieldCipher
from incidentdesk.core.roles import RoleName
from incidentdesk.database import Base, build_engine, build_session_factory
from incidentdesk.models import Event, Organization, Tag, User, seed_roles
from incidentdesk.services.audit import AuditDispatcher, DatabaseAuditSink
from incidentdesk.services.authorization import AuthorizationService, RoleCache
from incidentdesk.services.comments import CommentService
from incidentdesk.services.incidents import IncidentService
from incidentdesk.services.search_index import SearchIndex
from incidentdesk.services.tags import TagService


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        ENCRYPTION_KEY=TEST_ENCRYPTION_KEY,
        ENVIRONMENT="test",
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def engine(settings):
    """Fresh in-memory database per test."""
    engine = build_engine(settings)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    """Database session with the role catalog seeded."""
    db = session_factory()
    seed_roles(db)
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def cipher():
    return FieldCipher(TEST_ENCRYPTION_KEY, "test")


@pytest.fixture
def role_cache():
    return RoleCache(ttl_seconds=300)


@pytest.fixture
def authz(db, role_cache):
    return AuthorizationService(db, role_cache)


@pytest.fixture
def audit(session_factory):
    return AuditDispatcher(DatabaseAuditSink(session_factory), max_attempts=3)


@pytest.fixture
def search_index(cipher):
    return SearchIndex(cipher)


@pytest.fixture
def incident_service(db, authz, cipher, audit, search_index):
    return IncidentService(db, authz, cipher, audit, search_index)


@pytest.fixture
def comment_service(db, authz, cipher, audit, search_index):
    return CommentService(db, authz, cipher, audit, search_index)


@pytest.fixture
def tag_service(db, authz, incident_service, audit):
    return TagService(db, authz, incident_service, audit)


# =========================================================
# FACTORIES
# =========================================================


@pytest.fixture
def make_user(db):
    def _make_user(name: str = "Test User", email: str | None = None) -> User:
        user = User(name=name, email=email or f"{uuid.uuid4().hex[:12]}@example.com")
        db.add(user)
        db.commit()
        return user

    return _make_user


@pytest.fixture
def make_organization(db):
    def _make_organization(name: str = "Test Org") -> Organization:
        organization = Organization(name=name, slug=f"org-{uuid.uuid4().hex[:8]}")
        db.add(organization)
        db.commit()
        return organization

    return _make_organization


@pytest.fixture
def make_event(db):
    def _make_event(name: str = "Test Event", organization: Organization | None = None) -> Event:
        event = Event(
            name=name,
            slug=f"event-{uuid.uuid4().hex[:8]}",
            organization_id=organization.id if organization else None,
        )
        db.add(event)
        db.commit()
        return event

    return _make_event


@pytest.fixture
def make_tag(db):
    def _make_tag(event: Event, name: str = "harassment") -> Tag:
        tag = Tag(event_id=event.id, name=name)
        db.add(tag)
        db.commit()
        return tag

    return _make_tag


@pytest.fixture
def grant(authz):
    def _grant(user: User, role: RoleName, scope_id: str | None = None) -> None:
        assert authz.grant_role(user.id, role, role.scope, scope_id)

    return _grant


@pytest.fixture
def event(make_event):
    return make_event()


@pytest.fixture
def reporter(make_user, grant, event):
    user = make_user("Rita Reporter")
    grant(user, RoleName.REPORTER, event.id)
    return user


@pytest.fixture
def responder(make_user, grant, event):
    user = make_user("Ray Responder")
    grant(user, RoleName.RESPONDER, event.id)
    return user


@pytest.fixture
def event_admin(make_user, grant, event):
    user = make_user("Eve Admin")
    grant(user, RoleName.EVENT_ADMIN, event.id)
    return user


@pytest.fixture
def create_incident(incident_service, event, reporter):
    """Submit an incident through the service and return its decrypted record."""

    def _create_incident(**overrides) -> dict:
        data = {
            "event_id": event.id,
            "reporter_id": reporter.id,
            "title": "Something happened here",
            "description": "detailed text",
        }
        data.update(overrides)
        result = incident_service.create_incident(data)
        assert result.success, result.error
        return result.data["incident"]

    return _create_incident


