"""
container.py - Process-wide collaborators.

Built once by the application lifespan and stored on app.state. Request
handlers get sessions and per-request services from it through the
dependencies in incidentdesk.api.deps; nothing else reaches for a global.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from incidentdesk.config import Settings
from incidentdesk.core.encryption import FieldCipher
from incidentdesk.database import Base, build_engine, build_session_factory
from incidentdesk.models import seed_roles
from incidentdesk.services.audit import AuditDispatcher, DatabaseAuditSink
from incidentdesk.services.authorization import AuthorizationService, RoleCache
from incidentdesk.services.comments import CommentService
from incidentdesk.services.incidents import IncidentService
from incidentdesk.services.notifications import LoggingNotifier, Notifier
from incidentdesk.services.search_index import SearchIndex
from incidentdesk.services.tags import TagService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    cipher: FieldCipher
    role_cache: RoleCache
    audit: AuditDispatcher
    search_index: SearchIndex
    notifier: Notifier

    @classmethod
    def build(cls, settings: Settings, engine: Engine | None = None, notifier: Notifier | None = None) -> "ServiceContainer":
        """
        Raises:
            EncryptionKeyError: ENCRYPTION_KEY is not acceptable for ENVIRONMENT.
        """
        cipher = FieldCipher(settings.ENCRYPTION_KEY, settings.ENVIRONMENT)
        engine = engine or build_engine(settings)
        session_factory = build_session_factory(engine)
        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            cipher=cipher,
            role_cache=RoleCache(ttl_seconds=settings.ROLE_CACHE_TTL_SECONDS),
            audit=AuditDispatcher(DatabaseAuditSink(session_factory), settings.AUDIT_MAX_ATTEMPTS),
            search_index=SearchIndex(cipher),
            notifier=notifier or LoggingNotifier(session_factory),
        )

    def prepare_storage(self) -> None:
        """Optionally create tables, then make sure the role catalog is seeded."""
        if self.settings.AUTO_CREATE_SCHEMA:
            Base.metadata.create_all(bind=self.engine)

        db = self.session_factory()
        try:
            added = seed_roles(db)
            if added:
                logger.info("Seeded %d roles", added)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Role seeding failed; run migrations before starting the service")
        finally:
            db.close()

    def authorization(self, db: Session) -> AuthorizationService:
        return AuthorizationService(db, self.role_cache)

    def incidents(self, db: Session) -> IncidentService:
        return IncidentService(db, self.authorization(db), self.cipher, self.audit, self.search_index)

    def comments(self, db: Session) -> CommentService:
        return CommentService(db, self.authorization(db), self.cipher, self.audit, self.search_index)

    def tags(self, db: Session) -> TagService:
        return TagService(db, self.authorization(db), self.incidents(db), self.audit)

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Storage engine disposed")
