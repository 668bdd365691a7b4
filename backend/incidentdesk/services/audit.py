"""
audit.py - Best-effort audit trail.

Audit writes happen after the primary transaction has committed, in their
own session. A failing sink is retried up to max_attempts times and the
record is then moved to the dead-letter queue. dispatch() never raises, so
an audit outage cannot fail or roll back the operation being audited.

The one exception is the state transition, whose audit rows are part of
the transition's own transaction (see IncidentService.update_incident_state).
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from incidentdesk.database import utcnow
from incidentdesk.models import AuditLog

logger = logging.getLogger(__name__)

DEAD_LETTER_LIMIT = 1000


@dataclass(frozen=True)
class AuditRecord:
    action: str
    target_type: str
    target_id: str
    event_id: str | None = None
    user_id: str | None = None
    timestamp: datetime = field(default_factory=utcnow)


def audit_row(record: AuditRecord) -> AuditLog:
    return AuditLog(
        event_id=record.event_id,
        user_id=record.user_id,
        action=record.action,
        target_type=record.target_type,
        target_id=record.target_id,
        timestamp=record.timestamp,
    )


class AuditSink(Protocol):
    def log_audit(self, record: AuditRecord) -> None: ...


class DatabaseAuditSink:
    """Writes each record in a fresh session from the factory."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def log_audit(self, record: AuditRecord) -> None:
        db = self.session_factory()
        try:
            db.add(audit_row(record))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()


class AuditDispatcher:
    def __init__(self, sink: AuditSink, max_attempts: int = 3):
        self.sink = sink
        self.max_attempts = max(1, max_attempts)
        self.dead_letters: deque[tuple[AuditRecord, str]] = deque(maxlen=DEAD_LETTER_LIMIT)

    def dispatch(self, record: AuditRecord) -> bool:
        """Deliver one record. Returns False when it ended up in the dead-letter queue."""
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.sink.log_audit(record)
                return True
            except Exception as exc:  # noqa: BLE001 - sink failures must not reach the caller
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "Audit write failed for %s %s (attempt %d/%d): %s",
                    record.target_type,
                    record.target_id,
                    attempt,
                    self.max_attempts,
                    last_error,
                )

        self.dead_letters.append((record, last_error))
        logger.error(
            "Audit record '%s' for %s %s moved to dead-letter queue after %d attempts",
            record.action,
            record.target_type,
            record.target_id,
            self.max_attempts,
        )
        return False

    def dispatch_all(self, records) -> int:
        return sum(1 for record in records if self.dispatch(record))


class NullAuditSink:
    """Discards records. Used when no audit storage is configured."""

    def log_audit(self, record: AuditRecord) -> None:
        logger.debug("Audit (discarded): %s %s %s", record.action, record.target_type, record.target_id)
