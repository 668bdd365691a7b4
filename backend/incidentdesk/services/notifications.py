"""
notifications.py - Notifier contract.

Delivery (email, in-app) lives outside this service. The HTTP layer calls
notify_incident_event after a mutation has committed; a notifier must never
raise into that call.
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from incidentdesk.core.roles import RoleName, ScopeType
from incidentdesk.models import Incident, Role, UserRole

logger = logging.getLogger(__name__)

SENT_LIMIT = 500


class NotificationType(str, Enum):
    INCIDENT_SUBMITTED = "incident_submitted"
    INCIDENT_ASSIGNED = "incident_assigned"
    INCIDENT_STATUS_CHANGED = "incident_status_changed"
    INCIDENT_COMMENT_ADDED = "incident_comment_added"


@dataclass(frozen=True)
class Notification:
    user_id: str
    type: NotificationType
    priority: str
    title: str
    message: str
    event_id: str
    incident_id: str


class Notifier:
    """Base notifier. Does nothing."""

    def notify_incident_event(
        self,
        incident_id: str,
        type: NotificationType,
        exclude_user_id: str | None = None,
    ) -> None:
        return None


def _compose(incident: Incident, type: NotificationType) -> tuple[str, str, str]:
    short_id = incident.id[:8]
    if type == NotificationType.INCIDENT_SUBMITTED:
        return "high", "New Incident Submitted", f"A new incident has been submitted for {incident.event.name}"
    if type == NotificationType.INCIDENT_ASSIGNED:
        return "normal", "Incident Assigned", f"Incident #{short_id} has been assigned"
    if type == NotificationType.INCIDENT_STATUS_CHANGED:
        return "normal", "Incident Status Updated", f"Incident #{short_id} status has been updated"
    return "normal", "New Comment Added", f"A new comment has been added to incident #{short_id}"


class LoggingNotifier(Notifier):
    """
    Resolves recipients (responders and event admins of the incident's
    event) and logs one line per notification. The most recent SENT_LIMIT
    notifications are kept in ``sent`` for inspection.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory
        self.sent: deque[Notification] = deque(maxlen=SENT_LIMIT)

    def notify_incident_event(
        self,
        incident_id: str,
        type: NotificationType,
        exclude_user_id: str | None = None,
    ) -> None:
        type = NotificationType(type)
        db = self.session_factory()
        try:
            incident = db.get(Incident, incident_id)
            if incident is None:
                logger.warning("Incident not found for notification: %s", incident_id)
                return

            recipients = db.scalars(
                select(UserRole.user_id)
                .join(Role, UserRole.role_id == Role.id)
                .where(
                    UserRole.scope_type == ScopeType.EVENT.value,
                    UserRole.scope_id == incident.event_id,
                    Role.name.in_([RoleName.RESPONDER.value, RoleName.EVENT_ADMIN.value]),
                )
                .distinct()
            ).all()

            priority, title, message = _compose(incident, type)
            for user_id in recipients:
                if user_id == exclude_user_id:
                    continue
                notification = Notification(
                    user_id=user_id,
                    type=type,
                    priority=priority,
                    title=title,
                    message=message,
                    event_id=incident.event_id,
                    incident_id=incident.id,
                )
                self.sent.append(notification)
                logger.info("Notify %s [%s]: %s", user_id, type.value, message)
        except SQLAlchemyError:
            logger.exception("Failed to notify incident event %s for %s", type.value, incident_id)
        finally:
            db.close()
