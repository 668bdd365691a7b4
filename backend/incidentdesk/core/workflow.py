"""
workflow.py - Incident lifecycle.

Forward-only, branching workflow:

    submitted -> acknowledged -> investigating -> resolved -> closed

Any later state may be reached directly from an earlier one; nothing moves
backwards and closed is terminal.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum


class IncidentState(str, Enum):
    SUBMITTED = "submitted"
    ACKNOWLEDGED = "acknowledged"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    CLOSED = "closed"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentType(str, Enum):
    HARASSMENT = "harassment"
    SAFETY = "safety"
    OTHER = "other"


class ContactPreference(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    IN_PERSON = "in_person"
    NO_CONTACT = "no_contact"


class CommentVisibility(str, Enum):
    PUBLIC = "public"
    INTERNAL = "internal"


ALLOWED_TRANSITIONS: dict[IncidentState, frozenset[IncidentState]] = {
    IncidentState.SUBMITTED: frozenset(
        {
            IncidentState.ACKNOWLEDGED,
            IncidentState.INVESTIGATING,
            IncidentState.RESOLVED,
            IncidentState.CLOSED,
        }
    ),
    IncidentState.ACKNOWLEDGED: frozenset(
        {IncidentState.INVESTIGATING, IncidentState.RESOLVED, IncidentState.CLOSED}
    ),
    IncidentState.INVESTIGATING: frozenset({IncidentState.RESOLVED, IncidentState.CLOSED}),
    IncidentState.RESOLVED: frozenset({IncidentState.CLOSED}),
    IncidentState.CLOSED: frozenset(),
}


@dataclass(frozen=True)
class TransitionRequirement:
    requires_notes: bool = False
    requires_assignment: bool = False


TRANSITION_REQUIREMENTS: dict[IncidentState, TransitionRequirement] = {
    IncidentState.ACKNOWLEDGED: TransitionRequirement(),
    IncidentState.INVESTIGATING: TransitionRequirement(requires_notes=True, requires_assignment=True),
    IncidentState.RESOLVED: TransitionRequirement(requires_notes=True),
    IncidentState.CLOSED: TransitionRequirement(),
}

TITLE_MIN_LENGTH = 10
TITLE_MAX_LENGTH = 70
DESCRIPTION_MAX_LENGTH = 5000
PARTIES_MAX_LENGTH_ON_CREATE = 500
PARTIES_MAX_LENGTH_ON_UPDATE = 1000
LOCATION_MAX_LENGTH = 200
RESOLUTION_MAX_LENGTH = 5000
TAG_NAME_MAX_LENGTH = 50
MAX_FUTURE_INCIDENT_DATE = timedelta(hours=24)


def parse_state(value: str | None) -> IncidentState | None:
    try:
        return IncidentState(value)
    except ValueError:
        return None


def parse_severity(value: str | None) -> Severity | None:
    try:
        return Severity(value)
    except ValueError:
        return None


def parse_incident_type(value: str | None) -> IncidentType | None:
    try:
        return IncidentType(value)
    except ValueError:
        return None


def parse_contact_preference(value: str | None) -> ContactPreference | None:
    try:
        return ContactPreference(value)
    except ValueError:
        return None


def can_transition(current: IncidentState, target: IncidentState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def missing_requirement(
    target: IncidentState, notes: str | None, assigned_to_user_id: str | None
) -> str | None:
    """Message naming the unmet precondition for ``target``, or None."""
    requirement = TRANSITION_REQUIREMENTS.get(target, TransitionRequirement())

    if requirement.requires_notes and (not notes or not notes.strip()):
        return f"State transition to {target.value} requires notes explaining the action."

    if requirement.requires_assignment and not assigned_to_user_id:
        return f"State transition to {target.value} requires assignment to a responder."

    return None


def is_too_far_in_future(value: datetime, now: datetime) -> bool:
    return value > now + MAX_FUTURE_INCIDENT_DATE
