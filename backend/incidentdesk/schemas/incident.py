"""
incident.py - Request bodies for incident endpoints.

Field rules (lengths, enums, future-date guard) are enforced by
IncidentService so every caller gets the same messages; these models only
shape the payload.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class IncidentCreate(BaseModel):
    title: str
    description: str
    type: str | None = Field(None, description="harassment | safety | other (default other)")
    urgency: str | None = Field(None, description="low | medium | high | critical (default low)")
    contact_preference: str | None = Field(None, description="email | phone | in_person | no_contact (default email)")
    incident_at: datetime | None = None
    parties: str | None = None
    location: str | None = None
    tag_ids: list[str] = Field(default_factory=list)


class IncidentStateUpdate(BaseModel):
    state: str
    notes: str | None = None
    assigned_to_user_id: str | None = None


class IncidentTitleUpdate(BaseModel):
    title: str


class IncidentDescriptionUpdate(BaseModel):
    description: str


class IncidentLocationUpdate(BaseModel):
    location: str | None = None


class IncidentDateUpdate(BaseModel):
    incident_at: datetime | None = None


class IncidentPartiesUpdate(BaseModel):
    parties: str | None = None


class IncidentSeverityUpdate(BaseModel):
    severity: str


class IncidentTagsUpdate(BaseModel):
    tag_ids: list[str] = Field(default_factory=list)


class IncidentTypeUpdate(BaseModel):
    type: str


class IncidentContactPreferenceUpdate(BaseModel):
    contact_preference: str


class IncidentAssignmentUpdate(BaseModel):
    """Omitted fields are left alone; an explicit null clears the assignee or resolution."""

    assigned_responder_id: str | None = None
    severity: str | None = None
    resolution: str | None = None


class BulkIncidentUpdate(BaseModel):
    incident_ids: list[str] = Field(..., min_length=1)
    action: Literal["assign", "status", "delete"]
    assigned_to: str | None = None
    status: str | None = None
    notes: str | None = None
