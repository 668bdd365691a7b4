"""
incident.py - Incident aggregate root.

description, parties and location are stored as FieldCipher output and
must only be written through IncidentService. event_id never changes after
creation.
"""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, Table, Text
from sqlalchemy.orm import relationship

from incidentdesk.core.workflow import ContactPreference, IncidentState, IncidentType, Severity
from incidentdesk.database import Base, utcnow

incident_tags = Table(
    "incident_tags",
    Base.metadata,
    Column("incident_id", String(36), ForeignKey("incidents.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Incident(Base):
    __tablename__ = "incidents"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    reporter_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    assigned_responder_id = Column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    title = Column(String(70), nullable=False)
    description = Column(Text, nullable=False)
    state = Column(String(20), nullable=False, default=IncidentState.SUBMITTED.value, index=True)
    type = Column(String(20), nullable=False, default=IncidentType.OTHER.value, index=True)
    severity = Column(String(20), nullable=True, default=Severity.LOW.value)
    resolution = Column(Text, nullable=True)
    contact_preference = Column(String(20), nullable=False, default=ContactPreference.EMAIL.value)
    incident_at = Column(DateTime, nullable=True)
    parties = Column(Text, nullable=True)
    location = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    event = relationship("Event", back_populates="incidents")
    reporter = relationship("User", foreign_keys=[reporter_id])
    assigned_responder = relationship("User", foreign_keys=[assigned_responder_id])
    tags = relationship("Tag", secondary=incident_tags, order_by="Tag.name")
    comments = relationship(
        "IncidentComment",
        back_populates="incident",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    related_files = relationship(
        "RelatedFile",
        back_populates="incident",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
