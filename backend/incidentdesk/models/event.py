import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from incidentdesk.database import Base, utcnow


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    # Null for standalone events; org_admin inheritance only applies when set
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    organization = relationship("Organization", back_populates="events")
    incidents = relationship("Incident", back_populates="event")
    tags = relationship("Tag", back_populates="event", cascade="all, delete-orphan")

    def summary(self) -> dict:
        return {"id": self.id, "name": self.name, "slug": self.slug}
