import uuid

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import relationship

from incidentdesk.database import Base, utcnow


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    events = relationship("Event", back_populates="organization")
