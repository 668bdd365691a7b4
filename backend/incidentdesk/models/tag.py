import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship

from incidentdesk.database import Base, utcnow


class Tag(Base):
    __tablename__ = "tags"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(50), nullable=False)
    color = Column(String(20), nullable=False, default="#3B82F6")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)

    event = relationship("Event", back_populates="tags")

    __table_args__ = (UniqueConstraint("event_id", "name", name="tag_event_name_unique"),)

    def summary(self) -> dict:
        return {"id": self.id, "name": self.name, "color": self.color}
