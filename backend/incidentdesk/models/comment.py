import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from incidentdesk.core.workflow import CommentVisibility
from incidentdesk.database import Base, utcnow


class IncidentComment(Base):
    __tablename__ = "incident_comments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    incident_id = Column(String(36), ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    # Encrypted
    body = Column(Text, nullable=False)
    visibility = Column(String(20), nullable=False, default=CommentVisibility.PUBLIC.value)
    is_markdown = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    incident = relationship("Incident", back_populates="comments")
    author = relationship("User")
