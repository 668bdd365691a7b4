import uuid

from sqlalchemy import Column, DateTime, String

from incidentdesk.database import Base, utcnow


class AuditLog(Base):
    """Append-only. Rows outlive the records they describe, so no foreign keys."""

    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(36), nullable=True, index=True)
    action = Column(String(255), nullable=False)
    target_type = Column(String(50), nullable=False)
    target_id = Column(String(36), nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
