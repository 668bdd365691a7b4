import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, LargeBinary, String
from sqlalchemy.orm import deferred, relationship

from incidentdesk.database import Base, utcnow


class RelatedFile(Base):
    __tablename__ = "related_files"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    incident_id = Column(String(36), ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False, index=True)
    filename = Column(String(255), nullable=False)
    mimetype = Column(String(100), nullable=False)
    size = Column(Integer, nullable=False)
    # Only loaded when a file is downloaded
    data = deferred(Column(LargeBinary, nullable=False))
    uploader_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    incident = relationship("Incident", back_populates="related_files")
    uploader = relationship("User")

    def summary(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "mimetype": self.mimetype,
            "size": self.size,
            "uploader_id": self.uploader_id,
            "created_at": self.created_at,
        }
