"""
role.py - Role catalog rows and scoped role assignments.

A UserRole has no identity beyond (user, role, scope_type, scope_id):
grants upsert on that key, revokes delete it, nothing updates it in place
except the grant metadata.
"""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from incidentdesk.database import Base, utcnow


class Role(Base):
    __tablename__ = "roles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(50), nullable=False, unique=True, index=True)
    scope = Column(String(20), nullable=False)
    level = Column(Integer, nullable=False)
    description = Column(String(255), nullable=True)


class UserRole(Base):
    __tablename__ = "user_roles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id = Column(String(36), ForeignKey("roles.id"), nullable=False)
    scope_type = Column(String(20), nullable=False)
    scope_id = Column(String(36), nullable=False)
    granted_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    granted_at = Column(DateTime, nullable=False, default=utcnow)

    role = relationship("Role", lazy="joined")

    __table_args__ = (
        UniqueConstraint("user_id", "role_id", "scope_type", "scope_id", name="user_role_unique"),
    )
