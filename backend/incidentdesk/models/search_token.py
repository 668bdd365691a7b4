from sqlalchemy import Column, Index, Integer, String

from incidentdesk.database import Base


class SearchToken(Base):
    """Blind index row: an HMAC of one word of one encrypted field."""

    __tablename__ = "search_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_type = Column(String(20), nullable=False)
    target_id = Column(String(36), nullable=False, index=True)
    field = Column(String(50), nullable=False)
    token_hash = Column(String(64), nullable=False)

    __table_args__ = (Index("ix_search_tokens_lookup", "target_type", "field", "token_hash"),)
