"""
Document Store — SQLAlchemy model for versioned JSON documents.

Every council entity (account, election, complaint, club) is stored as one
row: the owning collection, the entity id, a monotonically increasing
``version`` used for optimistic concurrency, and the JSON body.
"""

from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for the document store."""
    pass


class DocumentDB(Base):
    """A single stored document."""

    __tablename__ = "documents"

    collection = Column(
        String(32), primary_key=True,
        comment="Owning collection: accounts, elections, complaints, clubs",
    )
    id = Column(
        String(36), primary_key=True,
        comment="Entity UUID in canonical string form",
    )
    version = Column(
        Integer, nullable=False, default=1,
        comment="Incremented on every write; guards conditional updates",
    )

    # JSONB on PostgreSQL, plain JSON elsewhere
    body = Column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False,
        comment="Serialized entity",
    )

    updated_at = Column(
        DateTime(timezone=True), nullable=False,
        server_default=func.now(), onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_documents_collection", "collection"),
    )

    def to_document(self) -> dict:
        document = dict(self.body)
        document["id"] = self.id
        document["version"] = self.version
        return document

    def __repr__(self) -> str:
        return f"<DocumentDB {self.collection}/{self.id[:8]} v{self.version}>"
