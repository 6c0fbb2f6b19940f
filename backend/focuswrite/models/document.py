"""Storage row for schemaless documents."""

from datetime import datetime, UTC

from sqlalchemy import Column, String, DateTime, JSON

from ..database import Base


class StoredDocument(Base):
    """One document of one collection; the payload lives in ``data``."""
    __tablename__ = "documents"

    collection = Column(String(64), primary_key=True, index=True)
    doc_id = Column(String(255), primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC))

    def __repr__(self):
        return f"<StoredDocument(collection='{self.collection}', doc_id='{self.doc_id}')>"
