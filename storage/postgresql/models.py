"""
PostgreSQL Data Models
SQLAlchemy model for the parent documents used by document expansion
"""
from sqlalchemy import Column, String, Text, DateTime, JSON
from sqlalchemy.orm import declarative_base
from datetime import datetime
from typing import Dict, Any

from hybrid_retrieval.models import ParentDocument

Base = declarative_base()


class ParentDocumentRecord(Base):
    """Enclosing text unit that child chunks point to through parent_chunk_id"""
    __tablename__ = "parent_documents"

    id = Column(String(255), primary_key=True)  # parent_chunk_id
    document_id = Column(String(255), nullable=False, index=True)
    text = Column(Text, nullable=False)
    section_title = Column(String(500))
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_parent_document(self) -> ParentDocument:
        metadata = dict(self.metadata_ or {})
        metadata["document_id"] = self.document_id
        if self.section_title:
            metadata["section_title"] = self.section_title
        return ParentDocument(id=self.id, text=self.text, metadata=metadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "text": self.text[:200] + "..." if len(self.text) > 200 else self.text,  # Truncate for API
            "section_title": self.section_title,
            "metadata": self.metadata_ or {},
            "created_at": self.created_at.isoformat() if self.created_at else None
        }
