"""
Storage Layer Module
OpenSearch indices and the PostgreSQL parent-document store
"""

from .opensearch.client import OpenSearchClient
from .postgresql.models import ParentDocumentRecord
from .postgresql.database import DatabaseManager, PostgresParentStore

__all__ = ["OpenSearchClient", "ParentDocumentRecord", "DatabaseManager", "PostgresParentStore"]
