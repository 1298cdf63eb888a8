"""
Method retrievers and the index interfaces they adapt
"""
from hybrid_retrieval.search.retrievers import (
    IndexHit,
    SemanticIndex,
    KeywordIndex,
    BaseRetriever,
    SemanticRetriever,
    KeywordRetriever
)

__all__ = [
    "IndexHit",
    "SemanticIndex",
    "KeywordIndex",
    "BaseRetriever",
    "SemanticRetriever",
    "KeywordRetriever"
]
