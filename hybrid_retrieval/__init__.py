"""
Hybrid Retrieval Engine
Semantic + keyword retrieval with rank fusion, diversity selection and optional precision stages
"""

from .errors import (
    RetrievalEngineError,
    BackendUnavailable,
    BackendError,
    RetrievalFailedError,
    SearchDeadlineExceeded,
)
from .config import SearchConfig, OptionalStage, TieBreak, MissingEmbeddingPolicy, DEFAULT_CONFIG
from .models import Query, Candidate, RankedList, FusedResult, SelectionResult, SearchHit, RetrievalMethod
from .pipeline import HybridRetrievalPipeline, SearchResponse

__all__ = [
    # Errors
    "RetrievalEngineError",
    "BackendUnavailable",
    "BackendError",
    "RetrievalFailedError",
    "SearchDeadlineExceeded",

    # Configuration
    "SearchConfig",
    "OptionalStage",
    "TieBreak",
    "MissingEmbeddingPolicy",
    "DEFAULT_CONFIG",

    # Data model
    "Query",
    "Candidate",
    "RankedList",
    "FusedResult",
    "SelectionResult",
    "SearchHit",
    "RetrievalMethod",

    # Pipeline
    "HybridRetrievalPipeline",
    "SearchResponse",
]
