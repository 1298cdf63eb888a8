"""
Context Module
Parent document expansion, context compression and token budgeting
"""
from hybrid_retrieval.context.parent_retriever import (
    ParentDocumentStore,
    InMemoryParentStore,
    DocumentExpander,
    apply_token_budget,
    estimate_tokens
)
from hybrid_retrieval.context.compressor import ContextCompressor

__all__ = [
    "ParentDocumentStore",
    "InMemoryParentStore",
    "DocumentExpander",
    "apply_token_budget",
    "estimate_tokens",
    "ContextCompressor"
]
