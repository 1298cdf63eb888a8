"""
Reranking Module
Cross-encoder scoring service and the reranker stage built on it
"""

from .cross_encoder import RerankingService, CrossEncoderScorer
from .reranker import Reranker

__all__ = ["RerankingService", "CrossEncoderScorer", "Reranker"]
