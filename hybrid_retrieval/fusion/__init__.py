"""
Rank fusion
"""
from hybrid_retrieval.fusion.rrf import RankFusion, reciprocal_rank_fusion, rrf_contribution, DEFAULT_RRF_K

__all__ = ["RankFusion", "reciprocal_rank_fusion", "rrf_contribution", "DEFAULT_RRF_K"]
