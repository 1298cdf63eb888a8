"""
Diversity selection
"""
from hybrid_retrieval.selection.mmr import MMRSelector, maximal_marginal_relevance

__all__ = ["MMRSelector", "maximal_marginal_relevance"]
