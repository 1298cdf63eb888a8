"""
Query expansion
"""
from hybrid_retrieval.query.query_expander import QueryExpander, parse_variants

__all__ = ["QueryExpander", "parse_variants"]
