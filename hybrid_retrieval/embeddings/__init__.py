"""
Text embedders
"""
from hybrid_retrieval.embeddings.embedder import BaseEmbedder, TransformerEmbedder

__all__ = ["BaseEmbedder", "TransformerEmbedder"]
