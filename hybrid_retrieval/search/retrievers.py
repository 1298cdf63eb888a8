"""
Method Retrievers
Adapters over a semantic (embedding) index and a keyword (BM25) index
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Sequence
import logging

from hybrid_retrieval.embeddings.embedder import BaseEmbedder
from hybrid_retrieval.errors import BackendError, BackendUnavailable
from hybrid_retrieval.models import Candidate, RankedList, RetrievalMethod

logger = logging.getLogger(__name__)


@dataclass
class IndexHit:
    """Raw hit returned by a backing index, in index order"""
    id: str
    score: float
    text: str
    embedding: Optional[List[float]] = None
    parent_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class SemanticIndex(ABC):
    """Vector index collaborator"""

    @abstractmethod
    async def similarity_search(
        self,
        embedding: Sequence[float],
        top_k: int,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[IndexHit]:
        """Nearest neighbours of ``embedding``, best first"""


class KeywordIndex(ABC):
    """Sparse / BM25 index collaborator"""

    @abstractmethod
    async def lexical_search(
        self,
        query_text: str,
        top_k: int,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[IndexHit]:
        """Lexical matches for ``query_text``, best first"""


class BaseRetriever(ABC):
    """
    One retriever per backing index

    ``retrieve`` never retries: retry policy belongs to the orchestrator.
    Failures surface as BackendUnavailable (timeouts, connection problems)
    or BackendError (anything the backend returned that we cannot use).
    """

    method: RetrievalMethod
    name: str = "retriever"

    async def retrieve(
        self,
        query_text: str,
        top_k: int,
        filters: Optional[Dict[str, Any]] = None
    ) -> RankedList:
        """
        Retrieve an ordered candidate list

        Args:
            query_text: Non-empty query text
            top_k: Maximum number of candidates (>= 1)
            filters: Optional metadata filters forwarded to the index

        Returns:
            RankedList of at most ``top_k`` candidates; empty when nothing matched
        """
        if not query_text or not query_text.strip():
            raise ValueError("query_text must be non-empty")
        if top_k < 1:
            raise ValueError("top_k must be at least 1")

        try:
            hits = await self._search(query_text, top_k, filters)
        except (BackendUnavailable, BackendError):
            raise
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            raise BackendUnavailable(self.name, str(e) or type(e).__name__) from e
        except Exception as e:
            raise BackendError(self.name, f"{type(e).__name__}: {e}") from e

        candidates = self._to_candidates(hits, top_k)
        logger.debug(f"{self.name} returned {len(candidates)} candidates for '{query_text[:50]}'")
        return RankedList(query_text=query_text, method=self.method, candidates=tuple(candidates))

    @abstractmethod
    async def _search(
        self,
        query_text: str,
        top_k: int,
        filters: Optional[Dict[str, Any]]
    ) -> List[IndexHit]:
        """Backend call"""

    def _to_candidates(self, hits: List[IndexHit], top_k: int) -> List[Candidate]:
        if hits is None:
            raise BackendError(self.name, "index returned no hit list")

        candidates = []
        seen = set()
        for hit in hits:
            if not isinstance(hit, IndexHit) or not hit.id:
                raise BackendError(self.name, f"malformed hit: {hit!r}")
            if hit.id in seen:
                continue
            seen.add(hit.id)
            candidates.append(Candidate(
                id=hit.id,
                text=hit.text or "",
                method=self.method,
                score=float(hit.score),
                embedding=hit.embedding,
                parent_id=hit.parent_id,
                metadata=dict(hit.metadata or {})
            ))
            if len(candidates) >= top_k:
                break
        return candidates


class SemanticRetriever(BaseRetriever):
    """Embeds the query and runs a nearest-neighbour search"""

    method = RetrievalMethod.SEMANTIC

    def __init__(self, index: SemanticIndex, embedder: BaseEmbedder, name: str = "semantic"):
        self.index = index
        self.embedder = embedder
        self.name = name

    async def _search(
        self,
        query_text: str,
        top_k: int,
        filters: Optional[Dict[str, Any]]
    ) -> List[IndexHit]:
        try:
            embedding = await self.embedder.embed_query(query_text)
        except Exception as e:
            raise BackendUnavailable(f"{self.name}-embedder", str(e)) from e

        return await self.index.similarity_search(embedding, top_k, filters)


class KeywordRetriever(BaseRetriever):
    """BM25 / lexical search over the raw query text"""

    method = RetrievalMethod.KEYWORD

    def __init__(self, index: KeywordIndex, name: str = "keyword"):
        self.index = index
        self.name = name

    async def _search(
        self,
        query_text: str,
        top_k: int,
        filters: Optional[Dict[str, Any]]
    ) -> List[IndexHit]:
        return await self.index.lexical_search(query_text, top_k, filters)
