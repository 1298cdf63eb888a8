"""
OpenSearch Client
Vector (knn) and BM25 search over indices populated elsewhere
"""
from typing import List, Dict, Any, Optional, Sequence
import logging
import os

from opensearchpy import AsyncOpenSearch
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError, TransportError

from hybrid_retrieval.errors import BackendError, BackendUnavailable
from hybrid_retrieval.search.retrievers import IndexHit, KeywordIndex, SemanticIndex

logger = logging.getLogger(__name__)


def build_filter_clauses(filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Metadata filters as OpenSearch term / terms clauses"""
    clauses = []
    for field_name, value in (filters or {}).items():
        if isinstance(value, (list, tuple, set)):
            clauses.append({"terms": {field_name: list(value)}})
        else:
            clauses.append({"term": {field_name: value}})
    return clauses


class OpenSearchClient(SemanticIndex, KeywordIndex):
    """Async OpenSearch client serving both the semantic and the keyword index role"""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        embedding_index: Optional[str] = None,
        chunk_index: Optional[str] = None
    ):
        self.host = host or os.getenv("OPENSEARCH_HOST", "localhost")
        self.port = port or int(os.getenv("OPENSEARCH_PORT", "9200"))
        self.username = os.getenv("OPENSEARCH_USERNAME", "admin")
        self.password = os.getenv("OPENSEARCH_PASSWORD", "admin")

        self.client = AsyncOpenSearch(
            hosts=[{"host": self.host, "port": self.port}],
            http_auth=(self.username, self.password),
            use_ssl=False,
            verify_certs=False,
        )

        # Index names
        self.embedding_index = embedding_index or os.getenv("OPENSEARCH_EMBEDDING_INDEX", "document_embeddings")
        self.chunk_index = chunk_index or os.getenv("OPENSEARCH_CHUNK_INDEX", "document_chunks")

    async def similarity_search(
        self,
        embedding: Sequence[float],
        top_k: int,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[IndexHit]:
        """knn search over the embedding index"""
        query: Dict[str, Any] = {
            "knn": {
                "embedding": {
                    "vector": list(embedding),
                    "k": top_k
                }
            }
        }

        clauses = build_filter_clauses(filters)
        if clauses:
            query = {
                "bool": {
                    "must": [query],
                    "filter": clauses
                }
            }

        response = await self._search(self.embedding_index, {"size": top_k, "query": query})
        return self._parse_hits(response, include_embedding=True)

    async def lexical_search(
        self,
        query_text: str,
        top_k: int,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[IndexHit]:
        """BM25 match search over the chunk index"""
        query: Dict[str, Any] = {
            "multi_match": {
                "query": query_text,
                "fields": ["text^2", "section_title"],
                "type": "best_fields"
            }
        }

        clauses = build_filter_clauses(filters)
        if clauses:
            query = {
                "bool": {
                    "must": [query],
                    "filter": clauses
                }
            }

        response = await self._search(self.chunk_index, {"size": top_k, "query": query})
        return self._parse_hits(response, include_embedding=False)

    async def _search(self, index: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self.client.search(index=index, body=body)
        except OpenSearchConnectionError as e:
            raise BackendUnavailable(f"opensearch:{index}", str(e)) from e
        except TransportError as e:
            if e.status_code == 429:
                raise BackendUnavailable(f"opensearch:{index}", "rate limited") from e
            raise BackendError(f"opensearch:{index}", f"{e.status_code} {e.error}") from e

    def _parse_hits(self, response: Dict[str, Any], include_embedding: bool) -> List[IndexHit]:
        try:
            raw_hits = response["hits"]["hits"]
        except (KeyError, TypeError) as e:
            raise BackendError("opensearch", f"unexpected response shape: {e}") from e

        results = []
        for hit in raw_hits:
            source = hit.get("_source") or {}
            chunk_id = source.get("chunk_id") or hit.get("_id")
            if chunk_id is None or hit.get("_score") is None:
                raise BackendError("opensearch", f"hit without id or score: {hit!r}")

            results.append(IndexHit(
                id=str(chunk_id),
                score=float(hit["_score"]),
                text=source.get("text", ""),
                embedding=source.get("embedding") if include_embedding else None,
                parent_id=source.get("parent_chunk_id"),
                metadata={
                    "document_id": source.get("document_id"),
                    **(source.get("metadata") or {})
                }
            ))

        return results

    async def health_check(self) -> bool:
        """Check OpenSearch connectivity"""
        try:
            response = await self.client.cluster.health()
            return response.get("status") in ["green", "yellow"]
        except Exception as e:
            logger.warning(f"OpenSearch health check failed: {e}")
            return False

    async def close(self):
        """Close OpenSearch connection"""
        if self.client:
            await self.client.close()
