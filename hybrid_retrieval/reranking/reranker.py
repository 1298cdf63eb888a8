"""
Reranker
Reorders the selected hits by cross-encoder relevance and truncates to top N
"""
import asyncio
import time
from typing import List, Dict, Any, Optional
import logging

from hybrid_retrieval.errors import BackendError, BackendUnavailable
from hybrid_retrieval.models import RerankedResult, SearchHit
from hybrid_retrieval.reranking.cross_encoder import RerankingService

logger = logging.getLogger(__name__)


class Reranker:
    """
    Cross-encoder reranking over already-selected hits

    Scores are only compared within one call. Failures raise
    BackendUnavailable or BackendError; the orchestrator decides to fall
    back to the incoming order.
    """

    name = "reranker"

    def __init__(self, service: RerankingService, timeout_seconds: Optional[float] = None):
        self.service = service
        self.timeout_seconds = timeout_seconds

        self._stats = {
            "total_calls": 0,
            "failed_calls": 0,
            "total_scored": 0,
            "average_time_ms": 0.0
        }

    async def rerank(
        self,
        query: str,
        hits: List[SearchHit],
        top_n: int,
        timeout_seconds: Optional[float] = None
    ) -> List[RerankedResult]:
        """
        Score and reorder hits

        Args:
            query: Original query text
            hits: Hits in their incoming order
            top_n: Number of results to keep (>= 1)
            timeout_seconds: Override for the call timeout

        Returns:
            At most ``top_n`` results sorted by descending score; equal scores
            keep their incoming order
        """
        if top_n < 1:
            raise ValueError("top_n must be at least 1")
        if not hits:
            return []

        self._stats["total_calls"] += 1
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        start_time = time.time()

        try:
            call = self.service.score(query, [(hit.id, hit.text) for hit in hits])
            scored = await asyncio.wait_for(call, timeout=timeout) if timeout else await call
        except asyncio.TimeoutError as e:
            self._stats["failed_calls"] += 1
            raise BackendUnavailable(self.name, f"timed out after {timeout}s") from e
        except (BackendUnavailable, BackendError):
            self._stats["failed_calls"] += 1
            raise
        except (ConnectionError, OSError) as e:
            self._stats["failed_calls"] += 1
            raise BackendUnavailable(self.name, str(e) or type(e).__name__) from e
        except Exception as e:
            self._stats["failed_calls"] += 1
            raise BackendError(self.name, f"{type(e).__name__}: {e}") from e

        scores = self._validate(scored, hits)

        results = [
            RerankedResult(hit=hit, score=scores[hit.id])
            for hit in hits
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        results = results[:top_n]

        elapsed_ms = (time.time() - start_time) * 1000
        self._update_stats(len(hits), elapsed_ms)
        logger.info(f"Reranking: {len(hits)} → {len(results)} in {elapsed_ms:.0f}ms")
        return results

    def _validate(self, scored, hits: List[SearchHit]) -> Dict[str, float]:
        if scored is None:
            self._stats["failed_calls"] += 1
            raise BackendError(self.name, "scoring service returned nothing")

        scores: Dict[str, float] = {}
        try:
            for pid, value in scored:
                scores[pid] = float(value)
        except (TypeError, ValueError) as e:
            self._stats["failed_calls"] += 1
            raise BackendError(self.name, f"malformed scores: {e}") from e

        missing = [hit.id for hit in hits if hit.id not in scores]
        if missing:
            self._stats["failed_calls"] += 1
            raise BackendError(self.name, f"no score for {len(missing)} hits (e.g. {missing[0]})")
        return scores

    async def health_check(self) -> bool:
        """Scoring service health, when the service can report it"""
        check = getattr(self.service, "health_check", None)
        if check is None:
            return True
        return bool(await check())

    def _update_stats(self, scored: int, elapsed_ms: float) -> None:
        self._stats["total_scored"] += scored
        n = self._stats["total_calls"] - self._stats["failed_calls"]
        if n > 0:
            old_avg = self._stats["average_time_ms"]
            self._stats["average_time_ms"] = old_avg + (elapsed_ms - old_avg) / n

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
