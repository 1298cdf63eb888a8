"""
Maximal Marginal Relevance
Greedy diversity-aware selection over the fused candidate list
"""
import asyncio
from typing import List, Optional, Sequence, Tuple
import logging

import numpy as np

from hybrid_retrieval.config import MissingEmbeddingPolicy
from hybrid_retrieval.embeddings.embedder import BaseEmbedder
from hybrid_retrieval.models import FusedResult, SelectionResult
from hybrid_retrieval.similarity import cosine_similarities, cosine_similarity_matrix

logger = logging.getLogger(__name__)


def maximal_marginal_relevance(
    query_embedding: Sequence[float],
    embeddings: Sequence[Sequence[float]],
    k: int,
    lambda_param: float = 0.6
) -> List[Tuple[int, float]]:
    """
    Greedy MMR selection

    score(d) = λ * cos(q, d) - (1 - λ) * max_{s in selected} cos(d, s)

    Ties go to the lower input index, so input order acts as the secondary key.

    Args:
        query_embedding: Query vector
        embeddings: Candidate vectors, one per candidate
        k: Number of items to select
        lambda_param: Relevance / redundancy trade-off in [0, 1]

    Returns:
        (index, mmr_score) pairs in selection order
    """
    if not (0.0 <= lambda_param <= 1.0):
        raise ValueError("lambda_param must be between 0.0 and 1.0")

    n = len(embeddings)
    if n == 0 or k <= 0:
        return []

    relevance = np.asarray(cosine_similarities(query_embedding, embeddings))
    pairwise = cosine_similarity_matrix(embeddings)

    selected: List[Tuple[int, float]] = []
    remaining = list(range(n))
    # cosine can be negative, so start below any real similarity
    max_sim_to_selected = np.full(n, -np.inf)

    while remaining and len(selected) < k:
        best_idx = None
        best_score = float("-inf")

        for idx in remaining:
            redundancy = max_sim_to_selected[idx] if selected else 0.0
            score = lambda_param * relevance[idx] - (1 - lambda_param) * redundancy
            if score > best_score:
                best_score = score
                best_idx = idx

        selected.append((best_idx, float(best_score)))
        remaining.remove(best_idx)

        for idx in remaining:
            max_sim_to_selected[idx] = max(max_sim_to_selected[idx], pairwise[idx, best_idx])

    return selected


class MMRSelector:
    """
    Diversity selector over fused results

    Candidates without a usable embedding are embedded on demand or left out
    of diversity scoring, depending on the configured policy. Candidates left
    out are not dropped: they fill any remaining slots after the MMR picks,
    in fused order, and are reported in ``excluded_ids``.
    """

    def __init__(self, embedder: Optional[BaseEmbedder] = None):
        self.embedder = embedder

    async def select(
        self,
        query_embedding: Optional[Sequence[float]],
        fused: Sequence[FusedResult],
        k: int,
        lambda_param: float = 0.6,
        missing_policy: MissingEmbeddingPolicy = MissingEmbeddingPolicy.EMBED,
        embedding_timeout: Optional[float] = None
    ) -> SelectionResult:
        if not fused:
            return SelectionResult(selected=(), mmr_scores=(), diversity_applied=True)

        if query_embedding is None:
            logger.warning("No query embedding available, MMR skipped; keeping fused order")
            top = tuple(fused[:k])
            return SelectionResult(
                selected=top,
                mmr_scores=tuple(r.rrf_score for r in top),
                diversity_applied=False
            )

        pool, excluded = await self._ensure_embeddings(list(fused), missing_policy, embedding_timeout)
        dim = len(query_embedding)

        usable: List[FusedResult] = []
        for result in pool:
            if len(result.candidate.embedding) != dim:
                logger.warning(
                    f"Candidate {result.id} embedding has dimension "
                    f"{len(result.candidate.embedding)}, expected {dim}; excluded from MMR"
                )
                excluded.append(result.id)
                continue
            usable.append(result)

        picks = maximal_marginal_relevance(
            query_embedding,
            [r.candidate.embedding for r in usable],
            k=k,
            lambda_param=lambda_param
        )

        selected = [usable[i] for i, _ in picks]
        scores = [score for _, score in picks]

        # excluded candidates keep their fused order behind the MMR picks
        excluded_set = set(excluded)
        for result in fused:
            if len(selected) >= k:
                break
            if result.id in excluded_set:
                selected.append(result)
                scores.append(result.rrf_score)

        logger.info(
            f"MMR selection: {len(fused)} candidates → {len(selected)} "
            f"(λ={lambda_param}, excluded from scoring={len(excluded)})"
        )
        return SelectionResult(
            selected=tuple(selected),
            mmr_scores=tuple(scores),
            excluded_ids=tuple(excluded),
            diversity_applied=bool(usable)
        )

    async def _ensure_embeddings(
        self,
        fused: List[FusedResult],
        policy: MissingEmbeddingPolicy,
        timeout: Optional[float] = None
    ) -> Tuple[List[FusedResult], List[str]]:
        """Return results that carry embeddings (input order kept) plus ids excluded"""
        missing = [i for i, r in enumerate(fused) if r.candidate.embedding is None]
        if not missing:
            return fused, []

        if policy == MissingEmbeddingPolicy.EMBED and self.embedder is not None:
            try:
                call = self.embedder.embed_documents([fused[i].candidate.text for i in missing])
                vectors = await asyncio.wait_for(call, timeout=timeout) if timeout else await call
                if len(vectors) != len(missing):
                    raise ValueError(f"embedder returned {len(vectors)} vectors for {len(missing)} texts")
            except asyncio.TimeoutError:
                logger.warning(
                    f"On-demand embedding timed out after {timeout}s, excluding {len(missing)} candidates"
                )
            except Exception as e:
                logger.warning(f"On-demand embedding failed, excluding {len(missing)} candidates: {e}")
            else:
                patched = list(fused)
                for i, vector in zip(missing, vectors):
                    original = fused[i]
                    patched[i] = FusedResult(
                        candidate=original.candidate.with_embedding(vector),
                        rrf_score=original.rrf_score,
                        provenance=original.provenance
                    )
                logger.debug(f"Embedded {len(missing)} candidates on demand")
                return patched, []
        elif policy == MissingEmbeddingPolicy.EMBED:
            logger.warning("Embedding policy is 'embed' but no embedder configured; excluding")

        missing_set = set(missing)
        excluded = [fused[i].id for i in missing]
        logger.warning(f"Excluded {len(excluded)} candidates without embeddings from MMR scoring")
        return [r for i, r in enumerate(fused) if i not in missing_set], excluded
