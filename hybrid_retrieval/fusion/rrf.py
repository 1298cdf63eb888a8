"""
Reciprocal Rank Fusion
Merges ranked lists from any mix of methods and query variants by rank position only
"""
from dataclasses import replace
from typing import Dict, List, Sequence
import logging

from hybrid_retrieval.config import TieBreak
from hybrid_retrieval.models import Candidate, Contribution, FusedResult, RankedList

logger = logging.getLogger(__name__)

DEFAULT_RRF_K = 60


def rrf_contribution(rank: int, k: int = DEFAULT_RRF_K) -> float:
    """Score contributed by a 0-indexed rank position"""
    return 1.0 / (k + rank + 1)


def _merge_representative(current: Candidate, other: Candidate) -> Candidate:
    """Fill the kept candidate's missing embedding / parent from a later duplicate"""
    updates = {}
    if current.embedding is None and other.embedding is not None:
        updates["embedding"] = other.embedding
    if current.parent_id is None and other.parent_id is not None:
        updates["parent_id"] = other.parent_id
    return replace(current, **updates) if updates else current


def reciprocal_rank_fusion(
    ranked_lists: Sequence[RankedList],
    k: int = DEFAULT_RRF_K,
    tie_break: TieBreak = TieBreak.MIN_RANK
) -> List[FusedResult]:
    """
    Fuse ranked lists with RRF

    Each candidate at 0-indexed position ``r`` of a list adds ``1 / (k + r + 1)``
    to its cumulative score. Raw retriever scores are ignored. A candidate is
    counted once per list (its best position); every candidate that appears in
    any list appears exactly once in the output.

    Args:
        ranked_lists: Lists to fuse; empty lists contribute nothing
        k: Damping constant
        tie_break: MIN_RANK orders equal scores by the smallest rank seen in
            any list, FIRST_SEEN by first appearance across the input lists

    Returns:
        Fused results sorted by descending RRF score
    """
    if k < 0:
        raise ValueError("k must be non-negative")

    scores: Dict[str, float] = {}
    representatives: Dict[str, Candidate] = {}
    provenance: Dict[str, List[Contribution]] = {}
    first_seen: Dict[str, int] = {}

    for list_index, ranked in enumerate(ranked_lists):
        seen_in_list = set()
        for rank, candidate in enumerate(ranked.candidates):
            cid = candidate.id
            if cid in seen_in_list:
                continue
            seen_in_list.add(cid)

            if cid not in scores:
                scores[cid] = 0.0
                representatives[cid] = candidate
                provenance[cid] = []
                first_seen[cid] = len(first_seen)
            else:
                representatives[cid] = _merge_representative(representatives[cid], candidate)

            scores[cid] += rrf_contribution(rank, k)
            provenance[cid].append(Contribution(
                list_index=list_index,
                query_text=ranked.query_text,
                method=ranked.method,
                rank=rank
            ))

    fused = [
        FusedResult(
            candidate=representatives[cid],
            rrf_score=scores[cid],
            provenance=tuple(provenance[cid])
        )
        for cid in scores
    ]

    if TieBreak(tie_break) == TieBreak.FIRST_SEEN:
        fused.sort(key=lambda r: (-r.rrf_score, first_seen[r.id]))
    else:
        fused.sort(key=lambda r: (-r.rrf_score, r.min_rank, first_seen[r.id]))

    return fused


class RankFusion:
    """RRF fuser bound to one configuration"""

    def __init__(self, k: int = DEFAULT_RRF_K, tie_break: TieBreak = TieBreak.MIN_RANK):
        if k < 0:
            raise ValueError("k must be non-negative")
        self.k = k
        self.tie_break = TieBreak(tie_break)

    def fuse(self, ranked_lists: Sequence[RankedList]) -> List[FusedResult]:
        non_empty = sum(1 for r in ranked_lists if len(r) > 0)
        fused = reciprocal_rank_fusion(ranked_lists, k=self.k, tie_break=self.tie_break)
        logger.info(
            f"RRF fusion: {len(ranked_lists)} lists ({non_empty} non-empty) → {len(fused)} candidates"
        )
        return fused
