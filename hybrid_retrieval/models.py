"""
Retrieval Data Model
Immutable per-query value objects passed between pipeline stages
"""
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from enum import Enum


class RetrievalMethod(str, Enum):
    """Backing index a candidate came from"""
    SEMANTIC = "semantic"
    KEYWORD = "keyword"


@dataclass(frozen=True)
class Query:
    """
    User query with its variant texts

    ``variants`` always starts with the original text; expansions follow.
    """
    text: str
    filters: Dict[str, Any] = field(default_factory=dict)
    variants: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.text or not self.text.strip():
            raise ValueError("query text must be non-empty")
        if not self.variants:
            object.__setattr__(self, "variants", (self.text,))
        else:
            object.__setattr__(self, "variants", tuple(self.variants))

    def with_variants(self, variants: Sequence[str]) -> "Query":
        """Return a copy whose variants are the original followed by distinct expansions"""
        ordered = [self.text]
        seen = {self.text.strip().lower()}
        for variant in variants:
            key = variant.strip().lower()
            if not key or key in seen:
                continue
            seen.add(key)
            ordered.append(variant.strip())
        return replace(self, variants=tuple(ordered))


@dataclass(frozen=True)
class Candidate:
    """
    Retrieved unit

    Attributes:
        id: Stable identifier used for deduplication and provenance
        text: Text content
        method: Retriever that produced the candidate
        score: Raw method-local score, not comparable across methods
        embedding: Optional vector kept for diversity scoring
        parent_id: Optional enclosing parent document
        metadata: Backend-provided metadata
    """
    id: str
    text: str
    method: RetrievalMethod
    score: float
    embedding: Optional[Tuple[float, ...]] = None
    parent_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.embedding is not None:
            object.__setattr__(self, "embedding", tuple(float(x) for x in self.embedding))

    def with_embedding(self, embedding: Sequence[float]) -> "Candidate":
        return replace(self, embedding=tuple(embedding))


@dataclass(frozen=True)
class RankedList:
    """Ordered candidates for one (query variant, method) pair"""
    query_text: str
    method: RetrievalMethod
    candidates: Tuple[Candidate, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "candidates", tuple(self.candidates))

    def __len__(self) -> int:
        return len(self.candidates)

    def __iter__(self) -> Iterator[Candidate]:
        return iter(self.candidates)

    @property
    def label(self) -> str:
        return f"{self.method.value}:{self.query_text}"


@dataclass(frozen=True)
class Contribution:
    """One ranked list's contribution to a fused result (rank is 0-indexed)"""
    list_index: int
    query_text: str
    method: RetrievalMethod
    rank: int


@dataclass(frozen=True)
class FusedResult:
    """Candidate with its RRF score and the lists that contributed to it"""
    candidate: Candidate
    rrf_score: float
    provenance: Tuple[Contribution, ...]

    @property
    def id(self) -> str:
        return self.candidate.id

    @property
    def min_rank(self) -> int:
        return min(c.rank for c in self.provenance)

    @property
    def methods(self) -> Tuple[RetrievalMethod, ...]:
        return tuple(sorted({c.method for c in self.provenance}, key=lambda m: m.value))


@dataclass(frozen=True)
class SelectionResult:
    """MMR-reduced subset of the fused list, order-significant"""
    selected: Tuple[FusedResult, ...]
    mmr_scores: Tuple[float, ...] = ()
    excluded_ids: Tuple[str, ...] = ()
    diversity_applied: bool = True

    def __len__(self) -> int:
        return len(self.selected)

    def __iter__(self) -> Iterator[FusedResult]:
        return iter(self.selected)

    @property
    def ids(self) -> List[str]:
        return [r.id for r in self.selected]


@dataclass(frozen=True)
class ParentDocument:
    """Larger text unit that many candidates map to via parent_id"""
    id: str
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchHit:
    """
    Result carried through the post-selection stages and returned to callers

    The identifier is always read from the fused candidate, so stages that
    swap the text payload (parent expansion, compression) cannot lose it.
    """
    fused: FusedResult
    text: str
    expanded: bool = False
    rerank_score: Optional[float] = None
    compressed: bool = False

    @classmethod
    def from_fused(cls, fused: FusedResult) -> "SearchHit":
        return cls(fused=fused, text=fused.candidate.text)

    @property
    def id(self) -> str:
        return self.fused.candidate.id

    @property
    def parent_id(self) -> Optional[str]:
        return self.fused.candidate.parent_id

    @property
    def rrf_score(self) -> float:
        return self.fused.rrf_score

    @property
    def provenance(self) -> Tuple[Contribution, ...]:
        return self.fused.provenance

    @property
    def score(self) -> float:
        """Most precise score available: rerank score when reranked, RRF otherwise"""
        return self.rerank_score if self.rerank_score is not None else self.rrf_score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "score": self.score,
            "rrf_score": self.rrf_score,
            "rerank_score": self.rerank_score,
            "parent_id": self.parent_id,
            "expanded": self.expanded,
            "compressed": self.compressed,
            "provenance": [
                {
                    "query_text": c.query_text,
                    "method": c.method.value,
                    "rank": c.rank,
                }
                for c in self.provenance
            ],
            "metadata": dict(self.fused.candidate.metadata),
        }


@dataclass(frozen=True)
class RerankedResult:
    """Hit plus cross-encoder score, comparable only within one rerank call"""
    hit: SearchHit
    score: float

    @property
    def id(self) -> str:
        return self.hit.id


@dataclass(frozen=True)
class CompressedResult:
    """
    Query-relevant span of a hit

    ``compressed`` is False when the compression call failed and the
    original text was kept.
    """
    source_id: str
    text: str
    hit: SearchHit
    compressed: bool = True
