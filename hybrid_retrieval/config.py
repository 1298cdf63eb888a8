"""
Search Configuration Module
Per-call tuning for the hybrid retrieval pipeline
"""
import os
from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple
from enum import Enum


class OptionalStage(str, Enum):
    """Pipeline stages that can be switched on or off by configuration"""
    QUERY_EXPANSION = "query_expansion"
    DOCUMENT_EXPANSION = "document_expansion"
    RERANKING = "reranking"
    COMPRESSION = "compression"


class TieBreak(str, Enum):
    """Tie-breaking rules for equal RRF scores"""
    MIN_RANK = "min_rank"
    FIRST_SEEN = "first_seen"


class MissingEmbeddingPolicy(str, Enum):
    """What MMR does with candidates that carry no embedding"""
    EMBED = "embed"
    EXCLUDE = "exclude"


# Execution order of optional stages; configuration only switches them on
STAGE_ORDER: Tuple[OptionalStage, ...] = (
    OptionalStage.QUERY_EXPANSION,
    OptionalStage.DOCUMENT_EXPANSION,
    OptionalStage.RERANKING,
    OptionalStage.COMPRESSION,
)


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


@dataclass
class SearchConfig:
    """
    Configuration for a single search call

    Attributes:
        enabled_stages: Optional stages to run, in any order (executed in STAGE_ORDER)

        Retrieval:
        - num_query_variants: Paraphrases requested from the query expander
        - retrieval_top_k: Candidates requested from each retriever
        - retrieval_max_retries: Retries per retriever call on BackendUnavailable

        Fusion / selection:
        - rrf_k: RRF damping constant
        - rrf_tie_break: Ordering rule for equal fused scores
        - mmr_lambda: Relevance vs. redundancy trade-off, in [0, 1]
        - mmr_top_k: Size of the diverse subset handed to later stages
        - missing_embedding_policy: Embed on demand or exclude from MMR

        Precision stages:
        - rerank_top_n: Results kept after reranking
        - compression_concurrency: Parallel compression calls

        Timeouts (seconds):
        - expansion/retrieval/rerank/compression per-stage timeouts
        - parent_lookup_timeout_seconds: Per parent-document lookup
        - embedding_timeout_seconds: Query embedding and on-demand candidate embedding for MMR
        - deadline_seconds: Overall deadline for search(), None for no deadline

        Budget:
        - max_context_tokens: Final token budget, None for unbounded
    """
    enabled_stages: Tuple[OptionalStage, ...] = ()

    # Retrieval
    num_query_variants: int = 3
    retrieval_top_k: int = 50
    retrieval_max_retries: int = 0
    retry_delay_seconds: float = 0.05

    # Fusion and selection
    rrf_k: int = 60
    rrf_tie_break: TieBreak = TieBreak.MIN_RANK
    mmr_lambda: float = 0.6
    mmr_top_k: int = 20
    missing_embedding_policy: MissingEmbeddingPolicy = MissingEmbeddingPolicy.EMBED

    # Precision stages
    rerank_top_n: int = 10
    compression_concurrency: int = 8

    # Timeouts
    expansion_timeout_seconds: float = 1.0
    retrieval_timeout_seconds: float = 0.5
    rerank_timeout_seconds: float = 0.3
    compression_timeout_seconds: float = 0.5
    parent_lookup_timeout_seconds: float = 0.3
    embedding_timeout_seconds: float = 0.5
    deadline_seconds: Optional[float] = None

    # Budget
    max_context_tokens: Optional[int] = None

    def __post_init__(self):
        """Validate configuration values"""
        self.enabled_stages = tuple(OptionalStage(s) for s in self.enabled_stages)
        self.rrf_tie_break = TieBreak(self.rrf_tie_break)
        self.missing_embedding_policy = MissingEmbeddingPolicy(self.missing_embedding_policy)

        if not (0.0 <= self.mmr_lambda <= 1.0):
            raise ValueError("mmr_lambda must be between 0.0 and 1.0")
        if self.rrf_k < 0:
            raise ValueError("rrf_k must be non-negative")
        if self.retrieval_top_k < 1:
            raise ValueError("retrieval_top_k must be at least 1")
        if self.mmr_top_k < 1:
            raise ValueError("mmr_top_k must be at least 1")
        if self.rerank_top_n < 1:
            raise ValueError("rerank_top_n must be at least 1")
        if self.num_query_variants < 0:
            raise ValueError("num_query_variants must be non-negative")
        if self.compression_concurrency < 1:
            raise ValueError("compression_concurrency must be at least 1")
        if self.retrieval_max_retries < 0:
            raise ValueError("retrieval_max_retries must be non-negative")

        for name in (
            "expansion_timeout_seconds",
            "retrieval_timeout_seconds",
            "rerank_timeout_seconds",
            "compression_timeout_seconds",
            "parent_lookup_timeout_seconds",
            "embedding_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.deadline_seconds is not None and self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be positive")
        if self.max_context_tokens is not None and self.max_context_tokens < 1:
            raise ValueError("max_context_tokens must be at least 1")

    def is_enabled(self, stage: OptionalStage) -> bool:
        return stage in self.enabled_stages

    def ordered_stages(self) -> Tuple[OptionalStage, ...]:
        """Enabled stages in execution order"""
        return tuple(s for s in STAGE_ORDER if s in self.enabled_stages)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return {
            "enabled_stages": [s.value for s in self.ordered_stages()],
            "retrieval": {
                "num_query_variants": self.num_query_variants,
                "top_k": self.retrieval_top_k,
                "max_retries": self.retrieval_max_retries,
            },
            "fusion": {
                "rrf_k": self.rrf_k,
                "tie_break": self.rrf_tie_break.value,
            },
            "selection": {
                "mmr_lambda": self.mmr_lambda,
                "mmr_top_k": self.mmr_top_k,
                "missing_embedding_policy": self.missing_embedding_policy.value,
            },
            "rerank_top_n": self.rerank_top_n,
            "compression_concurrency": self.compression_concurrency,
            "timeouts": {
                "expansion": self.expansion_timeout_seconds,
                "retrieval": self.retrieval_timeout_seconds,
                "rerank": self.rerank_timeout_seconds,
                "compression": self.compression_timeout_seconds,
                "parent_lookup": self.parent_lookup_timeout_seconds,
                "embedding": self.embedding_timeout_seconds,
                "deadline": self.deadline_seconds,
            },
            "max_context_tokens": self.max_context_tokens,
        }

    @classmethod
    def from_env(cls, **overrides) -> "SearchConfig":
        """
        Create configuration from environment variables with optional overrides

        Environment variables:
        - HYBRID_RETRIEVAL_STAGES: Comma-separated optional stages
        - HYBRID_RETRIEVAL_NUM_VARIANTS: Query paraphrases to request
        - HYBRID_RETRIEVAL_TOP_K: Candidates per retriever
        - HYBRID_RETRIEVAL_RRF_K: RRF damping constant
        - HYBRID_RETRIEVAL_TIE_BREAK: min_rank or first_seen
        - HYBRID_RETRIEVAL_MMR_LAMBDA: MMR trade-off
        - HYBRID_RETRIEVAL_MMR_TOP_K: Diverse subset size
        - HYBRID_RETRIEVAL_EMBED_MISSING: Embed candidates without vectors (true/false)
        - HYBRID_RETRIEVAL_RERANK_TOP_N: Results kept after reranking
        - HYBRID_RETRIEVAL_DEADLINE: Overall deadline in seconds
        - HYBRID_RETRIEVAL_MAX_CONTEXT_TOKENS: Final token budget

        Args:
            **overrides: Override specific configuration values

        Returns:
            SearchConfig instance
        """
        config_dict: Dict[str, Any] = {}

        if stages := os.getenv("HYBRID_RETRIEVAL_STAGES"):
            config_dict["enabled_stages"] = tuple(
                OptionalStage(s.strip().lower()) for s in stages.split(",") if s.strip()
            )
        if variants := os.getenv("HYBRID_RETRIEVAL_NUM_VARIANTS"):
            config_dict["num_query_variants"] = int(variants)
        if top_k := os.getenv("HYBRID_RETRIEVAL_TOP_K"):
            config_dict["retrieval_top_k"] = int(top_k)
        if rrf_k := os.getenv("HYBRID_RETRIEVAL_RRF_K"):
            config_dict["rrf_k"] = int(rrf_k)
        if tie_break := os.getenv("HYBRID_RETRIEVAL_TIE_BREAK"):
            config_dict["rrf_tie_break"] = TieBreak(tie_break.lower())
        if mmr_lambda := os.getenv("HYBRID_RETRIEVAL_MMR_LAMBDA"):
            config_dict["mmr_lambda"] = float(mmr_lambda)
        if mmr_top_k := os.getenv("HYBRID_RETRIEVAL_MMR_TOP_K"):
            config_dict["mmr_top_k"] = int(mmr_top_k)
        if embed_missing := os.getenv("HYBRID_RETRIEVAL_EMBED_MISSING"):
            config_dict["missing_embedding_policy"] = (
                MissingEmbeddingPolicy.EMBED if _parse_bool(embed_missing)
                else MissingEmbeddingPolicy.EXCLUDE
            )
        if rerank_top_n := os.getenv("HYBRID_RETRIEVAL_RERANK_TOP_N"):
            config_dict["rerank_top_n"] = int(rerank_top_n)
        if deadline := os.getenv("HYBRID_RETRIEVAL_DEADLINE"):
            config_dict["deadline_seconds"] = float(deadline)
        if max_tokens := os.getenv("HYBRID_RETRIEVAL_MAX_CONTEXT_TOKENS"):
            config_dict["max_context_tokens"] = int(max_tokens)

        config_dict.update(overrides)

        return cls(**config_dict)


# Default configuration instance
DEFAULT_CONFIG = SearchConfig()
