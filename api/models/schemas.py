"""
API Request and Response Schemas
Pydantic models for FastAPI endpoints
"""
from dataclasses import replace
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

from hybrid_retrieval.config import SearchConfig
from hybrid_retrieval.pipeline import SearchResponse


# Enums
class OptionalStageEnum(str, Enum):
    """Optional pipeline stages"""
    QUERY_EXPANSION = "query_expansion"
    DOCUMENT_EXPANSION = "document_expansion"
    RERANKING = "reranking"
    COMPRESSION = "compression"


class TieBreakEnum(str, Enum):
    """RRF tie-breaking rules"""
    MIN_RANK = "min_rank"
    FIRST_SEEN = "first_seen"


# Request Models
class SearchRequest(BaseModel):
    """
    Request model for the search endpoint

    Unset tuning fields fall back to the server configuration
    (HYBRID_RETRIEVAL_* environment variables).
    """
    model_config = ConfigDict(json_schema_extra={
        "example": {
            "query": "what is lazy loading",
            "filters": {"document_id": "doc_42"},
            "enabled_stages": ["query_expansion", "reranking"],
            "mmr_lambda": 0.6,
            "rerank_top_n": 5
        }
    })

    query: str = Field(..., min_length=1, max_length=2000, description="User query")
    filters: Optional[Dict[str, Any]] = Field(None, description="Metadata filters forwarded to retrievers")

    enabled_stages: Optional[List[OptionalStageEnum]] = Field(None, description="Optional stages to run")
    num_query_variants: Optional[int] = Field(None, ge=0, le=10, description="Paraphrases to request")
    retrieval_top_k: Optional[int] = Field(None, ge=1, le=1000, description="Candidates per retriever")
    rrf_k: Optional[int] = Field(None, ge=0, description="RRF damping constant")
    rrf_tie_break: Optional[TieBreakEnum] = Field(None, description="Tie-breaking rule for equal fused scores")
    mmr_lambda: Optional[float] = Field(None, ge=0.0, le=1.0, description="Relevance vs. diversity trade-off")
    mmr_top_k: Optional[int] = Field(None, ge=1, le=200, description="Diverse subset size")
    rerank_top_n: Optional[int] = Field(None, ge=1, le=200, description="Results kept after reranking")
    max_context_tokens: Optional[int] = Field(None, ge=1, description="Final token budget")
    deadline_seconds: Optional[float] = Field(None, gt=0.0, le=60.0, description="Overall deadline")

    include_trace: bool = Field(False, description="Include the full pipeline trace")

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must contain non-whitespace characters")
        return value

    def to_search_config(self, base: SearchConfig) -> SearchConfig:
        """Overlay the fields set on this request onto ``base``"""
        overrides: Dict[str, Any] = {}
        for name in (
            "num_query_variants",
            "retrieval_top_k",
            "rrf_k",
            "rrf_tie_break",
            "mmr_lambda",
            "mmr_top_k",
            "rerank_top_n",
            "max_context_tokens",
            "deadline_seconds",
        ):
            value = getattr(self, name)
            if value is not None:
                overrides[name] = value.value if isinstance(value, Enum) else value
        if self.enabled_stages is not None:
            overrides["enabled_stages"] = tuple(s.value for s in self.enabled_stages)
        return replace(base, **overrides)


# Response Models
class ProvenanceModel(BaseModel):
    """Ranked list that contributed to a hit"""
    query_text: str
    method: str
    rank: int = Field(..., ge=0, description="0-indexed rank in that list")


class HitModel(BaseModel):
    """One search result"""
    id: str = Field(..., description="Identifier of the retrieved unit")
    text: str
    score: float = Field(..., description="Rerank score when reranked, RRF score otherwise")
    rrf_score: float
    rerank_score: Optional[float] = None
    parent_id: Optional[str] = None
    expanded: bool = False
    compressed: bool = False
    provenance: List[ProvenanceModel] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResponseModel(BaseModel):
    """Response model for the search endpoint"""
    search_id: str
    query: str
    variants: List[str]
    hits: List[HitModel]
    stages_run: List[str] = Field(..., description="Stages that ran to completion")
    degraded: bool = Field(..., description="True when any source or stage fell back")
    warnings: List[str] = Field(default_factory=list)
    total_time_ms: float
    trace: Optional[Dict[str, Any]] = None

    @classmethod
    def from_response(cls, response: SearchResponse, include_trace: bool = False) -> "SearchResponseModel":
        data = response.to_dict()
        return cls(
            search_id=response.trace.trace_id,
            query=data["query"],
            variants=data["variants"],
            hits=[HitModel(**hit) for hit in data["hits"]],
            stages_run=data["stages_run"],
            degraded=data["degraded"],
            warnings=list(response.trace.warnings),
            total_time_ms=round(response.trace.total_duration_ms, 2),
            trace=data["trace"] if include_trace else None
        )


class ErrorResponse(BaseModel):
    """Error response model"""
    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "Search failed",
            "detail": "all 6 retriever calls failed for 'what is lazy loading'",
            "error_code": "RETRIEVAL_FAILED"
        }
    })

    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Detailed error information")
    error_code: Optional[str] = Field(None, description="Error code")


class HealthCheckResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="API version")
    components: Dict[str, str] = Field(
        default_factory=dict,
        description="Component status"
    )
    timestamp: datetime = Field(..., description="Check timestamp")
