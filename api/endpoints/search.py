"""
Search API Endpoints
Runs the hybrid retrieval pipeline over HTTP
"""
import logging
import os
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends

from api.models.schemas import SearchRequest, SearchResponseModel, ErrorResponse
from hybrid_retrieval.config import SearchConfig
from hybrid_retrieval.context.compressor import ContextCompressor
from hybrid_retrieval.context.parent_retriever import DocumentExpander
from hybrid_retrieval.embeddings.embedder import TransformerEmbedder
from hybrid_retrieval.errors import RetrievalFailedError, SearchDeadlineExceeded
from hybrid_retrieval.pipeline import HybridRetrievalPipeline
from hybrid_retrieval.query.query_expander import QueryExpander
from hybrid_retrieval.reranking.cross_encoder import CrossEncoderScorer
from hybrid_retrieval.reranking.reranker import Reranker
from hybrid_retrieval.search.retrievers import KeywordRetriever, SemanticRetriever
from llm_services.clients import LLMBackend, create_client
from storage.opensearch.client import OpenSearchClient
from storage.postgresql.database import DatabaseManager, PostgresParentStore

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["search"])

_pipeline: Optional[HybridRetrievalPipeline] = None


def build_pipeline_from_env() -> HybridRetrievalPipeline:
    """
    Assemble the pipeline from environment variables

    Environment variables:
    - HYBRID_RETRIEVAL_EMBEDDING_MODEL: Hugging Face encoder for query/candidate vectors
    - HYBRID_RETRIEVAL_LLM_BACKEND: openai or ollama enables expansion/compression backends
    - HYBRID_RETRIEVAL_RERANKER_MODEL: cross-encoder model; unset disables the reranker
    - HYBRID_RETRIEVAL_PARENT_STORE: "postgres" enables document expansion
    """
    opensearch = OpenSearchClient()
    embedder = TransformerEmbedder(
        model_name=os.getenv("HYBRID_RETRIEVAL_EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
    )
    retrievers = [
        SemanticRetriever(opensearch, embedder),
        KeywordRetriever(opensearch),
    ]

    query_expander = None
    compressor = None
    if backend := os.getenv("HYBRID_RETRIEVAL_LLM_BACKEND"):
        client = create_client(LLMBackend(backend.lower()))
        query_expander = QueryExpander(client)
        compressor = ContextCompressor(client)

    reranker = None
    if reranker_model := os.getenv("HYBRID_RETRIEVAL_RERANKER_MODEL"):
        reranker = Reranker(CrossEncoderScorer(model_name=reranker_model))

    document_expander = None
    if os.getenv("HYBRID_RETRIEVAL_PARENT_STORE", "").lower() == "postgres":
        document_expander = DocumentExpander(PostgresParentStore(DatabaseManager()))

    return HybridRetrievalPipeline(
        retrievers=retrievers,
        embedder=embedder,
        query_expander=query_expander,
        document_expander=document_expander,
        reranker=reranker,
        compressor=compressor,
        config=SearchConfig.from_env()
    )


# Dependency injection helpers
async def get_search_pipeline() -> HybridRetrievalPipeline:
    """Get the shared pipeline instance, building it on first use"""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline_from_env()
    return _pipeline


@router.post(
    "/search",
    response_model=SearchResponseModel,
    responses={
        400: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
    summary="Hybrid search",
    description="Retrieves, fuses, diversifies and optionally reranks/compresses passages for a query"
)
async def search(
    request: SearchRequest,
    pipeline: HybridRetrievalPipeline = Depends(get_search_pipeline)
) -> SearchResponseModel:
    """
    Run one search

    Total retrieval failure maps to 503 and an exceeded deadline to 504;
    every other backend problem degrades the result instead of failing it.
    """
    try:
        config = request.to_search_config(pipeline.config)
    except ValueError as e:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Invalid search configuration",
                "detail": str(e),
                "error_code": "INVALID_CONFIG"
            }
        )

    logger.info(f"Search request: {request.query[:100]}")

    try:
        response = await pipeline.search(request.query, config=config, filters=request.filters)
    except ValueError as e:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Invalid search request",
                "detail": str(e),
                "error_code": "INVALID_QUERY"
            }
        )
    except RetrievalFailedError as e:
        logger.error(f"Search failed: {e}")
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Search failed",
                "detail": str(e),
                "error_code": "RETRIEVAL_FAILED"
            }
        )
    except SearchDeadlineExceeded as e:
        logger.error(f"Search deadline exceeded: {e}")
        raise HTTPException(
            status_code=504,
            detail={
                "error": "Search timed out",
                "detail": str(e),
                "error_code": "DEADLINE_EXCEEDED"
            }
        )

    return SearchResponseModel.from_response(response, include_trace=request.include_trace)


@router.get(
    "/stats",
    summary="Pipeline statistics",
    description="Counters kept by the pipeline and its components"
)
async def get_stats(pipeline: HybridRetrievalPipeline = Depends(get_search_pipeline)):
    return pipeline.get_stats()
