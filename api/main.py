"""
Main FastAPI Application
Hybrid retrieval API: multi-query fan-out, rank fusion, diversity selection
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import FastAPI, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from api.endpoints.search import router as search_router, get_search_pipeline
from api.models.schemas import HealthCheckResponse
from hybrid_retrieval.pipeline import HybridRetrievalPipeline

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan events

    The pipeline itself is built lazily on the first request so the
    models and backends are only touched when the service is used.
    """
    logger.info("Starting Hybrid Retrieval API...")

    yield

    logger.info("Shutting down Hybrid Retrieval API...")


# Create FastAPI application
app = FastAPI(
    title="Hybrid Retrieval API",
    description="""
    Hybrid retrieval and ranking engine.

    ## Features

    - **Query Expansion**: LLM paraphrases fan out alongside the original query
    - **Hybrid Retrieval**: Semantic (knn) and keyword (BM25) retrievers queried concurrently
    - **Rank Fusion**: Reciprocal Rank Fusion with per-source provenance
    - **Diversity**: Maximal Marginal Relevance over candidate embeddings
    - **Optional Stages**: Parent document expansion, cross-encoder reranking, contextual compression

    ## Key Endpoints

    - `POST /api/v1/search` - Run a hybrid search
    - `GET /api/v1/stats` - Pipeline statistics
    - `GET /health` - Health check
    """,
    version=API_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors"""
    logger.warning(f"Validation error: {exc.errors()}")

    return JSONResponse(
        status_code=422,
        content={
            "error": "Validation error",
            "detail": str(exc),
            "error_code": "VALIDATION_ERROR"
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unexpected error: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred",
            "error_code": "INTERNAL_ERROR"
        }
    )


# Include routers
app.include_router(search_router)


# Health check endpoint
@app.get(
    "/health",
    response_model=HealthCheckResponse,
    tags=["health"],
    summary="Health check",
    description="Check API health and backend status"
)
async def health_check(
    pipeline: HybridRetrievalPipeline = Depends(get_search_pipeline)
) -> HealthCheckResponse:
    """
    Health check endpoint

    Any unhealthy backend marks the service as degraded,
    since search still answers from the remaining sources.
    """
    health = await pipeline.health_check()
    overall = health.pop("overall", True)

    components = {
        name: "healthy" if healthy else "unhealthy"
        for name, healthy in health.items()
    }

    return HealthCheckResponse(
        status="healthy" if overall else "degraded",
        version=API_VERSION,
        components=components,
        timestamp=datetime.utcnow()
    )


# Root endpoint
@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information"""
    return {
        "name": "Hybrid Retrieval API",
        "version": API_VERSION,
        "description": "Hybrid retrieval with rank fusion and diversity selection",
        "docs_url": "/docs",
        "health_url": "/health",
        "endpoints": {
            "search": "/api/v1/search",
            "stats": "/api/v1/stats"
        }
    }


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests"""
    logger.info(f"{request.method} {request.url.path}")
    response = await call_next(request)
    logger.info(f"{request.method} {request.url.path} - {response.status_code}")
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
