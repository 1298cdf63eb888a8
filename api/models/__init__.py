"""
API Models and Schemas
"""
from api.models.schemas import (
    # Enums
    OptionalStageEnum,
    TieBreakEnum,

    # Request models
    SearchRequest,

    # Response models
    SearchResponseModel,
    ErrorResponse,
    HealthCheckResponse,

    # Component models
    HitModel,
    ProvenanceModel
)

__all__ = [
    # Enums
    "OptionalStageEnum",
    "TieBreakEnum",

    # Request models
    "SearchRequest",

    # Response models
    "SearchResponseModel",
    "ErrorResponse",
    "HealthCheckResponse",

    # Component models
    "HitModel",
    "ProvenanceModel"
]
