"""
Temporal representation and pagination of NGSI-LD entities.

This package provides:
- Query parameter parsing and validation (query_utils)
- Building of the temporal representations (builder)
- Partial-result pagination over instance histories (pagination)
- HTTP framing of the results (responses)
- Orchestration of a temporal query (TemporalQueryService)
"""

from ngsild_temporal.temporal.models import (
    TemporalEntitiesQuery,
    TemporalQuery,
    TemporalRepresentation,
    Timerel,
)
from ngsild_temporal.temporal.service import TemporalQueryService

__all__ = [
    "TemporalEntitiesQuery",
    "TemporalQuery",
    "TemporalRepresentation",
    "Timerel",
    "TemporalQueryService",
]
