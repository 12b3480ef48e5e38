"""
Pydantic models for API responses.

Temporal entities are free-form JSON-LD documents and are returned as plain
JSON, only the fixed-shape responses are modeled here.
"""

from typing import Optional
from pydantic import BaseModel


# ============================================================================
# Response Models
# ============================================================================


class HealthResponse(BaseModel):
    """Response model for /health endpoint."""

    status: str
    version: str = "0.1.0"
    timestamp: str


class ProblemDetails(BaseModel):
    """Error body returned for every failed request."""

    type: str
    title: str
    detail: Optional[str] = None
