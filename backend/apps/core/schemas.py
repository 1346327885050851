"""
Core schemas - shared Pydantic models for API responses.
"""

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    detail: str = Field(..., description="Human-readable error message")
    code: str | None = Field(default=None, description="Machine-readable error kind")

    model_config = {
        "json_schema_extra": {
            "example": {"detail": "Cannot transition from 'trial' to 'cancelled'", "code": "invalid_transition"}
        },
        "extra": "allow",
    }


class PageMeta(BaseModel):
    """Pagination metadata shared by list endpoints."""

    page: int
    limit: int
    total: int
