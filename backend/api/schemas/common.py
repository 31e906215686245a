"""Common schemas used across the API."""

from pydantic import BaseModel, Field
from typing import List, Optional


class PaginationParams(BaseModel):
    """Offset pagination for history endpoints."""

    limit: int = Field(default=50, ge=1, le=500, description="Maximum items returned")
    offset: int = Field(default=0, ge=0, description="Items to skip")


class MessageResponse(BaseModel):
    """Simple message response."""

    message: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str = Field(description="Human-readable error message")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")
    code: Optional[str] = Field(default=None, description="Machine-readable rejection code")
    errors: List[str] = Field(default_factory=list, description="Validation errors, if any")
