"""Common schemas used across the API.

Every endpoint answers with the same envelope so clients can branch on
``success`` and ``error.code`` without inspecting status codes.
"""

from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field


T = TypeVar("T")


class ApiError(BaseModel):
    """Machine-readable error code plus a human-readable message."""

    code: str = Field(..., description="Machine-readable error code for programmatic handling")
    message: str = Field(..., description="Human-readable error description")


class ApiResponse(BaseModel, Generic[T]):
    """
    Standard response envelope.

    Attributes:
        success: True for successful responses
        data: Payload (absent on failures)
        message: Optional human-readable message
        error: Error details (failures only)
    """

    success: bool
    data: Optional[T] = None
    message: Optional[str] = None
    error: Optional[ApiError] = None

    @classmethod
    def ok(cls, data: Any = None, message: Optional[str] = None) -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, code: str, message: str) -> "ApiResponse":
        return cls(success=False, error=ApiError(code=code, message=message))

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "success": False,
                    "data": None,
                    "message": None,
                    "error": {"code": "RATE_LIMITED", "message": "Too many requests. Please try again later."},
                },
            ]
        }
    }


def error_body(code: str, message: str) -> dict:
    """Serialized failure envelope for responses built outside FastAPI routing."""
    return ApiResponse.fail(code, message).model_dump(mode="json")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "ok"
    version: str = "1.0.0"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
