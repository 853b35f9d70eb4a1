"""JSON envelopes for the non-streaming endpoints and pre-stream errors."""

from __future__ import annotations

from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Standard API response wrapper.

    Attributes:
        success: Whether the request was successful.
        data: The payload when success is True.
        message: A human-readable message about the response.
        error: Error details when success is False.
    """

    success: bool = True
    data: T | None = None
    message: str = "Operation completed successfully"
    error: dict[str, Any] | None = None


class ErrorResponse(ApiResponse[None]):
    success: bool = False
    message: str = "An error occurred"


class HealthStatus(BaseModel):
    status: Literal["healthy"] = "healthy"
    message: str
    model: str
    # False until ANTHROPIC_API_KEY is set; streams then fail with CONFIG_ERROR.
    model_configured: bool
