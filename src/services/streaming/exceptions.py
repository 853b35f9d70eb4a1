"""Domain exceptions for the assessment streaming pipeline.

Each exception carries a stable, upper-case `error_code` that is sent to the
client verbatim in the `error` SSE event. Failures that happen before the
stream starts are converted to HTTP responses by the global exception handler.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class StreamingError(Exception):
    """Base class for streaming domain errors."""

    message: str
    error_code: str
    retry_after: int | None = None

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.error_code}: {self.message}"


class TransportClosedError(StreamingError):
    """The SSE transport can no longer accept frames (client went away)."""

    def __init__(self, message: str = "SSE transport is closed") -> None:
        super().__init__(message=message, error_code="TRANSPORT_CLOSED")


class UpstreamCompletionError(StreamingError):
    """The model call failed or was rejected. Never retried by the stream."""

    def __init__(
        self,
        message: str = "The assessment model call failed",
        error_code: str = "API_ERROR",
        retry_after: int | None = None,
    ) -> None:
        super().__init__(
            message=message, error_code=error_code, retry_after=retry_after
        )


class ConfigurationError(StreamingError):
    def __init__(self, message: str = "Assessment service is not configured") -> None:
        super().__init__(message=message, error_code="CONFIG_ERROR")


class MissingQueryError(StreamingError):
    def __init__(self, message: str = "Query or article text is required") -> None:
        super().__init__(message=message, error_code="MISSING_QUERY")
