"""Error envelopes, correlation IDs and structured logging for the API.

Only failures that happen before the first SSE byte reach the handlers in
this module. Once a stream is open the orchestrator reports failures as
`error` events instead.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pythonjsonlogger.json import JsonFormatter
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.config import get_settings
from core.security_config import get_allowed_error_fields, is_sensitive_key
from schemas.api import ErrorResponse
from services.streaming.exceptions import StreamingError


_correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

REDACTED = "[REDACTED]"
_HEADER_VALUE_KEYS = frozenset({"value", "val", "v"})

VALIDATION_MESSAGE = "Invalid request data provided"
STREAM_START_MESSAGE = "The assessment stream could not be started"
INTERNAL_MESSAGE = "An internal error occurred"

logger = logging.getLogger(__name__)


def get_correlation_id() -> str:
    """Return the request's correlation ID, creating one outside a request."""
    correlation_id = _correlation_id_var.get()
    if not correlation_id:
        correlation_id = str(uuid.uuid4())
        _correlation_id_var.set(correlation_id)
    return correlation_id


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id_var.set(correlation_id)


def redact(value: Any) -> Any:
    """Mask sensitive keys at any depth of a dict/list structure."""
    if isinstance(value, list):
        return [redact(item) for item in value]
    if not isinstance(value, dict):
        return value

    header = _redact_header_pair(value)
    if header is not None:
        return header
    return {
        key: REDACTED if is_sensitive_key(str(key)) else redact(item)
        for key, item in value.items()
    }


def _redact_header_pair(data: dict[str, Any]) -> dict[str, Any] | None:
    """Mask the value of a `{"name": "X-Api-Key", "value": ...}` style pair.

    None when `data` is not such a pair or the header name is harmless.
    """
    if "value" not in data:
        return None
    name = data.get("name") or data.get("key")
    if not isinstance(name, str) or not is_sensitive_key(name):
        return None

    masked: dict[str, Any] = {}
    for key, item in data.items():
        if key.lower() in _HEADER_VALUE_KEYS or is_sensitive_key(key):
            masked[key] = REDACTED
        else:
            masked[key] = redact(item)
    return masked


class StructuredLogger:
    """Logger wrapper that stamps records with the correlation ID.

    Keyword arguments become structured fields after redaction, so claim text
    and credentials never reach the log sink.
    """

    def __init__(self, logger_name: str):
        self.logger = logging.getLogger(logger_name)

    def _sanitize_data(self, data: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(data, dict):
            return {}
        return redact(data)

    def _emit(
        self,
        level: int,
        message: str,
        fields: dict[str, Any],
        exc_info: bool = False,
    ) -> None:
        if not self.logger.isEnabledFor(level):
            return
        correlation_id = get_correlation_id()
        payload = {
            "correlation_id": correlation_id,
            "message": message,
            **self._sanitize_data(fields),
        }
        # JSON output carries the ID as a field; plain text needs it inline.
        if get_settings().ENVIRONMENT != "production":
            message = f"[{correlation_id}] {message}"
        self.logger.log(
            level, message, extra={"structured_data": payload}, exc_info=exc_info
        )

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, fields)

    def exception(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, fields, exc_info=True)


structured_logger = StructuredLogger(__name__)


def _build_error_response(
    *,
    correlation_id: str,
    error_type: str,
    message: str,
    environment: str,
    details: dict[str, Any] | None = None,
    traceback_str: str | None = None,
    exception_type: str | None = None,
    validation_errors: Any | None = None,
    status_code: int = 500,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build the error envelope, dropping fields this environment may not expose."""
    optional = {
        "details": details or None,
        "traceback": traceback_str or None,
        "exception_type": exception_type or None,
        "validation_errors": validation_errors,
    }
    allowed = get_allowed_error_fields(environment)
    error_body: dict[str, Any] = {"correlation_id": correlation_id, "type": error_type}
    error_body.update(
        {name: value for name, value in optional.items() if name in allowed and value is not None}
    )

    envelope = ErrorResponse(message=message, error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def _http_error(exc: StarletteHTTPException, environment: str) -> JSONResponse:
    # Rate-limit rejections carry Retry-After and X-RateLimit-* headers.
    return _build_error_response(
        correlation_id=get_correlation_id(),
        error_type="http_error",
        message="An HTTP error occurred",
        environment=environment,
        details={"detail": exc.detail},
        exception_type=exc.__class__.__name__,
        status_code=exc.status_code,
        headers=exc.headers,
    )


def _validation_error(
    exc: ValidationError | RequestValidationError, environment: str
) -> JSONResponse:
    errors = exc.errors()
    structured_logger.warning("Request validation failed", error_count=len(errors))
    return _build_error_response(
        correlation_id=get_correlation_id(),
        error_type="validation_error",
        message=VALIDATION_MESSAGE,
        environment=environment,
        # Error contexts may hold exception instances.
        validation_errors=json.loads(json.dumps(errors, default=str)),
        status_code=422,
    )


def _stream_start_error(exc: StreamingError, environment: str) -> JSONResponse:
    structured_logger.warning(
        "Assessment stream not started", error_code=exc.error_code, detail=exc.message
    )
    return _build_error_response(
        correlation_id=get_correlation_id(),
        error_type="domain_error",
        message=STREAM_START_MESSAGE,
        environment=environment,
        details={"code": exc.error_code},
        status_code=503,
    )


def _unhandled_error(exc: Exception, environment: str) -> JSONResponse:
    structured_logger.exception(
        "Unhandled exception", exception_type=exc.__class__.__name__
    )
    debug = environment != "production"
    return _build_error_response(
        correlation_id=get_correlation_id(),
        error_type="internal_server_error",
        message=INTERNAL_MESSAGE,
        environment=environment,
        traceback_str="".join(traceback.format_exception(exc)).strip() if debug else None,
        exception_type=exc.__class__.__name__ if debug else None,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Translate any pre-stream failure into the JSON error envelope."""
    environment = get_settings().ENVIRONMENT

    if isinstance(exc, StarletteHTTPException):
        return _http_error(exc, environment)
    if isinstance(exc, ValidationError | RequestValidationError):
        return _validation_error(exc, environment)
    if isinstance(exc, StreamingError):
        return _stream_start_error(exc, environment)
    return _unhandled_error(exc, environment)


class _StructuredJsonFormatter(JsonFormatter):
    """Lifts `StructuredLogger` fields to the top level of each JSON record."""

    def add_fields(
        self,
        log_data: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_data, record, message_dict)
        structured = log_data.pop("structured_data", None)
        if isinstance(structured, dict):
            log_data.update(structured)
        log_data.setdefault("level", record.levelname)


def setup_logging() -> None:
    """Install the root handler once: JSON in production, plain text elsewhere."""
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    environment = get_settings().ENVIRONMENT
    level = logging.DEBUG if environment == "development" else logging.INFO

    formatter: logging.Formatter
    if environment == "production":
        formatter = _StructuredJsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    if environment == "production":
        for noisy in ("uvicorn.access", "httpx", "anthropic"):
            logging.getLogger(noisy).setLevel(logging.WARNING)
