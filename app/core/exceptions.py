import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError

from app.core.json import CompactJSONResponse

logger = logging.getLogger("app.core.exceptions")


class AnalysisServiceError(Exception):
  """Base class for errors that map onto a client-facing status code."""

  status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
  default_detail: str = "Internal Server Error"

  def __init__(self, detail: str | None = None) -> None:
    self.detail = detail or self.default_detail
    super().__init__(self.detail)


class RequestValidationFailed(AnalysisServiceError):
  """Malformed identifier or payload that does not match the expected schema."""

  status_code = status.HTTP_400_BAD_REQUEST
  default_detail = "Invalid request."


class AuthError(AnalysisServiceError):
  """Missing or invalid identity or guest session."""

  status_code = status.HTTP_401_UNAUTHORIZED
  default_detail = "Authentication or session required."


class NotFoundOrForbidden(AnalysisServiceError):
  """Resource absent or not owned by the caller; the two cases are indistinguishable on purpose."""

  status_code = status.HTTP_404_NOT_FOUND
  default_detail = "Not found."


class ConflictError(AnalysisServiceError):
  """The lesson already has a queued or running job."""

  status_code = status.HTTP_409_CONFLICT
  default_detail = "Analysis already queued or running for this lesson."


class InternalError(AnalysisServiceError):
  """Storage failure or unexpected exception; the message never reaches the client."""


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  # Serialize exception instances explicitly to avoid leaking non-serializable objects.
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  return str(value)


def _error_payload(detail: Any, *, request_id: str | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  # Attach a request id so support can correlate client reports to server logs.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    # Remove nested input values from context payloads as well.
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx

    sanitized.append(_coerce_json_safe(scrubbed))

  return sanitized


def _request_id(request: Request) -> str | None:
  return getattr(request.state, "request_id", None)


async def analysis_error_handler(request: Request, exc: AnalysisServiceError) -> CompactJSONResponse:
  """Map domain errors onto their status code."""
  request_id = _request_id(request)
  if exc.status_code >= 500:
    logger.error("Internal error request_id=%s path=%s error=%s", request_id, request.url.path, exc.detail, exc_info=exc)
    return CompactJSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  from app.config import get_settings

  if get_settings().log_http_4xx:
    logger.warning("Request rejected request_id=%s path=%s status_code=%s error_type=%s", request_id, request.url.path, exc.status_code, type(exc).__name__)
  return CompactJSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id))


async def global_exception_handler(request: Request, exc: Exception) -> CompactJSONResponse:
  """Global exception handler to catch unhandled errors."""
  request_id = _request_id(request)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=exc)
  return CompactJSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> CompactJSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  request_id = _request_id(request)
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return CompactJSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> CompactJSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  request_id = _request_id(request)
  if exc.status_code >= 500:
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)
    return CompactJSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  return CompactJSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id), headers=getattr(exc, "headers", None))
