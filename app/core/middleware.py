import logging
import time
import uuid
from typing import Any

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger("app.core.middleware")

_STREAM_CONTENT_TYPE = "text/event-stream"


def _normalize_headers(scope: Scope) -> dict[str, str]:
  """Normalize scope headers so downstream logging can check content type safely."""
  return {key.decode("latin-1").lower(): value.decode("latin-1") for key, value in scope.get("headers", [])}


def _build_request_url(scope: Scope) -> str:
  """Build a readable URL path for logging without relying on Request bodies."""
  path = scope.get("path", "")
  query_string = scope.get("query_string", b"")
  if query_string:
    return f"{path}?{query_string.decode('latin-1')}"

  return path


class RequestLoggingMiddleware:
  """Log request/response metadata without touching request or response bodies."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    # Skip non-HTTP scopes to avoid interfering with websocket or lifespan events.
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    # Generate a request id and store it for downstream handlers and exception logging.
    request_id = str(uuid.uuid4())
    scope.setdefault("state", {})["request_id"] = request_id

    start_time = time.time()
    method = scope.get("method", "UNKNOWN")
    url = _build_request_url(scope)
    logger.info("Incoming request request_id=%s %s %s", request_id, method, url)
    headers = _normalize_headers(scope)
    content_type = headers.get("content-type")
    content_length = headers.get("content-length")
    if content_type or content_length:
      logger.debug("Request metadata request_id=%s content-type=%s content-length=%s", request_id, content_type, content_length)

    status_code: int | None = None
    streaming = False

    async def send_wrapper(message: dict[str, Any]) -> None:
      nonlocal status_code, streaming
      if message.get("type") == "http.response.start":
        status_code = message.get("status")
        # Attach a request id to responses to correlate clients with server logs.
        response_headers = MutableHeaders(scope=message)
        if "x-request-id" not in response_headers:
          response_headers["x-request-id"] = request_id
        streaming = (response_headers.get("content-type") or "").startswith(_STREAM_CONTENT_TYPE)
        if streaming:
          logger.info("Stream opened request_id=%s status=%s", request_id, status_code)

      await send(message)

    await self.app(scope, receive, send_wrapper)

    process_time = (time.time() - start_time) * 1000
    if streaming:
      logger.info("Stream closed request_id=%s (open %.2fms)", request_id, process_time)
      return
    logger.info("Response request_id=%s status=%s (took %.2fms)", request_id, status_code or 0, process_time)


class SecurityHeadersMiddleware:
  """Middleware to strip sensitive headers from responses."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    async def send_wrapper(message: dict[str, Any]) -> None:
      if message["type"] == "http.response.start":
        headers = MutableHeaders(scope=message)
        if "x-powered-by" in headers:
          del headers["x-powered-by"]
        if "server" in headers:
          del headers["server"]
        headers.setdefault("x-content-type-options", "nosniff")

      await send(message)

    await self.app(scope, receive, send_wrapper)
