"""Reconnecting consumer for the progress SSE endpoint."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

import httpx
from pydantic import ValidationError

from app.progress.events import ProgressRecord

logger = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 5
BASE_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 10.0


class ProgressStreamError(Exception):
  """The consumer gave up on the stream."""

  def __init__(self, message: str, *, status_code: int | None = None) -> None:
    self.status_code = status_code
    super().__init__(message)


def reconnect_delay(attempt: int, *, base: float = BASE_RECONNECT_DELAY, cap: float = MAX_RECONNECT_DELAY) -> float:
  """Exponential backoff: 1s, 2s, 4s, 8s, then capped at 10s."""
  return min(base * (2**attempt), cap)


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
  """Yield the data payload of each SSE event; comment frames such as heartbeats are skipped."""
  buffer: list[str] = []
  async for line in lines:
    if line == "":
      if buffer:
        yield "\n".join(buffer)
        buffer = []
      continue
    if line.startswith(":"):
      continue
    field, _, value = line.partition(":")
    if field == "data":
      buffer.append(value[1:] if value.startswith(" ") else value)
  if buffer:
    yield "\n".join(buffer)


class ProgressStreamConsumer:
  """Follow one analysis' progress stream until it completes or the retry budget runs out."""

  def __init__(
    self,
    client: httpx.AsyncClient,
    url: str,
    *,
    on_progress: Callable[[ProgressRecord], None] | None = None,
    on_complete: Callable[[ProgressRecord], None] | None = None,
    on_error: Callable[[ProgressStreamError], None] | None = None,
    headers: dict[str, str] | None = None,
    max_attempts: int = MAX_RECONNECT_ATTEMPTS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ) -> None:
    self._client = client
    self._url = url
    self._on_progress = on_progress
    self._on_complete = on_complete
    self._on_error = on_error
    self._headers = {"Accept": "text/event-stream", **(headers or {})}
    self._max_attempts = max_attempts
    self._sleep = sleep
    self._attempts = 0
    self._running = False
    self._closed = False
    self.current: ProgressRecord | None = None
    self.is_connected = False
    self.completed = False
    self.error: ProgressStreamError | None = None

  def close(self) -> None:
    """Stop after the current frame; no further reconnects are scheduled."""
    self._closed = True

  async def run(self) -> ProgressRecord | None:
    """Consume the stream, reconnecting with backoff; returns the last record seen."""
    if self._running:
      raise RuntimeError("Progress stream consumer is already connected.")
    self._running = True
    try:
      while not self._closed:
        try:
          if await self._stream_once():
            return self.current
        except ProgressStreamError as exc:
          # Client errors such as 401/404 will not recover by reconnecting.
          self._fail(exc)
          return self.current
        except httpx.HTTPError as exc:
          logger.warning("Progress stream error for %s: %s", self._url, exc)
        finally:
          self.is_connected = False

        if self._closed:
          break
        if self._attempts >= self._max_attempts:
          self._fail(ProgressStreamError(f"Failed to establish progress stream after {self._max_attempts} attempts"))
          break
        delay = reconnect_delay(self._attempts)
        self._attempts += 1
        logger.info("Reconnecting to %s in %.1fs (attempt %d)", self._url, delay, self._attempts)
        await self._sleep(delay)
      return self.current
    finally:
      self._running = False

  async def _stream_once(self) -> bool:
    async with self._client.stream("GET", self._url, headers=self._headers) as response:
      if response.status_code >= 400:
        if 400 <= response.status_code < 500 and response.status_code != 429:
          raise ProgressStreamError(f"Progress stream rejected with status {response.status_code}", status_code=response.status_code)
        raise httpx.HTTPStatusError(f"Progress stream failed with status {response.status_code}", request=response.request, response=response)

      self.is_connected = True
      self.error = None
      self._attempts = 0

      async for payload in iter_sse_data(response.aiter_lines()):
        try:
          record = ProgressRecord.model_validate_json(payload)
        except ValidationError:
          logger.warning("Ignoring malformed progress frame from %s", self._url)
          continue

        self.current = record
        if self._on_progress is not None:
          self._on_progress(record)
        if record.is_complete:
          self._complete(record)
          return True
        if self._closed:
          return True

    # The server closed the stream without completion (e.g. its max duration); reconnect.
    return False

  def _complete(self, record: ProgressRecord) -> None:
    if self.completed:
      return
    self.completed = True
    self._closed = True
    if self._on_complete is not None:
      self._on_complete(record)

  def _fail(self, error: ProgressStreamError) -> None:
    self.error = error
    logger.error("Progress stream for %s gave up: %s", self._url, error)
    if self._on_error is not None:
      self._on_error(error)
