"""Server-Sent Events relay from the progress service to one browser connection."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable

from starlette.types import Receive

from app.core.json import dumps_compact
from app.progress.events import ProgressRecord
from app.services.progress import ProgressService

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"

SSE_HEADERS: dict[str, str] = {
  "Cache-Control": "no-cache, no-transform",
  "Connection": "keep-alive",
  "X-Accel-Buffering": "no",
}


def format_event(record: ProgressRecord) -> str:
  return f"data: {dumps_compact(record.as_wire())}\n\n"


async def wait_for_disconnect(receive: Receive) -> None:
  """Return once the server reports that the client went away."""
  while True:
    message = await receive()
    if message["type"] == "http.disconnect":
      return


class ProgressStream:
  """Snapshot, live records and heartbeats for one analysis, with bounded lifetime.

  The stream ends when a record reaches 100%, the max duration elapses, the client
  disconnects, or the snapshot cannot be read. A disconnect is noticed while the stream
  is idle, not only between frames. The listener is always removed on exit, including
  when the response task is cancelled mid-write.
  """

  def __init__(
    self,
    analysis_id: str,
    service: ProgressService,
    *,
    heartbeat_seconds: float = 30.0,
    max_duration_seconds: float = 300.0,
    wait_for_disconnect: Callable[[], Awaitable[None]] | None = None,
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    self.analysis_id = analysis_id
    self._service = service
    self._heartbeat_seconds = heartbeat_seconds
    self._max_duration_seconds = max_duration_seconds
    self._wait_for_disconnect = wait_for_disconnect
    self._clock = clock
    self.close_reason: str | None = None

  async def events(self) -> AsyncIterator[str]:
    queue: asyncio.Queue[ProgressRecord] = asyncio.Queue()
    listener = queue.put_nowait
    # Register before reading the snapshot so nothing published in between is lost.
    self._service.add_listener(self.analysis_id, listener)
    started = self._clock()
    disconnect: asyncio.Future[None] | None = None
    getter: asyncio.Future[ProgressRecord] | None = None
    try:
      if self._wait_for_disconnect is not None:
        disconnect = asyncio.ensure_future(self._wait_for_disconnect())

      try:
        snapshot = await self._service.get_snapshot(self.analysis_id)
      except Exception:  # noqa: BLE001
        logger.error("Snapshot read failed for analysis %s; closing stream", self.analysis_id, exc_info=True)
        self.close_reason = "snapshot_error"
        return

      if snapshot is not None:
        _drop_older_than(queue, snapshot.timestamp)
        yield format_event(snapshot)
        if snapshot.is_complete:
          self.close_reason = "complete"
          return

      deadline = started + self._max_duration_seconds
      next_heartbeat = started + self._heartbeat_seconds
      while True:
        now = self._clock()
        if now >= deadline:
          self.close_reason = "timeout"
          return
        if disconnect is not None and disconnect.done():
          self.close_reason = "disconnected"
          return

        if getter is None:
          getter = asyncio.ensure_future(queue.get())
        waiting = {getter} if disconnect is None else {getter, disconnect}
        done, _ = await asyncio.wait(waiting, timeout=max(0.0, min(next_heartbeat, deadline) - now), return_when=asyncio.FIRST_COMPLETED)

        if getter in done:
          record = getter.result()
          getter = None
          yield format_event(record)
          if record.is_complete:
            self.close_reason = "complete"
            return
          continue
        if done or self._clock() >= deadline:
          continue
        next_heartbeat = self._clock() + self._heartbeat_seconds
        yield HEARTBEAT_FRAME
    finally:
      for pending in (getter, disconnect):
        if pending is not None and not pending.done():
          pending.cancel()
      self._service.remove_listener(self.analysis_id, listener)
      logger.info("Progress stream for analysis %s closed (%s)", self.analysis_id, self.close_reason or "aborted")


def _drop_older_than(queue: asyncio.Queue[ProgressRecord], timestamp: int) -> None:
  """Discard queued records the snapshot already supersedes."""
  fresher: list[ProgressRecord] = []
  while not queue.empty():
    record = queue.get_nowait()
    if record.timestamp > timestamp:
      fresher.append(record)
  for record in fresher:
    queue.put_nowait(record)
