"""Progress read/subscribe service backed by the progress store.

The listener registry lives in process memory. It is only correct for a single-instance
deployment; several API processes would need a shared channel (for example Postgres
LISTEN/NOTIFY) to fan records out across instances.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.core.exceptions import InternalError
from app.progress.events import ProgressRecord
from app.storage.factory import _get_progress_repo
from app.storage.progress_repo import ProgressRepository

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressRecord], None]


class ProgressService:
  """Mediate between the progress store and live in-process listeners."""

  def __init__(self, repo: ProgressRepository | None = None) -> None:
    self._repo_override = repo
    self._listeners: dict[str, list[ProgressListener]] = {}
    self._latest: dict[str, ProgressRecord] = {}
    self._locks: dict[str, asyncio.Lock] = {}

  def _repo(self) -> ProgressRepository:
    if self._repo_override is not None:
      return self._repo_override
    return _get_progress_repo(get_settings())

  async def get_progress_from_db(self, analysis_id: str) -> ProgressRecord | None:
    """Return the newest stored record, or None when nothing was stored yet.

    Raises InternalError when the store cannot be read.
    """
    try:
      return await self._repo().latest(analysis_id)
    except (SQLAlchemyError, RuntimeError, OSError) as exc:
      logger.error("Failed to load progress for analysis %s", analysis_id, exc_info=True)
      raise InternalError("Progress store unavailable.") from exc

  async def get_snapshot(self, analysis_id: str) -> ProgressRecord | None:
    """Return the freshest known state, preferring records published in this process."""
    try:
      stored = await self.get_progress_from_db(analysis_id)
    except InternalError:
      if analysis_id not in self._latest:
        raise
      return self._latest[analysis_id]
    cached = self._latest.get(analysis_id)
    if cached is None:
      return stored
    if stored is None or cached.overall_progress >= stored.overall_progress:
      return cached
    return stored

  def add_listener(self, analysis_id: str, callback: ProgressListener) -> None:
    self._listeners.setdefault(analysis_id, []).append(callback)

  def remove_listener(self, analysis_id: str, callback: ProgressListener) -> None:
    callbacks = self._listeners.get(analysis_id)
    if not callbacks:
      return
    if callback in callbacks:
      callbacks.remove(callback)
    if not callbacks:
      self._listeners.pop(analysis_id, None)

  def listener_count(self, analysis_id: str) -> int:
    return len(self._listeners.get(analysis_id, ()))

  async def publish(self, record: ProgressRecord, *, persist: bool = True) -> bool:
    """Persist a record, then push it to every listener for its analysis.

    Returns False when persistence failed; listeners are not notified in that case so a
    client that polls after a push always finds at least the pushed state. Publishes for
    one analysis are serialized, so store order and push order always agree.
    """
    async with self._lock_for(record.analysis_id):
      previous = self._latest.get(record.analysis_id)
      # Overall progress never moves backwards for an analysis.
      if previous is not None and record.overall_progress < previous.overall_progress:
        record = record.model_copy(update={"overall_progress": previous.overall_progress})

      if persist:
        try:
          await self._repo().append(record)
        except (SQLAlchemyError, RuntimeError, OSError):
          logger.error("Failed to persist progress for analysis %s", record.analysis_id, exc_info=True)
          return False

      self._latest[record.analysis_id] = record
      self._notify(record)
      return True

  def _lock_for(self, analysis_id: str) -> asyncio.Lock:
    lock = self._locks.get(analysis_id)
    if lock is None:
      lock = self._locks[analysis_id] = asyncio.Lock()
    return lock

  def _notify(self, record: ProgressRecord) -> None:
    # Iterate over a copy so listeners may deregister themselves while being notified.
    for callback in list(self._listeners.get(record.analysis_id, ())):
      try:
        callback(record)
      except Exception:  # noqa: BLE001
        logger.warning("Dropping progress listener for analysis %s after it raised", record.analysis_id, exc_info=True)
        self.remove_listener(record.analysis_id, callback)

  def cleanup(self, analysis_id: str) -> None:
    """Forget listeners and cached state once an analysis has finished."""
    self._listeners.pop(analysis_id, None)
    self._latest.pop(analysis_id, None)
    self._locks.pop(analysis_id, None)


progress_service = ProgressService()


def get_progress_service() -> ProgressService:
  return progress_service
