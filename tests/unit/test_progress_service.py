"""Unit tests for the progress service: reads, listener registry and publish ordering."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from app.core.exceptions import InternalError
from app.progress.events import ProgressRecord
from app.services.progress import ProgressService

ANALYSIS_ID = "analysis-service"


def _record(progress: float, message: str = "") -> ProgressRecord:
  return ProgressRecord(analysis_id=ANALYSIS_ID, overall_progress=progress, message=message, total_metrics=5)


@pytest.mark.anyio
async def test_get_progress_from_db_returns_none_when_absent(progress_repo) -> None:
  service = ProgressService(repo=progress_repo)
  assert await service.get_progress_from_db("missing") is None


@pytest.mark.anyio
async def test_get_progress_from_db_raises_internal_error_on_storage_error() -> None:
  class BrokenRepo:
    async def append(self, record: ProgressRecord) -> None:
      raise OperationalError("INSERT", {}, Exception("down"))

    async def latest(self, analysis_id: str) -> ProgressRecord | None:
      raise OperationalError("SELECT", {}, Exception("down"))

  service = ProgressService(repo=BrokenRepo())
  with pytest.raises(InternalError):
    await service.get_progress_from_db(ANALYSIS_ID)
  with pytest.raises(InternalError):
    await service.get_snapshot(ANALYSIS_ID)


@pytest.mark.anyio
async def test_snapshot_falls_back_to_cache_when_store_is_unreadable(progress_repo) -> None:
  service = ProgressService(repo=progress_repo)
  await service.publish(_record(62.5))
  progress_repo.fail_reads = True

  snapshot = await service.get_snapshot(ANALYSIS_ID)

  assert snapshot is not None and snapshot.overall_progress == 62.5


@pytest.mark.anyio
async def test_publish_persists_before_notifying(progress_repo) -> None:
  service = ProgressService(repo=progress_repo)
  seen_in_store: list[float | None] = []

  def listener(record: ProgressRecord) -> None:
    # By the time a listener runs, the store already holds the record.
    latest = progress_repo.rows[-1] if progress_repo.rows else None
    seen_in_store.append(latest.overall_progress if latest else None)

  service.add_listener(ANALYSIS_ID, listener)
  assert await service.publish(_record(40.0)) is True
  assert seen_in_store == [40.0]


@pytest.mark.anyio
async def test_publish_failure_skips_listeners(progress_repo) -> None:
  service = ProgressService(repo=progress_repo)
  received: list[ProgressRecord] = []
  service.add_listener(ANALYSIS_ID, received.append)
  progress_repo.fail_writes = True

  assert await service.publish(_record(40.0)) is False
  assert received == []


@pytest.mark.anyio
async def test_listeners_are_called_in_registration_order(progress_repo) -> None:
  service = ProgressService(repo=progress_repo)
  calls: list[str] = []
  service.add_listener(ANALYSIS_ID, lambda record: calls.append("first"))
  service.add_listener(ANALYSIS_ID, lambda record: calls.append("second"))

  await service.publish(_record(10.0))

  assert calls == ["first", "second"]


@pytest.mark.anyio
async def test_raising_listener_is_removed_without_affecting_others(progress_repo) -> None:
  service = ProgressService(repo=progress_repo)
  received: list[float] = []

  def broken(record: ProgressRecord) -> None:
    raise RuntimeError("socket closed")

  service.add_listener(ANALYSIS_ID, broken)
  service.add_listener(ANALYSIS_ID, lambda record: received.append(record.overall_progress))

  await service.publish(_record(10.0))
  await service.publish(_record(20.0))

  assert received == [10.0, 20.0]
  assert service.listener_count(ANALYSIS_ID) == 1


def test_remove_listener_is_idempotent() -> None:
  service = ProgressService()

  def listener(record: ProgressRecord) -> None:
    return None

  service.remove_listener(ANALYSIS_ID, listener)
  service.add_listener(ANALYSIS_ID, listener)
  service.remove_listener(ANALYSIS_ID, listener)
  service.remove_listener(ANALYSIS_ID, listener)
  assert service.listener_count(ANALYSIS_ID) == 0


@pytest.mark.anyio
async def test_overall_progress_never_decreases(progress_repo) -> None:
  service = ProgressService(repo=progress_repo)
  received: list[float] = []
  service.add_listener(ANALYSIS_ID, lambda record: received.append(record.overall_progress))

  await service.publish(_record(50.0))
  await service.publish(_record(30.0, message="late"))

  assert received == [50.0, 50.0]
  assert progress_repo.rows[-1].overall_progress == 50.0
  assert progress_repo.rows[-1].message == "late"


@pytest.mark.anyio
async def test_snapshot_prefers_fresher_unpersisted_record(progress_repo) -> None:
  service = ProgressService(repo=progress_repo)
  await service.publish(_record(20.0))
  await service.publish(_record(27.5), persist=False)

  snapshot = await service.get_snapshot(ANALYSIS_ID)
  assert snapshot is not None and snapshot.overall_progress == 27.5

  stored = await service.get_progress_from_db(ANALYSIS_ID)
  assert stored is not None and stored.overall_progress == 20.0


@pytest.mark.anyio
async def test_cleanup_drops_listeners_and_cache(progress_repo) -> None:
  service = ProgressService(repo=progress_repo)
  service.add_listener(ANALYSIS_ID, lambda record: None)
  await service.publish(_record(100.0))

  service.cleanup(ANALYSIS_ID)

  assert service.listener_count(ANALYSIS_ID) == 0
  snapshot = await service.get_snapshot(ANALYSIS_ID)
  # Only the stored copy remains.
  assert snapshot is not None and snapshot.overall_progress == 100.0


@pytest.mark.anyio
async def test_concurrent_publishes_reach_store_and_listeners_in_order() -> None:
  class SlowEarlyWrites:
    """Store whose writes for lower progress take longer, so they would finish last."""

    def __init__(self) -> None:
      self.rows: list[ProgressRecord] = []

    async def append(self, record: ProgressRecord) -> None:
      await asyncio.sleep(0.05 if record.overall_progress < 35 else 0.0)
      self.rows.append(record)

    async def latest(self, analysis_id: str) -> ProgressRecord | None:
      return self.rows[-1] if self.rows else None

  repo = SlowEarlyWrites()
  service = ProgressService(repo=repo)
  pushed: list[float] = []
  service.add_listener(ANALYSIS_ID, lambda record: pushed.append(record.overall_progress))

  await asyncio.gather(service.publish(_record(30.0)), service.publish(_record(35.0)))

  assert pushed == [30.0, 35.0]
  assert [row.overall_progress for row in repo.rows] == [30.0, 35.0]
  latest = await service.get_snapshot(ANALYSIS_ID)
  assert latest is not None and latest.overall_progress == 35.0
