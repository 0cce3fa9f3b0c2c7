"""Shared fixtures: environment defaults and in-memory repositories."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

# Ensure required settings are available before importing the app.
os.environ.setdefault("LENS_ALLOWED_ORIGINS", "http://localhost")
os.environ.setdefault("LENS_ENV", "test")
os.environ.pop("LENS_PG_DSN", None)
os.environ.pop("DATABASE_URL", None)
os.environ.pop("OPENROUTER_API_KEY", None)
os.environ.pop("LENS_WORKER_SECRET", None)

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from app.config import Settings, get_settings  # noqa: E402
from app.jobs.models import JobRecord, LessonRecord, ProgramRecord, RunRecord, resolve_run_status  # noqa: E402
from app.progress.events import ProgressRecord  # noqa: E402
from app.services.progress import ProgressService  # noqa: E402
from app.storage.analyses_repo import AnalysisRecord, AnalysisStatus  # noqa: E402
from app.storage.runs_repo import STALE_LOCK_ERROR, ActiveJobExistsError  # noqa: E402

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
PROGRAM_ID = "3f1c2d8e-1111-4a5b-9c0d-000000000001"
FOREIGN_PROGRAM_ID = "3f1c2d8e-1111-4a5b-9c0d-000000000002"
EMPTY_PROGRAM_ID = "3f1c2d8e-1111-4a5b-9c0d-000000000003"
LESSON_IDS = ("7a0e4b9c-2222-4d6e-8f10-000000000001", "7a0e4b9c-2222-4d6e-8f10-000000000002", "7a0e4b9c-2222-4d6e-8f10-000000000003")
FOREIGN_LESSON_ID = "7a0e4b9c-2222-4d6e-8f10-000000000009"


def _now() -> datetime:
  return datetime.now(UTC)


class InMemoryRunsRepo:
  """Runs repository double that mirrors the conditional writes of the Postgres one."""

  def __init__(self) -> None:
    self.programs: dict[str, ProgramRecord] = {}
    self.lessons: dict[str, LessonRecord] = {}
    self.runs: dict[str, RunRecord] = {}
    self.jobs: dict[str, JobRecord] = {}

  def add_program(self, program: ProgramRecord, lessons: Sequence[LessonRecord] = ()) -> None:
    self.programs[program.program_id] = program
    for lesson in lessons:
      self.lessons[lesson.lesson_id] = lesson

  async def get_program(self, program_id: str) -> ProgramRecord | None:
    return self.programs.get(program_id)

  async def list_lessons(self, program_id: str, lesson_ids: Sequence[str] | None = None) -> list[LessonRecord]:
    lessons = [lesson for lesson in self.lessons.values() if lesson.program_id == program_id]
    if lesson_ids is not None:
      lessons = [lesson for lesson in lessons if lesson.lesson_id in lesson_ids]
    return sorted(lessons, key=lambda lesson: lesson.sort_order)

  async def get_lesson(self, lesson_id: str) -> LessonRecord | None:
    return self.lessons.get(lesson_id)

  def _active(self, lesson_ids: Sequence[str]) -> list[str]:
    return [job.lesson_id for job in self.jobs.values() if job.lesson_id in lesson_ids and job.status in ("queued", "running")]

  async def find_active_lessons(self, lesson_ids: Sequence[str]) -> list[str]:
    return self._active(lesson_ids)

  async def create_run(self, run: RunRecord, jobs: Sequence[JobRecord]) -> None:
    # Mimic the partial unique index: nothing is written when any lesson is active.
    active = self._active([job.lesson_id for job in jobs])
    if active:
      raise ActiveJobExistsError(active)
    self.runs[run.run_id] = replace(run)
    for job in jobs:
      self.jobs[job.job_id] = replace(job)

  async def get_run(self, run_id: str) -> RunRecord | None:
    run = self.runs.get(run_id)
    return replace(run) if run else None

  async def list_runs(self, program_id: str) -> list[RunRecord]:
    return [replace(run) for run in self.runs.values() if run.program_id == program_id]

  async def get_job(self, job_id: str) -> JobRecord | None:
    job = self.jobs.get(job_id)
    return replace(job) if job else None

  async def list_jobs(self, run_id: str) -> list[JobRecord]:
    return [replace(job) for job in self.jobs.values() if job.run_id == run_id]

  def _claimable(self, job: JobRecord, run_id: str | None) -> bool:
    run = self.runs.get(job.run_id)
    if job.status != "queued" or run is None or run.status != "running":
      return False
    if run_id is not None and job.run_id != run_id:
      return False
    return job.available_at is None or job.available_at <= _now()

  def _lock(self, job: JobRecord, worker_id: str) -> JobRecord:
    job.status = "running"
    job.locked_by = worker_id
    job.locked_at = _now()
    job.updated_at = job.locked_at
    return replace(job)

  async def claim_next_job(self, *, worker_id: str, run_id: str | None = None) -> JobRecord | None:
    for job in self.jobs.values():
      if self._claimable(job, run_id):
        return self._lock(job, worker_id)
    return None

  async def claim_job(self, job_id: str, *, worker_id: str) -> JobRecord | None:
    job = self.jobs.get(job_id)
    if job is None or not self._claimable(job, None):
      return None
    return self._lock(job, worker_id)

  async def complete_job(self, job_id: str, *, succeeded: bool, error: str | None = None, analysis_id: str | None = None) -> RunRecord | None:
    job = self.jobs.get(job_id)
    if job is None or job.status != "running":
      return None
    job.status = "completed" if succeeded else "failed"
    job.last_error = None if succeeded else error
    job.analysis_id = analysis_id or job.analysis_id
    job.locked_by = None
    job.locked_at = None
    job.updated_at = _now()
    if not succeeded:
      job.attempt_count += 1

    # Let other completions interleave between the job write and the run write.
    await asyncio.sleep(0)
    run = self.runs[job.run_id]
    run.processed += 1
    run.queued = max(run.queued - 1, 0)
    if succeeded:
      run.succeeded += 1
    else:
      run.failed += 1
    status = resolve_run_status(total=run.total, processed=run.processed, succeeded=run.succeeded, failed=run.failed)
    if run.status == "running" and status != "running":
      run.status = status
      run.finished_at = _now()
    return replace(run)

  async def requeue_job(self, job_id: str, *, error: str, available_at: datetime) -> JobRecord | None:
    job = self.jobs.get(job_id)
    if job is None or job.status != "running":
      return None
    job.status = "queued"
    job.attempt_count += 1
    job.last_error = error
    job.available_at = available_at
    job.locked_by = None
    job.locked_at = None
    job.updated_at = _now()
    return replace(job)

  async def release_stale_locks(self, *, older_than: datetime, max_attempts: int) -> int:
    stale = [job for job in self.jobs.values() if job.status == "running" and job.locked_at is not None and job.locked_at < older_than]
    for job in stale:
      if job.attempt_count + 1 < max_attempts:
        job.status = "queued"
        job.attempt_count += 1
        job.last_error = STALE_LOCK_ERROR
        job.available_at = _now()
        job.locked_by = None
        job.locked_at = None
        job.updated_at = _now()
      else:
        await self.complete_job(job.job_id, succeeded=False, error=STALE_LOCK_ERROR)
    return len(stale)

  async def active_concurrency(self) -> int:
    return sum(run.max_concurrency for run in self.runs.values() if run.status == "running" and run.queued > 0)


class InMemoryAnalysesRepo:
  """Analyses repository double with the same owner scoping as the Postgres one."""

  def __init__(self) -> None:
    self.records: dict[str, AnalysisRecord] = {}

  @staticmethod
  def _owned(record: AnalysisRecord, user_id: str | None, session_id: str | None) -> bool:
    if user_id is not None:
      return record.user_id == user_id
    return record.user_id is None and session_id is not None and record.session_id == session_id

  async def create_analysis(self, record: AnalysisRecord) -> None:
    now = _now()
    self.records[record.analysis_id] = replace(record, created_at=record.created_at or now, updated_at=now)

  async def get_owned_analysis(self, analysis_id: str, *, user_id: str | None, session_id: str | None) -> AnalysisRecord | None:
    record = self.records.get(analysis_id)
    if record is None or not self._owned(record, user_id, session_id):
      return None
    return record

  async def list_owned_analyses(self, *, user_id: str | None, session_id: str | None, limit: int, offset: int) -> tuple[list[AnalysisRecord], int]:
    owned = [record for record in self.records.values() if self._owned(record, user_id, session_id)]
    owned.sort(key=lambda record: record.created_at or _now(), reverse=True)
    return owned[offset : offset + limit], len(owned)

  async def update_analysis(self, analysis_id: str, *, status: AnalysisStatus, results: dict[str, Any] | None = None, title: str | None = None) -> AnalysisRecord | None:
    record = self.records.get(analysis_id)
    if record is None:
      return None
    updated = replace(record, status=status, results=results if results is not None else record.results, title=title or record.title, updated_at=_now())
    self.records[analysis_id] = updated
    return updated


class InMemoryProgressRepo:
  """Append-only progress store double."""

  def __init__(self) -> None:
    self.rows: list[ProgressRecord] = []
    self.fail_reads = False
    self.fail_writes = False

  async def append(self, record: ProgressRecord) -> None:
    if self.fail_writes:
      raise RuntimeError("progress store unavailable")
    self.rows.append(record.model_copy(deep=True))

  async def latest(self, analysis_id: str) -> ProgressRecord | None:
    if self.fail_reads:
      raise RuntimeError("progress store unavailable")
    for record in reversed(self.rows):
      if record.analysis_id == analysis_id:
        return record
    return None

  def for_analysis(self, analysis_id: str) -> list[ProgressRecord]:
    return [record for record in self.rows if record.analysis_id == analysis_id]


@dataclass(frozen=True)
class SeedIds:
  user_id: str = USER_ID
  other_user_id: str = OTHER_USER_ID
  program_id: str = PROGRAM_ID
  foreign_program_id: str = FOREIGN_PROGRAM_ID
  empty_program_id: str = EMPTY_PROGRAM_ID
  lesson_ids: tuple[str, ...] = LESSON_IDS
  foreign_lesson_id: str = FOREIGN_LESSON_ID


@pytest.fixture
def seed() -> SeedIds:
  return SeedIds()


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def settings() -> Settings:
  return replace(get_settings(), job_max_attempts=3, worker_max_concurrency=10)


@pytest.fixture
def runs_repo(monkeypatch: pytest.MonkeyPatch) -> InMemoryRunsRepo:
  repo = InMemoryRunsRepo()
  lessons = [LessonRecord(lesson_id=lesson_id, program_id=PROGRAM_ID, title=f"Lesson {index + 1}", content_text=f"Lesson {index + 1} explains topic {index + 1}.", sort_order=index) for index, lesson_id in enumerate(LESSON_IDS)]
  repo.add_program(ProgramRecord(program_id=PROGRAM_ID, user_id=USER_ID, name="Biology"), lessons)
  repo.add_program(
    ProgramRecord(program_id=FOREIGN_PROGRAM_ID, user_id=OTHER_USER_ID, name="Chemistry"),
    [LessonRecord(lesson_id=FOREIGN_LESSON_ID, program_id=FOREIGN_PROGRAM_ID, title="Acids", content_text="Acids donate protons.")],
  )
  repo.add_program(ProgramRecord(program_id=EMPTY_PROGRAM_ID, user_id=USER_ID, name="Empty"))

  def _fake_repo(_settings: object) -> InMemoryRunsRepo:
    return repo

  # Replace the repository dependency with the in-memory test double.
  monkeypatch.setattr("app.services.runs._get_runs_repo", _fake_repo)
  return repo


@pytest.fixture
def analyses_repo(monkeypatch: pytest.MonkeyPatch) -> InMemoryAnalysesRepo:
  repo = InMemoryAnalysesRepo()

  def _fake_repo(_settings: object) -> InMemoryAnalysesRepo:
    return repo

  monkeypatch.setattr("app.services.analysis._get_analyses_repo", _fake_repo)
  return repo


@pytest.fixture
def progress_repo() -> InMemoryProgressRepo:
  return InMemoryProgressRepo()


@pytest.fixture
def progress(progress_repo: InMemoryProgressRepo, monkeypatch: pytest.MonkeyPatch) -> ProgressService:
  """A progress service over the in-memory store, also installed as the process singleton."""
  service = ProgressService(repo=progress_repo)
  monkeypatch.setattr("app.services.progress.progress_service", service)
  monkeypatch.setattr("app.services.analysis.progress_service", service)
  return service


@pytest.fixture
async def async_client():
  from app.main import app

  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.dependency_overrides.clear()
