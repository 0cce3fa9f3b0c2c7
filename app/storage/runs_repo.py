"""Storage interfaces for program runs and analysis jobs."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from app.jobs.models import JobRecord, LessonRecord, ProgramRecord, RunRecord

STALE_LOCK_ERROR = "Worker lock expired."


class ActiveJobExistsError(Exception):
  """Raised when inserting a job would give a lesson a second queued/running job."""

  def __init__(self, lesson_ids: Sequence[str] = ()) -> None:
    self.lesson_ids = list(lesson_ids)
    super().__init__(f"Active job already exists for lessons: {', '.join(self.lesson_ids) or 'unknown'}")


class RunsRepository(Protocol):
  """Repository contract for run/job persistence.

  Every state transition is a conditional write at the storage layer; callers never
  read a counter, change it and write it back.
  """

  async def get_program(self, program_id: str) -> ProgramRecord | None:
    """Fetch a program by identifier."""

  async def list_lessons(self, program_id: str, lesson_ids: Sequence[str] | None = None) -> list[LessonRecord]:
    """Return program lessons in display order, optionally restricted to ``lesson_ids``."""

  async def get_lesson(self, lesson_id: str) -> LessonRecord | None:
    """Fetch a lesson by identifier."""

  async def find_active_lessons(self, lesson_ids: Sequence[str]) -> list[str]:
    """Return the subset of lessons that already have a queued or running job."""

  async def create_run(self, run: RunRecord, jobs: Sequence[JobRecord]) -> None:
    """Insert a run and its jobs atomically; raise ActiveJobExistsError on a duplicate active job."""

  async def get_run(self, run_id: str) -> RunRecord | None:
    """Fetch a run by identifier."""

  async def list_runs(self, program_id: str) -> list[RunRecord]:
    """Return a program's runs, newest first."""

  async def list_jobs(self, run_id: str) -> list[JobRecord]:
    """Return the jobs of a run in creation order."""

  async def claim_next_job(self, *, worker_id: str, run_id: str | None = None) -> JobRecord | None:
    """Atomically move the oldest available queued job to running."""

  async def claim_job(self, job_id: str, *, worker_id: str) -> JobRecord | None:
    """Move one specific queued job to running; None when another worker got it first."""

  async def complete_job(self, job_id: str, *, succeeded: bool, error: str | None = None, analysis_id: str | None = None) -> RunRecord | None:
    """Record a running job's terminal outcome and bump its run's counters in one transaction.

    Returns the updated run, or None when the job was not running (already reported).
    """

  async def requeue_job(self, job_id: str, *, error: str, available_at: datetime) -> JobRecord | None:
    """Return a running job to the queue for another attempt."""

  async def release_stale_locks(self, *, older_than: datetime, max_attempts: int) -> int:
    """Release running jobs whose lock predates ``older_than``, counting each as an attempt.

    Jobs with attempts left are requeued; the rest fail and count towards their run.
    Returns how many locks were released.
    """

  async def active_concurrency(self) -> int:
    """Sum of the concurrency limits of runs that still have queued jobs."""
