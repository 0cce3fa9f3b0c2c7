"""Domain models for program runs and per-lesson analysis jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

RunStatus = Literal["running", "completed", "failed"]
JobStatus = Literal["queued", "running", "completed", "failed"]


@dataclass
class RunRecord:
  """Aggregate counters for one batch analysis of a program's lessons."""

  run_id: str
  program_id: str
  user_id: str | None
  status: RunStatus
  total: int
  queued: int = 0
  processed: int = 0
  succeeded: int = 0
  failed: int = 0
  max_concurrency: int = 1
  started_at: datetime | None = None
  finished_at: datetime | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status != "running"


@dataclass
class JobRecord:
  """Unit of work analyzing a single lesson within a run."""

  job_id: str
  run_id: str
  program_id: str
  lesson_id: str
  status: JobStatus
  attempt_count: int = 0
  last_error: str | None = None
  locked_by: str | None = None
  locked_at: datetime | None = None
  available_at: datetime | None = None
  analysis_id: str | None = None
  created_at: datetime | None = None
  updated_at: datetime | None = None


@dataclass(frozen=True)
class ProgramRecord:
  program_id: str
  user_id: str
  name: str


@dataclass(frozen=True)
class LessonRecord:
  lesson_id: str
  program_id: str
  title: str
  content_text: str | None
  sort_order: int = 0


@dataclass(frozen=True)
class FailedJob:
  job_id: str
  lesson_id: str
  lesson_title: str | None
  error: str | None
  failed_at: datetime | None


@dataclass(frozen=True)
class RunStatusView:
  """A run with its per-job breakdown, latest failures and a remaining-time estimate."""

  run: RunRecord
  queued: int
  running: int
  completed: int
  failed: int
  recent_failures: list[FailedJob] = field(default_factory=list)
  estimated_seconds_remaining: int | None = None

  @property
  def finished(self) -> int:
    return self.completed + self.failed

  @property
  def percentage(self) -> int:
    if self.run.total <= 0:
      return 0
    return round(self.finished / self.run.total * 100)


def resolve_run_status(*, total: int, processed: int, succeeded: int, failed: int) -> RunStatus:
  """Return the run status implied by its counters.

  A run stays ``running`` until every job has reported. A finished run is ``failed``
  only when no job succeeded; partial failures still complete the run.
  """
  if processed < total:
    return "running"
  if succeeded == 0 and failed > 0:
    return "failed"
  return "completed"
