from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr
from pydantic.alias_generators import to_camel

from app.jobs.models import JobRecord, JobStatus, RunRecord, RunStatus, RunStatusView
from app.storage.analyses_repo import AnalysisRecord, AnalysisStatus


class CamelModel(BaseModel):
  """Base for wire models: snake_case in Python, camelCase in JSON."""

  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateAnalysisRequest(CamelModel):
  """Request payload for submitting educational content."""

  content: StrictStr = Field(min_length=1, description="Educational text to analyze.", examples=["Photosynthesis converts light energy into chemical energy..."])
  model: StrictStr | None = Field(default=None, min_length=1, description="Optional model identifier; the configured default is used when omitted.")
  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class CreateAnalysisResponse(CamelModel):
  analysis_id: str
  status: AnalysisStatus


class AnalysisResponse(CamelModel):
  """Stored analysis as returned to its owner."""

  analysis_id: str
  status: AnalysisStatus
  title: str | None = None
  model_used: str
  content: str
  results: dict[str, Any] | None = None
  program_id: str | None = None
  lesson_id: str | None = None
  created_at: datetime | None = None
  updated_at: datetime | None = None

  @classmethod
  def from_record(cls, record: AnalysisRecord) -> AnalysisResponse:
    return cls(
      analysis_id=record.analysis_id,
      status=record.status,
      title=record.title,
      model_used=record.model_used,
      content=record.content,
      results=record.results,
      program_id=record.program_id,
      lesson_id=record.lesson_id,
      created_at=record.created_at,
      updated_at=record.updated_at,
    )


class AnalysisSummary(CamelModel):
  analysis_id: str
  status: AnalysisStatus
  title: str | None = None
  created_at: datetime | None = None


class AnalysisHistoryResponse(CamelModel):
  items: list[AnalysisSummary]
  total: int
  limit: int
  offset: int


class CreateRunRequest(CamelModel):
  """Request payload for analyzing a program's lessons."""

  lesson_ids: list[StrictStr] | None = Field(default=None, min_length=1, description="Optional subset of lessons; every lesson of the program when omitted.")
  max_concurrency: int = Field(default=3, ge=1, le=10, description="Maximum lessons analyzed at the same time for this run.")
  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class RunResponse(CamelModel):
  """Aggregate state of a program run."""

  run_id: str
  program_id: str
  status: RunStatus
  total: int
  queued: int
  processed: int
  succeeded: int
  failed: int
  max_concurrency: int
  started_at: datetime | None = None
  finished_at: datetime | None = None

  @classmethod
  def from_record(cls, run: RunRecord) -> RunResponse:
    return cls(
      run_id=run.run_id,
      program_id=run.program_id,
      status=run.status,
      total=run.total,
      queued=run.queued,
      processed=run.processed,
      succeeded=run.succeeded,
      failed=run.failed,
      max_concurrency=run.max_concurrency,
      started_at=run.started_at,
      finished_at=run.finished_at,
    )


class RunProgressResponse(CamelModel):
  percentage: int
  total: int
  queued: int
  running: int
  completed: int
  failed: int
  finished: int


class FailedJobResponse(CamelModel):
  job_id: str
  lesson_id: str
  lesson_title: str | None = None
  error: str | None = None
  failed_at: datetime | None = None


class RunStatusResponse(CamelModel):
  """Run counters plus the per-job breakdown a progress page needs."""

  run: RunResponse
  progress: RunProgressResponse
  estimated_seconds_remaining: int | None = None
  recent_errors: list[FailedJobResponse]

  @classmethod
  def from_view(cls, view: RunStatusView) -> RunStatusResponse:
    return cls(
      run=RunResponse.from_record(view.run),
      progress=RunProgressResponse(
        percentage=view.percentage,
        total=view.run.total,
        queued=view.queued,
        running=view.running,
        completed=view.completed,
        failed=view.failed,
        finished=view.finished,
      ),
      estimated_seconds_remaining=view.estimated_seconds_remaining,
      recent_errors=[
        FailedJobResponse(job_id=failure.job_id, lesson_id=failure.lesson_id, lesson_title=failure.lesson_title, error=failure.error, failed_at=failure.failed_at)
        for failure in view.recent_failures
      ],
    )


class LessonJobResponse(CamelModel):
  job_id: str
  run_id: str
  lesson_id: str
  status: JobStatus

  @classmethod
  def from_record(cls, job: JobRecord) -> LessonJobResponse:
    return cls(job_id=job.job_id, run_id=job.run_id, lesson_id=job.lesson_id, status=job.status)


class TickResponse(CamelModel):
  """Outcome counts of one worker tick."""

  released: int = 0
  claimed: int
  succeeded: int
  failed: int
  retried: int
