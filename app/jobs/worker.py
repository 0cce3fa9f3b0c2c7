"""Background processor for queued lesson analysis jobs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from app.config import Settings
from app.core.exceptions import RequestValidationFailed
from app.core.security import Caller
from app.jobs.models import JobRecord, LessonRecord, RunRecord
from app.services import analysis as analysis_service
from app.services import runs as runs_service
from app.storage.analyses_repo import AnalysisRecord
from app.utils.ids import generate_worker_id

AnalyzeLesson = Callable[[JobRecord, RunRecord, LessonRecord], Awaitable[AnalysisRecord]]


@dataclass
class TickResult:
  """Outcome counts for one processing tick."""

  claimed: int = 0
  succeeded: int = 0
  failed: int = 0
  retried: int = 0

  def as_dict(self) -> dict[str, int]:
    return {"claimed": self.claimed, "succeeded": self.succeeded, "failed": self.failed, "retried": self.retried}


class JobWorker:
  """Claims queued jobs and runs their lesson analyses."""

  def __init__(self, *, settings: Settings, worker_id: str | None = None, analyze: AnalyzeLesson | None = None) -> None:
    self._settings = settings
    self.worker_id = worker_id or generate_worker_id("worker")
    self._analyze = analyze or self._analyze_lesson
    self._logger = logging.getLogger(__name__)

  async def process_tick(self, max_concurrency: int, run_id: str | None = None) -> TickResult:
    """Claim up to ``max_concurrency`` jobs and process them concurrently."""
    result = TickResult()
    jobs: list[JobRecord] = []
    # Claims are sequential so each one is a separate atomic update.
    for _ in range(max(0, max_concurrency)):
      job = await runs_service.claim_next_job(self.worker_id, self._settings, run_id=run_id)
      if job is None:
        break
      jobs.append(job)

    result.claimed = len(jobs)
    if not jobs:
      return result

    outcomes = await asyncio.gather(*(self.process_job(job) for job in jobs))
    for outcome in outcomes:
      if outcome == "succeeded":
        result.succeeded += 1
      elif outcome == "retried":
        result.retried += 1
      else:
        result.failed += 1
    self._logger.info("Worker %s tick finished: %s", self.worker_id, result.as_dict())
    return result

  async def process_job(self, job: JobRecord) -> str:
    """Run one claimed job to a reported outcome; never raises."""
    try:
      run, lesson = await runs_service.load_job_context(job, self._settings)
      if run is None or lesson is None:
        await runs_service.fail_job(job, "Run or lesson no longer exists.", self._settings, retry=False)
        return "failed"
      if not (lesson.content_text or "").strip():
        await runs_service.fail_job(job, "Lesson has no content to analyze.", self._settings, retry=False)
        return "failed"

      analysis = await self._analyze(job, run, lesson)
      if analysis.status in ("completed", "partial"):
        await runs_service.complete_job(job.job_id, self._settings, analysis_id=analysis.analysis_id)
        return "succeeded"
      return await self._report_failure(job, "All metrics failed.", analysis_id=analysis.analysis_id)
    except RequestValidationFailed as exc:
      # Invalid lesson content will not improve on retry.
      await runs_service.fail_job(job, exc.detail, self._settings, retry=False)
      return "failed"
    except Exception as exc:  # noqa: BLE001
      self._logger.error("Job %s crashed: %s", job.job_id, exc, exc_info=True)
      return await self._report_failure(job, f"{type(exc).__name__}: {exc}")

  async def _report_failure(self, job: JobRecord, error: str, *, analysis_id: str | None = None) -> str:
    try:
      outcome = await runs_service.fail_job(job, error, self._settings, analysis_id=analysis_id)
    except Exception:  # noqa: BLE001
      # The lock expires and release_stale_locks settles the job on a later tick.
      self._logger.error("Could not report failure for job %s", job.job_id, exc_info=True)
      return "failed"
    if isinstance(outcome, JobRecord):
      return "retried"
    return "failed"

  async def _analyze_lesson(self, job: JobRecord, run: RunRecord, lesson: LessonRecord) -> AnalysisRecord:
    caller = Caller(user_id=run.user_id)
    context = analysis_service.LessonContext(program_id=job.program_id, program_run_id=job.run_id, lesson_id=job.lesson_id)
    record = await analysis_service.create_analysis(lesson.content_text or "", caller, self._settings, lesson=context)
    return await analysis_service.run_analysis(record, self._settings)
