"""Program run orchestration: run creation, job claiming and terminal reporting."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from app.config import Settings
from app.core.exceptions import ConflictError, NotFoundOrForbidden, RequestValidationFailed
from app.core.security import Caller
from app.jobs.models import FailedJob, JobRecord, LessonRecord, ProgramRecord, RunRecord, RunStatusView
from app.storage.factory import _get_runs_repo
from app.storage.runs_repo import ActiveJobExistsError, RunsRepository
from app.utils.ids import generate_id, is_valid_uuid

logger = logging.getLogger(__name__)

MAX_RUN_CONCURRENCY = 10
DEFAULT_RUN_CONCURRENCY = 3
RETRY_BACKOFF_SECONDS = (10, 30, 60)
RECENT_FAILURE_LIMIT = 5
_NEVER = datetime.min.replace(tzinfo=UTC)

_PROGRAM_NOT_FOUND_MSG = "Program not found."
_LESSON_NOT_FOUND_MSG = "Lesson not found."
_RUN_NOT_FOUND_MSG = "Run not found."
_ACTIVE_JOB_MSG = "Analysis already queued or running for this lesson."


def retry_backoff(attempt_count: int) -> timedelta:
  """Delay before the next attempt: 10s, 30s, then 60s for every later attempt."""
  index = min(max(attempt_count, 0), len(RETRY_BACKOFF_SECONDS) - 1)
  return timedelta(seconds=RETRY_BACKOFF_SECONDS[index])


def _require_uuid(value: str, label: str) -> None:
  if not is_valid_uuid(value):
    raise RequestValidationFailed(f"Invalid {label} format.")


async def _owned_program(repo: RunsRepository, program_id: str, caller: Caller) -> ProgramRecord:
  """Return the program when the caller owns it; absent and foreign programs look the same."""
  _require_uuid(program_id, "program id")
  program = await repo.get_program(program_id)
  if program is None or caller.user_id is None or program.user_id != caller.user_id:
    raise NotFoundOrForbidden(_PROGRAM_NOT_FOUND_MSG)
  return program


async def _resolve_lessons(repo: RunsRepository, program_id: str, lesson_ids: Sequence[str] | None) -> list[LessonRecord]:
  if lesson_ids is None:
    lessons = await repo.list_lessons(program_id)
  else:
    requested = list(dict.fromkeys(lesson_ids))
    for lesson_id in requested:
      _require_uuid(lesson_id, "lesson id")
    lessons = await repo.list_lessons(program_id, requested)
    # Lessons from another program are filtered out by the query and surface as not found.
    if len(lessons) != len(requested):
      raise NotFoundOrForbidden(_LESSON_NOT_FOUND_MSG)

  if not lessons:
    raise RequestValidationFailed("Program has no lessons to analyze.")
  return lessons


def _validate_concurrency(max_concurrency: int) -> None:
  if max_concurrency < 1 or max_concurrency > MAX_RUN_CONCURRENCY:
    raise RequestValidationFailed(f"maxConcurrency must be between 1 and {MAX_RUN_CONCURRENCY}.")


async def _insert_run(repo: RunsRepository, *, program: ProgramRecord, lessons: Sequence[LessonRecord], caller: Caller, max_concurrency: int) -> tuple[RunRecord, list[JobRecord]]:
  # Friendly pre-check; the partial unique index remains the real guard against races.
  active = await repo.find_active_lessons([lesson.lesson_id for lesson in lessons])
  if active:
    raise ConflictError(_ACTIVE_JOB_MSG)

  now = datetime.now(UTC)
  run = RunRecord(
    run_id=generate_id(),
    program_id=program.program_id,
    user_id=caller.user_id,
    status="running",
    total=len(lessons),
    queued=len(lessons),
    max_concurrency=max_concurrency,
    started_at=now,
  )
  jobs = [JobRecord(job_id=generate_id(), run_id=run.run_id, program_id=program.program_id, lesson_id=lesson.lesson_id, status="queued", created_at=now, updated_at=now) for lesson in lessons]

  try:
    await repo.create_run(run, jobs)
  except ActiveJobExistsError as exc:
    logger.info("Rejected run for program %s: %s", program.program_id, exc)
    raise ConflictError(_ACTIVE_JOB_MSG) from exc

  logger.info("Created run %s for program %s with %d jobs", run.run_id, program.program_id, len(jobs))
  return run, jobs


async def create_run(program_id: str, caller: Caller, settings: Settings, *, lesson_ids: Sequence[str] | None = None, max_concurrency: int = DEFAULT_RUN_CONCURRENCY) -> RunRecord:
  """Create a run with one queued job per lesson of the program."""
  _validate_concurrency(max_concurrency)
  repo = _get_runs_repo(settings)
  program = await _owned_program(repo, program_id, caller)
  lessons = await _resolve_lessons(repo, program.program_id, lesson_ids)
  run, _jobs = await _insert_run(repo, program=program, lessons=lessons, caller=caller, max_concurrency=max_concurrency)
  return run


async def create_lesson_job(program_id: str, lesson_id: str, caller: Caller, settings: Settings) -> JobRecord:
  """Queue a single-lesson run; conflicts when the lesson already has active work."""
  repo = _get_runs_repo(settings)
  program = await _owned_program(repo, program_id, caller)
  lessons = await _resolve_lessons(repo, program.program_id, [lesson_id])
  _run, jobs = await _insert_run(repo, program=program, lessons=lessons, caller=caller, max_concurrency=1)
  return jobs[0]


async def get_run(run_id: str, caller: Caller, settings: Settings) -> RunRecord:
  _require_uuid(run_id, "run id")
  repo = _get_runs_repo(settings)
  run = await repo.get_run(run_id)
  if run is None or caller.user_id is None or run.user_id != caller.user_id:
    raise NotFoundOrForbidden(_RUN_NOT_FOUND_MSG)
  return run


async def list_runs(program_id: str, caller: Caller, settings: Settings) -> list[RunRecord]:
  repo = _get_runs_repo(settings)
  program = await _owned_program(repo, program_id, caller)
  return await repo.list_runs(program.program_id)


async def get_run_status(run_id: str, caller: Caller, settings: Settings) -> RunStatusView:
  """Break a run down by job status, with its latest failures and an estimate of the time left."""
  run = await get_run(run_id, caller, settings)
  repo = _get_runs_repo(settings)
  jobs = await repo.list_jobs(run.run_id)
  counts = Counter(job.status for job in jobs)

  failed_jobs = [job for job in jobs if job.status == "failed"]
  failed_jobs.sort(key=lambda job: job.updated_at or _NEVER, reverse=True)
  failed_jobs = failed_jobs[:RECENT_FAILURE_LIMIT]
  titles: dict[str, str] = {}
  if failed_jobs:
    lessons = await repo.list_lessons(run.program_id, [job.lesson_id for job in failed_jobs])
    titles = {lesson.lesson_id: lesson.title for lesson in lessons}

  finished = counts["completed"] + counts["failed"]
  return RunStatusView(
    run=run,
    queued=counts["queued"],
    running=counts["running"],
    completed=counts["completed"],
    failed=counts["failed"],
    recent_failures=[FailedJob(job_id=job.job_id, lesson_id=job.lesson_id, lesson_title=titles.get(job.lesson_id), error=job.last_error, failed_at=job.updated_at) for job in failed_jobs],
    estimated_seconds_remaining=_estimate_seconds_remaining(run, finished=finished, queued=counts["queued"]),
  )


def _estimate_seconds_remaining(run: RunRecord, *, finished: int, queued: int) -> int | None:
  # Average time per finished job so far, applied to the jobs still waiting.
  if run.is_terminal or run.started_at is None or queued == 0 or finished == 0:
    return None
  elapsed = (datetime.now(UTC) - run.started_at).total_seconds()
  return round(elapsed / finished * queued)


async def claim_next_job(worker_id: str, settings: Settings, *, run_id: str | None = None) -> JobRecord | None:
  """Claim the oldest available job; exactly one worker wins each job."""
  job = await _get_runs_repo(settings).claim_next_job(worker_id=worker_id, run_id=run_id)
  if job is not None:
    logger.info("Worker %s claimed job %s (lesson %s, attempt %d)", worker_id, job.job_id, job.lesson_id, job.attempt_count + 1)
  return job


async def claim_job(job_id: str, worker_id: str, settings: Settings) -> JobRecord | None:
  job = await _get_runs_repo(settings).claim_job(job_id, worker_id=worker_id)
  if job is None:
    logger.info("Worker %s lost the claim on job %s", worker_id, job_id)
  return job


async def complete_job(job_id: str, settings: Settings, *, analysis_id: str | None = None) -> RunRecord | None:
  """Mark a running job completed and count it towards its run."""
  run = await _get_runs_repo(settings).complete_job(job_id, succeeded=True, analysis_id=analysis_id)
  if run is None:
    logger.info("Ignoring duplicate completion for job %s", job_id)
  elif run.is_terminal:
    logger.info("Run %s finished as %s (%d succeeded, %d failed)", run.run_id, run.status, run.succeeded, run.failed)
  return run


async def fail_job(job: JobRecord, error: str, settings: Settings, *, retry: bool = True, analysis_id: str | None = None) -> RunRecord | JobRecord | None:
  """Requeue a failed job with backoff while attempts remain, otherwise record the failure.

  Returns the requeued job, the updated run on terminal failure, or None when the job
  had already been reported.
  """
  repo = _get_runs_repo(settings)
  attempts_used = job.attempt_count + 1
  if retry and attempts_used < settings.job_max_attempts:
    available_at = datetime.now(UTC) + retry_backoff(job.attempt_count)
    requeued = await repo.requeue_job(job.job_id, error=error, available_at=available_at)
    if requeued is not None:
      logger.warning("Job %s failed (attempt %d/%d); retrying after %s: %s", job.job_id, attempts_used, settings.job_max_attempts, available_at.isoformat(), error)
    return requeued

  run = await repo.complete_job(job.job_id, succeeded=False, error=error, analysis_id=analysis_id)
  if run is None:
    logger.info("Ignoring duplicate failure for job %s", job.job_id)
  else:
    logger.error("Job %s failed permanently after %d attempts: %s", job.job_id, attempts_used, error)
    if run.is_terminal:
      logger.info("Run %s finished as %s (%d succeeded, %d failed)", run.run_id, run.status, run.succeeded, run.failed)
  return run


async def release_stale_locks(settings: Settings) -> int:
  """Release jobs held past the lock TTL; each release uses up one attempt."""
  older_than = datetime.now(UTC) - timedelta(seconds=settings.job_lock_ttl_seconds)
  released = await _get_runs_repo(settings).release_stale_locks(older_than=older_than, max_attempts=settings.job_max_attempts)
  if released:
    logger.warning("Released %d stale job locks", released)
  return released


async def resolve_tick_concurrency(settings: Settings) -> int:
  """Concurrency for a cron tick: the sum of active run limits, capped globally."""
  requested = await _get_runs_repo(settings).active_concurrency()
  return max(0, min(requested, settings.worker_max_concurrency))


async def load_job_context(job: JobRecord, settings: Settings) -> tuple[RunRecord | None, LessonRecord | None]:
  """Fetch the run and lesson a claimed job refers to."""
  repo = _get_runs_repo(settings)
  run = await repo.get_run(job.run_id)
  lesson = await repo.get_lesson(job.lesson_id)
  return run, lesson
