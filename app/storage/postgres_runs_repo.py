"""Postgres-backed repository for program runs and analysis jobs using SQLAlchemy."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from app.core.database import get_session_factory
from app.jobs.models import JobRecord, LessonRecord, ProgramRecord, RunRecord, resolve_run_status
from app.schema.programs import Program, ProgramLesson
from app.schema.runs import ACTIVE_JOB_STATUSES, AnalysisJob, ProgramRun
from app.storage.runs_repo import STALE_LOCK_ERROR, ActiveJobExistsError, RunsRepository

_ACTIVE_LESSON_INDEX = "ux_analysis_jobs_active_lesson"
_RUN_LESSON_CONSTRAINT = "ux_analysis_jobs_run_lesson"


def _now() -> datetime:
  return datetime.now(UTC)


class PostgresRunsRepository(RunsRepository):
  """Persist runs and jobs to Postgres using SQLAlchemy."""

  def __init__(self, *, lock_ttl_seconds: int = 90) -> None:
    self._lock_ttl = timedelta(seconds=lock_ttl_seconds)
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def get_program(self, program_id: str) -> ProgramRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Program, program_id)
      if row is None:
        return None
      return ProgramRecord(program_id=row.id, user_id=row.user_id, name=row.name)

  async def list_lessons(self, program_id: str, lesson_ids: Sequence[str] | None = None) -> list[LessonRecord]:
    async with self._session_factory() as session:
      stmt = select(ProgramLesson).where(ProgramLesson.program_id == program_id)
      if lesson_ids is not None:
        stmt = stmt.where(ProgramLesson.id.in_(list(lesson_ids)))
      stmt = stmt.order_by(ProgramLesson.sort_order.asc(), ProgramLesson.created_at.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._lesson_to_record(row) for row in rows]

  async def get_lesson(self, lesson_id: str) -> LessonRecord | None:
    async with self._session_factory() as session:
      row = await session.get(ProgramLesson, lesson_id)
      if row is None:
        return None
      return self._lesson_to_record(row)

  async def find_active_lessons(self, lesson_ids: Sequence[str]) -> list[str]:
    if not lesson_ids:
      return []
    async with self._session_factory() as session:
      stmt = select(AnalysisJob.lesson_id).where(AnalysisJob.lesson_id.in_(list(lesson_ids)), AnalysisJob.status.in_(ACTIVE_JOB_STATUSES))
      return list((await session.execute(stmt)).scalars().all())

  async def create_run(self, run: RunRecord, jobs: Sequence[JobRecord]) -> None:
    async with self._session_factory() as session:
      # Run and jobs share one transaction so a rejected job never leaves an orphaned run.
      try:
        session.add(
          ProgramRun(
            id=run.run_id,
            program_id=run.program_id,
            user_id=run.user_id,
            status=run.status,
            total_lessons=run.total,
            queued=run.queued,
            processed=run.processed,
            succeeded=run.succeeded,
            failed=run.failed,
            max_concurrency=run.max_concurrency,
            started_at=run.started_at,
          )
        )
        await session.flush()
        session.add_all(
          [
            AnalysisJob(id=job.job_id, program_run_id=job.run_id, program_id=job.program_id, lesson_id=job.lesson_id, status=job.status, attempt_count=job.attempt_count, available_at=job.available_at)
            for job in jobs
          ]
        )
        await session.commit()
      except IntegrityError as exc:
        await session.rollback()
        message = str(exc.orig)
        if _ACTIVE_LESSON_INDEX in message or _RUN_LESSON_CONSTRAINT in message:
          raise ActiveJobExistsError([job.lesson_id for job in jobs]) from exc
        raise

  async def get_run(self, run_id: str) -> RunRecord | None:
    async with self._session_factory() as session:
      row = await session.get(ProgramRun, run_id)
      if row is None:
        return None
      return self._run_to_record(row)

  async def list_runs(self, program_id: str) -> list[RunRecord]:
    async with self._session_factory() as session:
      stmt = select(ProgramRun).where(ProgramRun.program_id == program_id).order_by(ProgramRun.created_at.desc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._run_to_record(row) for row in rows]

  async def list_jobs(self, run_id: str) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(AnalysisJob).where(AnalysisJob.program_run_id == run_id).order_by(AnalysisJob.created_at.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._job_to_record(row) for row in rows]

  async def claim_next_job(self, *, worker_id: str, run_id: str | None = None) -> JobRecord | None:
    now = _now()
    async with self._session_factory() as session:
      # Lock one candidate row and skip rows other workers hold so concurrent claims never collide.
      candidate = (
        select(AnalysisJob.id)
        .join(ProgramRun, ProgramRun.id == AnalysisJob.program_run_id)
        .where(AnalysisJob.status == "queued", ProgramRun.status == "running", or_(AnalysisJob.available_at.is_(None), AnalysisJob.available_at <= now))
        .order_by(AnalysisJob.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True, of=AnalysisJob)
      )
      if run_id is not None:
        candidate = candidate.where(AnalysisJob.program_run_id == run_id)

      stmt = (
        update(AnalysisJob)
        .where(AnalysisJob.id == candidate.scalar_subquery(), AnalysisJob.status == "queued")
        .values(status="running", locked_by=worker_id, locked_at=now, updated_at=now)
        .returning(AnalysisJob)
        .execution_options(synchronize_session=False)
      )
      row = (await session.execute(stmt)).scalar_one_or_none()
      await session.commit()
      if row is None:
        return None
      return self._job_to_record(row)

  async def claim_job(self, job_id: str, *, worker_id: str) -> JobRecord | None:
    now = _now()
    async with self._session_factory() as session:
      stmt = (
        update(AnalysisJob)
        .where(AnalysisJob.id == job_id, AnalysisJob.status == "queued")
        .values(status="running", locked_by=worker_id, locked_at=now, updated_at=now)
        .returning(AnalysisJob)
        .execution_options(synchronize_session=False)
      )
      row = (await session.execute(stmt)).scalar_one_or_none()
      await session.commit()
      if row is None:
        return None
      return self._job_to_record(row)

  async def complete_job(self, job_id: str, *, succeeded: bool, error: str | None = None, analysis_id: str | None = None) -> RunRecord | None:
    now = _now()
    succeeded_delta = 1 if succeeded else 0
    failed_delta = 0 if succeeded else 1
    async with self._session_factory() as session:
      # Only a running job can finish; a duplicate report matches no row and changes nothing.
      job_stmt = (
        update(AnalysisJob)
        .where(AnalysisJob.id == job_id, AnalysisJob.status == "running")
        .values(
          status="completed" if succeeded else "failed",
          attempt_count=AnalysisJob.attempt_count + failed_delta,
          last_error=None if succeeded else error,
          analysis_id=func.coalesce(analysis_id, AnalysisJob.analysis_id),
          locked_by=None,
          locked_at=None,
          updated_at=now,
        )
        .returning(AnalysisJob.program_run_id)
        .execution_options(synchronize_session=False)
      )
      run_id = (await session.execute(job_stmt)).scalar_one_or_none()
      if run_id is None:
        await session.rollback()
        return None

      # Counters are incremented in SQL; the row stays locked until commit, so the
      # returned counts are exactly the ones this completion produced.
      run_stmt = (
        update(ProgramRun)
        .where(ProgramRun.id == run_id)
        .values(
          processed=ProgramRun.processed + 1,
          succeeded=ProgramRun.succeeded + succeeded_delta,
          failed=ProgramRun.failed + failed_delta,
          queued=func.greatest(ProgramRun.queued - 1, 0),
        )
        .returning(ProgramRun)
        .execution_options(synchronize_session=False)
      )
      run = self._run_to_record((await session.execute(run_stmt)).scalar_one())
      status = resolve_run_status(total=run.total, processed=run.processed, succeeded=run.succeeded, failed=run.failed)
      if run.status == "running" and status != "running":
        finish_stmt = update(ProgramRun).where(ProgramRun.id == run_id).values(status=status, finished_at=now).execution_options(synchronize_session=False)
        await session.execute(finish_stmt)
        run.status = status
        run.finished_at = now
      await session.commit()
      return run

  async def requeue_job(self, job_id: str, *, error: str, available_at: datetime) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = (
        update(AnalysisJob)
        .where(AnalysisJob.id == job_id, AnalysisJob.status == "running")
        .values(status="queued", attempt_count=AnalysisJob.attempt_count + 1, last_error=error, locked_by=None, locked_at=None, available_at=available_at, updated_at=_now())
        .returning(AnalysisJob)
        .execution_options(synchronize_session=False)
      )
      row = (await session.execute(stmt)).scalar_one_or_none()
      await session.commit()
      if row is None:
        return None
      return self._job_to_record(row)

  async def release_stale_locks(self, *, older_than: datetime, max_attempts: int) -> int:
    now = _now()
    async with self._session_factory() as session:
      # A lost lock uses up an attempt; jobs with attempts left go back to the queue.
      requeue_stmt = (
        update(AnalysisJob)
        .where(AnalysisJob.status == "running", AnalysisJob.locked_at < older_than, AnalysisJob.attempt_count + 1 < max_attempts)
        .values(status="queued", attempt_count=AnalysisJob.attempt_count + 1, last_error=STALE_LOCK_ERROR, locked_by=None, locked_at=None, available_at=now, updated_at=now)
        .returning(AnalysisJob.id)
        .execution_options(synchronize_session=False)
      )
      requeued = (await session.execute(requeue_stmt)).scalars().all()
      exhausted_stmt = select(AnalysisJob.id).where(AnalysisJob.status == "running", AnalysisJob.locked_at < older_than)
      exhausted = (await session.execute(exhausted_stmt)).scalars().all()
      await session.commit()

    failed = 0
    for job_id in exhausted:
      if await self.complete_job(job_id, succeeded=False, error=STALE_LOCK_ERROR) is not None:
        failed += 1
    return len(requeued) + failed

  async def active_concurrency(self) -> int:
    async with self._session_factory() as session:
      stmt = select(func.coalesce(func.sum(ProgramRun.max_concurrency), 0)).where(ProgramRun.status == "running", ProgramRun.queued > 0)
      return int((await session.execute(stmt)).scalar_one())

  @staticmethod
  def _lesson_to_record(row: ProgramLesson) -> LessonRecord:
    return LessonRecord(lesson_id=row.id, program_id=row.program_id, title=row.title, content_text=row.content_text, sort_order=row.sort_order)

  @staticmethod
  def _run_to_record(row: ProgramRun) -> RunRecord:
    return RunRecord(
      run_id=row.id,
      program_id=row.program_id,
      user_id=row.user_id,
      status=row.status,  # type: ignore[arg-type]
      total=row.total_lessons,
      queued=row.queued,
      processed=row.processed,
      succeeded=row.succeeded,
      failed=row.failed,
      max_concurrency=row.max_concurrency,
      started_at=row.started_at,
      finished_at=row.finished_at,
    )

  @staticmethod
  def _job_to_record(row: AnalysisJob) -> JobRecord:
    return JobRecord(
      job_id=row.id,
      run_id=row.program_run_id,
      program_id=row.program_id,
      lesson_id=row.lesson_id,
      status=row.status,  # type: ignore[arg-type]
      attempt_count=row.attempt_count,
      last_error=row.last_error,
      locked_by=row.locked_by,
      locked_at=row.locked_at,
      available_at=row.available_at,
      analysis_id=row.analysis_id,
      created_at=row.created_at,
      updated_at=row.updated_at,
    )
