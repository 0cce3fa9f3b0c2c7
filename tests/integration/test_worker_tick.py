"""Worker ticks over the in-memory runs repository."""

from __future__ import annotations

from dataclasses import replace

import pytest

from app.core.security import Caller
from app.jobs.models import JobRecord, LessonRecord, RunRecord
from app.jobs.worker import JobWorker
from app.services import runs as runs_service
from app.storage.analyses_repo import AnalysisRecord, AnalysisStatus


def _analysis(job: JobRecord, status: AnalysisStatus) -> AnalysisRecord:
  return AnalysisRecord(analysis_id=f"analysis-{job.lesson_id[-1]}", content="text", content_hash="hash", status=status, model_used="scripted-model", lesson_id=job.lesson_id)


def _scripted(outcomes: dict[str, AnalysisStatus | Exception]):
  async def _analyze(job: JobRecord, run: RunRecord, lesson: LessonRecord) -> AnalysisRecord:
    outcome = outcomes.get(lesson.lesson_id, "completed")
    if isinstance(outcome, Exception):
      raise outcome
    return _analysis(job, outcome)

  return _analyze


@pytest.mark.anyio
async def test_tick_completes_every_job_of_a_run(runs_repo, seed, settings) -> None:
  run = await runs_service.create_run(seed.program_id, Caller(user_id=seed.user_id), settings)
  worker = JobWorker(settings=settings, worker_id="worker-test", analyze=_scripted({}))

  result = await worker.process_tick(5)

  assert result.as_dict() == {"claimed": 3, "succeeded": 3, "failed": 0, "retried": 0}
  stored = await runs_repo.get_run(run.run_id)
  assert stored.status == "completed"
  assert (stored.processed, stored.succeeded, stored.queued) == (3, 3, 0)
  assert {job.analysis_id for job in await runs_repo.list_jobs(run.run_id)} == {"analysis-1", "analysis-2", "analysis-3"}


@pytest.mark.anyio
async def test_tick_respects_concurrency(runs_repo, seed, settings) -> None:
  await runs_service.create_run(seed.program_id, Caller(user_id=seed.user_id), settings)
  worker = JobWorker(settings=settings, analyze=_scripted({}))

  assert (await worker.process_tick(2)).claimed == 2
  assert (await worker.process_tick(2)).claimed == 1
  assert (await worker.process_tick(2)).claimed == 0


@pytest.mark.anyio
async def test_crashing_analysis_is_retried_and_failed_analysis_counts(runs_repo, seed, settings) -> None:
  run = await runs_service.create_run(seed.program_id, Caller(user_id=seed.user_id), settings)
  outcomes = {seed.lesson_ids[0]: RuntimeError("provider timeout"), seed.lesson_ids[1]: "failed"}
  worker = JobWorker(settings=settings, analyze=_scripted(outcomes))

  result = await worker.process_tick(3)

  assert result.claimed == 3
  assert result.succeeded == 1
  # "failed" analyses go through the retry policy too; both land back in the queue.
  assert result.retried == 2
  jobs = {job.lesson_id: job for job in await runs_repo.list_jobs(run.run_id)}
  crashed = jobs[seed.lesson_ids[0]]
  assert crashed.status == "queued"
  assert crashed.last_error == "RuntimeError: provider timeout"
  stored = await runs_repo.get_run(run.run_id)
  assert stored.status == "running"
  assert (stored.processed, stored.succeeded, stored.failed) == (1, 1, 0)


@pytest.mark.anyio
async def test_lesson_without_content_fails_without_retry(runs_repo, seed, settings) -> None:
  runs_repo.lessons[seed.lesson_ids[0]] = replace(runs_repo.lessons[seed.lesson_ids[0]], content_text="   ")
  job = await runs_service.create_lesson_job(seed.program_id, seed.lesson_ids[0], Caller(user_id=seed.user_id), settings)
  calls: list[str] = []

  async def _analyze(job: JobRecord, run: RunRecord, lesson: LessonRecord) -> AnalysisRecord:
    calls.append(lesson.lesson_id)
    return _analysis(job, "completed")

  result = await JobWorker(settings=settings, analyze=_analyze).process_tick(1)

  assert result.failed == 1 and result.retried == 0
  assert calls == []
  stored = await runs_repo.get_job(job.job_id)
  assert stored.status == "failed"
  assert stored.last_error == "Lesson has no content to analyze."
  assert (await runs_repo.get_run(job.run_id)).status == "failed"


@pytest.mark.anyio
async def test_worker_tick_endpoint_processes_queued_jobs(async_client, runs_repo, seed, settings, monkeypatch: pytest.MonkeyPatch) -> None:
  run = await runs_service.create_run(seed.program_id, Caller(user_id=seed.user_id), settings)

  async def _fake_analyze(self, job: JobRecord, run: RunRecord, lesson: LessonRecord) -> AnalysisRecord:
    return _analysis(job, "completed")

  monkeypatch.setattr(JobWorker, "_analyze_lesson", _fake_analyze)

  response = await async_client.post("/worker/tick")

  assert response.status_code == 200
  assert response.json() == {"released": 0, "claimed": 3, "succeeded": 3, "failed": 0, "retried": 0}
  assert (await runs_repo.get_run(run.run_id)).status == "completed"


@pytest.mark.anyio
async def test_worker_tick_endpoint_is_idle_without_runs(async_client, runs_repo) -> None:
  response = await async_client.post("/worker/tick")

  assert response.status_code == 200
  assert response.json()["claimed"] == 0
