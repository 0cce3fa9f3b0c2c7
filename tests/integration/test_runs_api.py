"""HTTP tests for program runs, single-lesson jobs and owner-driven ticks."""

from __future__ import annotations

import pytest

from app.jobs.models import JobRecord, LessonRecord, RunRecord
from app.jobs.worker import JobWorker
from app.services import runs as runs_service
from app.storage.analyses_repo import AnalysisRecord

AUTH = {"Authorization": "Bearer valid-token"}


@pytest.fixture(autouse=True)
def signed_in(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr("app.core.security.verify_id_token", lambda token: {"uid": "user-1"})


@pytest.mark.anyio
async def test_create_run_returns_camel_case_counters(async_client, runs_repo, seed) -> None:
  response = await async_client.post(f"/v1/programs/{seed.program_id}/runs", json={"maxConcurrency": 2}, headers=AUTH)

  assert response.status_code == 201
  body = response.json()
  assert body["programId"] == seed.program_id
  assert body["status"] == "running"
  assert (body["total"], body["queued"], body["processed"]) == (3, 3, 0)
  assert body["maxConcurrency"] == 2

  listed = await async_client.get(f"/v1/programs/{seed.program_id}/runs", headers=AUTH)
  fetched = await async_client.get(f"/v1/runs/{body['runId']}", headers=AUTH)
  assert [item["runId"] for item in listed.json()] == [body["runId"]]
  assert fetched.json()["total"] == 3


@pytest.mark.anyio
async def test_create_run_without_body_uses_defaults(async_client, runs_repo, seed) -> None:
  response = await async_client.post(f"/v1/programs/{seed.program_id}/runs", headers=AUTH)

  assert response.status_code == 201
  assert response.json()["maxConcurrency"] == 3


@pytest.mark.anyio
async def test_run_endpoints_reject_guests_and_bad_input(async_client, runs_repo, seed) -> None:
  guest = await async_client.post(f"/v1/programs/{seed.program_id}/runs", headers={"X-Session-Id": "guest-1"})
  too_parallel = await async_client.post(f"/v1/programs/{seed.program_id}/runs", json={"maxConcurrency": 11}, headers=AUTH)
  foreign = await async_client.post(f"/v1/programs/{seed.foreign_program_id}/runs", headers=AUTH)

  assert guest.status_code == 401
  assert too_parallel.status_code == 422
  assert foreign.status_code == 404
  assert runs_repo.runs == {}


@pytest.mark.anyio
async def test_duplicate_lesson_analysis_conflicts(async_client, runs_repo, seed) -> None:
  url = f"/v1/programs/{seed.program_id}/lessons/{seed.lesson_ids[0]}/analyze"

  first = await async_client.post(url, headers=AUTH)
  second = await async_client.post(url, headers=AUTH)

  assert first.status_code == 201
  assert first.json()["lessonId"] == seed.lesson_ids[0]
  assert first.json()["status"] == "queued"
  assert second.status_code == 409


@pytest.mark.anyio
async def test_owner_tick_processes_only_that_run(async_client, runs_repo, seed, monkeypatch: pytest.MonkeyPatch) -> None:
  async def _fake_analyze(self, job: JobRecord, run: RunRecord, lesson: LessonRecord) -> AnalysisRecord:
    return AnalysisRecord(analysis_id=f"analysis-{lesson.lesson_id[-1]}", content=lesson.content_text or "", content_hash="hash", status="completed", model_used="scripted-model")

  monkeypatch.setattr(JobWorker, "_analyze_lesson", _fake_analyze)
  run = (await async_client.post(f"/v1/programs/{seed.program_id}/runs", json={"maxConcurrency": 2}, headers=AUTH)).json()

  first = await async_client.post(f"/v1/runs/{run['runId']}/tick", headers=AUTH)
  second = await async_client.post(f"/v1/runs/{run['runId']}/tick", headers=AUTH)
  idle = await async_client.post(f"/v1/runs/{run['runId']}/tick", headers=AUTH)

  assert first.json()["claimed"] == 2
  assert second.json()["claimed"] == 1
  assert idle.json() == {"released": 0, "claimed": 0, "succeeded": 0, "failed": 0, "retried": 0}
  finished = (await async_client.get(f"/v1/runs/{run['runId']}", headers=AUTH)).json()
  assert finished["status"] == "completed"
  assert finished["succeeded"] == 3
  assert finished["finishedAt"] is not None


@pytest.mark.anyio
async def test_run_status_reports_breakdown_and_recent_errors(async_client, runs_repo, seed, settings, monkeypatch: pytest.MonkeyPatch) -> None:
  run = (await async_client.post(f"/v1/programs/{seed.program_id}/runs", headers=AUTH)).json()
  job = await runs_service.claim_next_job("worker-a", settings)
  await runs_service.fail_job(job, "All metrics failed.", settings, retry=False)

  response = await async_client.get(f"/v1/runs/{run['runId']}/status", headers=AUTH)
  monkeypatch.setattr("app.core.security.verify_id_token", lambda token: {"uid": seed.other_user_id})
  foreign = await async_client.get(f"/v1/runs/{run['runId']}/status", headers=AUTH)

  assert response.status_code == 200
  body = response.json()
  assert body["run"]["runId"] == run["runId"]
  assert body["progress"] == {"percentage": 33, "total": 3, "queued": 2, "running": 0, "completed": 0, "failed": 1, "finished": 1}
  assert body["recentErrors"][0]["lessonId"] == job.lesson_id
  assert body["recentErrors"][0]["lessonTitle"] == "Lesson 1"
  assert body["recentErrors"][0]["error"] == "All metrics failed."
  assert "estimatedSecondsRemaining" in body
  assert foreign.status_code == 404
