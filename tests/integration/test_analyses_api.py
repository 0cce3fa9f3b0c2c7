"""HTTP tests for submitting and reading analyses."""

from __future__ import annotations

import pytest

GUEST = {"X-Session-Id": "guest-1"}
CONTENT = "Fractions describe parts of a whole. Halves, thirds and quarters are common examples."


@pytest.fixture
def scheduled(monkeypatch: pytest.MonkeyPatch) -> list[str]:
  """Capture background analysis runs instead of calling a model."""
  calls: list[str] = []

  async def _record_call(record, settings) -> None:
    calls.append(record.analysis_id)

  monkeypatch.setattr("app.services.analysis.run_analysis_safely", _record_call)
  return calls


@pytest.mark.anyio
async def test_submit_analysis_schedules_evaluation(async_client, analyses_repo, scheduled) -> None:
  response = await async_client.post("/v1/analyses", json={"content": CONTENT}, headers=GUEST)

  assert response.status_code == 202
  body = response.json()
  assert body["status"] == "running"
  assert scheduled == [body["analysisId"]]
  stored = analyses_repo.records[body["analysisId"]]
  assert stored.session_id == "guest-1" and stored.user_id is None


@pytest.mark.anyio
async def test_submit_rejects_invalid_payloads(async_client, analyses_repo, scheduled) -> None:
  blank = await async_client.post("/v1/analyses", json={"content": "   "}, headers=GUEST)
  unknown_field = await async_client.post("/v1/analyses", json={"content": CONTENT, "priority": "high"}, headers=GUEST)
  anonymous = await async_client.post("/v1/analyses", json={"content": CONTENT})

  assert blank.status_code == 400
  assert unknown_field.status_code == 422
  assert "input" not in unknown_field.json()["detail"][0]
  assert anonymous.status_code == 401
  assert scheduled == []


@pytest.mark.anyio
async def test_owner_reads_analysis_and_history(async_client, analyses_repo, scheduled) -> None:
  created = (await async_client.post("/v1/analyses", json={"content": CONTENT}, headers=GUEST)).json()

  detail = await async_client.get(f"/v1/analyses/{created['analysisId']}", headers=GUEST)
  history = await async_client.get("/v1/analyses", params={"limit": 5}, headers=GUEST)

  assert detail.status_code == 200
  assert detail.json()["content"] == CONTENT
  assert detail.json()["modelUsed"]
  assert history.status_code == 200
  assert history.json()["total"] == 1
  assert history.json()["limit"] == 5
  assert history.json()["items"][0]["analysisId"] == created["analysisId"]


@pytest.mark.anyio
async def test_other_sessions_cannot_read_analysis(async_client, analyses_repo, scheduled) -> None:
  created = (await async_client.post("/v1/analyses", json={"content": CONTENT}, headers=GUEST)).json()
  other = {"X-Session-Id": "guest-2"}

  detail = await async_client.get(f"/v1/analyses/{created['analysisId']}", headers=other)
  history = await async_client.get("/v1/analyses", headers=other)

  assert detail.status_code == 404
  assert history.json() == {"items": [], "total": 0, "limit": 20, "offset": 0}
