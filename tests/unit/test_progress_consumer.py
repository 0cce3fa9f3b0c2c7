"""Unit tests for the reconnecting progress stream consumer."""

from __future__ import annotations

import json

import httpx
import pytest

from app.client.progress_consumer import ProgressStreamConsumer, ProgressStreamError, iter_sse_data, reconnect_delay
from app.progress.events import ProgressRecord

URL = "http://test/v1/progress/analysis-1/stream"


def _frame(progress: float) -> str:
  payload = {"analysisId": "analysis-1", "overallProgress": progress, "message": "m", "completedMetrics": 0, "totalMetrics": 5, "metricStatus": [], "timestamp": 1}
  return f"data: {json.dumps(payload)}\n\n"


def _sse_response(*frames: str) -> httpx.Response:
  return httpx.Response(200, headers={"content-type": "text/event-stream"}, content="".join(frames).encode("utf-8"))


class FakeSleep:
  def __init__(self) -> None:
    self.delays: list[float] = []

  async def __call__(self, delay: float) -> None:
    self.delays.append(delay)


def test_reconnect_delay_sequence() -> None:
  assert [reconnect_delay(attempt) for attempt in range(6)] == [1, 2, 4, 8, 10, 10]


@pytest.mark.anyio
async def test_iter_sse_data_skips_comment_frames() -> None:
  async def lines():
    for line in [": heartbeat", "", "data: {\"a\": 1}", "", "event: ignored", "data: two", ""]:
      yield line

  payloads = [payload async for payload in iter_sse_data(lines())]
  assert payloads == ['{"a": 1}', "two"]


@pytest.mark.anyio
async def test_on_complete_fires_once_and_closes() -> None:
  requests: list[httpx.Request] = []

  def handler(request: httpx.Request) -> httpx.Response:
    requests.append(request)
    return _sse_response(_frame(40), ": heartbeat\n\n", _frame(100), _frame(100))

  progress: list[float] = []
  completed: list[ProgressRecord] = []
  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    consumer = ProgressStreamConsumer(client, URL, on_progress=lambda record: progress.append(record.overall_progress), on_complete=completed.append, sleep=FakeSleep())
    final = await consumer.run()

  assert progress == [40, 100]
  assert len(completed) == 1
  assert final is not None and final.overall_progress == 100
  assert consumer.completed is True
  assert consumer.is_connected is False
  assert len(requests) == 1
  assert requests[0].headers["accept"] == "text/event-stream"


@pytest.mark.anyio
async def test_backoff_sequence_then_error() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)

  sleep = FakeSleep()
  errors: list[ProgressStreamError] = []
  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    consumer = ProgressStreamConsumer(client, URL, on_error=errors.append, sleep=sleep)
    assert await consumer.run() is None

  assert sleep.delays == [1, 2, 4, 8, 10]
  assert len(errors) == 1
  assert consumer.error is errors[0]
  assert "5 attempts" in str(consumer.error)


@pytest.mark.anyio
async def test_successful_connection_resets_attempts() -> None:
  calls = {"count": 0}

  def handler(request: httpx.Request) -> httpx.Response:
    calls["count"] += 1
    if calls["count"] in (1, 2):
      raise httpx.ConnectError("down", request=request)
    if calls["count"] == 3:
      # Server closed the stream before completion; the consumer reconnects.
      return _sse_response(_frame(30))
    return _sse_response(_frame(100))

  sleep = FakeSleep()
  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    consumer = ProgressStreamConsumer(client, URL, sleep=sleep)
    final = await consumer.run()

  assert final is not None and final.overall_progress == 100
  assert sleep.delays == [1, 2, 1]
  assert consumer.error is None


@pytest.mark.anyio
async def test_client_errors_are_not_retried() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(404, json={"detail": "Analysis not found."})

  sleep = FakeSleep()
  errors: list[ProgressStreamError] = []
  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    consumer = ProgressStreamConsumer(client, URL, on_error=errors.append, sleep=sleep)
    await consumer.run()

  assert sleep.delays == []
  assert len(errors) == 1
  assert errors[0].status_code == 404


@pytest.mark.anyio
async def test_server_errors_are_retried() -> None:
  calls = {"count": 0}

  def handler(request: httpx.Request) -> httpx.Response:
    calls["count"] += 1
    if calls["count"] == 1:
      return httpx.Response(503)
    return _sse_response(_frame(100))

  sleep = FakeSleep()
  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    consumer = ProgressStreamConsumer(client, URL, sleep=sleep)
    final = await consumer.run()

  assert final is not None and final.is_complete
  assert sleep.delays == [1]


@pytest.mark.anyio
async def test_malformed_frames_are_ignored() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    return _sse_response("data: not-json\n\n", _frame(100))

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    consumer = ProgressStreamConsumer(client, URL, sleep=FakeSleep())
    final = await consumer.run()

  assert final is not None and final.overall_progress == 100
