from __future__ import annotations

from datetime import timedelta

import pytest

from app.jobs.models import resolve_run_status
from app.services.analysis import content_hash
from app.services.runs import retry_backoff


@pytest.mark.parametrize(
  ("processed", "succeeded", "failed", "expected"),
  [(2, 2, 0, "running"), (3, 3, 0, "completed"), (3, 2, 1, "completed"), (3, 0, 3, "failed")],
)
def test_resolve_run_status(processed: int, succeeded: int, failed: int, expected: str) -> None:
  assert resolve_run_status(total=3, processed=processed, succeeded=succeeded, failed=failed) == expected


def test_retry_backoff_schedule() -> None:
  assert [retry_backoff(attempt) for attempt in range(5)] == [timedelta(seconds=10), timedelta(seconds=30), timedelta(seconds=60), timedelta(seconds=60), timedelta(seconds=60)]


def test_content_hash_ignores_case_and_whitespace() -> None:
  assert content_hash("  Cells   divide\nBY mitosis ") == content_hash("cells divide by mitosis")
  assert content_hash("cells divide") != content_hash("cells divided")
