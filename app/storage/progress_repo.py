"""Storage interfaces for analysis progress snapshots."""

from __future__ import annotations

from typing import Protocol

from app.progress.events import ProgressRecord


class ProgressRepository(Protocol):
  """Repository contract for append-only progress records."""

  async def append(self, record: ProgressRecord) -> None:
    """Persist one snapshot; existing rows are never modified."""

  async def latest(self, analysis_id: str) -> ProgressRecord | None:
    """Return the newest snapshot for an analysis, or None when nothing was written."""
