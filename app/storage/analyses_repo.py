"""Storage interfaces for analyses."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Protocol

AnalysisStatus = Literal["queued", "running", "completed", "partial", "failed"]


@dataclass
class AnalysisRecord:
  """One evaluation of a piece of content, owned by a user or a guest session."""

  analysis_id: str
  content: str
  content_hash: str
  status: AnalysisStatus
  model_used: str
  user_id: str | None = None
  session_id: str | None = None
  title: str | None = None
  program_id: str | None = None
  program_run_id: str | None = None
  lesson_id: str | None = None
  results: dict[str, Any] | None = None
  created_at: datetime | None = None
  updated_at: datetime | None = None


class AnalysesRepository(Protocol):
  """Repository contract for analysis persistence.

  Owner-scoped reads filter in the query itself: a user sees rows carrying its id, a guest
  sees rows with no user and a matching session token.
  """

  async def create_analysis(self, record: AnalysisRecord) -> None:
    """Persist a new analysis."""

  async def get_owned_analysis(self, analysis_id: str, *, user_id: str | None, session_id: str | None) -> AnalysisRecord | None:
    """Fetch an analysis only when it belongs to the given user or guest session."""

  async def list_owned_analyses(self, *, user_id: str | None, session_id: str | None, limit: int, offset: int) -> tuple[list[AnalysisRecord], int]:
    """Return a page of the owner's analyses, newest first, and the total count."""

  async def update_analysis(self, analysis_id: str, *, status: AnalysisStatus, results: dict[str, Any] | None = None, title: str | None = None) -> AnalysisRecord | None:
    """Record the outcome of an analysis."""
