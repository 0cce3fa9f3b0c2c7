"""Postgres-backed repository for analyses using SQLAlchemy."""

from __future__ import annotations

from typing import Any

from sqlalchemy import ColumnElement, and_, func, select

from app.core.database import get_session_factory
from app.schema.analyses import Analysis
from app.storage.analyses_repo import AnalysesRepository, AnalysisRecord, AnalysisStatus


def _owner_filter(*, user_id: str | None, session_id: str | None) -> ColumnElement[bool] | None:
  if user_id is not None:
    return Analysis.user_id == user_id
  if session_id is not None:
    return and_(Analysis.user_id.is_(None), Analysis.session_id == session_id)
  return None


class PostgresAnalysesRepository(AnalysesRepository):
  """Persist analyses to Postgres using SQLAlchemy."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_analysis(self, record: AnalysisRecord) -> None:
    async with self._session_factory() as session:
      session.add(
        Analysis(
          id=record.analysis_id,
          user_id=record.user_id,
          session_id=record.session_id,
          program_id=record.program_id,
          program_run_id=record.program_run_id,
          lesson_id=record.lesson_id,
          content=record.content,
          content_hash=record.content_hash,
          title=record.title,
          status=record.status,
          model_used=record.model_used,
          results=record.results,
        )
      )
      await session.commit()

  async def get_owned_analysis(self, analysis_id: str, *, user_id: str | None, session_id: str | None) -> AnalysisRecord | None:
    owner = _owner_filter(user_id=user_id, session_id=session_id)
    if owner is None:
      return None
    async with self._session_factory() as session:
      stmt = select(Analysis).where(Analysis.id == analysis_id, owner).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return self._model_to_record(row)

  async def list_owned_analyses(self, *, user_id: str | None, session_id: str | None, limit: int, offset: int) -> tuple[list[AnalysisRecord], int]:
    owner = _owner_filter(user_id=user_id, session_id=session_id)
    if owner is None:
      return [], 0
    async with self._session_factory() as session:
      total = int((await session.execute(select(func.count()).select_from(Analysis).where(owner))).scalar_one())
      stmt = select(Analysis).where(owner).order_by(Analysis.created_at.desc()).limit(limit).offset(offset)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows], total

  async def update_analysis(self, analysis_id: str, *, status: AnalysisStatus, results: dict[str, Any] | None = None, title: str | None = None) -> AnalysisRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Analysis, analysis_id)
      if row is None:
        return None
      row.status = status
      if results is not None:
        row.results = results
      if title is not None:
        row.title = title
      session.add(row)
      await session.commit()
      await session.refresh(row)
      return self._model_to_record(row)

  @staticmethod
  def _model_to_record(row: Analysis) -> AnalysisRecord:
    return AnalysisRecord(
      analysis_id=row.id,
      content=row.content,
      content_hash=row.content_hash,
      status=row.status,  # type: ignore[arg-type]
      model_used=row.model_used,
      user_id=row.user_id,
      session_id=row.session_id,
      title=row.title,
      program_id=row.program_id,
      program_run_id=row.program_run_id,
      lesson_id=row.lesson_id,
      results=row.results,
      created_at=row.created_at,
      updated_at=row.updated_at,
    )
