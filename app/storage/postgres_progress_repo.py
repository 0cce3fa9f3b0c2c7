"""Postgres-backed repository for analysis progress snapshots."""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select

from app.core.database import get_session_factory
from app.progress.events import MetricProgress, ProgressRecord
from app.schema.analyses import AnalysisProgressRow
from app.storage.progress_repo import ProgressRepository


class PostgresProgressRepository(ProgressRepository):
  """Append progress rows to Postgres and read back the latest one."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def append(self, record: ProgressRecord) -> None:
    async with self._session_factory() as session:
      row = AnalysisProgressRow(
        analysis_id=record.analysis_id,
        progress=Decimal(str(record.overall_progress)),
        message=record.message,
        metric_status=[item.model_dump(mode="json", by_alias=True) for item in record.metric_status],
        current_metric=record.current_metric,
        completed_metrics=record.completed_metrics,
        total_metrics=record.total_metrics,
        emitted_at=record.timestamp,
      )
      session.add(row)
      await session.commit()

  async def latest(self, analysis_id: str) -> ProgressRecord | None:
    async with self._session_factory() as session:
      stmt = select(AnalysisProgressRow).where(AnalysisProgressRow.analysis_id == analysis_id).order_by(AnalysisProgressRow.created_at.desc(), AnalysisProgressRow.id.desc()).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return self._row_to_record(row)

  @staticmethod
  def _row_to_record(row: AnalysisProgressRow) -> ProgressRecord:
    metrics = [MetricProgress.model_validate(item) for item in row.metric_status or []]
    return ProgressRecord(
      analysis_id=row.analysis_id,
      overall_progress=float(row.progress),
      message=row.message,
      current_metric=row.current_metric,
      completed_metrics=row.completed_metrics,
      total_metrics=row.total_metrics,
      metric_status=metrics,
      timestamp=row.emitted_at,
    )
