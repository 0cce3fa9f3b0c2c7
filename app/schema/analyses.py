from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class Analysis(Base):
  __tablename__ = "analyses"
  __table_args__ = (
    Index("ix_analyses_user_created", "user_id", "created_at"),
    Index("ix_analyses_session_id", "session_id", postgresql_where=text("session_id IS NOT NULL")),
  )

  id: Mapped[str] = mapped_column(String, primary_key=True)
  user_id: Mapped[str | None] = mapped_column(String, nullable=True)
  session_id: Mapped[str | None] = mapped_column(String, nullable=True)
  program_id: Mapped[str | None] = mapped_column(ForeignKey("programs.id", ondelete="SET NULL"), nullable=True, index=True)
  program_run_id: Mapped[str | None] = mapped_column(ForeignKey("program_runs.id", ondelete="SET NULL"), nullable=True, index=True)
  lesson_id: Mapped[str | None] = mapped_column(ForeignKey("program_lessons.id", ondelete="SET NULL"), nullable=True, index=True)
  content: Mapped[str] = mapped_column(Text, nullable=False)
  content_hash: Mapped[str] = mapped_column(String, nullable=False, index=True)
  title: Mapped[str | None] = mapped_column(String, nullable=True)
  status: Mapped[str] = mapped_column(String, nullable=False)
  model_used: Mapped[str] = mapped_column(String, nullable=False)
  results: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class AnalysisProgressRow(Base):
  """Append-only progress snapshots; the newest row per analysis is canonical."""

  __tablename__ = "analysis_progress"
  __table_args__ = (
    CheckConstraint("progress >= 0 AND progress <= 100", name="ck_analysis_progress_range"),
    CheckConstraint("completed_metrics <= total_metrics", name="ck_analysis_progress_metric_counts"),
    Index("ix_analysis_progress_latest", "analysis_id", "created_at"),
  )

  id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
  analysis_id: Mapped[str] = mapped_column(ForeignKey("analyses.id", ondelete="CASCADE"), nullable=False)
  progress: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
  message: Mapped[str] = mapped_column(Text, nullable=False)
  metric_status: Mapped[list] = mapped_column(JSONB, nullable=False)
  current_metric: Mapped[str | None] = mapped_column(String, nullable=True)
  completed_metrics: Mapped[int] = mapped_column(Integer, nullable=False)
  total_metrics: Mapped[int] = mapped_column(Integer, nullable=False)
  emitted_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
