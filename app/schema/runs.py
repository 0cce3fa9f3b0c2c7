from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

ACTIVE_JOB_STATUSES = ("queued", "running")


class ProgramRun(Base):
  __tablename__ = "program_runs"
  __table_args__ = (
    CheckConstraint("status IN ('running', 'completed', 'failed')", name="ck_program_runs_status"),
    CheckConstraint("processed = succeeded + failed", name="ck_program_runs_processed_sum"),
    CheckConstraint("processed <= total_lessons", name="ck_program_runs_processed_total"),
    CheckConstraint("max_concurrency > 0 AND max_concurrency <= 10", name="ck_program_runs_concurrency"),
    Index("ix_program_runs_program_status", "program_id", "status"),
  )

  id: Mapped[str] = mapped_column(String, primary_key=True)
  program_id: Mapped[str] = mapped_column(ForeignKey("programs.id", ondelete="CASCADE"), nullable=False, index=True)
  user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False)
  total_lessons: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  queued: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  succeeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  max_concurrency: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AnalysisJob(Base):
  __tablename__ = "analysis_jobs"
  __table_args__ = (
    CheckConstraint("status IN ('queued', 'running', 'completed', 'failed')", name="ck_analysis_jobs_status"),
    CheckConstraint("attempt_count >= 0", name="ck_analysis_jobs_attempt_count"),
    UniqueConstraint("program_run_id", "lesson_id", name="ux_analysis_jobs_run_lesson"),
    # At most one queued/running job per lesson, enforced by the database.
    Index("ux_analysis_jobs_active_lesson", "lesson_id", unique=True, postgresql_where=text("status IN ('queued', 'running')")),
    Index("ix_analysis_jobs_pick", "status", "available_at", "created_at", postgresql_where=text("status = 'queued'")),
  )

  id: Mapped[str] = mapped_column(String, primary_key=True)
  program_run_id: Mapped[str] = mapped_column(ForeignKey("program_runs.id", ondelete="CASCADE"), nullable=False, index=True)
  program_id: Mapped[str] = mapped_column(ForeignKey("programs.id", ondelete="CASCADE"), nullable=False, index=True)
  lesson_id: Mapped[str] = mapped_column(ForeignKey("program_lessons.id", ondelete="CASCADE"), nullable=False, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False)
  attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  locked_by: Mapped[str | None] = mapped_column(String, nullable=True)
  locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  available_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  analysis_id: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
