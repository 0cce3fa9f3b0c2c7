"""Create program, run, job, analysis and progress tables.

Revision ID: 5a1c3e9d2b7f
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from app.core.migration_guards import guarded_create_index, guarded_create_table, guarded_drop_index, guarded_drop_table
from sqlalchemy.dialects import postgresql

revision = "5a1c3e9d2b7f"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  guarded_create_table(
    "programs",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("user_id", "name", name="ux_programs_user_name"),
  )
  guarded_create_index(op.f("ix_programs_user_id"), "programs", ["user_id"], unique=False)

  guarded_create_table(
    "program_lessons",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("program_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("source_url", sa.String(), nullable=True),
    sa.Column("content_text", sa.Text(), nullable=True),
    sa.Column("content_hash", sa.String(), nullable=True),
    sa.Column("sort_order", sa.Integer(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["program_id"], ["programs.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("program_id", "source_url", name="ux_program_lessons_program_source_url"),
  )
  guarded_create_index(op.f("ix_program_lessons_program_id"), "program_lessons", ["program_id"], unique=False)
  guarded_create_index(op.f("ix_program_lessons_content_hash"), "program_lessons", ["content_hash"], unique=False)

  guarded_create_table(
    "program_runs",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("program_id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=True),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("total_lessons", sa.Integer(), nullable=False),
    sa.Column("queued", sa.Integer(), nullable=False),
    sa.Column("processed", sa.Integer(), nullable=False),
    sa.Column("succeeded", sa.Integer(), nullable=False),
    sa.Column("failed", sa.Integer(), nullable=False),
    sa.Column("max_concurrency", sa.Integer(), nullable=False),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.CheckConstraint("status IN ('running', 'completed', 'failed')", name="ck_program_runs_status"),
    sa.CheckConstraint("processed = succeeded + failed", name="ck_program_runs_processed_sum"),
    sa.CheckConstraint("processed <= total_lessons", name="ck_program_runs_processed_total"),
    sa.CheckConstraint("max_concurrency > 0 AND max_concurrency <= 10", name="ck_program_runs_concurrency"),
    sa.ForeignKeyConstraint(["program_id"], ["programs.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  guarded_create_index(op.f("ix_program_runs_program_id"), "program_runs", ["program_id"], unique=False)
  guarded_create_index(op.f("ix_program_runs_user_id"), "program_runs", ["user_id"], unique=False)
  guarded_create_index("ix_program_runs_program_status", "program_runs", ["program_id", "status"], unique=False)

  guarded_create_table(
    "analysis_jobs",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("program_run_id", sa.String(), nullable=False),
    sa.Column("program_id", sa.String(), nullable=False),
    sa.Column("lesson_id", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("attempt_count", sa.Integer(), nullable=False),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("locked_by", sa.String(), nullable=True),
    sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("available_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("analysis_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.CheckConstraint("status IN ('queued', 'running', 'completed', 'failed')", name="ck_analysis_jobs_status"),
    sa.CheckConstraint("attempt_count >= 0", name="ck_analysis_jobs_attempt_count"),
    sa.ForeignKeyConstraint(["program_run_id"], ["program_runs.id"], ondelete="CASCADE"),
    sa.ForeignKeyConstraint(["program_id"], ["programs.id"], ondelete="CASCADE"),
    sa.ForeignKeyConstraint(["lesson_id"], ["program_lessons.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("program_run_id", "lesson_id", name="ux_analysis_jobs_run_lesson"),
  )
  guarded_create_index(op.f("ix_analysis_jobs_program_run_id"), "analysis_jobs", ["program_run_id"], unique=False)
  guarded_create_index(op.f("ix_analysis_jobs_program_id"), "analysis_jobs", ["program_id"], unique=False)
  guarded_create_index(op.f("ix_analysis_jobs_lesson_id"), "analysis_jobs", ["lesson_id"], unique=False)
  # At most one queued/running job per lesson; concurrent duplicates fail on insert.
  guarded_create_index("ux_analysis_jobs_active_lesson", "analysis_jobs", ["lesson_id"], unique=True, postgresql_where=sa.text("status IN ('queued', 'running')"))
  guarded_create_index("ix_analysis_jobs_pick", "analysis_jobs", ["status", "available_at", "created_at"], unique=False, postgresql_where=sa.text("status = 'queued'"))

  guarded_create_table(
    "analyses",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=True),
    sa.Column("session_id", sa.String(), nullable=True),
    sa.Column("program_id", sa.String(), nullable=True),
    sa.Column("program_run_id", sa.String(), nullable=True),
    sa.Column("lesson_id", sa.String(), nullable=True),
    sa.Column("content", sa.Text(), nullable=False),
    sa.Column("content_hash", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=True),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("model_used", sa.String(), nullable=False),
    sa.Column("results", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["program_id"], ["programs.id"], ondelete="SET NULL"),
    sa.ForeignKeyConstraint(["program_run_id"], ["program_runs.id"], ondelete="SET NULL"),
    sa.ForeignKeyConstraint(["lesson_id"], ["program_lessons.id"], ondelete="SET NULL"),
    sa.PrimaryKeyConstraint("id"),
  )
  guarded_create_index("ix_analyses_user_created", "analyses", ["user_id", "created_at"], unique=False)
  guarded_create_index("ix_analyses_session_id", "analyses", ["session_id"], unique=False, postgresql_where=sa.text("session_id IS NOT NULL"))
  guarded_create_index(op.f("ix_analyses_content_hash"), "analyses", ["content_hash"], unique=False)
  guarded_create_index(op.f("ix_analyses_program_id"), "analyses", ["program_id"], unique=False)
  guarded_create_index(op.f("ix_analyses_program_run_id"), "analyses", ["program_run_id"], unique=False)
  guarded_create_index(op.f("ix_analyses_lesson_id"), "analyses", ["lesson_id"], unique=False)

  guarded_create_table(
    "analysis_progress",
    sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
    sa.Column("analysis_id", sa.String(), nullable=False),
    sa.Column("progress", sa.Numeric(5, 2), nullable=False),
    sa.Column("message", sa.Text(), nullable=False),
    sa.Column("metric_status", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("current_metric", sa.String(), nullable=True),
    sa.Column("completed_metrics", sa.Integer(), nullable=False),
    sa.Column("total_metrics", sa.Integer(), nullable=False),
    sa.Column("emitted_at", sa.BigInteger(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_analysis_progress_range"),
    sa.CheckConstraint("completed_metrics <= total_metrics", name="ck_analysis_progress_metric_counts"),
    sa.ForeignKeyConstraint(["analysis_id"], ["analyses.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  guarded_create_index("ix_analysis_progress_latest", "analysis_progress", ["analysis_id", "created_at"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  guarded_drop_index("ix_analysis_progress_latest", table_name="analysis_progress")
  guarded_drop_table("analysis_progress")
  guarded_drop_table("analyses")
  guarded_drop_index("ux_analysis_jobs_active_lesson", table_name="analysis_jobs")
  guarded_drop_index("ix_analysis_jobs_pick", table_name="analysis_jobs")
  guarded_drop_table("analysis_jobs")
  guarded_drop_table("program_runs")
  guarded_drop_table("program_lessons")
  guarded_drop_table("programs")
