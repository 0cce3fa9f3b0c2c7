"""Repository constructors resolved from settings."""

from __future__ import annotations

from app.config import Settings
from app.storage.analyses_repo import AnalysesRepository
from app.storage.progress_repo import ProgressRepository
from app.storage.runs_repo import RunsRepository


def _require_database(settings: Settings) -> None:
  if not settings.pg_dsn:
    raise RuntimeError("Database connection is not configured (LENS_PG_DSN is missing).")


def _get_progress_repo(settings: Settings) -> ProgressRepository:
  from app.storage.postgres_progress_repo import PostgresProgressRepository

  _require_database(settings)
  return PostgresProgressRepository()


def _get_runs_repo(settings: Settings) -> RunsRepository:
  from app.storage.postgres_runs_repo import PostgresRunsRepository

  _require_database(settings)
  return PostgresRunsRepository(lock_ttl_seconds=settings.job_lock_ttl_seconds)


def _get_analyses_repo(settings: Settings) -> AnalysesRepository:
  from app.storage.postgres_analyses_repo import PostgresAnalysesRepository

  _require_database(settings)
  return PostgresAnalysesRepository()
