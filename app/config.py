"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the Lens analysis service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  firebase_project_id: str | None
  firebase_service_account_json_path: str | None
  progress_heartbeat_seconds: float
  progress_max_stream_seconds: float
  worker_secret: str | None
  worker_max_concurrency: int
  job_lock_ttl_seconds: int
  job_max_attempts: int
  openrouter_api_key: str | None
  openrouter_base_url: str | None
  default_model: str
  enable_cognitive_load: bool
  max_content_chars: int

  @property
  def is_production(self) -> bool:
    return self.environment in {"production", "prod"}


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("LENS_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("LENS_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("LENS_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("LENS_ENV", "development").lower()

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("LENS_DEBUG"))

  log_max_bytes = _positive_int("LENS_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("LENS_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("LENS_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Streams send a comment frame on this interval and close after the max duration.
  progress_heartbeat_seconds = _positive_float("LENS_PROGRESS_HEARTBEAT_SECONDS", "30")
  progress_max_stream_seconds = _positive_float("LENS_PROGRESS_MAX_STREAM_SECONDS", "300")
  if progress_heartbeat_seconds > progress_max_stream_seconds:
    raise ValueError("LENS_PROGRESS_HEARTBEAT_SECONDS must not exceed LENS_PROGRESS_MAX_STREAM_SECONDS.")

  worker_max_concurrency = _positive_int("LENS_WORKER_MAX_CONCURRENCY", "10")
  job_lock_ttl_seconds = _positive_int("LENS_JOB_LOCK_TTL_SECONDS", "90")
  job_max_attempts = _positive_int("LENS_JOB_MAX_ATTEMPTS", "3")
  max_content_chars = _positive_int("LENS_MAX_CONTENT_CHARS", "50000")

  worker_secret = _optional_str(os.getenv("LENS_WORKER_SECRET"))
  if environment in {"production", "prod"} and not worker_secret:
    raise ValueError("LENS_WORKER_SECRET must be set in production.")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("LENS_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("LENS_LOG_HTTP_4XX")),
    pg_dsn=os.getenv("LENS_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("LENS_PG_CONNECT_TIMEOUT", "5"),
    firebase_project_id=_optional_str(os.getenv("FIREBASE_PROJECT_ID")),
    firebase_service_account_json_path=_optional_str(os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON_PATH")),
    progress_heartbeat_seconds=progress_heartbeat_seconds,
    progress_max_stream_seconds=progress_max_stream_seconds,
    worker_secret=worker_secret,
    worker_max_concurrency=worker_max_concurrency,
    job_lock_ttl_seconds=job_lock_ttl_seconds,
    job_max_attempts=job_max_attempts,
    openrouter_api_key=_optional_str(os.getenv("OPENROUTER_API_KEY")),
    openrouter_base_url=_optional_str(os.getenv("OPENROUTER_BASE_URL")),
    default_model=(os.getenv("LENS_DEFAULT_MODEL") or "openai/gpt-oss-20b:free").strip(),
    enable_cognitive_load=_parse_bool(os.getenv("LENS_ENABLE_COGNITIVE_LOAD")),
    max_content_chars=max_content_chars,
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Keep database configuration isolated so migrations and offline scripts don't require unrelated env vars.
  debug = _parse_bool(os.getenv("LENS_DEBUG"))
  pg_connect_timeout = int(os.getenv("LENS_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("LENS_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = os.getenv("LENS_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
