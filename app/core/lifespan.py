import logging
import os
import subprocess
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import urlparse

from fastapi import FastAPI

from app.core.database import get_db_engine
from app.core.firebase import initialize_firebase
from app.core.logging import _initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Initialize logging, auth and (optionally) the schema; dispose the engine on shutdown."""
  from app.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")

  try:
    _initialize_logging(settings)
    logger.info("Startup complete - logging verified.")

    initialize_firebase()

    auto_apply = _parse_env_bool(os.getenv("LENS_AUTO_APPLY_MIGRATIONS"))
    if auto_apply:
      # Production schemas are migrated by the deploy pipeline, not by app instances.
      if settings.is_production:
        logger.info("Skipping startup migrations for environment=%s", settings.environment)
      else:
        logger.info("Auto-apply migrations enabled; LENS_PG_DSN=%s", _redact_dsn(settings.pg_dsn))
        repo_root = Path(__file__).resolve().parents[2]
        subprocess.run([sys.executable, "-m", "alembic", "upgrade", "head"], check=True, cwd=repo_root)

  except subprocess.CalledProcessError:
    logger.warning("Startup migrations failed; migrator returned non-zero exit status.", exc_info=True)

  except Exception:
    # Log initialization failures but allow the app to continue starting.
    logger.warning("Startup initialization failed; continuing without it.", exc_info=True)

  yield

  engine = get_db_engine()
  if engine is not None:
    await engine.dispose()
    logger.info("Database engine disposed.")


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"


def _parse_env_bool(value: str | None) -> bool:
  if value is None:
    return False
  return value.strip().lower() in {"1", "true", "yes", "on"}
