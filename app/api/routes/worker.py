from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status

from app.api.models import TickResponse
from app.config import Settings, get_settings
from app.core.security import require_worker_secret
from app.jobs.worker import JobWorker
from app.services import runs as runs_service

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/tick", response_model=TickResponse, status_code=status.HTTP_200_OK, dependencies=[Depends(require_worker_secret)])
async def worker_tick(settings: Settings = Depends(get_settings)) -> TickResponse:  # noqa: B008
  """Cron entry point: recover stale locks, then process a batch of queued jobs."""
  released = await runs_service.release_stale_locks(settings)
  concurrency = await runs_service.resolve_tick_concurrency(settings)
  if concurrency == 0:
    logger.info("Worker tick found no active runs.")
    return TickResponse(released=released, claimed=0, succeeded=0, failed=0, retried=0)

  result = await JobWorker(settings=settings).process_tick(concurrency)
  return TickResponse(released=released, **result.as_dict())
