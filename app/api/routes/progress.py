import logging
from functools import partial
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from app.config import Settings, get_settings
from app.core.exceptions import NotFoundOrForbidden
from app.core.security import Caller, get_caller
from app.services import analysis as analysis_service
from app.services.progress import ProgressService, get_progress_service
from app.streaming.sse import SSE_HEADERS, ProgressStream, wait_for_disconnect

router = APIRouter()
logger = logging.getLogger("app.api.routes.progress")


@router.get("/{analysis_id}")
async def get_progress(  # noqa: B008
  analysis_id: str,
  settings: Settings = Depends(get_settings),  # noqa: B008
  caller: Caller = Depends(get_caller),  # noqa: B008
  service: ProgressService = Depends(get_progress_service),  # noqa: B008
) -> dict[str, Any]:
  """Return the latest progress record for an analysis the caller owns."""
  await analysis_service.get_owned_analysis(analysis_id, caller, settings)
  record = await service.get_snapshot(analysis_id)
  if record is None:
    raise NotFoundOrForbidden("Progress not found.")
  return record.as_wire()


@router.get("/{analysis_id}/stream")
async def stream_progress(  # noqa: B008
  analysis_id: str,
  request: Request,
  settings: Settings = Depends(get_settings),  # noqa: B008
  caller: Caller = Depends(get_caller),  # noqa: B008
  service: ProgressService = Depends(get_progress_service),  # noqa: B008
) -> StreamingResponse:
  """Stream progress as Server-Sent Events.

  Ownership is checked before the response starts, so rejected callers get a plain JSON
  error and never a partial stream.
  """
  await analysis_service.get_owned_analysis(analysis_id, caller, settings)
  stream = ProgressStream(
    analysis_id,
    service,
    heartbeat_seconds=settings.progress_heartbeat_seconds,
    max_duration_seconds=settings.progress_max_stream_seconds,
    wait_for_disconnect=partial(wait_for_disconnect, request.receive),
  )
  logger.info("Opening progress stream for analysis %s", analysis_id)
  return StreamingResponse(stream.events(), media_type="text/event-stream", headers=SSE_HEADERS)
