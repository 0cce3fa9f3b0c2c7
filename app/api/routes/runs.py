import logging

from fastapi import APIRouter, Depends, status

from app.api.models import CreateRunRequest, LessonJobResponse, RunResponse, RunStatusResponse, TickResponse
from app.config import Settings, get_settings
from app.core.security import Caller, get_authenticated_caller
from app.jobs.worker import JobWorker
from app.services import runs as runs_service

router = APIRouter()
logger = logging.getLogger("app.api.routes.runs")


@router.post("/programs/{program_id}/runs", response_model=RunResponse, status_code=status.HTTP_201_CREATED)
async def create_run(  # noqa: B008
  program_id: str,
  payload: CreateRunRequest | None = None,
  settings: Settings = Depends(get_settings),  # noqa: B008
  caller: Caller = Depends(get_authenticated_caller),  # noqa: B008
) -> RunResponse:
  """Queue one analysis job per lesson of the program."""
  payload = payload or CreateRunRequest()
  run = await runs_service.create_run(program_id, caller, settings, lesson_ids=payload.lesson_ids, max_concurrency=payload.max_concurrency)
  return RunResponse.from_record(run)


@router.get("/programs/{program_id}/runs", response_model=list[RunResponse])
async def list_runs(  # noqa: B008
  program_id: str,
  settings: Settings = Depends(get_settings),  # noqa: B008
  caller: Caller = Depends(get_authenticated_caller),  # noqa: B008
) -> list[RunResponse]:
  runs = await runs_service.list_runs(program_id, caller, settings)
  return [RunResponse.from_record(run) for run in runs]


@router.post("/programs/{program_id}/lessons/{lesson_id}/analyze", response_model=LessonJobResponse, status_code=status.HTTP_201_CREATED)
async def analyze_lesson(  # noqa: B008
  program_id: str,
  lesson_id: str,
  settings: Settings = Depends(get_settings),  # noqa: B008
  caller: Caller = Depends(get_authenticated_caller),  # noqa: B008
) -> LessonJobResponse:
  """Queue a single lesson; 409 while that lesson already has queued or running work."""
  job = await runs_service.create_lesson_job(program_id, lesson_id, caller, settings)
  return LessonJobResponse.from_record(job)


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(  # noqa: B008
  run_id: str,
  settings: Settings = Depends(get_settings),  # noqa: B008
  caller: Caller = Depends(get_authenticated_caller),  # noqa: B008
) -> RunResponse:
  run = await runs_service.get_run(run_id, caller, settings)
  return RunResponse.from_record(run)


@router.get("/runs/{run_id}/status", response_model=RunStatusResponse)
async def get_run_status(  # noqa: B008
  run_id: str,
  settings: Settings = Depends(get_settings),  # noqa: B008
  caller: Caller = Depends(get_authenticated_caller),  # noqa: B008
) -> RunStatusResponse:
  """Per-job breakdown of a run with its latest failures."""
  view = await runs_service.get_run_status(run_id, caller, settings)
  return RunStatusResponse.from_view(view)


@router.post("/runs/{run_id}/tick", response_model=TickResponse)
async def tick_run(  # noqa: B008
  run_id: str,
  settings: Settings = Depends(get_settings),  # noqa: B008
  caller: Caller = Depends(get_authenticated_caller),  # noqa: B008
) -> TickResponse:
  """Let the run owner process the next batch of its own jobs."""
  run = await runs_service.get_run(run_id, caller, settings)
  if run.is_terminal:
    return TickResponse(claimed=0, succeeded=0, failed=0, retried=0)
  concurrency = min(run.max_concurrency, settings.worker_max_concurrency)
  result = await JobWorker(settings=settings).process_tick(concurrency, run_id=run.run_id)
  return TickResponse(**result.as_dict())
