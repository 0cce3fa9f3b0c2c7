import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status

from app.api.models import AnalysisHistoryResponse, AnalysisResponse, AnalysisSummary, CreateAnalysisRequest, CreateAnalysisResponse
from app.config import Settings, get_settings
from app.core.security import Caller, get_caller
from app.services import analysis as analysis_service

router = APIRouter()
logger = logging.getLogger("app.api.routes.analyses")


@router.post("", response_model=CreateAnalysisResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_analysis(  # noqa: B008
  request: CreateAnalysisRequest,
  background_tasks: BackgroundTasks,
  settings: Settings = Depends(get_settings),  # noqa: B008
  caller: Caller = Depends(get_caller),  # noqa: B008
) -> CreateAnalysisResponse:
  """Store the content and evaluate it in the background; progress streams by analysis id."""
  record = await analysis_service.create_analysis(request.content, caller, settings, model=request.model)
  background_tasks.add_task(analysis_service.run_analysis_safely, record, settings)
  return CreateAnalysisResponse(analysis_id=record.analysis_id, status=record.status)


@router.get("", response_model=AnalysisHistoryResponse)
async def list_analyses(  # noqa: B008
  limit: int = Query(default=20, ge=1, le=100),
  offset: int = Query(default=0, ge=0),
  settings: Settings = Depends(get_settings),  # noqa: B008
  caller: Caller = Depends(get_caller),  # noqa: B008
) -> AnalysisHistoryResponse:
  """List the caller's analyses, newest first."""
  records, total = await analysis_service.list_history(caller, settings, limit=limit, offset=offset)
  items = [AnalysisSummary(analysis_id=record.analysis_id, status=record.status, title=record.title, created_at=record.created_at) for record in records]
  return AnalysisHistoryResponse(items=items, total=total, limit=limit, offset=offset)


@router.get("/{analysis_id}", response_model=AnalysisResponse)
async def get_analysis(  # noqa: B008
  analysis_id: str,
  settings: Settings = Depends(get_settings),  # noqa: B008
  caller: Caller = Depends(get_caller),  # noqa: B008
) -> AnalysisResponse:
  """Fetch one analysis owned by the caller."""
  record = await analysis_service.get_owned_analysis(analysis_id, caller, settings)
  return AnalysisResponse.from_record(record)
