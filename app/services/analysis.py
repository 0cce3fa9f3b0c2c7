"""Analysis lifecycle: creation, metric evaluation with live progress, and owner-scoped reads."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from app.ai.evaluator import MetricEvaluator, MetricResult, select_metrics
from app.ai.providers.openrouter import OpenRouterProvider
from app.config import Settings
from app.core.exceptions import NotFoundOrForbidden, RequestValidationFailed
from app.core.security import Caller
from app.progress.events import MetricStatus
from app.progress.tracker import ProgressTracker
from app.services.progress import ProgressService, progress_service
from app.storage.analyses_repo import AnalysisRecord, AnalysisStatus
from app.storage.factory import _get_analyses_repo
from app.utils.ids import generate_id, is_valid_uuid

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_ANALYSIS_NOT_FOUND_MSG = "Analysis not found."

GRANULAR_TICK_SECONDS = 0.5
GRANULAR_STEP = 15.0
GRANULAR_CEILING = 90.0
METRIC_STAGGER_SECONDS = 0.2


@dataclass
class LessonContext:
  program_id: str
  program_run_id: str
  lesson_id: str


def content_hash(text: str) -> str:
  """sha256 of the trimmed, whitespace-collapsed, lowercased text."""
  normalized = _WHITESPACE_RE.sub(" ", text.strip()).lower()
  return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def build_evaluator(settings: Settings, model: str | None = None) -> MetricEvaluator:
  provider = OpenRouterProvider(api_key=settings.openrouter_api_key, base_url=settings.openrouter_base_url)
  return MetricEvaluator(provider.get_model(model or settings.default_model))


def _validate_content(content: str, settings: Settings) -> str:
  stripped = content.strip()
  if not stripped:
    raise RequestValidationFailed("Content must not be empty.")
  if len(stripped) > settings.max_content_chars:
    raise RequestValidationFailed(f"Content must be at most {settings.max_content_chars} characters.")
  return stripped


async def create_analysis(content: str, caller: Caller, settings: Settings, *, model: str | None = None, lesson: LessonContext | None = None) -> AnalysisRecord:
  """Persist a new analysis owned by the caller, ready to be evaluated."""
  text = _validate_content(content, settings)
  record = AnalysisRecord(
    analysis_id=generate_id(),
    content=text,
    content_hash=content_hash(text),
    status="running",
    model_used=model or settings.default_model,
    user_id=caller.user_id,
    session_id=None if caller.user_id else caller.session_id,
    program_id=lesson.program_id if lesson else None,
    program_run_id=lesson.program_run_id if lesson else None,
    lesson_id=lesson.lesson_id if lesson else None,
  )
  await _get_analyses_repo(settings).create_analysis(record)
  logger.info("Created analysis %s (%d chars, model %s)", record.analysis_id, len(text), record.model_used)
  return record


async def _tick_granular(tracker: ProgressTracker, metric: str) -> None:
  """Advance a metric's sub-progress while its model call is in flight."""
  sub_progress = 10.0
  while sub_progress < GRANULAR_CEILING:
    await asyncio.sleep(GRANULAR_TICK_SECONDS)
    sub_progress = min(GRANULAR_CEILING, sub_progress + GRANULAR_STEP)
    await tracker.update_granular(metric, sub_progress)


async def _evaluate_metric(evaluator: MetricEvaluator, tracker: ProgressTracker, metric: str, content: str, index: int) -> MetricResult | Exception:
  # Stagger calls slightly to stay under provider rate limits.
  await asyncio.sleep(index * METRIC_STAGGER_SECONDS)
  await tracker.update_metric(metric, MetricStatus.PROCESSING, 10.0)
  ticker = asyncio.create_task(_tick_granular(tracker, metric))
  try:
    result = await evaluator.evaluate(metric, content)
  except Exception as exc:  # noqa: BLE001
    logger.warning("Metric %s failed for analysis %s: %s", metric, tracker.analysis_id, exc, exc_info=True)
    return exc
  finally:
    ticker.cancel()
    with contextlib.suppress(asyncio.CancelledError):
      await ticker
  await tracker.update_metric(metric, MetricStatus.COMPLETED, 100.0)
  return result


def _final_status(succeeded: int, total: int) -> AnalysisStatus:
  if succeeded == total:
    return "completed"
  if succeeded > 0:
    return "partial"
  return "failed"


async def run_analysis(record: AnalysisRecord, settings: Settings, *, evaluator: MetricEvaluator | None = None, progress: ProgressService | None = None) -> AnalysisRecord:
  """Evaluate every metric in parallel, streaming progress, and store the results."""
  service = progress or progress_service
  repo = _get_analyses_repo(settings)
  metrics = select_metrics(enable_cognitive_load=settings.enable_cognitive_load)
  tracker = ProgressTracker(analysis_id=record.analysis_id, service=service)
  await tracker.initialize(metrics)
  started = time.monotonic()

  try:
    evaluator = evaluator or build_evaluator(settings, record.model_used)
  except ValueError as exc:
    logger.error("Cannot evaluate analysis %s: %s", record.analysis_id, exc)
    await tracker.finish("Analysis failed.")
    service.cleanup(record.analysis_id)
    return await repo.update_analysis(record.analysis_id, status="failed", results={"error": "Model provider unavailable."}) or record

  title = await evaluator.generate_title(record.content)
  outcomes = await asyncio.gather(*(_evaluate_metric(evaluator, tracker, metric, record.content, index) for index, metric in enumerate(metrics)))

  # Failed metrics are marked after the gather so every metric's failure is counted once.
  results: dict[str, Any] = {}
  succeeded = 0
  for metric, outcome in zip(metrics, outcomes, strict=True):
    if isinstance(outcome, MetricResult):
      results[metric] = outcome.as_json()
      succeeded += 1
    else:
      results[metric] = {"error": type(outcome).__name__}
      await tracker.update_metric(metric, MetricStatus.FAILED)
  results["lessonTitle"] = title

  status = _final_status(succeeded, len(metrics))
  updated = await repo.update_analysis(record.analysis_id, status=status, results=results, title=title)
  await tracker.finish("Analysis complete." if status != "failed" else "Analysis failed.")
  service.cleanup(record.analysis_id)
  logger.info("Analysis %s finished as %s in %.1fs (%d/%d metrics)", record.analysis_id, status, time.monotonic() - started, succeeded, len(metrics))
  return updated or record


async def run_analysis_safely(record: AnalysisRecord, settings: Settings) -> None:
  """Background-task entry point; failures are logged and recorded, never raised."""
  try:
    await run_analysis(record, settings)
  except Exception:  # noqa: BLE001
    logger.error("Analysis %s crashed", record.analysis_id, exc_info=True)
    try:
      await _get_analyses_repo(settings).update_analysis(record.analysis_id, status="failed")
    except SQLAlchemyError:
      logger.error("Could not mark analysis %s as failed", record.analysis_id, exc_info=True)
    progress_service.cleanup(record.analysis_id)


async def get_owned_analysis(analysis_id: str, caller: Caller, settings: Settings) -> AnalysisRecord:
  """Return the analysis when the caller owns it; malformed ids fail before storage access."""
  if not is_valid_uuid(analysis_id):
    raise RequestValidationFailed("Invalid analysis id format.")
  record = await _get_analyses_repo(settings).get_owned_analysis(analysis_id, user_id=caller.user_id, session_id=caller.session_id)
  if record is None:
    raise NotFoundOrForbidden(_ANALYSIS_NOT_FOUND_MSG)
  return record


async def list_history(caller: Caller, settings: Settings, *, limit: int = 20, offset: int = 0) -> tuple[list[AnalysisRecord], int]:
  return await _get_analyses_repo(settings).list_owned_analyses(user_id=caller.user_id, session_id=caller.session_id, limit=limit, offset=offset)
