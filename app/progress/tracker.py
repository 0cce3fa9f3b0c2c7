"""Per-analysis progress computation feeding the progress service."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from app.progress.events import MetricProgress, MetricStatus, ProgressRecord, metric_display_name, now_ms

if TYPE_CHECKING:
  from app.services.progress import ProgressService

logger = logging.getLogger(__name__)

BASE_PROGRESS = 5.0
METRICS_PROGRESS = 90.0
FINALIZING_PROGRESS = 5.0
GRANULAR_PERSIST_STEP = 25


def calculate_overall_progress(metric_status: Iterable[MetricProgress], *, total_metrics: int) -> float:
  """Blend per-metric state into a single 0-100 value.

  Starting the analysis is worth 5%, the metrics share 90% equally and the final 5% is
  granted once every metric is done. A processing metric contributes in proportion to
  its sub-progress; a failed metric counts as done.
  """
  if total_metrics <= 0:
    return 100.0

  per_metric = METRICS_PROGRESS / total_metrics
  total = BASE_PROGRESS
  done = 0
  for item in metric_status:
    if item.status.is_done:
      total += per_metric
      done += 1
    elif item.status is MetricStatus.PROCESSING:
      total += per_metric * item.progress / 100

  if done >= total_metrics:
    total += FINALIZING_PROGRESS

  return min(100.0, round(total, 2))


def granular_message(metric: str, sub_progress: float) -> str:
  name = metric_display_name(metric)
  if sub_progress < 30:
    return f"Initializing {name} analysis..."
  if sub_progress < 60:
    return f"Processing {name}..."
  if sub_progress < 90:
    return f"Finalizing {name} results..."
  return f"Completing {name}..."


class ProgressTracker:
  """Track metric evaluations for one analysis and publish each change."""

  def __init__(self, *, analysis_id: str, service: ProgressService) -> None:
    self.analysis_id = analysis_id
    self._service = service
    self._record: ProgressRecord | None = None

  @property
  def snapshot(self) -> ProgressRecord | None:
    return self._record

  async def initialize(self, metrics: Iterable[str]) -> ProgressRecord:
    metric_names = list(metrics)
    if not metric_names:
      raise ValueError("At least one metric is required to track progress.")

    self._record = ProgressRecord(
      analysis_id=self.analysis_id,
      overall_progress=BASE_PROGRESS,
      message="Initializing analysis...",
      completed_metrics=0,
      total_metrics=len(metric_names),
      metric_status=[MetricProgress(metric=name) for name in metric_names],
    )
    return await self._publish(self._record, persist=True)

  async def update_metric(self, metric: str, status: MetricStatus, progress: float = 0.0) -> ProgressRecord | None:
    record = self._record
    if record is None:
      return None

    item = self._find(record, metric)
    if item is None:
      logger.warning("Ignoring progress for unknown metric %s on analysis %s", metric, self.analysis_id)
      return None

    now = now_ms()
    item.status = status
    item.progress = 100.0 if status.is_done else progress
    if status is MetricStatus.PROCESSING:
      item.start_time = now
      item.end_time = None
      record.current_metric = metric
      record.message = f"Analyzing {metric_display_name(metric)}..."
    elif status.is_done:
      item.end_time = now

    record.completed_metrics = sum(1 for entry in record.metric_status if entry.status.is_done)
    if record.completed_metrics == record.total_metrics:
      record.current_metric = None
      record.message = "Finalizing analysis..."

    return await self._publish(record, persist=True)

  async def update_granular(self, metric: str, sub_progress: float) -> ProgressRecord | None:
    """Push a sub-progress tick; only every 25% step reaches the store."""
    record = self._record
    if record is None:
      return None

    item = self._find(record, metric)
    # Granular ticks only apply to the metric currently being evaluated.
    if item is None or item.status is not MetricStatus.PROCESSING:
      return None

    item.progress = max(0.0, min(100.0, sub_progress))
    record.message = granular_message(metric, item.progress)
    persist = item.progress % GRANULAR_PERSIST_STEP == 0
    return await self._publish(record, persist=persist)

  async def finish(self, message: str = "Analysis complete.") -> ProgressRecord | None:
    record = self._record
    if record is None:
      return None

    for item in record.metric_status:
      if not item.status.is_done:
        item.status = MetricStatus.FAILED
        item.end_time = now_ms()
    record.completed_metrics = record.total_metrics
    record.current_metric = None
    record.message = message
    return await self._publish(record, persist=True, overall=100.0)

  async def _publish(self, record: ProgressRecord, *, persist: bool, overall: float | None = None) -> ProgressRecord:
    record.overall_progress = overall if overall is not None else calculate_overall_progress(record.metric_status, total_metrics=record.total_metrics)
    record.timestamp = now_ms()
    # Listeners receive a copy so later in-place edits never leak into records already sent.
    published = record.model_copy(deep=True)
    await self._service.publish(published, persist=persist)
    return published

  @staticmethod
  def _find(record: ProgressRecord, metric: str) -> MetricProgress | None:
    for item in record.metric_status:
      if item.metric == metric:
        return item
    return None
