"""Progress record types shared by the tracker, the store and the SSE transport."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

METRIC_DISPLAY_NAMES: dict[str, str] = {
  "logic": "Logic Structure",
  "practical": "Practical Value",
  "complexity": "Complexity Level",
  "interest": "Engagement Factor",
  "care": "Quality of Care",
  "cognitive_load": "Cognitive Load",
}


def _to_camel(string: str) -> str:
  """Convert snake_case to camelCase so browser consumers read the same keys they send."""
  parts = string.split("_")
  if not parts:
    return string
  return parts[0] + "".join(part[:1].upper() + part[1:] for part in parts[1:])


def now_ms() -> int:
  return int(time.time() * 1000)


def metric_display_name(metric: str) -> str:
  return METRIC_DISPLAY_NAMES.get(metric, metric.replace("_", " ").title())


class MetricStatus(str, Enum):
  PENDING = "pending"
  PROCESSING = "processing"
  COMPLETED = "completed"
  FAILED = "failed"

  @property
  def is_done(self) -> bool:
    return self in (MetricStatus.COMPLETED, MetricStatus.FAILED)


class MetricProgress(BaseModel):
  """Status of a single metric evaluation inside an analysis."""

  model_config = ConfigDict(populate_by_name=True, alias_generator=_to_camel)

  metric: str
  status: MetricStatus = MetricStatus.PENDING
  progress: float = Field(0.0, ge=0, le=100)
  start_time: int | None = None
  end_time: int | None = None


class ProgressRecord(BaseModel):
  """Point-in-time snapshot of an analysis' progress."""

  model_config = ConfigDict(populate_by_name=True, alias_generator=_to_camel)

  analysis_id: str
  overall_progress: float = Field(0.0, ge=0, le=100)
  message: str = ""
  current_metric: str | None = None
  completed_metrics: int = Field(0, ge=0)
  total_metrics: int = Field(0, ge=0)
  metric_status: list[MetricProgress] = Field(default_factory=list)
  timestamp: int = Field(default_factory=now_ms)

  @property
  def is_complete(self) -> bool:
    return self.overall_progress >= 100

  def as_wire(self) -> dict[str, Any]:
    """Serialize with camelCase keys for JSON responses and SSE frames."""
    return self.model_dump(mode="json", by_alias=True)
