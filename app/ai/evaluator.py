"""Per-metric content evaluation through an LLM."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any, Final

from app.ai.backoff import DEFAULT_DELAYS, retry_with_backoff
from app.ai.json_parser import parse_json_with_fallback
from app.ai.providers.base import AIModel

logger = logging.getLogger(__name__)

DEFAULT_METRICS: Final[tuple[str, ...]] = ("logic", "practical", "complexity", "interest", "care")
COGNITIVE_LOAD_METRIC: Final[str] = "cognitive_load"

METRIC_INSTRUCTIONS: Final[dict[str, str]] = {
  "logic": "Evaluate the logical structure of the material: ordering of ideas, soundness of arguments and transitions between parts.",
  "practical": "Evaluate the practical value: how directly a learner can apply the material to real tasks.",
  "complexity": "Evaluate the depth and complexity of the content relative to its apparent audience.",
  "interest": "Evaluate engagement: whether the material holds attention through examples, questions and pacing.",
  "care": "Evaluate care for the learner: attention to detail, clarity of wording and overall quality of presentation.",
  "cognitive_load": "Evaluate cognitive load: balance of topic difficulty, removal of extraneous detail, use of examples and structure.",
}

_SYSTEM_PROMPT: Final[str] = (
  "You are an expert instructional designer reviewing educational material. "
  'Answer with a single JSON object: {"score": <number 0-10>, "comment": "<one paragraph>", '
  '"examples": ["<short quote>", ...], "suggestions": ["<actionable improvement>", ...]}. '
  "Output JSON only, no markdown."
)

_TITLE_PROMPT: Final[str] = "Suggest a short title (at most eight words) for the following educational material. Reply with the title only.\n\n{content}"
_FALLBACK_TITLE: Final[str] = "Educational material"


class MetricParseError(ValueError):
  """The model answer did not contain a usable score."""


@dataclass
class MetricResult:
  metric: str
  score: float
  comment: str
  examples: list[str] = field(default_factory=list)
  suggestions: list[str] = field(default_factory=list)
  model: str | None = None
  duration_ms: int | None = None

  def as_json(self) -> dict[str, Any]:
    payload = asdict(self)
    payload.pop("metric")
    return payload


def select_metrics(*, enable_cognitive_load: bool) -> list[str]:
  metrics = list(DEFAULT_METRICS)
  if enable_cognitive_load:
    metrics.append(COGNITIVE_LOAD_METRIC)
  return metrics


def build_metric_prompt(metric: str, content: str) -> str:
  instruction = METRIC_INSTRUCTIONS.get(metric)
  if instruction is None:
    raise ValueError(f"Unknown metric '{metric}'.")
  return f"{instruction}\n\nMaterial:\n\"\"\"\n{content}\n\"\"\""


def _string_list(value: Any) -> list[str]:
  if not isinstance(value, list):
    return []
  return [str(item).strip() for item in value if str(item).strip()]


def parse_metric_result(metric: str, raw: str) -> MetricResult:
  """Parse a model answer into a MetricResult, clamping the score into 0-10."""
  cleaned = AIModel.strip_json_fences(raw)
  try:
    payload = parse_json_with_fallback(cleaned)
  except json.JSONDecodeError as exc:
    raise MetricParseError(f"{metric}: answer is not JSON") from exc

  if not isinstance(payload, dict):
    raise MetricParseError(f"{metric}: answer is not a JSON object")

  try:
    score = float(payload.get("score"))
  except (TypeError, ValueError) as exc:
    raise MetricParseError(f"{metric}: missing numeric score") from exc

  score = max(0.0, min(10.0, score))
  comment = str(payload.get("comment") or "").strip()
  return MetricResult(metric=metric, score=score, comment=comment, examples=_string_list(payload.get("examples")), suggestions=_string_list(payload.get("suggestions")))


class MetricEvaluator:
  """Evaluate content against metrics with one model."""

  def __init__(self, model: AIModel, *, retry_delays: Sequence[float] = DEFAULT_DELAYS) -> None:
    self._model = model
    self._retry_delays = retry_delays

  @property
  def model_name(self) -> str:
    return self._model.name

  async def evaluate(self, metric: str, content: str) -> MetricResult:
    prompt = build_metric_prompt(metric, content)
    started = time.monotonic()
    response = await retry_with_backoff(lambda: self._model.generate(prompt, system=_SYSTEM_PROMPT), delays=self._retry_delays, label=f"metric {metric}")
    result = parse_metric_result(metric, response.content)
    result.model = self._model.name
    result.duration_ms = int((time.monotonic() - started) * 1000)
    return result

  async def generate_title(self, content: str) -> str:
    """Best-effort title; falls back to a generic label when the model fails."""
    try:
      response = await retry_with_backoff(lambda: self._model.generate(_TITLE_PROMPT.format(content=content[:4000])), delays=self._retry_delays, label="title")
    except Exception:  # noqa: BLE001
      logger.warning("Title generation failed with model %s", self._model.name, exc_info=True)
      return _FALLBACK_TITLE
    title = response.content.strip().strip('"').strip()
    return title[:200] or _FALLBACK_TITLE
