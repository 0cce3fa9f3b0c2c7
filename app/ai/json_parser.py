"""Lenient JSON parsing helpers for LLM outputs."""

from __future__ import annotations

import json
import re
from typing import Any

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def parse_json_with_fallback(raw: str) -> Any:
  """Parse JSON, recovering from surrounding prose and trailing commas."""
  # Prefer strict parsing so valid JSON is preserved without mutation.
  try:
    return json.loads(raw)
  except json.JSONDecodeError as exc:
    last_error = exc

  candidate = _extract_json_block(raw)
  if candidate is None:
    raise last_error

  try:
    return json.loads(candidate)
  except json.JSONDecodeError:
    pass

  # Trailing commas are the most common defect in model-written JSON.
  return json.loads(_TRAILING_COMMA_RE.sub(r"\1", candidate))


def _extract_json_block(raw: str) -> str | None:
  """Locate the first balanced JSON object/array for recovery parsing."""
  start_index: int | None = None
  depth = 0
  in_string = False
  escape = False

  for index, char in enumerate(raw):
    if start_index is None:
      if char in "{[":
        start_index = index
        depth = 1
      continue

    if in_string:
      if escape:
        escape = False
      elif char == "\\":
        escape = True
      elif char == '"':
        in_string = False
      continue

    if char == '"':
      in_string = True
    elif char in "{[":
      depth += 1
    elif char in "}]":
      depth -= 1
      if depth == 0:
        return raw[start_index : index + 1]

  return None
