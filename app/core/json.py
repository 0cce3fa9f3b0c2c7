"""Compact JSON shared by HTTP responses and stream frames."""

from __future__ import annotations

import json
from typing import Any

from fastapi.responses import JSONResponse


def dumps_compact(content: Any) -> str:
  """Serialize without whitespace; NaN and infinity are rejected rather than emitted."""
  return json.dumps(content, ensure_ascii=False, allow_nan=False, indent=None, separators=(",", ":"))


class CompactJSONResponse(JSONResponse):
  """JSONResponse whose body matches the frames sent on the progress stream."""

  def render(self, content: Any) -> bytes:
    return dumps_compact(content).encode("utf-8")
