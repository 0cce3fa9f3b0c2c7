"""Tests for the compact JSON used by responses and stream frames."""

from __future__ import annotations

import pytest

from app.core.json import CompactJSONResponse, dumps_compact


def test_dumps_compact_has_no_whitespace_and_keeps_unicode() -> None:
  assert dumps_compact({"message": "Análisis", "progress": [1, 2.5]}) == '{"message":"Análisis","progress":[1,2.5]}'


def test_non_finite_numbers_are_rejected() -> None:
  with pytest.raises(ValueError):
    dumps_compact({"progress": float("nan")})


def test_response_body_matches_stream_encoding() -> None:
  response = CompactJSONResponse({"detail": "ok", "requestId": None})
  assert response.body == b'{"detail":"ok","requestId":null}'
