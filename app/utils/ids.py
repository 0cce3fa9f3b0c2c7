"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_id() -> str:
  """Return a new row identifier."""
  return str(uuid.uuid4())


def generate_worker_id(prefix: str) -> str:
  """Return a unique worker identifier used for job locks."""
  return f"{prefix}-{uuid.uuid4().hex[:12]}"


def is_valid_uuid(value: str) -> bool:
  """Return True when the value is a canonical UUID string."""
  try:
    parsed = uuid.UUID(value)
  except (TypeError, ValueError, AttributeError):
    return False
  return str(parsed) == value.lower()
