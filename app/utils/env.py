"""Local .env support for development.

Values from the file only fill gaps: anything already exported in the process wins
unless the caller asks to override. ``LENS_ENV_FILE`` points at an alternative file.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

logger = logging.getLogger(__name__)

ENV_FILE_VAR = "LENS_ENV_FILE"
_KEY_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_INLINE_COMMENT_RE = re.compile(r"\s#")
_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}


def default_env_path() -> Path:
  override = os.getenv(ENV_FILE_VAR)
  if override:
    return Path(override).expanduser()
  return Path(__file__).resolve().parents[2] / ".env"


def _unquote(value: str) -> str:
  if value[0] == "'":
    return value[1:-1]
  body = value[1:-1]
  # Double-quoted values understand a handful of backslash escapes.
  return re.sub(r"\\(.)", lambda match: _ESCAPES.get(match.group(1), match.group(0)), body)


def parse_env_line(raw: str) -> tuple[str, str] | None:
  """Split a ``KEY=value`` line; blanks and comments give None, malformed lines raise ValueError."""
  line = raw.strip()
  if not line or line.startswith("#"):
    return None
  line = line.removeprefix("export ").lstrip()
  key, sep, value = line.partition("=")
  key = key.strip()
  if not sep or not _KEY_RE.fullmatch(key):
    raise ValueError(f"expected KEY=VALUE, got {raw.strip()!r}")

  value = value.strip()
  if len(value) >= 2 and value[0] in "'\"" and value[-1] == value[0]:
    return key, _unquote(value)
  comment = _INLINE_COMMENT_RE.search(value)
  if comment:
    value = value[: comment.start()].rstrip()
  return key, value


def load_env_file(path: Path, *, override: bool = False) -> list[str]:
  """Export the file's variables and return the keys that were set."""
  if not path.is_file():
    return []

  applied: list[str] = []
  for lineno, raw_line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
    try:
      parsed = parse_env_line(raw_line)
    except ValueError as exc:
      logger.warning("Skipping %s:%d: %s", path, lineno, exc)
      continue
    if parsed is None:
      continue
    key, value = parsed
    if key in os.environ and not override:
      continue
    os.environ[key] = value
    applied.append(key)
  return applied
