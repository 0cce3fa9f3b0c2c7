"""Retry logic for rate-limited model calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from openai import APIConnectionError, APITimeoutError, InternalServerError, RateLimitError

T = TypeVar("T")
logger = logging.getLogger(__name__)

DEFAULT_DELAYS: tuple[float, ...] = (1.0, 2.0, 4.0)
RETRYABLE_ERRORS = (RateLimitError, APITimeoutError, APIConnectionError, InternalServerError)


async def retry_with_backoff(func: Callable[[], Awaitable[T]], *, delays: Sequence[float] = DEFAULT_DELAYS, label: str = "model call") -> T:
  """
  Execute a coroutine factory, retrying transient provider errors.

  Non-retryable errors propagate immediately; the final attempt's error propagates as-is.
  """
  for attempt, delay in enumerate(delays):
    try:
      return await func()
    except RETRYABLE_ERRORS as exc:
      logger.warning("Retry attempt %d/%d for %s after %s. Retrying in %ss...", attempt + 1, len(delays), label, type(exc).__name__, delay)
      await asyncio.sleep(delay)

  # Final attempt
  return await func()
