"""Display-side interpolation so progress bars glide instead of jumping."""

from __future__ import annotations

import time
from collections.abc import Callable


def ease_in_out_cubic(t: float) -> float:
  t = max(0.0, min(1.0, t))
  if t < 0.5:
    return 4 * t * t * t
  return 1 - ((-2 * t + 2) ** 3) / 2


class SmoothProgress:
  """Interpolate from the displayed value to each new target over ``duration`` seconds."""

  def __init__(self, duration: float = 0.5, *, clock: Callable[[], float] = time.monotonic) -> None:
    if duration <= 0:
      raise ValueError("duration must be positive")
    self._duration = duration
    self._clock = clock
    self._start_value = 0.0
    self._target = 0.0
    self._started_at: float | None = None

  @property
  def target(self) -> float:
    return self._target

  def set_target(self, target: float) -> None:
    # Restart from wherever the bar currently is so retargeting never jumps.
    self._start_value = self.value()
    self._target = target
    self._started_at = self._clock()

  def value(self) -> float:
    if self._started_at is None:
      return self._start_value
    elapsed = self._clock() - self._started_at
    fraction = min(elapsed / self._duration, 1.0)
    return self._start_value + (self._target - self._start_value) * ease_in_out_cubic(fraction)

  @property
  def settled(self) -> bool:
    return self._started_at is None or self._clock() - self._started_at >= self._duration
