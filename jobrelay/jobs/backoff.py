"""Delay schedules and cancellable waits for polling and reconnects."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from jobrelay.config import DEFAULT_POLL_DELAYS_MS
from jobrelay.core.cancellation import CancelSignal, run_cancellable

logger = logging.getLogger(__name__)

RECONNECT_BASE_DELAY_MS = 1000
RECONNECT_MAX_DELAY_MS = 30000

SleepFn = Callable[[float], Awaitable[None]]


def poll_delay_ms(attempt: int, delays_ms: Sequence[int] = DEFAULT_POLL_DELAYS_MS) -> int:
  """Return the wait before poll number `attempt + 1` (0-based); the last delay repeats forever."""
  if not delays_ms:
    raise ValueError("Poll delay schedule must not be empty.")
  return delays_ms[min(max(attempt, 0), len(delays_ms) - 1)]


def reconnect_delay_ms(attempt: int, *, base_ms: int = RECONNECT_BASE_DELAY_MS, max_ms: int = RECONNECT_MAX_DELAY_MS) -> int:
  """Exponential reconnect delay for the 1-based `attempt`, capped at `max_ms`."""
  exponent = max(attempt, 1) - 1
  # Cap the exponent so very long outages do not build huge integers.
  if exponent > 32:
    return max_ms
  return min(max_ms, base_ms * (2**exponent))


class BackoffScheduler:
  """Hands out poll delays and performs waits that a `CancelSignal` can interrupt."""

  def __init__(self, *, delays_ms: Sequence[int] = DEFAULT_POLL_DELAYS_MS, sleep: SleepFn = asyncio.sleep) -> None:
    if not delays_ms:
      raise ValueError("Poll delay schedule must not be empty.")
    self._delays_ms = tuple(delays_ms)
    self._sleep = sleep

  @property
  def delays_ms(self) -> tuple[int, ...]:
    return self._delays_ms

  def delay_ms(self, attempt: int) -> int:
    return poll_delay_ms(attempt, self._delays_ms)

  async def wait(self, ms: int, signal: CancelSignal | None = None) -> None:
    """Sleep for `ms` milliseconds; raise `JobCanceledError` as soon as `signal` aborts."""
    await run_cancellable(self._sleep(ms / 1000.0), signal)

  async def wait_for_attempt(self, attempt: int, signal: CancelSignal | None = None) -> int:
    """Wait out the delay for `attempt` and return how long that was."""
    delay = self.delay_ms(attempt)
    logger.debug("Next poll in %dms attempt=%d", delay, attempt + 1)
    await self.wait(delay, signal)
    return delay
