"""Cooperative cancellation signal shared by polling, waits and watchers."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable
from typing import TypeVar

from jobrelay.core.exceptions import JobCanceledError

T = TypeVar("T")

_DEFAULT_REASON = "Aborted"


class CancelSignal:
  """One-shot abort flag that awaiting code can race against."""

  def __init__(self) -> None:
    self._event = asyncio.Event()
    self._reason: str | None = None

  @property
  def aborted(self) -> bool:
    return self._event.is_set()

  @property
  def reason(self) -> str:
    return self._reason or _DEFAULT_REASON

  def abort(self, reason: str | None = None) -> None:
    """Trip the signal; later calls keep the first reason."""
    if self._event.is_set():
      return
    self._reason = reason
    self._event.set()

  def raise_if_aborted(self) -> None:
    if self._event.is_set():
      raise JobCanceledError(self.reason)

  async def wait(self) -> None:
    await self._event.wait()


async def _drain(*tasks: asyncio.Future) -> None:
  """Cancel and reap helper tasks so none outlive the race."""
  for task in tasks:
    if not task.done():
      task.cancel()
  await asyncio.gather(*tasks, return_exceptions=True)


async def run_cancellable(awaitable: Awaitable[T], signal: CancelSignal | None) -> T:
  """Await `awaitable` unless `signal` aborts first, in which case raise `JobCanceledError`."""
  if signal is None:
    return await awaitable

  if signal.aborted:
    # Close the never-started coroutine so it is not reported as un-awaited.
    if inspect.iscoroutine(awaitable):
      awaitable.close()
    raise JobCanceledError(signal.reason)

  work = asyncio.ensure_future(awaitable)
  aborted = asyncio.ensure_future(signal.wait())
  try:
    done, _ = await asyncio.wait({work, aborted}, return_when=asyncio.FIRST_COMPLETED)
  except asyncio.CancelledError:
    await _drain(work, aborted)
    raise

  if work in done:
    await _drain(aborted)
    return work.result()

  await _drain(work)
  raise JobCanceledError(signal.reason)
