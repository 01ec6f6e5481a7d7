"""Backend queue load, polled so callers can warn about long waits before submitting."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from jobrelay.config import DEFAULT_QUEUE_POLL_INTERVAL_MS, DEFAULT_QUEUE_STATUS_PATH
from jobrelay.core.cancellation import CancelSignal, run_cancellable
from jobrelay.core.exceptions import JobCanceledError
from jobrelay.jobs.backoff import BackoffScheduler
from jobrelay.utils.payloads import decode_json_body

logger = logging.getLogger(__name__)


def _number(raw: Any) -> float | None:
  if isinstance(raw, bool) or not isinstance(raw, int | float):
    return None
  return float(raw)


@dataclass(frozen=True)
class QueueStatus:
  """Queue load as last reported; the defaults mean "no warning"."""

  is_high_usage: bool = False
  credit_utilization: float = 0.0
  estimated_wait_minutes: float | None = None
  credits_used: float | None = None
  max_credits: float | None = None

  @classmethod
  def from_payload(cls, payload: Any) -> QueueStatus:
    if not isinstance(payload, Mapping):
      return cls()
    return cls(
      is_high_usage=payload.get("isHighUsage") is True,
      credit_utilization=_number(payload.get("creditUtilization")) or 0.0,
      estimated_wait_minutes=_number(payload.get("estimatedWaitMinutes")),
      credits_used=_number(payload.get("creditsUsed")),
      max_credits=_number(payload.get("maxCredits")),
    )


class QueueStatusMonitor:
  """Polls the queue status endpoint on a fixed interval.

  A failed fetch keeps the last known status; `loaded` turns true after the
  first attempt either way. `on_status(status)` fires after every successful fetch.
  """

  def __init__(
    self,
    http: httpx.AsyncClient,
    *,
    path: str = DEFAULT_QUEUE_STATUS_PATH,
    interval_ms: int = DEFAULT_QUEUE_POLL_INTERVAL_MS,
    scheduler: BackoffScheduler | None = None,
    on_status: Callable[[QueueStatus], Any] | None = None,
  ) -> None:
    if interval_ms <= 0:
      raise ValueError("Queue poll interval must be positive.")
    self._http = http
    self._path = path
    self._interval_ms = interval_ms
    self._scheduler = scheduler or BackoffScheduler()
    self._on_status = on_status
    self._latest = QueueStatus()
    self._loaded = False
    self._task: asyncio.Task | None = None
    self._signal: CancelSignal | None = None

  @property
  def latest(self) -> QueueStatus:
    return self._latest

  @property
  def loaded(self) -> bool:
    return self._loaded

  @property
  def running(self) -> bool:
    return self._task is not None and not self._task.done()

  async def refresh(self, signal: CancelSignal | None = None) -> QueueStatus:
    """Fetch the queue status once."""
    try:
      response = await run_cancellable(self._http.get(self._path, headers={"cache-control": "no-store"}), signal)
    except httpx.RequestError as exc:
      logger.warning("Queue status request failed: %s", exc)
      self._loaded = True
      return self._latest

    self._loaded = True
    if not response.is_success:
      logger.debug("Queue status unavailable status_code=%s", response.status_code)
      return self._latest

    self._latest = QueueStatus.from_payload(decode_json_body(response.content))
    if self._latest.is_high_usage:
      logger.info("Queue under high usage utilization=%.2f wait_minutes=%s", self._latest.credit_utilization, self._latest.estimated_wait_minutes)
    if self._on_status is not None:
      try:
        self._on_status(self._latest)
      except Exception as exc:  # noqa: BLE001
        logger.error("Queue status callback failed: %s", exc, exc_info=True)
    return self._latest

  def start(self) -> asyncio.Task:
    """Fetch now and then every interval until `stop`."""
    if self._task is not None and not self._task.done():
      return self._task
    self._signal = CancelSignal()
    self._task = asyncio.ensure_future(self._run(self._signal))
    return self._task

  async def _run(self, signal: CancelSignal) -> None:
    try:
      while True:
        await self.refresh(signal)
        await self._scheduler.wait(self._interval_ms, signal)
    except JobCanceledError:
      logger.debug("Queue status polling stopped")

  async def stop(self) -> None:
    task, self._task = self._task, None
    if self._signal is not None:
      self._signal.abort("Queue status polling stopped")
      self._signal = None
    if task is not None:
      await asyncio.gather(task, return_exceptions=True)

  async def __aenter__(self) -> QueueStatusMonitor:
    self.start()
    return self

  async def __aexit__(self, *exc_info: object) -> None:
    await self.stop()
