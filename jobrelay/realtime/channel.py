"""Reconnecting, topic-scoped push subscription."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Sequence
from typing import Any

from jobrelay.jobs.backoff import RECONNECT_BASE_DELAY_MS, RECONNECT_MAX_DELAY_MS, reconnect_delay_ms
from jobrelay.realtime.contracts import CHANNEL_ERROR, SUBSCRIBED, TIMED_OUT, BroadcastBinding, CallbackRef, ChannelStatus, PostgresChangeBinding, RealtimeChannel, RealtimeClient

logger = logging.getLogger(__name__)

CallLater = Callable[[float, Callable[[], None]], Any]


def _unwrap_broadcast(message: Any) -> dict[str, Any]:
  """Return the event payload from a broadcast envelope (`{"event", "payload", "type"}`)."""
  if isinstance(message, dict):
    inner = message.get("payload")
    if "event" in message and isinstance(inner, dict):
      return inner
    return message
  return {"value": message}


def _state_name(state: Any) -> str:
  """Normalize enum or string subscription states to their wire names."""
  return str(getattr(state, "value", state)).upper()


class PushChannel:
  """Owns at most one live channel for a topic and replaces it on failure.

  Lifecycle: connecting -> subscribed -> (error | timeout) -> reconnecting ->
  connecting ... until `close()`, after which the channel stays closed.
  """

  def __init__(
    self,
    client: RealtimeClient,
    topic: str,
    *,
    callbacks: CallbackRef,
    broadcasts: Sequence[BroadcastBinding] = (),
    postgres_changes: Sequence[PostgresChangeBinding] = (),
    base_delay_ms: int = RECONNECT_BASE_DELAY_MS,
    max_delay_ms: int = RECONNECT_MAX_DELAY_MS,
    call_later: CallLater | None = None,
  ) -> None:
    self._client = client
    self._topic = topic
    self._callbacks = callbacks
    self._broadcasts = tuple(broadcasts)
    self._postgres_changes = tuple(postgres_changes)
    self._base_delay_ms = base_delay_ms
    self._max_delay_ms = max_delay_ms
    self._call_later = call_later
    self._channel: RealtimeChannel | None = None
    self._generation = 0
    self._attempt = 0
    self._status: ChannelStatus = "idle"
    self._reconnect_handle: Any = None
    self._reconnect_task: asyncio.Task | None = None
    self._callback_tasks: set[asyncio.Task] = set()
    self._closed = False
    self.last_reconnect_delay_ms: int | None = None

  @property
  def topic(self) -> str:
    return self._topic

  @property
  def status(self) -> ChannelStatus:
    return self._status

  @property
  def reconnect_attempt(self) -> int:
    return self._attempt

  @property
  def reconnect_pending(self) -> bool:
    return self._reconnect_handle is not None

  @property
  def closed(self) -> bool:
    return self._closed

  def _set_status(self, status: ChannelStatus) -> None:
    if status == self._status:
      return
    self._status = status
    logger.debug("[realtime] %s status=%s", self._topic, status)
    self._invoke("on_status", status)

  async def open(self) -> None:
    """Start the first connection."""
    self._attempt = 0
    await self._connect()

  async def reconnect_now(self) -> None:
    """Drop any pending reconnect timer and reconnect immediately."""
    self._cancel_reconnect_timer()
    await self._connect()

  async def _connect(self) -> None:
    if self._closed:
      return

    await self._teardown_channel()
    # close() may have run while the old channel was being removed.
    if self._closed:
      return
    self._set_status("connecting")

    self._generation += 1
    generation = self._generation
    channel = self._client.channel(self._topic)
    for binding in self._broadcasts:
      channel.on_broadcast(binding.event, self._broadcast_handler(binding))
    for change in self._postgres_changes:
      channel.on_postgres_changes(change.event, self._postgres_handler(change), table=change.table, schema=change.schema, filter=change.filter)
    self._channel = channel

    try:
      await channel.subscribe(lambda state, error=None: self._handle_state(generation, state, error))
    except Exception as exc:  # noqa: BLE001
      logger.warning("[realtime] %s subscribe failed: %s", self._topic, exc)
      self._handle_state(generation, CHANNEL_ERROR, exc)

    if self._closed and self._channel is channel:
      logger.debug("[realtime] %s closed while subscribing", self._topic)
      await self._teardown_channel()

  def _handle_state(self, generation: int, state: Any, error: Exception | None = None) -> None:
    # Late callbacks from a replaced channel must not drive the current one.
    if generation != self._generation or self._closed:
      return

    name = _state_name(state)
    if name == SUBSCRIBED:
      self._attempt = 0
      self._set_status("subscribed")
      logger.debug("[realtime] Subscribed to %s", self._topic)
    elif name in (CHANNEL_ERROR, TIMED_OUT):
      if error is not None:
        logger.debug("[realtime] %s %s: %s", self._topic, name, error)
      self._set_status("error" if name == CHANNEL_ERROR else "timeout")
      self._schedule_reconnect()

  def _schedule_reconnect(self) -> None:
    if self._closed or self._reconnect_handle is not None:
      return

    self._attempt += 1
    delay = reconnect_delay_ms(self._attempt, base_ms=self._base_delay_ms, max_ms=self._max_delay_ms)
    self.last_reconnect_delay_ms = delay
    call_later = self._call_later or asyncio.get_running_loop().call_later
    self._reconnect_handle = call_later(delay / 1000.0, self._fire_reconnect)
    self._set_status("reconnecting")
    logger.debug("[realtime] %s reconnect scheduled in %dms attempt=%d", self._topic, delay, self._attempt)

  def _fire_reconnect(self) -> None:
    self._reconnect_handle = None
    if self._closed:
      return
    self._reconnect_task = asyncio.ensure_future(self._connect())
    self._reconnect_task.add_done_callback(self._log_task_error)

  def _cancel_reconnect_timer(self) -> None:
    if self._reconnect_handle is not None:
      self._reconnect_handle.cancel()
      self._reconnect_handle = None

  async def _teardown_channel(self) -> None:
    channel, self._channel = self._channel, None
    if channel is None:
      return
    try:
      await self._client.remove_channel(channel)
    except Exception as exc:  # noqa: BLE001
      logger.warning("[realtime] %s channel removal failed: %s", self._topic, exc)

  async def close(self) -> None:
    """Cancel pending reconnects and drop the live channel; safe to call repeatedly."""
    if self._closed:
      return
    self._closed = True
    self._cancel_reconnect_timer()

    task, self._reconnect_task = self._reconnect_task, None
    if task is not None and not task.done() and task is not asyncio.current_task():
      task.cancel()
      await asyncio.gather(task, return_exceptions=True)

    await self._teardown_channel()
    self._status = "closed"
    self._invoke("on_status", "closed")

  def _broadcast_handler(self, binding: BroadcastBinding) -> Callable[[Any], None]:
    def handle(message: Any) -> None:
      payload = _unwrap_broadcast(message)
      logger.debug("[realtime] %s %s: %s", self._topic, binding.event, payload)
      self._invoke(binding.callback_name, payload)

    return handle

  def _postgres_handler(self, change: PostgresChangeBinding) -> Callable[[Any], None]:
    def handle(message: Any) -> None:
      payload = message if isinstance(message, dict) else {"value": message}
      if change.transform is not None:
        payload = change.transform(payload)
      logger.debug("[realtime] %s %s %s.%s: %s", self._topic, change.event, change.schema, change.table, payload)
      self._invoke(change.callback_name, payload)

    return handle

  def _invoke(self, name: str, argument: Any) -> None:
    """Call the caller's current callback; failures are logged, never raised into the client."""
    callback = self._callbacks.get(name)
    if callback is None:
      return
    try:
      outcome = callback(argument)
    except Exception as exc:  # noqa: BLE001
      logger.error("[realtime] %s callback %s failed: %s", self._topic, name, exc, exc_info=True)
      return

    if inspect.isawaitable(outcome):
      task = asyncio.ensure_future(outcome)
      self._callback_tasks.add(task)
      task.add_done_callback(self._callback_tasks.discard)
      task.add_done_callback(self._log_task_error)

  def _log_task_error(self, task: asyncio.Future) -> None:
    if task.cancelled():
      return
    exc = task.exception()
    if exc is not None:
      logger.error("[realtime] %s background task failed: %s", self._topic, exc, exc_info=exc)
