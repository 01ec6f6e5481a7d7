"""Shared fakes for the backend, the realtime service and timers."""

from __future__ import annotations

import asyncio
import inspect
import os
from collections.abc import Callable
from typing import Any

import httpx
import pytest

os.environ.setdefault("JOBRELAY_API_BASE_URL", "http://backend.test")

BASE_URL = "http://backend.test"


# Force anyio to use asyncio
@pytest.fixture
def anyio_backend():
  return "asyncio"


async def settle(rounds: int = 5) -> None:
  """Let scheduled tasks and callbacks run."""
  for _ in range(rounds):
    await asyncio.sleep(0)


class ScriptedBackend:
  """MockTransport handler that answers each route from a queue; the last answer repeats."""

  def __init__(self) -> None:
    self.routes: dict[tuple[str, str], list[Any]] = {}
    self.requests: list[httpx.Request] = []

  def add(self, method: str, path: str, *answers: Any) -> ScriptedBackend:
    """Queue answers: `(status, body)` tuples or callables taking the request."""
    self.routes.setdefault((method.upper(), path), []).extend(answers)
    return self

  def paths(self, method: str | None = None) -> list[str]:
    return [request.url.path for request in self.requests if method is None or request.method == method]

  async def handler(self, request: httpx.Request) -> httpx.Response:
    self.requests.append(request)
    queue = self.routes.get((request.method, request.url.path))
    if not queue:
      return httpx.Response(404, json={"error": "Not found"})
    answer = queue.pop(0) if len(queue) > 1 else queue[0]
    if callable(answer):
      answer = answer(request)
      if inspect.isawaitable(answer):
        answer = await answer
    if isinstance(answer, httpx.Response):
      return answer
    status, body = answer
    if isinstance(body, str | bytes):
      return httpx.Response(status, content=body)
    return httpx.Response(status, json=body)

  def client(self) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url=BASE_URL)


class RecordingSleep:
  """Stand-in for `asyncio.sleep` that records requested delays and returns at once."""

  def __init__(self) -> None:
    self.calls: list[float] = []

  async def __call__(self, seconds: float) -> None:
    self.calls.append(seconds)
    await asyncio.sleep(0)

  @property
  def delays_ms(self) -> list[int]:
    return [round(seconds * 1000) for seconds in self.calls]


class BlockingSleep(RecordingSleep):
  """Records the delay and then never returns on its own."""

  async def __call__(self, seconds: float) -> None:
    self.calls.append(seconds)
    await asyncio.Event().wait()


class FakeTimer:
  def __init__(self, delay: float, callback: Callable[[], None]) -> None:
    self.delay = delay
    self.callback = callback
    self.cancelled = False
    self.fired = False

  def cancel(self) -> None:
    self.cancelled = True


class FakeTimers:
  """`call_later` replacement that only fires when told to."""

  def __init__(self) -> None:
    self.scheduled: list[FakeTimer] = []

  def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
    timer = FakeTimer(delay, callback)
    self.scheduled.append(timer)
    return timer

  @property
  def delays_ms(self) -> list[int]:
    return [round(timer.delay * 1000) for timer in self.scheduled]

  @property
  def pending(self) -> list[FakeTimer]:
    return [timer for timer in self.scheduled if not timer.cancelled and not timer.fired]

  def fire_next(self) -> None:
    timer = self.pending[0]
    timer.fired = True
    timer.callback()


class FakeChannel:
  """Records handler registrations and lets tests drive subscription state."""

  def __init__(self, topic: str, params: dict[str, Any] | None = None) -> None:
    self.topic = topic
    self.params = params
    self.broadcast_handlers: dict[str, Callable[[Any], None]] = {}
    self.postgres_handlers: list[dict[str, Any]] = []
    self.subscribe_callback: Callable[..., None] | None = None
    self.removed = False
    self.fail_subscribe: Exception | None = None

  def on_broadcast(self, event: str, callback: Callable[[Any], None]) -> FakeChannel:
    self.broadcast_handlers[event] = callback
    return self

  def on_postgres_changes(self, event: str, callback: Callable[[Any], None], table: str = "*", schema: str = "public", filter: str | None = None) -> FakeChannel:
    self.postgres_handlers.append({"event": event, "callback": callback, "table": table, "schema": schema, "filter": filter})
    return self

  async def subscribe(self, callback: Callable[..., None] | None = None) -> FakeChannel:
    if self.fail_subscribe is not None:
      raise self.fail_subscribe
    self.subscribe_callback = callback
    return self

  def emit_state(self, state: str, error: Exception | None = None) -> None:
    assert self.subscribe_callback is not None
    self.subscribe_callback(state, error)

  def broadcast(self, event: str, payload: dict[str, Any]) -> None:
    self.broadcast_handlers[event]({"event": event, "payload": payload, "type": "broadcast"})

  def postgres_change(self, message: dict[str, Any]) -> None:
    for handler in self.postgres_handlers:
      handler["callback"](message)


class FakeRealtimeClient:
  """In-memory realtime client; every `channel()` call creates a new `FakeChannel`."""

  def __init__(self) -> None:
    self.channels: list[FakeChannel] = []

  def channel(self, topic: str, params: dict[str, Any] | None = None) -> FakeChannel:
    channel = FakeChannel(topic, params)
    self.channels.append(channel)
    return channel

  async def remove_channel(self, channel: FakeChannel) -> None:
    channel.removed = True

  def live(self, topic: str | None = None) -> list[FakeChannel]:
    return [channel for channel in self.channels if not channel.removed and (topic is None or channel.topic == topic)]

  def latest(self, topic: str) -> FakeChannel:
    return [channel for channel in self.channels if channel.topic == topic][-1]


@pytest.fixture
def backend() -> ScriptedBackend:
  return ScriptedBackend()


@pytest.fixture
def realtime() -> FakeRealtimeClient:
  return FakeRealtimeClient()


@pytest.fixture
def timers() -> FakeTimers:
  return FakeTimers()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
  return RecordingSleep()


@pytest.fixture
def blocking_sleep() -> BlockingSleep:
  return BlockingSleep()


@pytest.fixture(name="settle")
def settle_fixture() -> Callable[..., Any]:
  return settle
