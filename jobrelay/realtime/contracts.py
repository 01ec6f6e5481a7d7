"""Contracts between push subscriptions and the realtime client they run on."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol

ChannelStatus = Literal["idle", "connecting", "subscribed", "error", "timeout", "reconnecting", "closed"]

SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
TIMED_OUT = "TIMED_OUT"
CLOSED = "CLOSED"

EventCallback = Callable[[dict[str, Any]], None]
StatusCallback = Callable[[ChannelStatus], None]
SubscribeCallback = Callable[..., None]


class RealtimeChannel(Protocol):
  """The subset of a realtime channel used here (matches supabase-py's `AsyncRealtimeChannel`)."""

  def on_broadcast(self, event: str, callback: Callable[[dict[str, Any]], None]) -> RealtimeChannel:
    """Register a handler for a named broadcast event."""

  def on_postgres_changes(self, event: str, callback: Callable[[dict[str, Any]], None], table: str = "*", schema: str = "public", filter: str | None = None) -> RealtimeChannel:
    """Register a handler for database change notifications."""

  async def subscribe(self, callback: SubscribeCallback | None = None) -> RealtimeChannel:
    """Join the channel; `callback(state, error)` receives subscription state changes."""


class RealtimeClient(Protocol):
  """Factory and owner of realtime channels (supabase-py `AsyncClient` satisfies this)."""

  def channel(self, topic: str, params: dict[str, Any] | None = None) -> RealtimeChannel:
    """Create a channel for `topic`."""

  async def remove_channel(self, channel: RealtimeChannel) -> None:
    """Unsubscribe and drop a channel."""


@dataclass(frozen=True)
class BroadcastBinding:
  """Route a broadcast event to the named callback."""

  event: str
  callback_name: str


@dataclass(frozen=True)
class PostgresChangeBinding:
  """Route a database change notification to the named callback."""

  event: str
  schema: str
  table: str
  filter: str | None
  callback_name: str
  transform: Callable[[dict[str, Any]], dict[str, Any]] | None = None


class CallbackRef:
  """One-slot holder for the caller's latest callbacks, read at delivery time."""

  def __init__(self, callbacks: Mapping[str, Callable[..., Any] | None] | None = None) -> None:
    self.current: dict[str, Callable[..., Any]] = {}
    self.set(callbacks or {})

  def set(self, callbacks: Mapping[str, Callable[..., Any] | None]) -> None:
    """Replace every callback at once; None entries are dropped."""
    self.current = {name: callback for name, callback in callbacks.items() if callback is not None}

  def get(self, name: str) -> Callable[..., Any] | None:
    return self.current.get(name)
