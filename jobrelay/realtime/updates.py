"""Per-user and per-course push subscriptions mounted for a caller's lifetime."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

from jobrelay.jobs.backoff import RECONNECT_BASE_DELAY_MS, RECONNECT_MAX_DELAY_MS
from jobrelay.realtime.channel import CallLater, PushChannel
from jobrelay.realtime.contracts import BroadcastBinding, CallbackRef, PostgresChangeBinding, RealtimeClient

logger = logging.getLogger(__name__)


def _course_row(message: dict[str, Any]) -> dict[str, Any]:
  """Lift the updated course row out of a database change notification."""
  data = message.get("data") if isinstance(message.get("data"), dict) else message
  row = data.get("record") or data.get("new") or {}
  if not isinstance(row, dict):
    row = {}
  return {"courseId": row.get("id"), "status": row.get("status"), "title": row.get("title"), **row}


@dataclass(frozen=True)
class TopicRoute:
  """One channel to open per identity: topic template plus its event routing."""

  template: str
  broadcasts: tuple[BroadcastBinding, ...]
  postgres_changes: Callable[[str], tuple[PostgresChangeBinding, ...]] = field(default=lambda _identity: ())

  def topic(self, identity: str) -> str:
    return self.template.format(id=identity)


class RealtimeSubscriptions:
  """Mounts one `PushChannel` per topic for an identity and tears them down together."""

  topics: ClassVar[tuple[TopicRoute, ...]] = ()

  def __init__(
    self,
    client: RealtimeClient,
    identity: str | None,
    callbacks: Mapping[str, Callable[..., Any] | None] | None = None,
    *,
    base_delay_ms: int = RECONNECT_BASE_DELAY_MS,
    max_delay_ms: int = RECONNECT_MAX_DELAY_MS,
    call_later: CallLater | None = None,
  ) -> None:
    self._client = client
    self._identity = identity
    self._callbacks = CallbackRef(callbacks)
    self._base_delay_ms = base_delay_ms
    self._max_delay_ms = max_delay_ms
    self._call_later = call_later
    self._channels: list[PushChannel] = []

  @property
  def identity(self) -> str | None:
    return self._identity

  @property
  def channels(self) -> tuple[PushChannel, ...]:
    return tuple(self._channels)

  @property
  def mounted(self) -> bool:
    return bool(self._channels)

  def set_callbacks(self, **callbacks: Callable[..., Any] | None) -> None:
    """Swap the callbacks live channels deliver to, without resubscribing."""
    self._callbacks.set(callbacks)

  async def mount(self) -> None:
    if self._channels or not self._identity:
      return
    logger.debug("[realtime] Mounting %s for %s", type(self).__name__, self._identity)
    for route in self.topics:
      channel = PushChannel(
        self._client,
        route.topic(self._identity),
        callbacks=self._callbacks,
        broadcasts=route.broadcasts,
        postgres_changes=route.postgres_changes(self._identity),
        base_delay_ms=self._base_delay_ms,
        max_delay_ms=self._max_delay_ms,
        call_later=self._call_later,
      )
      self._channels.append(channel)
      await channel.open()

  async def unmount(self) -> None:
    channels, self._channels = self._channels, []
    for channel in channels:
      await channel.close()

  async def set_identity(self, identity: str | None) -> None:
    """Resubscribe for a different user or course."""
    if identity == self._identity:
      return
    await self.unmount()
    self._identity = identity
    await self.mount()

  async def __aenter__(self) -> RealtimeSubscriptions:
    await self.mount()
    return self

  async def __aexit__(self, *exc_info: object) -> None:
    await self.unmount()


class PushUpdates(RealtimeSubscriptions):
  """Job and course updates for one user.

  Callbacks: `on_job_update`, `on_job_progress`, `on_course_update`,
  `on_module_complete`, and `on_status` for channel state changes.
  """

  topics = (
    TopicRoute(
      template="user:{id}:jobs",
      broadcasts=(BroadcastBinding("job_update", "on_job_update"), BroadcastBinding("job_progress", "on_job_progress")),
    ),
    TopicRoute(
      template="user:{id}:courses",
      broadcasts=(BroadcastBinding("course_update", "on_course_update"), BroadcastBinding("module_complete", "on_module_complete")),
      postgres_changes=lambda user_id: (PostgresChangeBinding(event="UPDATE", schema="api", table="courses", filter=f"user_id=eq.{user_id}", callback_name="on_course_update", transform=_course_row),),
    ),
  )


class MessagingUpdates(RealtimeSubscriptions):
  """Messaging events for one user: `on_new_message`, `on_conversation_created`, `on_conversation_updated`."""

  topics = (
    TopicRoute(
      template="user:{id}:messaging",
      broadcasts=(
        BroadcastBinding("new_message", "on_new_message"),
        BroadcastBinding("conversation_created", "on_conversation_created"),
        BroadcastBinding("conversation_updated", "on_conversation_updated"),
      ),
    ),
  )


class CourseUpdates(RealtimeSubscriptions):
  """Shared-course events seen by every member: `on_course_update`, `on_module_complete`, `on_node_update`."""

  topics = (
    TopicRoute(
      template="course:{id}:updates",
      broadcasts=(
        BroadcastBinding("course_update", "on_course_update"),
        BroadcastBinding("module_complete", "on_module_complete"),
        BroadcastBinding("node_update", "on_node_update"),
      ),
    ),
  )
