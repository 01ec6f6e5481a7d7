"""Build the network clients and job components from settings."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx
from supabase import AsyncClient, acreate_client

from jobrelay.config import Settings
from jobrelay.jobs.backoff import BackoffScheduler
from jobrelay.jobs.client import JobClient
from jobrelay.jobs.queue import QueueStatus, QueueStatusMonitor
from jobrelay.jobs.reconciler import JobReconciler
from jobrelay.realtime.contracts import RealtimeClient
from jobrelay.realtime.updates import PushUpdates
from jobrelay.storage.registry import JobRegistry
from jobrelay.storage.stores import FileKeyValueStore

logger = logging.getLogger(__name__)


def build_http_client(settings: Settings, access_token: str | None = None) -> httpx.AsyncClient:
  """Build the backend HTTP client; callers own and close it."""
  headers = {"accept": "application/json"}
  if access_token:
    headers["authorization"] = f"Bearer {access_token}"
  # Never pick up proxy variables from the environment for backend calls.
  return httpx.AsyncClient(base_url=settings.api_base_url, headers=headers, timeout=settings.request_timeout_seconds, trust_env=False)


def build_backoff_scheduler(settings: Settings) -> BackoffScheduler:
  return BackoffScheduler(delays_ms=settings.poll_delays_ms)


def build_registry(settings: Settings) -> JobRegistry:
  return JobRegistry(FileKeyValueStore(settings.registry_dir))


def build_job_client(settings: Settings, http: httpx.AsyncClient, *, registry: JobRegistry | None = None) -> JobClient:
  return JobClient(http, scheduler=build_backoff_scheduler(settings), registry=registry, status_path_template=settings.status_path_template)


def build_reconciler(settings: Settings, http: httpx.AsyncClient, *, user_id: str | None = None) -> JobReconciler:
  """Wire a reconciler over a file-backed registry."""
  registry = build_registry(settings)
  return JobReconciler(build_job_client(settings, http, registry=registry), registry=registry, user_id=user_id)


def build_queue_monitor(settings: Settings, http: httpx.AsyncClient, on_status: Callable[[QueueStatus], Any] | None = None) -> QueueStatusMonitor:
  return QueueStatusMonitor(http, path=settings.queue_status_path, interval_ms=settings.queue_poll_interval_ms, scheduler=build_backoff_scheduler(settings), on_status=on_status)


def build_push_updates(settings: Settings, client: RealtimeClient, user_id: str | None, **callbacks: Any) -> PushUpdates:
  """Per-user job and course subscriptions using the configured reconnect backoff."""
  return PushUpdates(client, user_id, callbacks, base_delay_ms=settings.reconnect_base_delay_ms, max_delay_ms=settings.reconnect_max_delay_ms)


async def build_realtime_client(settings: Settings) -> AsyncClient:
  """Create the async Supabase client whose realtime channels carry push updates."""
  if not settings.supabase_url or not settings.supabase_key:
    raise ValueError("JOBRELAY_SUPABASE_URL and JOBRELAY_SUPABASE_KEY must be set for realtime updates.")
  logger.info("Connecting realtime client url=%s", settings.supabase_url)
  return await acreate_client(settings.supabase_url, settings.supabase_key)
