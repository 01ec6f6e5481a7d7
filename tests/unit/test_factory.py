from __future__ import annotations

from dataclasses import replace

import pytest

from jobrelay.config import get_settings
from jobrelay.factory import build_http_client, build_push_updates, build_queue_monitor, build_realtime_client, build_reconciler, build_registry
from jobrelay.storage.stores import FileKeyValueStore


@pytest.fixture
def settings(tmp_path):
  return replace(get_settings(), api_base_url="https://api.example.com", registry_dir=str(tmp_path / "registry"), supabase_url=None, supabase_key=None, reconnect_base_delay_ms=250, reconnect_max_delay_ms=1000, request_timeout_seconds=12.0)


@pytest.mark.anyio
async def test_http_client_carries_base_url_and_token(settings) -> None:
  async with build_http_client(settings, access_token="tok") as http:
    assert str(http.base_url) == "https://api.example.com/"
    assert http.headers["authorization"] == "Bearer tok"
    assert http.timeout.read == 12.0
    assert not http.trust_env


@pytest.mark.anyio
async def test_http_client_without_token_sends_no_authorization(settings) -> None:
  async with build_http_client(settings) as http:
    assert "authorization" not in http.headers


def test_registry_is_file_backed(settings, tmp_path) -> None:
  registry = build_registry(settings)
  registry.upsert("u1", {"jobId": "j1"})

  assert list((tmp_path / "registry").iterdir())
  assert isinstance(registry._store, FileKeyValueStore)


@pytest.mark.anyio
async def test_reconciler_shares_one_registry(settings) -> None:
  async with build_http_client(settings) as http:
    reconciler = build_reconciler(settings, http, user_id="u1")

  assert reconciler.user_id == "u1"
  assert reconciler._registry is reconciler._client.registry


@pytest.mark.anyio
async def test_push_updates_use_configured_backoff(settings, realtime, timers) -> None:
  updates = build_push_updates(settings, realtime, "u1", on_job_update=print)
  updates._call_later = timers
  await updates.mount()

  realtime.latest("user:u1:jobs").emit_state("CHANNEL_ERROR")

  assert timers.delays_ms == [250]
  await updates.unmount()


@pytest.mark.anyio
async def test_realtime_client_requires_supabase_settings(settings) -> None:
  with pytest.raises(ValueError, match="SUPABASE"):
    await build_realtime_client(settings)


@pytest.mark.anyio
async def test_queue_monitor_uses_configured_path_and_interval(settings) -> None:
  settings = replace(settings, queue_status_path="/api/queue/status", queue_poll_interval_ms=5000)
  async with build_http_client(settings) as http:
    monitor = build_queue_monitor(settings, http)

  assert monitor._path == "/api/queue/status"
  assert monitor._interval_ms == 5000
  assert not monitor.running
