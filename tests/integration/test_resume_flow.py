from __future__ import annotations

import asyncio

import pytest

from jobrelay.core.cancellation import CancelSignal
from jobrelay.core.exceptions import JobCanceledError
from jobrelay.jobs.backoff import BackoffScheduler
from jobrelay.jobs.client import JobClient
from jobrelay.jobs.reconciler import JobReconciler
from jobrelay.realtime.updates import PushUpdates
from jobrelay.storage.registry import JobRegistry
from jobrelay.storage.stores import FileKeyValueStore


@pytest.mark.anyio
async def test_abandoned_job_is_resumed_and_completed_by_push(tmp_path, backend, blocking_sleep, realtime, timers, settle) -> None:
  backend.add("POST", "/courses", (202, {"jobId": "job-77", "statusUrl": "/jobs/job-77"}))
  backend.add("GET", "/jobs/job-77", (200, {"status": "running", "progress": 10}))

  # First session submits and walks away mid-poll.
  async with backend.client() as http:
    registry = JobRegistry(FileKeyValueStore(tmp_path))
    client = JobClient(http, scheduler=BackoffScheduler(sleep=blocking_sleep), registry=registry)
    signal = CancelSignal()
    task = asyncio.ensure_future(client.submit(lambda: http.post("/courses", json={"topic": "Rust"}), signal=signal, user_id="u1", course_title="Rust"))
    for _ in range(50):
      if blocking_sleep.calls:
        break
      await settle()
    signal.abort("navigated away")
    with pytest.raises(JobCanceledError):
      await task

  [entry] = JobRegistry(FileKeyValueStore(tmp_path)).list("u1")
  assert (entry.job_id, entry.status, entry.course_title) == ("job-77", "running", "Rust")

  # Second session resumes from disk and hears the result over realtime.
  outcomes = []
  async with backend.client() as http:
    registry = JobRegistry(FileKeyValueStore(tmp_path))
    client = JobClient(http, scheduler=BackoffScheduler(sleep=blocking_sleep), registry=registry)
    reconciler = JobReconciler(client, user_id="u1", on_complete=outcomes.append)
    updates = PushUpdates(realtime, "u1", {"on_job_update": reconciler.handle_push_update}, call_later=timers)

    async with updates:
      realtime.latest("user:u1:jobs").emit_state("SUBSCRIBED")
      [watch] = reconciler.resume()
      await settle()

      realtime.latest("user:u1:jobs").broadcast("job_update", {"jobId": "job-77", "status": "completed", "result": '{"courseId":"c-77"}'})
      realtime.latest("user:u1:jobs").broadcast("job_update", {"jobId": "job-77", "status": "completed"})
      await watch

    await reconciler.close()

  [outcome] = outcomes
  assert outcome.source == "push"
  assert outcome.result == {"courseId": "c-77"}
  assert registry.list("u1")[0].status == "completed"

  reconciler.acknowledge("job-77")
  assert JobRegistry(FileKeyValueStore(tmp_path)).list("u1") == []
  assert realtime.live() == []
