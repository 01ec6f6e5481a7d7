from __future__ import annotations

import asyncio

import httpx
import pytest

from jobrelay.core.cancellation import CancelSignal
from jobrelay.core.exceptions import DEGRADED_SERVICE_MESSAGE, DegradedServiceError, DeferredProtocolError, JobCanceledError, JobFailedError, RequestFailedError, TransportError
from jobrelay.jobs.backoff import BackoffScheduler
from jobrelay.jobs.client import JobClient
from jobrelay.storage.registry import JobRegistry
from jobrelay.storage.stores import InMemoryKeyValueStore


def _client(http: httpx.AsyncClient, sleep, registry: JobRegistry | None = None) -> JobClient:
  return JobClient(http, scheduler=BackoffScheduler(sleep=sleep), registry=registry)


@pytest.mark.anyio
async def test_deferred_job_is_polled_to_completion(backend, recording_sleep) -> None:
  backend.add("POST", "/courses/topics", (202, {"jobId": "job-42"}))
  backend.add("GET", "/jobs/job-42", (200, {"status": "queued"}), (200, {"status": "completed", "result": '{"overviewTopics":[]}'}))
  updates = []

  async with backend.client() as http:
    resolution = await _client(http, recording_sleep).submit_and_resolve(lambda: http.post("/courses/topics", json={"topic": "Rust"}), on_update=updates.append)

  assert resolution.result == {"overviewTopics": []}
  assert resolution.job is not None and resolution.job.status == "completed"
  assert [state.status for state in updates] == ["queued", "completed"]
  assert backend.paths() == ["/courses/topics", "/jobs/job-42", "/jobs/job-42"]
  assert recording_sleep.delays_ms == [2500]


@pytest.mark.anyio
async def test_submit_returns_only_the_result(backend, recording_sleep) -> None:
  backend.add("POST", "/courses", (202, {"data": {"job_id": "job-1"}}))
  backend.add("GET", "/jobs/job-1", (200, {"job": {"status": "succeeded", "result": {"courseId": "c-1"}}}))

  async with backend.client() as http:
    result = await _client(http, recording_sleep).submit(lambda: http.post("/courses"))

  assert result == {"courseId": "c-1"}


@pytest.mark.anyio
async def test_immediate_response_skips_polling(backend, recording_sleep) -> None:
  backend.add("POST", "/outline", (200, '"{\\"sections\\":[1,2]}"'))

  async with backend.client() as http:
    resolution = await _client(http, recording_sleep).submit_and_resolve(lambda: http.post("/outline"))

  assert resolution.job is None
  assert resolution.result == {"sections": [1, 2]}
  assert backend.paths() == ["/outline"]


@pytest.mark.anyio
async def test_disabled_async_processing_raises_degraded(backend, recording_sleep) -> None:
  backend.add("POST", "/courses/topics", (503, {"error": "async job processing is disabled right now"}))

  async with backend.client() as http:
    with pytest.raises(DegradedServiceError) as excinfo:
      await _client(http, recording_sleep).submit_and_resolve(lambda: http.post("/courses/topics"))

  assert str(excinfo.value) == DEGRADED_SERVICE_MESSAGE
  assert excinfo.value.kind == "degraded"
  assert backend.paths() == ["/courses/topics"]


@pytest.mark.anyio
async def test_error_response_raises_request_failed(backend, recording_sleep) -> None:
  backend.add("POST", "/courses", (400, {"error": "Topic is required"}))

  async with backend.client() as http:
    with pytest.raises(RequestFailedError, match="Topic is required") as excinfo:
      await _client(http, recording_sleep).submit_and_resolve(lambda: http.post("/courses"), error_label="create course")

  assert excinfo.value.status_code == 400
  assert excinfo.value.payload == {"error": "Topic is required"}


@pytest.mark.anyio
async def test_accepted_without_job_id_is_protocol_error(backend, recording_sleep) -> None:
  backend.add("POST", "/courses", (202, {"message": "working on it"}))

  async with backend.client() as http:
    with pytest.raises(DeferredProtocolError, match="Missing jobId"):
      await _client(http, recording_sleep).submit_and_resolve(lambda: http.post("/courses"))

  assert backend.paths() == ["/courses"]


@pytest.mark.anyio
async def test_failed_job_raises_with_backend_message(backend, recording_sleep) -> None:
  backend.add("GET", "/jobs/job-99", (200, {"status": "failed", "error": "timeout exceeded"}))

  async with backend.client() as http:
    with pytest.raises(JobFailedError, match="timeout exceeded") as excinfo:
      await _client(http, recording_sleep).poll("job-99")

  assert excinfo.value.job_id == "job-99"
  assert excinfo.value.state is not None and excinfo.value.state.status == "failed"


@pytest.mark.anyio
async def test_error_field_is_terminal_even_while_running(backend, recording_sleep) -> None:
  backend.add("GET", "/jobs/job-5", (200, {"status": "running", "error": {"message": "model crashed"}}))

  async with backend.client() as http:
    with pytest.raises(JobFailedError, match="model crashed"):
      await _client(http, recording_sleep).poll("job-5")

  assert recording_sleep.calls == []


@pytest.mark.anyio
async def test_empty_error_object_still_fails_the_job(backend, recording_sleep) -> None:
  backend.add("GET", "/jobs/job-8", (200, {"status": "running", "error": {}}))

  async with backend.client() as http:
    with pytest.raises(JobFailedError, match="Job failed.") as excinfo:
      await _client(http, recording_sleep).poll("job-8")

  assert str(excinfo.value) == "Job failed."
  assert recording_sleep.calls == []
  assert backend.paths() == ["/jobs/job-8"]


@pytest.mark.anyio
async def test_failed_without_message_uses_generic_text(backend, recording_sleep) -> None:
  backend.add("GET", "/jobs/job-6", (200, {"status": "cancelled"}))

  async with backend.client() as http:
    with pytest.raises(JobFailedError, match="Job failed."):
      await _client(http, recording_sleep).poll("job-6")


@pytest.mark.anyio
async def test_finished_at_counts_as_success(backend, recording_sleep) -> None:
  backend.add("GET", "/jobs/job-7", (200, {"status": "running", "finishedAt": "2026-01-01T00:00:00Z", "result": [1]}))

  async with backend.client() as http:
    state = await _client(http, recording_sleep).poll("job-7")

  assert state.result == [1]


@pytest.mark.anyio
async def test_status_url_from_response_is_used(backend, recording_sleep) -> None:
  backend.add("POST", "/courses", (202, {"jobId": "job-8", "statusUrl": "/v2/status/job-8"}))
  backend.add("GET", "/v2/status/job-8", (200, {"status": "completed", "result": "plain text"}))

  async with backend.client() as http:
    result = await _client(http, recording_sleep).submit(lambda: http.post("/courses"))

  assert result == "plain text"
  assert backend.paths("GET") == ["/v2/status/job-8"]


@pytest.mark.anyio
async def test_status_endpoint_error_raises_request_failed(backend, recording_sleep) -> None:
  async with backend.client() as http:
    with pytest.raises(RequestFailedError) as excinfo:
      await _client(http, recording_sleep).poll("job-gone")

  assert excinfo.value.status_code == 404
  assert str(excinfo.value) == "Not found"


@pytest.mark.anyio
async def test_poll_requires_job_id(backend, recording_sleep) -> None:
  async with backend.client() as http:
    with pytest.raises(DeferredProtocolError):
      await _client(http, recording_sleep).poll("")


@pytest.mark.anyio
async def test_network_failure_is_transport_error(backend, recording_sleep) -> None:
  def refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)

  backend.add("POST", "/courses", refuse)

  async with backend.client() as http:
    with pytest.raises(TransportError) as excinfo:
      await _client(http, recording_sleep).submit(lambda: http.post("/courses"))

  assert excinfo.value.kind == "transport"


@pytest.mark.anyio
async def test_abort_during_wait_stops_polling(backend, blocking_sleep, settle) -> None:
  backend.add("POST", "/courses", (202, {"jobId": "job-1"}))
  backend.add("GET", "/jobs/job-1", (200, {"status": "running"}))
  signal = CancelSignal()

  async with backend.client() as http:
    task = asyncio.ensure_future(_client(http, blocking_sleep).submit(lambda: http.post("/courses"), signal=signal))
    for _ in range(50):
      if blocking_sleep.calls:
        break
      await settle()
    assert blocking_sleep.delays_ms == [2500]

    signal.abort("user left")
    with pytest.raises(JobCanceledError, match="user left"):
      await task
    await settle()

  assert backend.paths() == ["/courses", "/jobs/job-1"]


@pytest.mark.anyio
async def test_abort_during_request_cancels_it(backend, recording_sleep, settle) -> None:
  started = asyncio.Event()

  async def hang(request: httpx.Request) -> httpx.Response:
    started.set()
    await asyncio.Event().wait()
    return httpx.Response(200, json={})

  backend.add("GET", "/jobs/job-2", hang)
  signal = CancelSignal()

  async with backend.client() as http:
    task = asyncio.ensure_future(_client(http, recording_sleep).poll("job-2", signal=signal))
    await started.wait()
    signal.abort()

    with pytest.raises(JobCanceledError):
      await task

  assert len(backend.requests) == 1


@pytest.mark.anyio
async def test_already_aborted_signal_sends_nothing(backend, recording_sleep) -> None:
  signal = CancelSignal()
  signal.abort()

  async with backend.client() as http:
    with pytest.raises(JobCanceledError):
      await _client(http, recording_sleep).submit(lambda: http.post("/courses"), signal=signal)

  assert backend.requests == []


@pytest.mark.anyio
async def test_deferred_job_is_registered_and_tracked(backend, recording_sleep) -> None:
  registry = JobRegistry(InMemoryKeyValueStore())
  backend.add("POST", "/courses", (202, {"jobId": "job-3", "statusUrl": "/jobs/job-3"}))
  backend.add("GET", "/jobs/job-3", (200, {"status": "processing"}), (200, {"status": "done", "result": {"course": {"id": "c-3"}}}))

  async with backend.client() as http:
    await _client(http, recording_sleep, registry).submit(lambda: http.post("/courses"), user_id="user-1", course_title="Intro to Rust")

  [entry] = registry.list("user-1")
  assert entry.job_id == "job-3"
  assert entry.status == "completed"
  assert entry.status_url == "/jobs/job-3"
  assert entry.course_title == "Intro to Rust"
  assert entry.course_id == "c-3"
  assert entry.created_at
