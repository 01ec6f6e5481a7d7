"""Submit operations, follow deferred jobs to a terminal state, and surface failures."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from jobrelay.config import DEFAULT_STATUS_PATH_TEMPLATE
from jobrelay.core.cancellation import CancelSignal, run_cancellable
from jobrelay.core.exceptions import DegradedServiceError, DeferredProtocolError, JobFailedError, RequestFailedError, TransportError
from jobrelay.jobs.backoff import BackoffScheduler
from jobrelay.jobs.classifier import ResponseClassification, classify_response
from jobrelay.jobs.models import JobState
from jobrelay.utils.payloads import decode_json_body, first_raw_string, maybe_parse_json

if TYPE_CHECKING:
  from jobrelay.storage.registry import JobRegistry

logger = logging.getLogger(__name__)

RequestFn = Callable[[], Awaitable[httpx.Response]]
UpdateCallback = Callable[[JobState], None]


@dataclass(frozen=True)
class Submission:
  """An accepted operation response; `job_id` is set only when the work was deferred."""

  payload: Any
  job_id: str | None = None
  status_url: str | None = None

  @property
  def deferred(self) -> bool:
    return self.job_id is not None

  @property
  def result(self) -> Any:
    return maybe_parse_json(self.payload)


@dataclass(frozen=True)
class AsyncJobResolution:
  """What a submission finally produced; `job` is None for immediate responses."""

  payload: Any
  job: JobState | None
  result: Any


class JobClient:
  """Drives submit and poll over an injected `httpx.AsyncClient`."""

  def __init__(self, http: httpx.AsyncClient, *, scheduler: BackoffScheduler | None = None, registry: JobRegistry | None = None, status_path_template: str = DEFAULT_STATUS_PATH_TEMPLATE) -> None:
    self._http = http
    self._scheduler = scheduler or BackoffScheduler()
    self._registry = registry
    self._status_path_template = status_path_template

  @property
  def registry(self) -> JobRegistry | None:
    return self._registry

  def status_url(self, job_id: str) -> str:
    return self._status_path_template.format(job_id=quote(job_id, safe=""))

  async def _send(self, request: Awaitable[httpx.Response], signal: CancelSignal | None) -> httpx.Response:
    """Run one request under the cancel signal, wrapping network failures."""
    try:
      return await run_cancellable(request, signal)
    except httpx.RequestError as exc:
      raise TransportError(f"Could not reach the backend: {exc}") from exc

  async def submit_and_resolve(
    self,
    request_fn: RequestFn,
    *,
    signal: CancelSignal | None = None,
    on_update: UpdateCallback | None = None,
    error_label: str | None = None,
    user_id: str | None = None,
    course_id: str | None = None,
    course_title: str | None = None,
  ) -> AsyncJobResolution:
    """Perform the operation request and follow it to a final result."""
    response = await self.send_operation(request_fn, signal=signal)
    return await self.resolve_async_job_response(response, signal=signal, on_update=on_update, error_label=error_label, user_id=user_id, course_id=course_id, course_title=course_title)

  async def send_operation(self, request_fn: RequestFn, *, signal: CancelSignal | None = None) -> httpx.Response:
    """Send the operation request itself; nothing is sent when `signal` is already aborted."""
    if signal is not None:
      signal.raise_if_aborted()
    return await self._send(request_fn(), signal)

  async def submit(self, request_fn: RequestFn, **kwargs: Any) -> Any:
    """Like `submit_and_resolve` but return only the final result."""
    resolution = await self.submit_and_resolve(request_fn, **kwargs)
    return resolution.result

  async def resolve_async_job_response(
    self,
    response: httpx.Response,
    *,
    signal: CancelSignal | None = None,
    on_update: UpdateCallback | None = None,
    error_label: str | None = None,
    user_id: str | None = None,
    course_id: str | None = None,
    course_title: str | None = None,
  ) -> AsyncJobResolution:
    """Classify an operation response and, when deferred, poll the job it names."""
    submission = self.accept_response(response, error_label=error_label)
    if not submission.deferred:
      return AsyncJobResolution(payload=submission.payload, job=None, result=submission.result)

    self.register(submission, user_id=user_id, course_id=course_id, course_title=course_title)
    job = await self._poll(submission.job_id, signal=signal, on_update=on_update, status_url=submission.status_url, user_id=user_id)
    return AsyncJobResolution(payload=submission.payload, job=job, result=job.result)

  def accept_response(self, response: httpx.Response, *, error_label: str | None = None) -> Submission:
    """Classify an operation response without following the job it may name."""
    payload = decode_json_body(response.content)
    classification = classify_response(response.status_code, payload, error_label=error_label)
    self._raise_for_classification(classification)

    if classification.kind == "immediate":
      return Submission(payload=payload)

    if not classification.job_id:
      raise DeferredProtocolError("Missing jobId from async response.")

    logger.info("Operation deferred job_id=%s status_code=%s", classification.job_id, classification.status_code)
    return Submission(payload=payload, job_id=classification.job_id, status_url=classification.status_url)

  def register(self, submission: Submission, *, user_id: str | None, course_id: str | None = None, course_title: str | None = None, registry: JobRegistry | None = None) -> None:
    """Remember a deferred job so a later session can resume it."""
    registry = registry if registry is not None else self._registry
    if not submission.deferred or not user_id or registry is None:
      return
    registry.upsert(user_id, {"jobId": submission.job_id, "statusUrl": submission.status_url, "courseId": course_id, "courseTitle": course_title})

  def _raise_for_classification(self, classification: ResponseClassification) -> None:
    if classification.kind == "degraded":
      logger.warning("Async processing disabled by backend status_code=%s", classification.status_code)
      raise DegradedServiceError(classification.message or "")
    if classification.kind == "failed":
      raise RequestFailedError(classification.message or f"Request failed ({classification.status_code})", status_code=classification.status_code, payload=classification.payload)

  async def poll(self, job_id: str, *, signal: CancelSignal | None = None, on_update: UpdateCallback | None = None, status_url: str | None = None) -> JobState:
    """Query the job status until it is terminal; return the completed state."""
    return await self._poll(job_id, signal=signal, on_update=on_update, status_url=status_url, user_id=None)

  async def fetch_state(self, job_id: str, *, signal: CancelSignal | None = None, status_url: str | None = None) -> JobState:
    """Fetch one status observation without waiting or evaluating terminal conditions."""
    response = await self._send(self._http.get(status_url or self.status_url(job_id)), signal)
    payload = decode_json_body(response.content)

    if not response.is_success:
      message = first_raw_string(payload, ("error", "message")) or f"Failed to fetch job ({response.status_code})"
      raise RequestFailedError(message, status_code=response.status_code, payload=payload)

    state = JobState.from_payload(payload)
    if state is None:
      raise RequestFailedError("Invalid job status response.", status_code=response.status_code, payload=payload)
    # Status bodies often omit the id they were fetched for.
    return state if state.job_id else replace(state, job_id=job_id)

  async def _poll(self, job_id: str, *, signal: CancelSignal | None, on_update: UpdateCallback | None, status_url: str | None, user_id: str | None) -> JobState:
    if not job_id:
      raise DeferredProtocolError("Missing jobId")

    attempt = 0
    last_status: str | None = None
    while True:
      if signal is not None:
        signal.raise_if_aborted()

      state = await self.fetch_state(job_id, signal=signal, status_url=status_url)
      if on_update is not None:
        on_update(state)

      if state.status and state.status != last_status:
        logger.debug("Job status changed job_id=%s status=%s", job_id, state.status)
        last_status = state.status
        if user_id and self._registry is not None:
          self._registry.upsert(user_id, {"jobId": job_id, "status": state.status, "courseId": state.course_id})

      if state.is_failed:
        logger.info("Job failed job_id=%s error=%s", job_id, state.failure_message)
        raise JobFailedError(state.failure_message, job_id=job_id, state=state)

      if state.is_succeeded:
        logger.info("Job completed job_id=%s polls=%d", job_id, attempt + 1)
        return state.with_parsed_result()

      await self._scheduler.wait_for_attempt(attempt, signal)
      attempt += 1
