"""Merge poll and push observations of the same jobs into one completion stream."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from jobrelay.core.cancellation import CancelSignal, run_cancellable
from jobrelay.core.exceptions import JobCanceledError, JobClientError, JobFailedError, RequestFailedError
from jobrelay.jobs.client import JobClient, RequestFn
from jobrelay.jobs.models import JobState
from jobrelay.realtime.contracts import CallbackRef

if TYPE_CHECKING:
  from jobrelay.storage.registry import JobRegistry

logger = logging.getLogger(__name__)

ResolutionSource = Literal["poll", "push"]

# Status endpoint answers meaning the backend no longer knows the job.
_FORGOTTEN_JOB_STATUS_CODES = frozenset({400, 404})


@dataclass(frozen=True)
class JobOutcome:
  """The first terminal observation of a job, from whichever path saw it first."""

  job_id: str
  state: JobState | None
  error: JobClientError | None
  source: ResolutionSource

  @property
  def succeeded(self) -> bool:
    return self.error is None

  @property
  def result(self) -> Any:
    return self.state.result if self.state is not None else None


@dataclass(frozen=True)
class _Watch:
  task: asyncio.Task
  signal: CancelSignal


class JobReconciler:
  """Watches jobs by polling while accepting push updates for the same jobs.

  `on_complete(outcome)` fires exactly once per job id; whichever path
  observes a terminal state first wins and a pending poll is aborted.
  `on_update(state)` receives non-terminal observations from both paths.
  """

  def __init__(
    self,
    client: JobClient,
    *,
    registry: JobRegistry | None = None,
    user_id: str | None = None,
    on_complete: Callable[[JobOutcome], Any] | None = None,
    on_update: Callable[[JobState], Any] | None = None,
  ) -> None:
    self._client = client
    self._registry = registry if registry is not None else client.registry
    self._user_id = user_id
    self._callbacks = CallbackRef({"on_complete": on_complete, "on_update": on_update})
    self._resolved: dict[str, JobOutcome] = {}
    self._watches: dict[str, _Watch] = {}
    self._last_status: dict[str, str] = {}
    self._callback_tasks: set[asyncio.Task] = set()
    self._waiters: dict[str, asyncio.Future] = {}

  @property
  def user_id(self) -> str | None:
    return self._user_id

  @property
  def watching(self) -> tuple[str, ...]:
    return tuple(self._watches)

  def set_callbacks(self, *, on_complete: Callable[[JobOutcome], Any] | None = None, on_update: Callable[[JobState], Any] | None = None) -> None:
    self._callbacks.set({"on_complete": on_complete, "on_update": on_update})

  def is_resolved(self, job_id: str) -> bool:
    return job_id in self._resolved

  def outcome(self, job_id: str) -> JobOutcome | None:
    return self._resolved.get(job_id)

  def watch(self, job_id: str, *, status_url: str | None = None) -> asyncio.Task | None:
    """Start polling a job unless it is already resolved or being watched."""
    if not job_id or job_id in self._resolved:
      return None
    existing = self._watches.get(job_id)
    if existing is not None:
      return existing.task

    signal = CancelSignal()
    task = asyncio.ensure_future(self._run_watch(job_id, status_url, signal))
    watch = _Watch(task=task, signal=signal)
    self._watches[job_id] = watch
    task.add_done_callback(lambda finished: self._finish_watch(job_id, watch, finished))
    logger.debug("Watching job job_id=%s", job_id)
    return task

  def _finish_watch(self, job_id: str, watch: _Watch, task: asyncio.Task) -> None:
    if self._watches.get(job_id) is watch:
      del self._watches[job_id]
    if not task.cancelled() and task.exception() is not None:
      logger.error("Job watch crashed job_id=%s", job_id, exc_info=task.exception())

  async def _run_watch(self, job_id: str, status_url: str | None, signal: CancelSignal) -> None:
    try:
      state = await self._client.poll(job_id, signal=signal, on_update=self._handle_poll_update, status_url=status_url)
    except JobCanceledError:
      logger.debug("Job watch stopped job_id=%s resolved=%s", job_id, job_id in self._resolved)
      return
    except RequestFailedError as exc:
      if exc.status_code in _FORGOTTEN_JOB_STATUS_CODES:
        logger.info("Backend no longer knows job job_id=%s status_code=%s", job_id, exc.status_code)
        self._remove_entry(job_id)
      self.resolve(job_id, None, exc, "poll")
      return
    except JobFailedError as exc:
      self.resolve(job_id, exc.state, exc, "poll")
      return
    except JobClientError as exc:
      self.resolve(job_id, None, exc, "poll")
      return

    self.resolve(job_id, state, None, "poll")

  def _handle_poll_update(self, state: JobState) -> None:
    if state.job_id and state.job_id in self._resolved:
      return
    self._record_status(state)
    if not state.is_terminal:
      self._invoke("on_update", state)

  def handle_push_update(self, payload: Any) -> JobOutcome | None:
    """Accept a pushed job payload; wire this as the `on_job_update` callback."""
    state = JobState.from_payload(payload)
    if state is None or not state.job_id:
      logger.debug("Ignoring push update without a job id: %s", payload)
      return None
    if state.job_id in self._resolved:
      return None

    if not state.is_terminal:
      self._record_status(state)
      self._invoke("on_update", state)
      return None

    state = state.with_parsed_result()
    error = JobFailedError(state.failure_message, job_id=state.job_id, state=state) if state.is_failed else None
    return self.resolve(state.job_id, state, error, "push")

  def resolve(self, job_id: str, state: JobState | None, error: JobClientError | None, source: ResolutionSource) -> JobOutcome | None:
    """Record the first terminal observation of a job; later ones return None."""
    if job_id in self._resolved:
      logger.debug("Duplicate resolution ignored job_id=%s source=%s", job_id, source)
      return None

    outcome = JobOutcome(job_id=job_id, state=state, error=error, source=source)
    self._resolved[job_id] = outcome

    watch = self._watches.pop(job_id, None)
    if watch is not None and source == "push":
      watch.signal.abort("Job resolved by push update")

    waiter = self._waiters.pop(job_id, None)
    if waiter is not None and not waiter.done():
      waiter.set_result(outcome)

    if state is not None:
      self._record_status(state, job_id=job_id)
    logger.info("Job resolved job_id=%s source=%s succeeded=%s", job_id, source, outcome.succeeded)
    self._invoke("on_complete", outcome)
    return outcome

  async def submit(
    self,
    request_fn: RequestFn,
    *,
    signal: CancelSignal | None = None,
    error_label: str | None = None,
    course_id: str | None = None,
    course_title: str | None = None,
  ) -> Any:
    """Send an operation and follow any deferred job through this reconciler.

    The result comes from whichever of poll or push reaches a terminal state
    first, so a job completed over push is reported once and not polled again.
    Aborting `signal` stops the poll but leaves the job registered for `resume`.
    """
    response = await self._client.send_operation(request_fn, signal=signal)
    submission = self._client.accept_response(response, error_label=error_label)
    if not submission.deferred:
      return submission.result

    self._client.register(submission, user_id=self._user_id, course_id=course_id, course_title=course_title, registry=self._registry)
    outcome = await self.wait_for(submission.job_id, status_url=submission.status_url, signal=signal)
    if outcome.error is not None:
      raise outcome.error
    return outcome.result

  async def wait_for(self, job_id: str, *, status_url: str | None = None, signal: CancelSignal | None = None) -> JobOutcome:
    """Watch a job if needed and wait for its outcome."""
    outcome = self._resolved.get(job_id)
    if outcome is not None:
      return outcome

    waiter = self._waiters.get(job_id)
    if waiter is None:
      waiter = asyncio.get_running_loop().create_future()
      self._waiters[job_id] = waiter
    started = job_id not in self._watches
    self.watch(job_id, status_url=status_url)

    try:
      return await run_cancellable(asyncio.shield(waiter), signal)
    except JobCanceledError:
      watch = self._watches.get(job_id)
      if started and watch is not None:
        watch.signal.abort(signal.reason if signal is not None else None)
      raise

  def resume(self, user_id: str | None = None) -> list[asyncio.Task]:
    """Watch every job the registry remembers for the user."""
    if user_id is not None:
      self._user_id = user_id
    if self._registry is None or not self._user_id:
      return []

    entries = self._registry.list(self._user_id)
    tasks = [task for task in (self.watch(entry.job_id, status_url=entry.status_url) for entry in entries) if task is not None]
    logger.info("Resumed job watches user_id=%s registered=%d watching=%d", self._user_id, len(entries), len(tasks))
    return tasks

  def acknowledge(self, job_id: str) -> None:
    """Forget a job locally once its outcome has been shown."""
    self._remove_entry(job_id)
    self._last_status.pop(job_id, None)

  async def join(self) -> None:
    """Wait for every outstanding watch and callback task."""
    while self._watches or self._callback_tasks:
      await asyncio.gather(*(watch.task for watch in list(self._watches.values())), *self._callback_tasks, return_exceptions=True)

  async def close(self) -> None:
    """Abort all outstanding watches."""
    watches = list(self._watches.values())
    self._watches.clear()
    for watch in watches:
      watch.signal.abort("Reconciler closed")
    waiters = list(self._waiters.values())
    self._waiters.clear()
    for waiter in waiters:
      if not waiter.done():
        waiter.set_exception(JobCanceledError("Reconciler closed"))
    await asyncio.gather(*(watch.task for watch in watches), return_exceptions=True)

  def _record_status(self, state: JobState, *, job_id: str | None = None) -> None:
    job_id = job_id or state.job_id
    if not job_id or not state.status or self._last_status.get(job_id) == state.status:
      return
    self._last_status[job_id] = state.status
    if self._registry is not None:
      self._registry.upsert(self._user_id, {"jobId": job_id, "status": state.status, "courseId": state.course_id})

  def _remove_entry(self, job_id: str) -> None:
    if self._registry is not None:
      self._registry.remove(self._user_id, job_id)

  def _invoke(self, name: str, argument: Any) -> None:
    callback = self._callbacks.get(name)
    if callback is None:
      return
    try:
      outcome = callback(argument)
    except Exception as exc:  # noqa: BLE001
      logger.error("Reconciler callback %s failed: %s", name, exc, exc_info=True)
      return

    if inspect.isawaitable(outcome):
      task = asyncio.ensure_future(outcome)
      self._callback_tasks.add(task)
      task.add_done_callback(self._callback_tasks.discard)
