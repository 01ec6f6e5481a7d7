"""Error taxonomy for job submission, polling and cancellation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
  from jobrelay.jobs.models import JobState

DEGRADED_SERVICE_MESSAGE = "Course processing is temporarily unavailable. Please try again soon."


class JobClientError(Exception):
  """Base class for failures surfaced by the job client."""

  kind = "error"


class TransportError(JobClientError):
  """Raised when the backend cannot be reached during submit or poll."""

  kind = "transport"


class DeferredProtocolError(JobClientError):
  """Raised when a deferred response carries no usable job identifier."""

  kind = "deferred_protocol"


class DegradedServiceError(JobClientError):
  """Raised when the backend reports that async processing is switched off."""

  kind = "degraded"

  def __init__(self, message: str = DEGRADED_SERVICE_MESSAGE) -> None:
    super().__init__(message)


class RequestFailedError(JobClientError):
  """Raised for non-2xx responses from the operation or status endpoints."""

  kind = "request_failed"

  def __init__(self, message: str, *, status_code: int, payload: Any = None) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.payload = payload


class JobFailedError(JobClientError):
  """Raised when a job reaches a terminal failed state."""

  kind = "job_failed"

  def __init__(self, message: str, *, job_id: str | None = None, state: JobState | None = None) -> None:
    super().__init__(message)
    self.job_id = job_id
    self.state = state


class JobCanceledError(Exception):
  """Raised when the caller aborts a wait or request through its cancel signal.

  Not part of the `JobClientError` tree: `except JobClientError` does not catch it.
  """

  kind = "cancelled"


def is_cancellation(exc: BaseException) -> bool:
  """Return True when an exception represents a deliberate cancellation."""
  return getattr(exc, "kind", None) == JobCanceledError.kind
