"""Classification of operation responses into immediate, deferred, degraded or failed."""

from __future__ import annotations

from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Literal

from jobrelay.core.exceptions import DEGRADED_SERVICE_MESSAGE
from jobrelay.utils.payloads import FieldPath, first_raw_string, first_string

ResponseKind = Literal["immediate", "deferred", "degraded", "failed"]

ASYNC_DISABLED_MARKER = "async job processing is disabled"

# Observed at call sites rather than documented; extend here when the backend adds a shape.
JOB_ID_PATHS: tuple[FieldPath, ...] = (
  ("jobId",),
  ("job_id",),
  ("job", "id"),
  ("job", "job_id"),
  ("data", "jobId"),
  ("data", "job_id"),
  ("result", "jobId"),
  ("result", "job_id"),
)
STATUS_URL_PATHS: tuple[FieldPath, ...] = (
  ("statusUrl",),
  ("status_url",),
  ("job", "statusUrl"),
  ("job", "status_url"),
  ("data", "statusUrl"),
  ("data", "status_url"),
)
ERROR_MESSAGE_KEYS = ("error", "message", "detail", "details")


@dataclass(frozen=True)
class ResponseClassification:
  """Outcome of inspecting one operation response."""

  kind: ResponseKind
  status_code: int
  payload: Any
  job_id: str | None = None
  status_url: str | None = None
  message: str | None = None


def resolve_job_id(payload: Any) -> str | None:
  """Return the job identifier at the first known field path, trimmed."""
  return first_string(payload, JOB_ID_PATHS)


def resolve_status_url(payload: Any) -> str | None:
  """Return a status endpoint override advertised by a deferred response."""
  return first_string(payload, STATUS_URL_PATHS)


def async_disabled_message(status_code: int, payload: Any) -> str | None:
  """Return the degraded-service message for a 503 that says async processing is off."""
  if status_code != HTTPStatus.SERVICE_UNAVAILABLE:
    return None
  raw = first_raw_string(payload, ERROR_MESSAGE_KEYS)
  if raw and ASYNC_DISABLED_MARKER in raw.lower():
    return DEGRADED_SERVICE_MESSAGE
  return None


def failure_message(status_code: int, payload: Any, *, error_label: str | None = None) -> str:
  """Pick the error text for a failed response, falling back to a status-based message."""
  message = first_raw_string(payload, ERROR_MESSAGE_KEYS)
  if message:
    return message
  if error_label:
    return f"Failed to {error_label} ({status_code})"
  return f"Request failed ({status_code})"


def classify_response(status_code: int, payload: Any, *, error_label: str | None = None) -> ResponseClassification:
  """Classify an operation response. Pure; tolerates any payload shape."""
  if not 200 <= status_code < 300:
    degraded = async_disabled_message(status_code, payload)
    if degraded:
      return ResponseClassification(kind="degraded", status_code=status_code, payload=payload, message=degraded)
    return ResponseClassification(kind="failed", status_code=status_code, payload=payload, message=failure_message(status_code, payload, error_label=error_label))

  job_id = resolve_job_id(payload)
  if status_code == HTTPStatus.ACCEPTED or job_id:
    return ResponseClassification(kind="deferred", status_code=status_code, payload=payload, job_id=job_id, status_url=resolve_status_url(payload))

  return ResponseClassification(kind="immediate", status_code=status_code, payload=payload)
