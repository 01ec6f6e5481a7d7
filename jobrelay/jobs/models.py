"""Domain models for submitted jobs and their observed state."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal

import msgspec

from jobrelay.utils.payloads import FieldPath, dig, first_string, maybe_parse_json

JobStatus = Literal["queued", "running", "completed", "failed"]

GENERIC_JOB_FAILURE = "Job failed."

_STATUS_ALIASES: dict[str, JobStatus] = {
  "completed": "completed",
  "succeeded": "completed",
  "success": "completed",
  "done": "completed",
  "failed": "failed",
  "error": "failed",
  "canceled": "failed",
  "cancelled": "failed",
  "queued": "queued",
  "pending": "queued",
  "running": "running",
  "processing": "running",
}

_JOB_ID_PATHS: tuple[FieldPath, ...] = (("jobId",), ("job_id",), ("id",))
_COURSE_ID_PATHS: tuple[FieldPath, ...] = (("course_id",), ("courseId",), ("result", "course_id"), ("result", "courseId"), ("result", "course", "id"))
_NESTED_JOB_PATHS: tuple[FieldPath, ...] = (("job",), ("data", "job"), ("result", "job"))


def utc_timestamp() -> str:
  """Return the current UTC time as an ISO-8601 string with millisecond precision."""
  return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_status(raw: Any) -> str:
  """Lowercase a wire status and fold known aliases onto the four canonical values."""
  if not isinstance(raw, str):
    return ""
  lowered = raw.strip().lower()
  return _STATUS_ALIASES.get(lowered, lowered)


def extract_job_payload(payload: Any) -> dict[str, Any] | None:
  """Unwrap a job object nested under `job`, `data.job` or `result.job`; else the body itself."""
  if not isinstance(payload, Mapping):
    return None
  for path in _NESTED_JOB_PATHS:
    nested = dig(payload, path)
    if isinstance(nested, Mapping):
      return dict(nested)
  return dict(payload)


def job_error_message(error: Any) -> str | None:
  """Extract a readable message from a job `error` field."""
  if error is None or error == "":
    return None
  if isinstance(error, str):
    return error
  if isinstance(error, Mapping):
    for key in ("message", "error", "detail"):
      candidate = error.get(key)
      if isinstance(candidate, str):
        return candidate
  return GENERIC_JOB_FAILURE


def _coerce_progress(raw: Any) -> float | None:
  if isinstance(raw, bool) or not isinstance(raw, int | float):
    return None
  return float(raw)


@dataclass(frozen=True)
class JobState:
  """One observation of a job's status endpoint or push payload."""

  status: str
  job_id: str | None = None
  result: Any = None
  error: Any = None
  finished_at: str | None = None
  progress: float | None = None
  course_id: str | None = None
  raw: dict[str, Any] = field(default_factory=dict, repr=False)

  @classmethod
  def from_payload(cls, payload: Any) -> JobState | None:
    """Build a state from a status body or push payload; None when it is not an object."""
    job = extract_job_payload(payload)
    if job is None:
      return None

    finished_at = job.get("finished_at") or job.get("finishedAt")
    return cls(
      status=normalize_status(job.get("status")),
      job_id=first_string(job, _JOB_ID_PATHS),
      result=job.get("result"),
      error=job.get("error"),
      finished_at=finished_at if isinstance(finished_at, str) and finished_at else None,
      progress=_coerce_progress(job.get("progress")),
      course_id=first_string({**job, "result": maybe_parse_json(job.get("result"))}, _COURSE_ID_PATHS),
      raw=job,
    )

  @property
  def error_message(self) -> str | None:
    return job_error_message(self.error)

  @property
  def is_failed(self) -> bool:
    # Any error besides null or "" is terminal, even while the status still says running.
    return self.error_message is not None or self.status == "failed"

  @property
  def is_succeeded(self) -> bool:
    if self.is_failed:
      return False
    return self.status == "completed" or bool(self.finished_at)

  @property
  def is_terminal(self) -> bool:
    return self.is_failed or self.is_succeeded

  @property
  def failure_message(self) -> str:
    return self.error_message or GENERIC_JOB_FAILURE

  def with_parsed_result(self) -> JobState:
    """Return a copy whose `result` went through `maybe_parse_json`."""
    return replace(self, result=maybe_parse_json(self.result))


class JobReference(msgspec.Struct, rename="camel", omit_defaults=True):
  """A submitted job as remembered locally for resume; `job_id` is the identity."""

  job_id: str
  status_url: str | None = None
  course_id: str | None = None
  course_title: str | None = None
  status: str | None = None
  created_at: str | None = None


def _clean_str(raw: Any) -> str | None:
  if isinstance(raw, str) and raw.strip():
    return raw.strip()
  return None


def normalize_reference(raw: Any) -> JobReference | None:
  """Validate a stored or caller-supplied reference; None when it has no job id.

  Accepts camelCase mappings (the persisted shape), snake_case mappings and
  `JobReference` values. Blank optional strings are dropped and a missing
  `createdAt` is stamped with the current time.
  """
  if isinstance(raw, JobReference):
    raw = msgspec.structs.asdict(raw)
  if not isinstance(raw, Mapping):
    return None

  def pick(camel: str, snake: str) -> str | None:
    return _clean_str(raw.get(camel)) or _clean_str(raw.get(snake))

  job_id = pick("jobId", "job_id")
  if job_id is None:
    return None

  return JobReference(
    job_id=job_id,
    status_url=pick("statusUrl", "status_url"),
    course_id=pick("courseId", "course_id"),
    course_title=pick("courseTitle", "course_title"),
    status=_clean_str(raw.get("status")),
    created_at=pick("createdAt", "created_at") or utc_timestamp(),
  )
