"""Client configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from jobrelay.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

DEFAULT_POLL_DELAYS_MS: tuple[int, ...] = (2500, 3500, 5000, 8000, 10000)
DEFAULT_STATUS_PATH_TEMPLATE = "/jobs/{job_id}"
DEFAULT_QUEUE_STATUS_PATH = "/queue/status"
DEFAULT_QUEUE_POLL_INTERVAL_MS = 30000


@dataclass(frozen=True)
class Settings:
  """Typed settings for the job relay client."""

  environment: str
  api_base_url: str
  status_path_template: str
  request_timeout_seconds: float
  poll_delays_ms: tuple[int, ...]
  queue_status_path: str
  queue_poll_interval_ms: int
  reconnect_base_delay_ms: int
  reconnect_max_delay_ms: int
  registry_dir: str
  supabase_url: str | None
  supabase_key: str | None
  realtime_debug: bool
  log_level: str
  log_dir: str | None
  log_max_bytes: int
  log_backup_count: int


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  return raw.strip().lower() in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_delays(raw: str | None) -> tuple[int, ...]:
  """Parse a comma separated delay schedule in milliseconds."""

  if raw is None or raw.strip() == "":
    return DEFAULT_POLL_DELAYS_MS

  try:
    delays = tuple(int(part.strip()) for part in raw.split(",") if part.strip())
  except ValueError as exc:
    raise ValueError("JOBRELAY_POLL_DELAYS_MS must be a comma separated list of integers.") from exc

  if not delays:
    raise ValueError("JOBRELAY_POLL_DELAYS_MS must include at least one delay.")

  if any(delay <= 0 for delay in delays):
    raise ValueError("JOBRELAY_POLL_DELAYS_MS values must be positive.")

  # Polling cadence may only settle, never speed back up.
  if any(later < earlier for earlier, later in zip(delays, delays[1:])):
    raise ValueError("JOBRELAY_POLL_DELAYS_MS must be non-decreasing.")

  return delays


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("JOBRELAY_ENV", "development").strip().lower()

  api_base_url = _optional_str(os.getenv("JOBRELAY_API_BASE_URL"))
  if not api_base_url:
    raise ValueError("JOBRELAY_API_BASE_URL must be set.")

  status_path_template = (os.getenv("JOBRELAY_STATUS_PATH_TEMPLATE") or DEFAULT_STATUS_PATH_TEMPLATE).strip()
  if "{job_id}" not in status_path_template:
    raise ValueError("JOBRELAY_STATUS_PATH_TEMPLATE must contain a {job_id} placeholder.")

  request_timeout_seconds = float(os.getenv("JOBRELAY_REQUEST_TIMEOUT_SECONDS", "30"))
  if request_timeout_seconds <= 0:
    raise ValueError("JOBRELAY_REQUEST_TIMEOUT_SECONDS must be positive.")

  reconnect_base_delay_ms = _positive_int("JOBRELAY_RECONNECT_BASE_DELAY_MS", "1000")
  reconnect_max_delay_ms = _positive_int("JOBRELAY_RECONNECT_MAX_DELAY_MS", "30000")
  if reconnect_max_delay_ms < reconnect_base_delay_ms:
    raise ValueError("JOBRELAY_RECONNECT_MAX_DELAY_MS must not be lower than JOBRELAY_RECONNECT_BASE_DELAY_MS.")

  log_backup_count = int(os.getenv("JOBRELAY_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("JOBRELAY_LOG_BACKUP_COUNT must be zero or a positive integer.")

  supabase_url = _optional_str(os.getenv("JOBRELAY_SUPABASE_URL") or os.getenv("SUPABASE_URL"))
  supabase_key = _optional_str(os.getenv("JOBRELAY_SUPABASE_KEY") or os.getenv("SUPABASE_ANON_KEY"))

  return Settings(
    environment=environment,
    api_base_url=api_base_url.rstrip("/"),
    status_path_template=status_path_template,
    request_timeout_seconds=request_timeout_seconds,
    poll_delays_ms=_parse_delays(os.getenv("JOBRELAY_POLL_DELAYS_MS")),
    queue_status_path=(os.getenv("JOBRELAY_QUEUE_STATUS_PATH") or DEFAULT_QUEUE_STATUS_PATH).strip(),
    queue_poll_interval_ms=_positive_int("JOBRELAY_QUEUE_POLL_INTERVAL_MS", str(DEFAULT_QUEUE_POLL_INTERVAL_MS)),
    reconnect_base_delay_ms=reconnect_base_delay_ms,
    reconnect_max_delay_ms=reconnect_max_delay_ms,
    registry_dir=(os.getenv("JOBRELAY_REGISTRY_DIR") or "./.jobrelay/registry").strip(),
    supabase_url=supabase_url,
    supabase_key=supabase_key,
    realtime_debug=_parse_bool(os.getenv("JOBRELAY_REALTIME_DEBUG")),
    log_level=(os.getenv("JOBRELAY_LOG_LEVEL") or "INFO").strip().upper(),
    log_dir=_optional_str(os.getenv("JOBRELAY_LOG_DIR")),
    log_max_bytes=_positive_int("JOBRELAY_LOG_MAX_BYTES", "5242880"),
    log_backup_count=log_backup_count,
  )
