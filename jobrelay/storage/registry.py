"""Local, per-user registry of in-flight jobs that can be resumed after a restart.

Entries are advisory. Losing them never loses backend progress, only the ability
to resume watching locally, so every operation logs storage problems and degrades
to an empty result instead of raising.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import msgspec

from jobrelay.jobs.models import JobReference, normalize_reference
from jobrelay.storage.stores import KeyValueStore

logger = logging.getLogger(__name__)

REGISTRY_KEY_PREFIX = "course_create_jobs:"

JobRegistryEntry = JobReference


def registry_key(user_id: str) -> str:
  return f"{REGISTRY_KEY_PREFIX}{user_id}"


def _merge(existing: JobReference, incoming: JobReference) -> JobReference:
  """Overlay populated fields from `incoming`; `created_at` always stays the original."""
  changes = {name: value for name, value in msgspec.structs.asdict(incoming).items() if value is not None}
  changes["created_at"] = existing.created_at or incoming.created_at
  return msgspec.structs.replace(existing, **changes)


class JobRegistry:
  """Read-modify-write registry over a `KeyValueStore`; last write wins."""

  def __init__(self, store: KeyValueStore) -> None:
    self._store = store

  def _decode(self, raw: str | None) -> Any:
    if not raw:
      return None
    try:
      return msgspec.json.decode(raw)
    except msgspec.DecodeError as exc:
      logger.error("Error parsing job registry storage: %s", exc)
      return None

  def _write(self, user_id: str, entries: list[JobReference]) -> None:
    self._store.set_item(registry_key(user_id), msgspec.json.encode(entries).decode("utf-8"))

  def _read(self, user_id: str) -> list[JobReference]:
    parsed = self._decode(self._store.get_item(registry_key(user_id)))
    if not isinstance(parsed, list):
      return []

    entries = [entry for entry in (normalize_reference(item) for item in parsed) if entry is not None]
    # Rewrite once so corrupt rows do not have to be skipped on every read.
    if len(entries) != len(parsed):
      logger.warning("Dropped %d invalid job registry entries user_id=%s", len(parsed) - len(entries), user_id)
      self._write(user_id, entries)
    return entries

  def list(self, user_id: str | None) -> list[JobReference]:
    """Return the user's registered jobs, repairing the stored list if needed."""
    if not user_id:
      return []
    try:
      return self._read(user_id)
    except Exception as exc:  # noqa: BLE001
      logger.error("Error reading job registry storage user_id=%s: %s", user_id, exc, exc_info=True)
      return []

  def upsert(self, user_id: str | None, entry: JobReference | Mapping[str, Any]) -> list[JobReference]:
    """Insert or merge an entry by job id and return the updated list."""
    if not user_id:
      return []
    normalized = normalize_reference(entry)
    if normalized is None:
      return self.list(user_id)

    try:
      entries = self._read(user_id)
      for index, existing in enumerate(entries):
        if existing.job_id == normalized.job_id:
          entries[index] = _merge(existing, normalized)
          break
      else:
        entries.append(normalized)

      self._write(user_id, entries)
      return entries
    except Exception as exc:  # noqa: BLE001
      logger.error("Error saving job registry storage user_id=%s job_id=%s: %s", user_id, normalized.job_id, exc, exc_info=True)
      return []

  def remove(self, user_id: str | None, job_id: str | None) -> list[JobReference]:
    """Forget a job and return the remaining list."""
    if not user_id or not job_id:
      return []
    try:
      remaining = [entry for entry in self._read(user_id) if entry.job_id != job_id]
      self._write(user_id, remaining)
      return remaining
    except Exception as exc:  # noqa: BLE001
      logger.error("Error removing job registry entry user_id=%s job_id=%s: %s", user_id, job_id, exc, exc_info=True)
      return []

  def for_user(self, user_id: str | None) -> UserJobRegistry:
    """Bind the registry to one user."""
    return UserJobRegistry(registry=self, user_id=user_id)


@dataclass(frozen=True)
class UserJobRegistry:
  """The registry as seen by a single user's session."""

  registry: JobRegistry
  user_id: str | None

  def list(self) -> list[JobReference]:
    return self.registry.list(self.user_id)

  def upsert(self, entry: JobReference | Mapping[str, Any]) -> list[JobReference]:
    return self.registry.upsert(self.user_id, entry)

  def remove(self, job_id: str) -> list[JobReference]:
    return self.registry.remove(self.user_id, job_id)
