"""Key-value stores backing the local job registry."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Protocol
from urllib.parse import quote


class KeyValueStore(Protocol):
  """String-to-string store with `localStorage` semantics."""

  def get_item(self, key: str) -> str | None:
    """Return the stored value or None."""

  def set_item(self, key: str, value: str) -> None:
    """Store a value, replacing any previous one."""

  def remove_item(self, key: str) -> None:
    """Delete a key; missing keys are ignored."""


class InMemoryKeyValueStore:
  """Process-local store, used for tests and for sessions that need no persistence."""

  def __init__(self, initial: dict[str, str] | None = None) -> None:
    self._items: dict[str, str] = dict(initial or {})

  def get_item(self, key: str) -> str | None:
    return self._items.get(key)

  def set_item(self, key: str, value: str) -> None:
    self._items[key] = value

  def remove_item(self, key: str) -> None:
    self._items.pop(key, None)


class FileKeyValueStore:
  """Stores each key as one file under a directory; writes replace the file atomically."""

  def __init__(self, directory: str | Path) -> None:
    self._directory = Path(directory)

  @property
  def directory(self) -> Path:
    return self._directory

  def _path_for(self, key: str) -> Path:
    # Percent-encode so keys like `course_create_jobs:<uuid>` stay filesystem safe.
    return self._directory / f"{quote(key, safe='')}.json"

  def get_item(self, key: str) -> str | None:
    path = self._path_for(key)
    if not path.is_file():
      return None
    return path.read_text(encoding="utf-8")

  def set_item(self, key: str, value: str) -> None:
    self._directory.mkdir(parents=True, exist_ok=True)
    path = self._path_for(key)
    fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=".tmp-", suffix=".json")
    try:
      with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(value)
      os.replace(tmp_name, path)
    except BaseException:
      Path(tmp_name).unlink(missing_ok=True)
      raise

  def remove_item(self, key: str) -> None:
    self._path_for(key).unlink(missing_ok=True)
