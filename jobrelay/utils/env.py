"""Minimal dotenv reader used before settings are resolved."""

from __future__ import annotations

import os
from pathlib import Path

_QUOTES = ("'", '"')


def default_env_path() -> Path:
  """Return the `.env` path at the repository root."""

  return Path(__file__).resolve().parents[2] / ".env"


def _split_assignment(raw_line: str) -> tuple[str, str] | None:
  """Parse one `KEY=value` line, returning None for blanks, comments and junk."""
  line = raw_line.strip()
  if not line or line.startswith("#"):
    return None

  # Accept shell-style exports so the same file can be sourced by scripts.
  if line.startswith("export "):
    line = line.removeprefix("export ").lstrip()

  key, sep, value = line.partition("=")
  key = key.strip()
  if not sep or not key:
    return None

  value = value.strip()
  if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
    value = value[1:-1]

  return key, value


def load_env_file(path: Path, *, override: bool = False) -> dict[str, str]:
  """Copy assignments from a dotenv file into `os.environ` and return what was applied."""

  if not path.is_file():
    return {}

  applied: dict[str, str] = {}
  for raw_line in path.read_text(encoding="utf-8").splitlines():
    parsed = _split_assignment(raw_line)
    if parsed is None:
      continue

    key, value = parsed
    # Real environment wins unless the caller asked otherwise.
    if key in os.environ and not override:
      continue

    os.environ[key] = value
    applied[key] = value

  return applied
