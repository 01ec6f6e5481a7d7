"""Helpers for reading loosely shaped JSON payloads from the backend."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import msgspec

FieldPath = tuple[str, ...]


def decode_json_body(content: bytes | str | None) -> Any:
  """Decode a response body best-effort; empty or invalid JSON yields `{}`."""
  if not content:
    return {}
  try:
    return msgspec.json.decode(content)
  except msgspec.DecodeError:
    return {}


def maybe_parse_json(value: Any) -> Any:
  """Parse strings that look like a JSON object or array; return anything else unchanged.

  Some job results arrive JSON-encoded twice. This is a compatibility shim for that
  boundary, not a schema: non-strings, blank strings, scalars and malformed JSON
  pass through as they came in.
  """
  if not isinstance(value, str):
    return value

  trimmed = value.strip()
  if not trimmed or trimmed[0] not in "{[":
    return value

  try:
    return msgspec.json.decode(trimmed)
  except msgspec.DecodeError:
    return value


def dig(payload: Any, path: FieldPath) -> Any:
  """Follow `path` through nested mappings, returning None at the first gap."""
  current = payload
  for key in path:
    if not isinstance(current, Mapping):
      return None
    current = current.get(key)
  return current


def first_string(payload: Any, paths: Iterable[FieldPath]) -> str | None:
  """Return the first non-blank string found along `paths`, trimmed."""
  for path in paths:
    candidate = dig(payload, path)
    if isinstance(candidate, str) and candidate.strip():
      return candidate.strip()
  return None


def first_raw_string(payload: Any, keys: Iterable[str]) -> str | None:
  """Return the first non-blank top-level string among `keys`, untrimmed."""
  if not isinstance(payload, Mapping):
    return None
  for key in keys:
    candidate = payload.get(key)
    if isinstance(candidate, str) and candidate.strip():
      return candidate
  return None
