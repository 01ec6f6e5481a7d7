"""List a user's locally registered jobs and optionally watch them to completion."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Ensure repo root is on sys.path so local imports work when invoked directly.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from jobrelay.config import get_settings
from jobrelay.core.logging import setup_logging
from jobrelay.factory import build_http_client, build_queue_monitor, build_reconciler, build_registry
from jobrelay.jobs.reconciler import JobOutcome


def _print_entries(user_id: str) -> int:
  """Print every registered job for the user and return how many there are."""
  entries = build_registry(get_settings()).list(user_id)
  if not entries:
    print(f"No registered jobs for user {user_id}.")
    return 0

  for entry in entries:
    print(f"{entry.job_id}  status={entry.status or '-'}  course={entry.course_id or '-'}  title={entry.course_title or '-'}  created={entry.created_at}")
  return len(entries)


def _report(outcome: JobOutcome) -> None:
  if outcome.succeeded:
    print(f"{outcome.job_id}: completed via {outcome.source}")
  else:
    print(f"{outcome.job_id}: failed via {outcome.source}: {outcome.error}")


async def _watch(user_id: str, token: str | None, acknowledge: bool) -> None:
  """Resume every registered job and wait until each one resolves."""
  settings = get_settings()
  async with build_http_client(settings, access_token=token) as http:
    reconciler = build_reconciler(settings, http, user_id=user_id)
    reconciler.set_callbacks(on_complete=_report, on_update=lambda state: print(f"{state.job_id}: {state.status}"))
    try:
      reconciler.resume()
      await reconciler.join()
    finally:
      await reconciler.close()

    if acknowledge:
      for job_id in [entry.job_id for entry in build_registry(settings).list(user_id)]:
        if reconciler.is_resolved(job_id):
          reconciler.acknowledge(job_id)


async def _print_queue_status(token: str | None) -> None:
  settings = get_settings()
  async with build_http_client(settings, access_token=token) as http:
    status = await build_queue_monitor(settings, http).refresh()
  wait = "-" if status.estimated_wait_minutes is None else f"{status.estimated_wait_minutes:g}min"
  print(f"queue high_usage={status.is_high_usage} utilization={status.credit_utilization:.0%} wait={wait}")


def main() -> None:
  """Inspect the job registry from the command line."""
  parser = argparse.ArgumentParser(description="Inspect locally registered background jobs.")
  parser.add_argument("user_id", help="User whose registry to read.")
  parser.add_argument("--watch", action="store_true", help="Poll each registered job until it resolves.")
  parser.add_argument("--token", default=None, help="Bearer token for the backend status endpoint.")
  parser.add_argument("--ack", action="store_true", help="Remove resolved jobs from the registry after watching.")
  parser.add_argument("--queue", action="store_true", help="Also print the backend queue load.")
  args = parser.parse_args()

  setup_logging(get_settings())
  if args.queue:
    asyncio.run(_print_queue_status(args.token))
  count = _print_entries(args.user_id)
  if args.watch and count:
    asyncio.run(_watch(args.user_id, args.token, args.ack))


if __name__ == "__main__":
  main()
