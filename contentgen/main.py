"""Command-line entry point: run workers, enqueue jobs, inspect status, invalidate cache keys."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from contentgen.config import get_settings
from contentgen.core.exceptions import ContentGenError, JobNotFoundError, describe_error
from contentgen.core.lifespan import runtime_context
from contentgen.jobs.models import JobPriority

logger = logging.getLogger(__name__)


async def _run_worker() -> None:
  stop = asyncio.Event()
  loop = asyncio.get_running_loop()
  for sig in (signal.SIGINT, signal.SIGTERM):
    loop.add_signal_handler(sig, stop.set)

  async with runtime_context(get_settings(), start_workers=True) as runtime:
    logger.info("Worker running with concurrency=%d; waiting for jobs.", runtime.pool.concurrency)
    await stop.wait()
    logger.info("Shutdown signal received; finishing running jobs.")


def _load_payload(raw: str) -> dict[str, Any]:
  # "@path" reads the payload from a JSON file.
  if raw.startswith("@"):
    raw = Path(raw[1:]).read_text(encoding="utf-8")
  payload = json.loads(raw)
  if not isinstance(payload, dict):
    raise ValueError("Job payload must be a JSON object.")
  return payload


async def _enqueue(payload: dict[str, Any], priority: JobPriority, job_id: str | None) -> str:
  async with runtime_context(get_settings()) as runtime:
    return await runtime.service.enqueue_job(payload, priority, job_id=job_id)


async def _status(job_id: str) -> dict[str, Any]:
  async with runtime_context(get_settings()) as runtime:
    view = await runtime.service.get_job_status(job_id)
    return view.to_dict()


async def _invalidate(pattern: str) -> int:
  async with runtime_context(get_settings()) as runtime:
    return await runtime.service.invalidate_cache_pattern(pattern)


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog="contentgen", description="Adaptive content generation job engine.")
  commands = parser.add_subparsers(dest="command", required=True)

  commands.add_parser("worker", help="Run the worker pool until SIGINT/SIGTERM.")

  enqueue = commands.add_parser("enqueue", help="Enqueue a job from a JSON payload (inline or @file).")
  enqueue.add_argument("payload")
  enqueue.add_argument("--priority", choices=[p.name.lower() for p in JobPriority], default="normal")
  enqueue.add_argument("--job-id", default=None, help="Idempotency key; an existing job with this id is returned unchanged.")

  status = commands.add_parser("status", help="Print the status of a job.")
  status.add_argument("job_id")

  invalidate = commands.add_parser("invalidate", help="Remove cache entries whose keys match a glob pattern.")
  invalidate.add_argument("pattern")
  return parser


def main(argv: list[str] | None = None) -> int:
  args = build_parser().parse_args(argv)
  try:
    if args.command == "worker":
      asyncio.run(_run_worker())
    elif args.command == "enqueue":
      job_id = asyncio.run(_enqueue(_load_payload(args.payload), JobPriority[args.priority.upper()], args.job_id))
      print(job_id)
    elif args.command == "status":
      print(json.dumps(asyncio.run(_status(args.job_id)), indent=2))
    elif args.command == "invalidate":
      removed = asyncio.run(_invalidate(args.pattern))
      print(f"Removed {removed} cache key(s).")
  except JobNotFoundError as exc:
    print(f"Error: {exc}", file=sys.stderr)
    return 2
  except (ContentGenError, ValueError) as exc:
    print(json.dumps({"error": describe_error(exc)}, indent=2), file=sys.stderr)
    return 1
  return 0


if __name__ == "__main__":
  sys.exit(main())
