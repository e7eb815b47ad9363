"""Job store: the only writer of job records.

Every mutation goes through a validated state transition that is durably
written (with retries) before the caller continues. Transitions for one job are
serialised with a per-job lock; different jobs never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel

from contentgen.core.exceptions import JobNotFoundError, LeaseLostError
from contentgen.jobs.models import JobKind, JobPriority, JobRecord, JobState, parse_payload
from contentgen.jobs.state import ensure_transition, merge_progress
from contentgen.storage.jobs_repo import JobsRepository
from contentgen.utils.db_retry import execute_with_retry
from contentgen.utils.ids import generate_job_id
from contentgen.utils.timestamps import format_timestamp, iso_before, utc_now

logger = logging.getLogger(__name__)

MAX_TRACKED_LOGS = 100


@dataclass(frozen=True)
class RetentionPolicy:
  """Age and count bounds for terminal jobs."""

  completed_max_age_seconds: int = 24 * 3600
  completed_max_count: int = 1000
  failed_max_age_seconds: int = 7 * 24 * 3600


class JobStore:
  """Validated, durable job lifecycle operations."""

  def __init__(
    self,
    repo: JobsRepository,
    *,
    default_max_attempts: int = 3,
    persistence_attempts: int = 3,
    clock: Callable[[], datetime] = utc_now,
    lease_seconds: float = 120.0,
  ) -> None:
    if lease_seconds <= 0:
      raise ValueError("Lease duration must be positive.")
    self._repo = repo
    self._default_max_attempts = default_max_attempts
    self._persistence_attempts = persistence_attempts
    self._clock = clock
    self._lease_seconds = lease_seconds
    self._locks: dict[str, asyncio.Lock] = {}
    self._last_enqueued_ns = 0

  @property
  def lease_seconds(self) -> float:
    return self._lease_seconds

  def _lock_for(self, job_id: str) -> asyncio.Lock:
    lock = self._locks.get(job_id)
    if lock is None:
      lock = asyncio.Lock()
      self._locks[job_id] = lock
    return lock

  def _lease_until(self, now: datetime) -> str:
    return format_timestamp(now + timedelta(seconds=self._lease_seconds))

  def _next_enqueued_ns(self) -> int:
    # Strictly increasing so FIFO order holds even when the clock does not advance.
    self._last_enqueued_ns = max(time.time_ns(), self._last_enqueued_ns + 1)
    return self._last_enqueued_ns

  async def _persist[T](self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
    return await execute_with_retry(operation_name=operation, func=func, max_attempts=self._persistence_attempts)

  async def enqueue(self, payload: Mapping[str, Any] | BaseModel, *, priority: int = JobPriority.NORMAL, job_id: str | None = None, max_attempts: int | None = None) -> str:
    """Validate and persist a waiting job; an existing `job_id` is returned unchanged."""
    parsed = parse_payload(payload)
    if job_id is not None:
      existing = await self._persist("get_job", lambda: self._repo.get_job(job_id))
      if existing is not None:
        logger.info("Job %s already exists in state %s; enqueue is a no-op", job_id, existing.state)
        return job_id

    job_id = job_id or generate_job_id()
    timestamp = format_timestamp(self._clock())
    record = JobRecord(
      job_id=job_id,
      kind=JobKind(parsed.kind),
      payload=parsed.model_dump(mode="json"),
      state=JobState.WAITING,
      created_at=timestamp,
      updated_at=timestamp,
      priority=int(priority),
      enqueued_ns=self._next_enqueued_ns(),
      max_attempts=max_attempts or self._default_max_attempts,
      logs=["Job queued."],
    )
    created = await self._persist("create_job", lambda: self._repo.create_job(record))
    if created:
      logger.info("Enqueued job %s kind=%s priority=%d", job_id, record.kind, record.priority)
    else:
      logger.info("Job %s was enqueued concurrently; keeping the existing record", job_id)
    return job_id

  async def get_status(self, job_id: str) -> JobRecord:
    record = await self._persist("get_job", lambda: self._repo.get_job(job_id))
    if record is None:
      raise JobNotFoundError(job_id)
    return record

  async def transition(
    self,
    job_id: str,
    new_state: JobState,
    *,
    progress: float | None = None,
    result: dict[str, Any] | None = None,
    error: dict[str, Any] | None = None,
    logs: Iterable[str] | None = None,
    attempts_made: int | None = None,
    owner_id: str | None = None,
  ) -> JobRecord:
    """Apply one allowed state change and persist it before returning.

    When `owner_id` is given the job must still be leased to that worker,
    otherwise `LeaseLostError` is raised and nothing is written.
    """
    if result is not None and new_state is not JobState.COMPLETED:
      raise ValueError("A result can only be recorded when completing a job.")
    if error is not None and new_state is not JobState.FAILED:
      raise ValueError("An error can only be recorded when failing a job.")

    async with self._lock_for(job_id):
      try:
        current = await self.get_status(job_id)
      except JobNotFoundError:
        self._locks.pop(job_id, None)
        raise
      if owner_id is not None and current.owner_id != owner_id:
        self._locks.pop(job_id, None)
        raise LeaseLostError(job_id, owner_id, current.owner_id)
      ensure_transition(job_id, current.state, new_state)

      now = format_timestamp(self._clock())
      merged_progress = merge_progress(current.progress, 100.0 if new_state is JobState.COMPLETED else progress)
      window = None
      if logs:
        window = (current.logs + list(logs))[-MAX_TRACKED_LOGS:]
      if attempts_made is not None and attempts_made < current.attempts_made:
        raise ValueError(f"attempts_made cannot decrease ({current.attempts_made} -> {attempts_made}).")
      terminal = new_state in {JobState.COMPLETED, JobState.FAILED}

      updated = await self._persist(
        f"transition:{new_state}",
        lambda: self._repo.update_job(
          job_id,
          state=new_state,
          progress=merged_progress,
          attempts_made=attempts_made,
          result=result,
          error=error,
          logs=window,
          started_at=now if current.started_at is None else None,
          completed_at=now if terminal else None,
          updated_at=now,
        ),
      )
      if updated is None:
        self._locks.pop(job_id, None)
        raise JobNotFoundError(job_id)

    if terminal:
      self._locks.pop(job_id, None)
      logger.info("Job %s %s after %d attempt(s)", job_id, new_state, updated.attempts_made)
    return updated

  async def claim(self, limit: int = 1, *, owner_id: str | None = None) -> list[JobRecord]:
    """Move up to `limit` waiting jobs to active in dispatch order, leased to `owner_id`."""
    if limit < 1:
      return []
    now = self._clock()
    started_at = format_timestamp(now)
    lease = self._lease_until(now)
    return await self._persist("claim_waiting", lambda: self._repo.claim_waiting(limit, started_at=started_at, owner_id=owner_id, lease_expires_at=lease))

  async def reclaim_expired(self, limit: int, *, owner_id: str | None = None) -> list[JobRecord]:
    """Take over up to `limit` active jobs whose owner stopped renewing its lease."""
    if limit < 1:
      return []
    now = self._clock()
    moment = format_timestamp(now)
    lease = self._lease_until(now)
    reclaimed = await self._persist("reclaim_expired", lambda: self._repo.reclaim_expired(limit, now=moment, owner_id=owner_id, lease_expires_at=lease))
    for job in reclaimed:
      logger.warning("Reclaimed job %s with an expired lease (attempts_made=%d)", job.job_id, job.attempts_made)
    return reclaimed

  async def renew_leases(self, job_ids: list[str], *, owner_id: str) -> int:
    """Extend the leases `owner_id` holds on `job_ids`."""
    if not job_ids:
      return 0
    lease = self._lease_until(self._clock())
    return await self._persist("renew_leases", lambda: self._repo.renew_leases(list(job_ids), owner_id=owner_id, lease_expires_at=lease))

  async def list_jobs(self, *, state: JobState | None = None, limit: int = 100) -> list[JobRecord]:
    return await self._persist("list_jobs", lambda: self._repo.list_jobs(state=state, limit=limit))

  async def evict_expired(self, policy: RetentionPolicy, *, now: datetime | None = None) -> int:
    """Delete terminal jobs outside the retention window and return how many were removed."""
    moment = now or self._clock()
    removed = await self._persist(
      "evict_completed",
      lambda: self._repo.delete_terminal(state=JobState.COMPLETED, completed_before=iso_before(moment, policy.completed_max_age_seconds), keep_latest=policy.completed_max_count),
    )
    removed += await self._persist("evict_failed", lambda: self._repo.delete_terminal(state=JobState.FAILED, completed_before=iso_before(moment, policy.failed_max_age_seconds)))
    if removed:
      logger.info("Retention sweep removed %d terminal job(s)", removed)
    return removed
