"""Service entry points for enqueueing jobs, reading status, and cache invalidation."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from contentgen.jobs.models import JobPriority, JobRecord, JobState
from contentgen.jobs.store import JobStore
from contentgen.jobs.worker import WorkerPool
from contentgen.services.semantic_cache import MultiTierCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobStatusView:
  """Caller-facing job status snapshot."""

  job_id: str
  state: JobState
  progress: float
  attempts_made: int
  max_attempts: int
  result: dict[str, Any] | None
  error: dict[str, Any] | None
  logs: list[str]

  @classmethod
  def from_record(cls, record: JobRecord) -> JobStatusView:
    return cls(
      job_id=record.job_id,
      state=record.state,
      progress=record.progress,
      attempts_made=record.attempts_made,
      max_attempts=record.max_attempts,
      result=record.result,
      error=record.error,
      logs=list(record.logs),
    )

  def to_dict(self) -> dict[str, Any]:
    return {
      "job_id": self.job_id,
      "state": str(self.state),
      "progress": self.progress,
      "attempts_made": self.attempts_made,
      "max_attempts": self.max_attempts,
      "result": self.result,
      "error": self.error,
      "logs": self.logs,
    }


class JobService:
  def __init__(self, store: JobStore, cache: MultiTierCache | None = None, pool: WorkerPool | None = None) -> None:
    self._store = store
    self._cache = cache
    self._pool = pool

  async def enqueue_job(self, payload: Mapping[str, Any] | BaseModel, priority: int = JobPriority.NORMAL, *, job_id: str | None = None) -> str:
    """Validate, persist, and wake the dispatcher; returns the job id."""
    job_id = await self._store.enqueue(payload, priority=priority, job_id=job_id)
    if self._pool is not None:
      self._pool.notify()
    return job_id

  async def get_job_status(self, job_id: str) -> JobStatusView:
    record = await self._store.get_status(job_id)
    return JobStatusView.from_record(record)

  async def invalidate_cache_pattern(self, pattern: str) -> int:
    if self._cache is None:
      logger.warning("Cache invalidation requested for %s but no cache is configured", pattern)
      return 0
    return await self._cache.invalidate_pattern(pattern)
