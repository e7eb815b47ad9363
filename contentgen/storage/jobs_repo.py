"""Storage interfaces for generation jobs."""

from __future__ import annotations

from typing import Any, Protocol

from contentgen.jobs.models import JobRecord, JobState


class JobsRepository(Protocol):
  """Repository contract for durable job records."""

  async def create_job(self, record: JobRecord) -> bool:
    """Insert a job; return False when the id already exists."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def update_job(
    self,
    job_id: str,
    *,
    state: JobState | None = None,
    progress: float | None = None,
    attempts_made: int | None = None,
    result: dict[str, Any] | None = None,
    error: dict[str, Any] | None = None,
    logs: list[str] | None = None,
    started_at: str | None = None,
    completed_at: str | None = None,
    updated_at: str | None = None,
  ) -> JobRecord | None:
    """Apply partial updates to a job. `logs` replaces the stored window."""

  async def claim_waiting(self, limit: int, *, started_at: str, owner_id: str | None = None, lease_expires_at: str | None = None) -> list[JobRecord]:
    """Atomically move up to `limit` waiting jobs to active, highest priority first, FIFO within a priority."""

  async def reclaim_expired(self, limit: int, *, now: str, owner_id: str | None, lease_expires_at: str) -> list[JobRecord]:
    """Atomically take over up to `limit` active jobs whose lease is missing or older than `now`."""

  async def renew_leases(self, job_ids: list[str], *, owner_id: str, lease_expires_at: str) -> int:
    """Extend the lease of active jobs still owned by `owner_id`; return how many were renewed."""

  async def list_jobs(self, *, state: JobState | None = None, limit: int = 100) -> list[JobRecord]:
    """List jobs, oldest first."""

  async def delete_terminal(self, *, state: JobState, completed_before: str | None = None, keep_latest: int | None = None) -> int:
    """Delete terminal jobs older than `completed_before` or beyond the newest `keep_latest`."""
