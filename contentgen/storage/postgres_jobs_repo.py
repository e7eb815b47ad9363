"""SQL-backed repository for generation jobs using SQLAlchemy."""

from __future__ import annotations

from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentgen.jobs.models import JobKind, JobRecord, JobState
from contentgen.schema.jobs import Job
from contentgen.utils.timestamps import now_iso


class PostgresJobsRepository:
  """Persist jobs with SQLAlchemy; any async dialect works, Postgres gets SKIP LOCKED claims."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    self._session_factory = session_factory

  async def create_job(self, record: JobRecord) -> bool:
    async with self._session_factory() as session:
      if await session.get(Job, record.job_id) is not None:
        return False
      session.add(
        Job(
          job_id=record.job_id,
          kind=str(record.kind),
          payload_json=record.payload,
          state=str(record.state),
          priority=int(record.priority),
          enqueued_ns=record.enqueued_ns,
          progress=record.progress,
          attempts_made=record.attempts_made,
          max_attempts=record.max_attempts,
          result_json=record.result,
          error_json=record.error,
          logs_json=list(record.logs),
          created_at=record.created_at,
          updated_at=record.updated_at,
          started_at=record.started_at,
          completed_at=record.completed_at,
          owner_id=record.owner_id,
          lease_expires_at=record.lease_expires_at,
        )
      )
      try:
        await session.commit()
      except IntegrityError:
        # Lost a race with a concurrent enqueue of the same id.
        await session.rollback()
        return False
      return True

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

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
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      if row is None:
        return None
      if state is not None:
        row.state = str(state)
      if progress is not None:
        row.progress = progress
      if attempts_made is not None:
        row.attempts_made = attempts_made
      if result is not None:
        row.result_json = result
      if error is not None:
        row.error_json = error
      if logs is not None:
        row.logs_json = list(logs)
      if started_at is not None:
        row.started_at = started_at
      if completed_at is not None:
        row.completed_at = completed_at
      row.updated_at = updated_at or now_iso()
      await session.commit()
      return self._model_to_record(row)

  async def claim_waiting(self, limit: int, *, started_at: str, owner_id: str | None = None, lease_expires_at: str | None = None) -> list[JobRecord]:
    async with self._session_factory() as session:
      # SKIP LOCKED lets several dispatchers claim from the same table without double-claiming.
      stmt = select(Job).where(Job.state == str(JobState.WAITING)).order_by(Job.priority.desc(), Job.enqueued_ns.asc()).limit(limit).with_for_update(skip_locked=True)
      rows = list((await session.execute(stmt)).scalars().all())
      for row in rows:
        row.state = str(JobState.ACTIVE)
        row.started_at = row.started_at or started_at
        row.updated_at = started_at
        row.owner_id = owner_id
        row.lease_expires_at = lease_expires_at
      await session.commit()
      return [self._model_to_record(row) for row in rows]

  async def reclaim_expired(self, limit: int, *, now: str, owner_id: str | None, lease_expires_at: str) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = (
        select(Job)
        .where(Job.state == str(JobState.ACTIVE), or_(Job.lease_expires_at.is_(None), Job.lease_expires_at < now))
        .order_by(Job.priority.desc(), Job.enqueued_ns.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
      )
      rows = list((await session.execute(stmt)).scalars().all())
      for row in rows:
        row.owner_id = owner_id
        row.lease_expires_at = lease_expires_at
        row.updated_at = now
      await session.commit()
      return [self._model_to_record(row) for row in rows]

  async def renew_leases(self, job_ids: list[str], *, owner_id: str, lease_expires_at: str) -> int:
    if not job_ids:
      return 0
    async with self._session_factory() as session:
      stmt = (
        update(Job)
        .where(Job.job_id.in_(job_ids), Job.owner_id == owner_id, Job.state == str(JobState.ACTIVE))
        .values(lease_expires_at=lease_expires_at)
        .execution_options(synchronize_session=False)
      )
      result = await session.execute(stmt)
      await session.commit()
      return int(result.rowcount or 0)

  async def list_jobs(self, *, state: JobState | None = None, limit: int = 100) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(Job).order_by(Job.enqueued_ns.asc()).limit(limit)
      if state is not None:
        stmt = stmt.where(Job.state == str(state))
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def delete_terminal(self, *, state: JobState, completed_before: str | None = None, keep_latest: int | None = None) -> int:
    if state not in {JobState.COMPLETED, JobState.FAILED}:
      raise ValueError(f"Only terminal jobs can be evicted, got {state}.")
    removed = 0
    async with self._session_factory() as session:
      if completed_before is not None:
        result = await session.execute(delete(Job).where(Job.state == str(state), Job.completed_at < completed_before).execution_options(synchronize_session=False))
        removed += int(result.rowcount or 0)
      if keep_latest is not None:
        newest = select(Job.job_id).where(Job.state == str(state)).order_by(Job.completed_at.desc(), Job.enqueued_ns.desc()).limit(keep_latest)
        result = await session.execute(delete(Job).where(Job.state == str(state), Job.job_id.not_in(newest)).execution_options(synchronize_session=False))
        removed += int(result.rowcount or 0)
      await session.commit()
    return removed

  def _model_to_record(self, row: Job) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      kind=JobKind(row.kind),
      payload=dict(row.payload_json or {}),
      state=JobState(row.state),
      created_at=row.created_at,
      updated_at=row.updated_at,
      priority=int(row.priority),
      enqueued_ns=int(row.enqueued_ns),
      progress=float(row.progress),
      attempts_made=int(row.attempts_made),
      max_attempts=int(row.max_attempts),
      result=row.result_json,
      error=row.error_json,
      logs=list(row.logs_json or []),
      started_at=row.started_at,
      completed_at=row.completed_at,
      owner_id=row.owner_id,
      lease_expires_at=row.lease_expires_at,
    )
