"""Bounded worker pool that claims waiting jobs and runs them to a terminal state."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from contentgen.ai.backoff import ExponentialBackoff
from contentgen.core.exceptions import ContentGenError, JobValidationError, LeaseLostError, PersistenceError, ProviderError, describe_error
from contentgen.jobs.dispatch import JobProcessorRegistry
from contentgen.jobs.models import JobRecord, JobState, parse_payload
from contentgen.jobs.progress import JobProgressTracker
from contentgen.jobs.store import JobStore, RetentionPolicy
from contentgen.utils.ids import generate_worker_id

logger = logging.getLogger(__name__)


class WorkerPool:
  """Run up to `concurrency` jobs at once, claiming new ones only when a slot is free.

  Claims follow the store's dispatch order (priority, then FIFO). Every claimed
  job is leased to this pool's `worker_id`; leases of running jobs are renewed
  while they run, and only jobs whose lease lapsed (their worker died) are
  taken over. A failing job is retried in place (it stays active) with
  exponential backoff until its `max_attempts` are used up, then it is marked
  failed. Validation errors and provider rejections fail immediately.
  """

  def __init__(
    self,
    *,
    store: JobStore,
    registry: JobProcessorRegistry,
    concurrency: int = 2,
    retry_backoff: ExponentialBackoff | None = None,
    poll_interval: float = 2.0,
    retention: RetentionPolicy | None = None,
    retention_interval: float = 300.0,
    recover_active: bool = True,
    worker_id: str | None = None,
    lease_renew_interval: float | None = None,
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    if concurrency < 1:
      raise ValueError("Worker concurrency must be at least 1.")
    self._store = store
    self._registry = registry
    self._concurrency = concurrency
    self._retry_backoff = retry_backoff or ExponentialBackoff(base_delay=2.0, max_delay=60.0)
    self._poll_interval = poll_interval
    self._retention = retention
    self._retention_interval = retention_interval
    self._recover_active = recover_active
    self._worker_id = worker_id or generate_worker_id()
    # Renew well before the lease runs out so a slow poll never lets it lapse.
    self._lease_renew_interval = lease_renew_interval if lease_renew_interval is not None else store.lease_seconds / 3
    self._clock = clock
    self._running: dict[str, asyncio.Task[None]] = {}
    self._wakeup = asyncio.Event()
    self._stopping = False
    self._loop_task: asyncio.Task[None] | None = None
    self._last_sweep: float | None = None
    self._last_lease_check: float | None = None

  @property
  def concurrency(self) -> int:
    return self._concurrency

  @property
  def worker_id(self) -> str:
    return self._worker_id

  @property
  def active_job_ids(self) -> list[str]:
    return list(self._running)

  def notify(self) -> None:
    """Wake the dispatch loop, e.g. right after an enqueue."""
    self._wakeup.set()

  async def start(self) -> None:
    if self._loop_task is not None:
      return
    self._stopping = False
    if self._recover_active:
      try:
        await self._reclaim_expired()
      except PersistenceError as exc:
        logger.error("Could not reclaim expired jobs on start: %s", exc)
    self._loop_task = asyncio.create_task(self._dispatch_loop(), name="contentgen-dispatch")
    logger.info("Worker pool %s started with concurrency=%d", self._worker_id, self._concurrency)

  async def stop(self) -> None:
    """Stop claiming and wait for running jobs to finish."""
    self._stopping = True
    self._wakeup.set()
    if self._loop_task is not None:
      await self._loop_task
      self._loop_task = None
    if self._running:
      logger.info("Waiting for %d running job(s) before shutdown", len(self._running))
      await asyncio.gather(*self._running.values(), return_exceptions=True)
    logger.info("Worker pool %s stopped.", self._worker_id)

  async def run_until_idle(self) -> None:
    """Claim and run jobs until nothing is waiting or running."""
    while True:
      await self._fill_slots()
      if not self._running:
        return
      await asyncio.wait(list(self._running.values()), return_when=asyncio.FIRST_COMPLETED)

  async def _dispatch_loop(self) -> None:
    while not self._stopping:
      self._wakeup.clear()
      try:
        await self._maintain_leases()
        await self._fill_slots()
        await self._maybe_sweep()
      except PersistenceError as exc:
        logger.error("Dispatch cycle failed; job store unavailable: %s", exc)
      if self._stopping:
        break
      try:
        async with asyncio.timeout(self._poll_interval):
          await self._wakeup.wait()
      except TimeoutError:
        pass

  async def _fill_slots(self) -> int:
    claimed = 0
    while not self._stopping and len(self._running) < self._concurrency:
      jobs = await self._store.claim(1, owner_id=self._worker_id)
      if not jobs:
        break
      self._launch(jobs[0])
      claimed += 1
    return claimed

  def _launch(self, job: JobRecord) -> None:
    task = asyncio.create_task(self._run_job(job), name=f"job:{job.job_id}")
    self._running[job.job_id] = task
    task.add_done_callback(lambda done, job_id=job.job_id: self._on_job_done(job_id, done))

  def _on_job_done(self, job_id: str, task: asyncio.Task[None]) -> None:
    self._running.pop(job_id, None)
    # Free slot: let the dispatch loop claim the next job immediately.
    self._wakeup.set()
    if not task.cancelled() and task.exception() is not None:
      logger.error("Job task crashed: job_id=%s", job_id, exc_info=task.exception())

  async def _maintain_leases(self) -> None:
    now = self._clock()
    if self._last_lease_check is not None and now - self._last_lease_check < self._lease_renew_interval:
      return
    self._last_lease_check = now
    if self._running:
      await self._store.renew_leases(list(self._running), owner_id=self._worker_id)
    if self._recover_active:
      await self._reclaim_expired()

  async def _reclaim_expired(self) -> None:
    """Take over active jobs whose worker stopped renewing its lease."""
    free = self._concurrency - len(self._running)
    if free < 1:
      return
    for job in await self._store.reclaim_expired(free, owner_id=self._worker_id):
      if job.job_id in self._running:
        continue
      logger.warning("Resuming job %s after its lease expired (attempts_made=%d)", job.job_id, job.attempts_made)
      self._launch(job)

  async def _maybe_sweep(self) -> None:
    if self._retention is None:
      return
    now = self._clock()
    if self._last_sweep is not None and now - self._last_sweep < self._retention_interval:
      return
    self._last_sweep = now
    await self._store.evict_expired(self._retention)

  async def _run_job(self, job: JobRecord) -> None:
    try:
      payload = parse_payload(job.payload)
      handler = self._registry.resolve(job.kind)
    except JobValidationError as exc:
      logger.warning("Job %s failed validation: %s", job.job_id, exc)
      await self._fail(job, exc, job.attempts_made)
      return

    attempts = job.attempts_made
    tracker = JobProgressTracker(job_id=job.job_id, store=self._store, initial_progress=job.progress, owner_id=self._worker_id)
    while True:
      attempts += 1
      try:
        await self._store.transition(
          job.job_id,
          JobState.ACTIVE,
          attempts_made=attempts,
          logs=[*tracker.drain_logs(), f"Attempt {attempts}/{job.max_attempts} started."],
          owner_id=self._worker_id,
        )
        result = await handler.process(job, payload, tracker)
        await self._store.transition(job.job_id, JobState.COMPLETED, result=result, logs=[*tracker.drain_logs(), "Job completed."], owner_id=self._worker_id)
        return
      except LeaseLostError as exc:
        logger.warning("Abandoning job %s: %s", job.job_id, exc)
        return
      except JobValidationError as exc:
        logger.warning("Job %s rejected as invalid: %s", job.job_id, exc)
        await self._fail(job, exc, attempts, tracker=tracker)
        return
      except ProviderError as exc:
        logger.error("Job %s rejected by provider: %s", job.job_id, exc)
        await self._fail(job, exc, attempts, tracker=tracker)
        return
      except PersistenceError as exc:
        logger.error("Job %s could not persist its state: %s", job.job_id, exc)
        await self._fail(job, exc, attempts, tracker=tracker)
        return
      except Exception as exc:  # noqa: BLE001
        if attempts >= job.max_attempts:
          logger.error("Job %s failed after %d attempt(s): %s", job.job_id, attempts, exc, exc_info=True)
          await self._fail(job, exc, attempts, tracker=tracker)
          return
        delay = self._retry_backoff.delay(attempts)
        tracker.add_logs(f"Attempt {attempts} failed ({type(exc).__name__}); retrying in {delay:.1f}s.")
        logger.warning("Job %s attempt %d/%d failed: %s; retrying in %.2fs", job.job_id, attempts, job.max_attempts, exc, delay)
        await self._retry_backoff.sleep(delay)

  async def _fail(self, job: JobRecord, exc: BaseException, attempts: int, *, tracker: JobProgressTracker | None = None) -> None:
    logs = tracker.drain_logs() if tracker is not None else []
    logs.append(f"Job failed: {type(exc).__name__}: {exc}")
    try:
      await self._store.transition(job.job_id, JobState.FAILED, error={**describe_error(exc), "attempts": attempts}, logs=logs, owner_id=self._worker_id)
    except ContentGenError as record_exc:
      # The record keeps its last persisted state and stays inspectable.
      logger.error("Job %s could not be marked failed (%s); original error: %s", job.job_id, record_exc, exc)
