"""Job progress tracking utilities."""

from __future__ import annotations

from collections.abc import Iterable

from contentgen.jobs.models import JobRecord, JobState
from contentgen.jobs.store import MAX_TRACKED_LOGS, JobStore


class JobProgressTracker:
  """Report per-unit progress and buffered log lines for one active job."""

  def __init__(self, *, job_id: str, store: JobStore, initial_progress: float = 0.0, owner_id: str | None = None) -> None:
    self._job_id = job_id
    self._owner_id = owner_id
    self._store = store
    self._progress = initial_progress
    self._pending_logs: list[str] = []

  def add_logs(self, *messages: str) -> None:
    """Buffer log lines until the next persisted update."""

    self._pending_logs.extend(message for message in messages if message.strip())
    if len(self._pending_logs) > MAX_TRACKED_LOGS:
      self._pending_logs = self._pending_logs[-MAX_TRACKED_LOGS:]

  def extend_logs(self, messages: Iterable[str]) -> None:
    self.add_logs(*messages)

  def drain_logs(self) -> list[str]:
    """Return and clear buffered log lines."""

    pending, self._pending_logs = self._pending_logs, []
    return pending

  @property
  def progress(self) -> float:
    return self._progress

  async def report(self, *, completed: int, total: int, message: str | None = None) -> JobRecord:
    """Persist progress as completed/total percent along with buffered logs."""

    if message:
      self.add_logs(message)
    percent = 100.0 if total <= 0 else min(round(completed / total * 100, 2), 100.0)
    # Retried attempts restart their counters; never report less than already recorded.
    self._progress = max(self._progress, percent)
    return await self._store.transition(self._job_id, JobState.ACTIVE, progress=self._progress, logs=self.drain_logs(), owner_id=self._owner_id)
