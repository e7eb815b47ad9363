"""In-memory collaborators used across the test suite."""

from __future__ import annotations

import fnmatch
import hashlib
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

from contentgen.ai.dedup import cosine_similarity
from contentgen.ai.providers.base import GenerationParams
from contentgen.jobs.models import JobRecord, JobState
from contentgen.storage.similarity_store import SimilarityMatch

_TOKEN = re.compile(r"[a-z0-9]+")


class FakeClock:
  """Monotonic test clock advanced by hand."""

  def __init__(self, start: float = 1000.0) -> None:
    self.now = start

  def __call__(self) -> float:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now += seconds

  async def sleep(self, seconds: float) -> None:
    self.advance(seconds)


class SteppingClock:
  """Wall clock for job timestamps and leases, advanced by hand."""

  def __init__(self) -> None:
    self.now = datetime(2026, 1, 1, tzinfo=UTC)

  def __call__(self) -> datetime:
    return self.now

  def advance(self, **delta: float) -> None:
    self.now += timedelta(**delta)


class HashingEmbedder:
  """Deterministic bag-of-words embedder: each token hashes to one of `dimension` buckets."""

  def __init__(self, dimension: int = 256) -> None:
    self.dimension = dimension
    self.calls: list[str] = []
    self.fail_with: Exception | None = None

  async def embed(self, text: str) -> list[float]:
    self.calls.append(text)
    if self.fail_with is not None:
      raise self.fail_with
    vector = [0.0] * self.dimension
    for token in _TOKEN.findall(text.lower()):
      bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dimension
      vector[bucket] += 1.0
    return vector


class ScriptedGenerator:
  """Returns scripted outputs in order, repeating the last one; exceptions in the script are raised."""

  def __init__(self, outputs: Iterable[str | Exception]) -> None:
    self._outputs = list(outputs)
    if not self._outputs:
      raise ValueError("ScriptedGenerator needs at least one output.")
    self.prompts: list[str] = []
    self.params: list[GenerationParams] = []

  @property
  def calls(self) -> int:
    return len(self.prompts)

  async def generate(self, prompt: str, params: GenerationParams) -> str:
    index = min(len(self.prompts), len(self._outputs) - 1)
    self.prompts.append(prompt)
    self.params.append(params)
    output = self._outputs[index]
    if isinstance(output, Exception):
      raise output
    return output


class InMemorySimilarityStore:
  """Brute-force cosine search over dict-held points."""

  def __init__(self) -> None:
    self.collections: dict[str, dict[str, tuple[list[float], dict[str, Any]]]] = {}
    self.fail_with: Exception | None = None
    self.upserts = 0

  def _check(self) -> None:
    if self.fail_with is not None:
      raise self.fail_with

  async def ensure_collection(self, collection: str, dimension: int) -> None:
    self._check()
    self.collections.setdefault(collection, {})

  async def search(self, collection: str, vector: Sequence[float], *, top_k: int = 1, threshold: float | None = None, filter: Mapping[str, Any] | None = None) -> list[SimilarityMatch]:
    self._check()
    matches: list[SimilarityMatch] = []
    for point_id, (stored, payload) in self.collections.get(collection, {}).items():
      if filter and any(payload.get(key) != value for key, value in filter.items()):
        continue
      score = cosine_similarity(vector, stored)
      if threshold is not None and score < threshold:
        continue
      matches.append(SimilarityMatch(id=point_id, similarity=score, payload=dict(payload)))
    matches.sort(key=lambda match: match.similarity, reverse=True)
    return matches[:top_k]

  async def upsert(self, collection: str, point_id: str, vector: Sequence[float], payload: Mapping[str, Any]) -> None:
    self._check()
    self.collections.setdefault(collection, {})[point_id] = (list(vector), dict(payload))
    self.upserts += 1

  async def delete(self, collection: str, point_ids: Sequence[str]) -> None:
    self._check()
    points = self.collections.get(collection, {})
    for point_id in point_ids:
      points.pop(point_id, None)

  def count(self, collection: str) -> int:
    return len(self.collections.get(collection, {}))


class InMemoryKeyValueCache:
  """Byte cache with TTLs measured on an injected clock."""

  def __init__(self, *, clock: FakeClock) -> None:
    self._clock = clock
    self._data: dict[str, tuple[bytes, float]] = {}
    self.fail_with: Exception | None = None

  def _check(self) -> None:
    if self.fail_with is not None:
      raise self.fail_with

  def _live(self) -> dict[str, bytes]:
    now = self._clock()
    return {key: value for key, (value, expires_at) in self._data.items() if expires_at > now}

  async def get(self, key: str) -> bytes | None:
    self._check()
    return self._live().get(key)

  async def set(self, key: str, value: bytes, *, ttl_seconds: int) -> None:
    self._check()
    self._data[key] = (value, self._clock() + ttl_seconds)

  async def delete(self, *keys: str) -> int:
    self._check()
    removed = 0
    for key in keys:
      if self._data.pop(key, None) is not None:
        removed += 1
    return removed

  async def scan(self, pattern: str) -> list[str]:
    self._check()
    return sorted(key for key in self._live() if fnmatch.fnmatchcase(key, pattern))


class InMemoryJobsRepo:
  """Dict-backed JobsRepository mirroring the SQL repository's semantics."""

  def __init__(self) -> None:
    self.jobs: dict[str, JobRecord] = {}
    self.fail_with: Exception | None = None
    # Number of calls that raise `fail_with` before it clears itself; None means every call.
    self.fail_times: int | None = None
    self.update_calls = 0

  def _check(self) -> None:
    if self.fail_with is None:
      return
    exc = self.fail_with
    if self.fail_times is not None:
      self.fail_times -= 1
      if self.fail_times <= 0:
        self.fail_with = None
        self.fail_times = None
    raise exc

  async def create_job(self, record: JobRecord) -> bool:
    self._check()
    if record.job_id in self.jobs:
      return False
    self.jobs[record.job_id] = replace(record, logs=list(record.logs))
    return True

  async def get_job(self, job_id: str) -> JobRecord | None:
    self._check()
    record = self.jobs.get(job_id)
    return replace(record, logs=list(record.logs)) if record is not None else None

  async def update_job(self, job_id: str, **fields: Any) -> JobRecord | None:
    self._check()
    self.update_calls += 1
    record = self.jobs.get(job_id)
    if record is None:
      return None
    changes = {key: value for key, value in fields.items() if value is not None}
    record = replace(record, **changes)
    self.jobs[job_id] = record
    return replace(record, logs=list(record.logs))

  async def claim_waiting(self, limit: int, *, started_at: str, owner_id: str | None = None, lease_expires_at: str | None = None) -> list[JobRecord]:
    self._check()
    waiting = sorted((job for job in self.jobs.values() if job.state is JobState.WAITING), key=lambda job: (-job.priority, job.enqueued_ns))
    claimed = []
    for job in waiting[:limit]:
      updated = replace(job, state=JobState.ACTIVE, started_at=job.started_at or started_at, updated_at=started_at, owner_id=owner_id, lease_expires_at=lease_expires_at)
      self.jobs[job.job_id] = updated
      claimed.append(replace(updated, logs=list(updated.logs)))
    return claimed

  async def reclaim_expired(self, limit: int, *, now: str, owner_id: str | None, lease_expires_at: str) -> list[JobRecord]:
    self._check()
    expired = sorted(
      (job for job in self.jobs.values() if job.state is JobState.ACTIVE and (job.lease_expires_at is None or job.lease_expires_at < now)),
      key=lambda job: (-job.priority, job.enqueued_ns),
    )
    reclaimed = []
    for job in expired[:limit]:
      updated = replace(job, owner_id=owner_id, lease_expires_at=lease_expires_at, updated_at=now)
      self.jobs[job.job_id] = updated
      reclaimed.append(replace(updated, logs=list(updated.logs)))
    return reclaimed

  async def renew_leases(self, job_ids: list[str], *, owner_id: str, lease_expires_at: str) -> int:
    self._check()
    renewed = 0
    for job_id in job_ids:
      job = self.jobs.get(job_id)
      if job is not None and job.state is JobState.ACTIVE and job.owner_id == owner_id:
        self.jobs[job_id] = replace(job, lease_expires_at=lease_expires_at)
        renewed += 1
    return renewed

  async def list_jobs(self, *, state: JobState | None = None, limit: int = 100) -> list[JobRecord]:
    self._check()
    jobs = sorted(self.jobs.values(), key=lambda job: job.enqueued_ns)
    if state is not None:
      jobs = [job for job in jobs if job.state is state]
    return jobs[:limit]

  async def delete_terminal(self, *, state: JobState, completed_before: str | None = None, keep_latest: int | None = None) -> int:
    self._check()
    removed = 0
    if completed_before is not None:
      for job_id in [job.job_id for job in self.jobs.values() if job.state is state and (job.completed_at or "") < completed_before]:
        del self.jobs[job_id]
        removed += 1
    if keep_latest is not None:
      terminal = sorted((job for job in self.jobs.values() if job.state is state), key=lambda job: (job.completed_at or "", job.enqueued_ns), reverse=True)
      for job in terminal[keep_latest:]:
        del self.jobs[job.job_id]
        removed += 1
    return removed
