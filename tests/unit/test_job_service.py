from __future__ import annotations

from typing import Any

import pytest

from contentgen.ai.backoff import ExponentialBackoff
from contentgen.ai.generation import GenerationWorker
from contentgen.core.exceptions import JobNotFoundError, JobValidationError
from contentgen.jobs.dispatch import JobProcessorRegistry
from contentgen.jobs.handlers import ItemGenerationHandler
from contentgen.jobs.models import JobKind, JobPriority, JobState
from contentgen.jobs.store import JobStore
from contentgen.jobs.worker import WorkerPool
from contentgen.services.jobs import JobService
from contentgen.services.semantic_cache import MultiTierCache
from tests.support import HashingEmbedder, InMemoryJobsRepo, InMemoryKeyValueCache, InMemorySimilarityStore, ScriptedGenerator


async def _no_sleep(_: float) -> None:
  return None


async def _origin(query: str) -> list[dict[str, Any]]:
  return [{"title": query, "url": "https://example.org", "content": "reference"}]


@pytest.mark.anyio
async def test_enqueue_run_and_read_status(jobs_repo: InMemoryJobsRepo, embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  store = JobStore(jobs_repo)
  generator = ScriptedGenerator(["Explain evaporation with a puddle example.", "Why do metals conduct heat well?"])
  handler = ItemGenerationHandler(GenerationWorker(generator=generator, embedder=embedder, corpus_store=similarity_store, corpus_collection="items"))
  pool = WorkerPool(store=store, registry=JobProcessorRegistry({JobKind.BATCH: handler}), concurrency=1, retry_backoff=ExponentialBackoff(sleep=_no_sleep))
  service = JobService(store, pool=pool)

  job_id = await service.enqueue_job({"kind": "batch", "topic_id": "science-6", "target_count": 2}, JobPriority.HIGH)
  waiting = await service.get_job_status(job_id)
  await pool.run_until_idle()
  done = await service.get_job_status(job_id)

  assert waiting.state is JobState.WAITING
  assert jobs_repo.jobs[job_id].priority == JobPriority.HIGH
  assert done.state is JobState.COMPLETED
  assert done.progress == 100.0
  assert done.result is not None and done.result["accepted"] == 2
  assert done.to_dict()["state"] == "completed"


@pytest.mark.anyio
async def test_invalid_payloads_and_unknown_jobs(jobs_repo: InMemoryJobsRepo) -> None:
  service = JobService(JobStore(jobs_repo))

  with pytest.raises(JobValidationError):
    await service.enqueue_job({"kind": "poem", "topic_id": "x"})
  with pytest.raises(JobNotFoundError):
    await service.get_job_status("missing")
  assert jobs_repo.jobs == {}


@pytest.mark.anyio
async def test_cache_invalidation(jobs_repo: InMemoryJobsRepo, embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore, kv_cache: InMemoryKeyValueCache) -> None:
  cache = MultiTierCache(embedder=embedder, store=similarity_store, kv=kv_cache, collection="searches", ttl_seconds=60)
  service = JobService(JobStore(jobs_repo), cache=cache)
  await cache.lookup("CBSE Class 9 Physics syllabus", _origin, namespace="cbse")
  await cache.lookup("ICSE Class 9 Physics syllabus", _origin, namespace="icse")
  await cache.drain()

  assert await service.invalidate_cache_pattern("cache:cbse:*") == 1
  assert await kv_cache.scan("cache:*") == [cache.cache_key("ICSE Class 9 Physics syllabus", namespace="icse")]
  assert await JobService(JobStore(jobs_repo)).invalidate_cache_pattern("cache:*") == 0
