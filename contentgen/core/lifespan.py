"""Build and tear down the engine runtime: storage, providers, workers, and the pool."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from contentgen.ai.backoff import ExponentialBackoff
from contentgen.ai.circuit_breaker import CircuitBreaker
from contentgen.ai.generation import GenerationWorker
from contentgen.ai.guard import CallGuard, GuardedEmbedder, GuardedGenerator, GuardedSimilarityStore
from contentgen.ai.providers.base import Embedder, SearchOrigin, TextGenerator
from contentgen.ai.providers.ollama import OllamaEmbedder, OllamaGenerator
from contentgen.ai.providers.openai_compat import OpenAICompatibleEmbedder, OpenAICompatibleGenerator, build_client
from contentgen.ai.providers.tavily import TavilySearchOrigin
from contentgen.ai.rate_limit import TokenBucket
from contentgen.config import Settings
from contentgen.core.database import build_session_factory, create_engine_from_settings, create_schema
from contentgen.core.logging import initialize_logging
from contentgen.jobs.dispatch import JobProcessorRegistry
from contentgen.jobs.handlers import CurriculumDraftHandler, ItemGenerationHandler
from contentgen.jobs.models import JobKind
from contentgen.jobs.store import JobStore, RetentionPolicy
from contentgen.jobs.worker import WorkerPool
from contentgen.services.curriculum import CurriculumDraftWorker
from contentgen.services.jobs import JobService
from contentgen.services.semantic_cache import MultiTierCache
from contentgen.storage.kv_cache import RedisKeyValueCache
from contentgen.storage.postgres_jobs_repo import PostgresJobsRepository
from contentgen.storage.qdrant_store import QdrantSimilarityStore

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
  """Wired collaborators for one process."""

  settings: Settings
  engine: AsyncEngine
  store: JobStore
  cache: MultiTierCache
  pool: WorkerPool
  service: JobService


def _backoff(settings: Settings) -> ExponentialBackoff:
  return ExponentialBackoff(base_delay=settings.backoff_base_seconds, max_delay=settings.backoff_max_seconds)


def _guard(settings: Settings, name: str, timeout: float, *, limiter: TokenBucket | None = None) -> CallGuard:
  breaker = CircuitBreaker(
    name=name,
    failure_threshold=settings.breaker_failure_threshold,
    timeout=settings.breaker_timeout_seconds,
    success_threshold=settings.breaker_success_threshold,
  )
  return CallGuard(
    name=name,
    breaker=breaker,
    backoff=_backoff(settings),
    timeout=timeout,
    max_attempts=settings.call_max_attempts,
    limiter=limiter,
    limiter_timeout=settings.rate_limit_wait_seconds if limiter is not None else None,
  )


def _build_providers(settings: Settings, closers: list[Callable[[], Awaitable[None]]]) -> tuple[TextGenerator, Embedder]:
  """Create raw generator and embedder clients for the configured providers."""
  openai_client = None
  if "openai" in {settings.generator_provider, settings.embedding_provider}:
    openai_client = build_client(api_key=settings.generator_api_key, base_url=settings.generator_base_url, timeout=settings.generation_timeout_seconds)
    closers.append(openai_client.close)

  generator: TextGenerator
  if settings.generator_provider == "openai":
    generator = OpenAICompatibleGenerator(model=settings.generator_model, client=openai_client)
  else:
    ollama_generator = OllamaGenerator(model=settings.generator_model, base_url=settings.generator_base_url, timeout=settings.generation_timeout_seconds)
    closers.append(ollama_generator.aclose)
    generator = ollama_generator

  embedder: Embedder
  if settings.embedding_provider == "openai":
    embedder = OpenAICompatibleEmbedder(model=settings.embedding_model, client=openai_client)
  else:
    ollama_embedder = OllamaEmbedder(model=settings.embedding_model, base_url=settings.embedding_base_url or settings.generator_base_url, timeout=settings.embedding_timeout_seconds)
    closers.append(ollama_embedder.aclose)
    embedder = ollama_embedder
  return generator, embedder


async def build_runtime(settings: Settings, stack: AsyncExitStack) -> Runtime:
  """Wire every collaborator; cleanup callbacks are pushed onto `stack`."""
  engine = create_engine_from_settings(settings)
  stack.push_async_callback(engine.dispose)
  await create_schema(engine)
  store = JobStore(
    PostgresJobsRepository(build_session_factory(engine)),
    default_max_attempts=settings.job_max_attempts,
    persistence_attempts=settings.persistence_max_attempts,
    lease_seconds=settings.job_lease_seconds,
  )

  closers: list[Callable[[], Awaitable[None]]] = []
  raw_generator, raw_embedder = _build_providers(settings, closers)
  for closer in closers:
    stack.push_async_callback(closer)

  # One bucket per process: every generator call draws from it.
  limiter = TokenBucket(capacity=settings.rate_limit_capacity, refill_rate=settings.rate_limit_refill_per_second)
  generator = GuardedGenerator(raw_generator, _guard(settings, "generator", settings.generation_timeout_seconds, limiter=limiter))
  embedder = GuardedEmbedder(raw_embedder, _guard(settings, "embedder", settings.embedding_timeout_seconds))

  qdrant = QdrantSimilarityStore.from_url(settings.qdrant_url, api_key=settings.qdrant_api_key, timeout=int(settings.similarity_timeout_seconds))
  stack.push_async_callback(qdrant.close)
  similarity = GuardedSimilarityStore(qdrant, _guard(settings, "similarity", settings.similarity_timeout_seconds))
  for collection in (settings.corpus_collection, settings.cache_collection, settings.curriculum_collection):
    await similarity.ensure_collection(collection, settings.embedding_dim)

  kv = RedisKeyValueCache.from_url(settings.redis_url)
  stack.push_async_callback(kv.close)
  cache = MultiTierCache(
    embedder=embedder,
    store=similarity,
    kv=kv,
    collection=settings.cache_collection,
    ttl_seconds=settings.cache_ttl_seconds,
    semantic_threshold=settings.cache_semantic_threshold,
  )
  stack.push_async_callback(cache.drain)

  search_origin: SearchOrigin | None = None
  if settings.tavily_api_key:
    search_origin = TavilySearchOrigin(settings.tavily_api_key, max_results=settings.search_max_results)
  else:
    logger.warning("CONTENTGEN_TAVILY_API_KEY is not set; curriculum drafts will be generated without references.")

  item_worker = GenerationWorker(
    generator=generator,
    embedder=embedder,
    corpus_store=similarity,
    corpus_collection=settings.corpus_collection,
    config=settings.adaptive,
    session_threshold_offset=settings.session_threshold_offset,
    corpus_threshold_offset=settings.corpus_threshold_offset,
    min_chars=settings.min_item_chars,
    max_tokens=settings.generation_max_tokens,
  )
  curriculum_worker = CurriculumDraftWorker(
    generator=generator,
    embedder=embedder,
    cache=cache,
    search_origin=search_origin,
    corpus_store=similarity,
    collection=settings.curriculum_collection,
    min_chars=settings.min_item_chars,
  )
  item_handler = ItemGenerationHandler(item_worker)
  registry = JobProcessorRegistry({JobKind.SINGLE_ITEM: item_handler, JobKind.BATCH: item_handler, JobKind.CURRICULUM_DRAFT: CurriculumDraftHandler(curriculum_worker)})

  pool = WorkerPool(
    store=store,
    registry=registry,
    concurrency=settings.worker_concurrency,
    retry_backoff=ExponentialBackoff(base_delay=settings.job_retry_base_seconds, max_delay=settings.job_retry_max_seconds),
    poll_interval=settings.worker_poll_interval_seconds,
    retention=RetentionPolicy(
      completed_max_age_seconds=settings.retention_completed_age_seconds,
      completed_max_count=settings.retention_completed_count,
      failed_max_age_seconds=settings.retention_failed_age_seconds,
    ),
    retention_interval=settings.retention_sweep_interval_seconds,
    recover_active=settings.recover_active_on_start,
  )
  service = JobService(store, cache, pool)
  return Runtime(settings=settings, engine=engine, store=store, cache=cache, pool=pool, service=service)


@asynccontextmanager
async def runtime_context(settings: Settings, *, start_workers: bool = False) -> AsyncIterator[Runtime]:
  """Build the runtime, optionally run the worker pool, and release everything on exit."""
  initialize_logging(settings)
  async with AsyncExitStack() as stack:
    runtime = await build_runtime(settings, stack)
    if start_workers:
      await runtime.pool.start()
      # Registered last so it runs first: running jobs finish before clients close.
      stack.push_async_callback(runtime.pool.stop)
    logger.info("Runtime ready (environment=%s, workers=%s)", settings.environment, start_workers)
    yield runtime
  logger.info("Runtime shut down.")
