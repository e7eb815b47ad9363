from __future__ import annotations

import asyncio

import pytest

from contentgen.ai.backoff import ExponentialBackoff
from contentgen.ai.circuit_breaker import CircuitBreaker, CircuitState
from contentgen.ai.guard import CallGuard, GuardedEmbedder, GuardedGenerator, GuardedSimilarityStore
from contentgen.ai.providers.base import GenerationParams
from contentgen.ai.rate_limit import TokenBucket
from contentgen.core.exceptions import CallTimeoutError, CircuitOpenError, ProviderError, RateLimitedError, UpstreamUnavailableError
from tests.support import FakeClock, HashingEmbedder, InMemorySimilarityStore, ScriptedGenerator


async def _no_sleep(_: float) -> None:
  return None


def _guard(clock: FakeClock, *, timeout: float = 5.0, limiter: TokenBucket | None = None, failure_threshold: int = 5) -> CallGuard:
  breaker = CircuitBreaker(name="generator", failure_threshold=failure_threshold, timeout=60.0, clock=clock)
  return CallGuard(name="generator", breaker=breaker, backoff=ExponentialBackoff(sleep=_no_sleep), timeout=timeout, max_attempts=3, limiter=limiter, limiter_timeout=0.0)


@pytest.mark.anyio
async def test_transient_failures_are_retried(clock: FakeClock) -> None:
  generator = ScriptedGenerator([UpstreamUnavailableError("503"), "fresh output text"])
  guarded = GuardedGenerator(generator, _guard(clock))

  assert await guarded.generate("prompt", GenerationParams()) == "fresh output text"
  assert generator.calls == 2
  assert guarded.guard.breaker.failure_count == 0


@pytest.mark.anyio
async def test_non_transient_errors_are_not_retried(clock: FakeClock) -> None:
  generator = ScriptedGenerator([ProviderError("400 invalid model")])
  guarded = GuardedGenerator(generator, _guard(clock))

  with pytest.raises(ProviderError):
    await guarded.generate("prompt", GenerationParams())
  assert generator.calls == 1


@pytest.mark.anyio
async def test_slow_calls_hit_the_deadline(clock: FakeClock) -> None:
  calls = 0

  async def slow() -> str:
    nonlocal calls
    calls += 1
    await asyncio.sleep(1)
    return "late"

  with pytest.raises(CallTimeoutError):
    await _guard(clock, timeout=0.01).run(slow, operation="generate")
  assert calls == 3


@pytest.mark.anyio
async def test_open_circuit_is_not_retried(clock: FakeClock) -> None:
  generator = ScriptedGenerator([UpstreamUnavailableError("503")])
  guard = _guard(clock, failure_threshold=3)
  guarded = GuardedGenerator(generator, guard)

  with pytest.raises(UpstreamUnavailableError):
    await guarded.generate("prompt", GenerationParams())
  assert guard.breaker.state is CircuitState.OPEN

  with pytest.raises(CircuitOpenError):
    await guarded.generate("prompt", GenerationParams())
  assert generator.calls == 3


@pytest.mark.anyio
async def test_rate_limit_refusals_do_not_trip_the_breaker(clock: FakeClock) -> None:
  limiter = TokenBucket(capacity=1, refill_rate=0.01, clock=clock, sleep=clock.sleep)
  generator = ScriptedGenerator(["first output text"])
  guard = _guard(clock, limiter=limiter, failure_threshold=1)
  guarded = GuardedGenerator(generator, guard)

  await guarded.generate("prompt", GenerationParams())
  with pytest.raises(RateLimitedError):
    await guarded.generate("prompt", GenerationParams())

  assert generator.calls == 1
  assert guard.breaker.state is CircuitState.CLOSED


@pytest.mark.anyio
async def test_guarded_embedder_and_store_delegate(clock: FakeClock, embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  guarded_embedder = GuardedEmbedder(embedder, _guard(clock))
  guarded_store = GuardedSimilarityStore(similarity_store, _guard(clock))

  vector = await guarded_embedder.embed("plate tectonics")
  await guarded_store.ensure_collection("items", len(vector))
  await guarded_store.upsert("items", "a", vector, {"topic_id": "geo"})
  matches = await guarded_store.search("items", vector, top_k=1, filter={"topic_id": "geo"})
  await guarded_store.delete("items", ["a"])

  assert matches[0].id == "a"
  assert similarity_store.count("items") == 0
