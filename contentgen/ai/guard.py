"""Resilience wrappers for external collaborators.

Every generator, embedder, and similarity-store call is an await boundary that
gets a hard deadline, a circuit breaker, and backoff retries for transient
failures. Generator calls additionally draw from the shared token bucket.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from contentgen.ai.backoff import ExponentialBackoff
from contentgen.ai.circuit_breaker import CircuitBreaker
from contentgen.ai.providers.base import Embedder, GenerationParams, TextGenerator
from contentgen.ai.rate_limit import TokenBucket
from contentgen.core.exceptions import CallTimeoutError, CircuitOpenError, TransientError
from contentgen.storage.similarity_store import SimilarityMatch, SimilarityStore

logger = logging.getLogger(__name__)


def _retryable(exc: Exception) -> bool:
  # An open circuit will not close within a backoff window; let the caller count the attempt.
  return isinstance(exc, TransientError) and not isinstance(exc, CircuitOpenError)


@dataclass
class CallGuard:
  """Deadline + circuit breaker + backoff (+ optional token bucket) for one collaborator."""

  name: str
  breaker: CircuitBreaker
  backoff: ExponentialBackoff
  timeout: float
  max_attempts: int = 3
  limiter: TokenBucket | None = None
  limiter_timeout: float | None = None

  async def _with_deadline[T](self, fn: Callable[[], Awaitable[T]], operation: str) -> T:
    try:
      async with asyncio.timeout(self.timeout):
        return await fn()
    except TimeoutError as exc:
      raise CallTimeoutError(f"{self.name}.{operation} exceeded {self.timeout:.1f}s") from exc

  async def run[T](self, fn: Callable[[], Awaitable[T]], *, operation: str) -> T:
    """Run `fn` under every configured protection."""

    async def _attempt() -> T:
      if self.limiter is not None:
        await self.limiter.acquire(1, timeout=self.limiter_timeout)
      return await self.breaker.call(lambda: self._with_deadline(fn, operation))

    return await self.backoff.retry(_attempt, max_attempts=self.max_attempts, should_retry=_retryable, operation=f"{self.name}.{operation}")


class GuardedGenerator:
  """TextGenerator that routes every call through a CallGuard."""

  def __init__(self, generator: TextGenerator, guard: CallGuard) -> None:
    self._generator = generator
    self.guard = guard

  async def generate(self, prompt: str, params: GenerationParams) -> str:
    return await self.guard.run(lambda: self._generator.generate(prompt, params), operation="generate")


class GuardedEmbedder:
  """Embedder that routes every call through a CallGuard."""

  def __init__(self, embedder: Embedder, guard: CallGuard) -> None:
    self._embedder = embedder
    self.guard = guard

  async def embed(self, text: str) -> list[float]:
    return await self.guard.run(lambda: self._embedder.embed(text), operation="embed")


class GuardedSimilarityStore:
  """SimilarityStore that routes every call through a CallGuard."""

  def __init__(self, store: SimilarityStore, guard: CallGuard) -> None:
    self._store = store
    self.guard = guard

  async def ensure_collection(self, collection: str, dimension: int) -> None:
    await self.guard.run(lambda: self._store.ensure_collection(collection, dimension), operation="ensure_collection")

  async def search(self, collection: str, vector: Sequence[float], *, top_k: int = 1, threshold: float | None = None, filter: Mapping[str, Any] | None = None) -> list[SimilarityMatch]:
    return await self.guard.run(lambda: self._store.search(collection, vector, top_k=top_k, threshold=threshold, filter=filter), operation="search")

  async def upsert(self, collection: str, point_id: str, vector: Sequence[float], payload: Mapping[str, Any]) -> None:
    await self.guard.run(lambda: self._store.upsert(collection, point_id, vector, payload), operation="upsert")

  async def delete(self, collection: str, point_ids: Sequence[str]) -> None:
    await self.guard.run(lambda: self._store.delete(collection, point_ids), operation="delete")
