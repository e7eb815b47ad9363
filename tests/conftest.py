"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from tests.support import FakeClock, HashingEmbedder, InMemoryJobsRepo, InMemoryKeyValueCache, InMemorySimilarityStore, SteppingClock


@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def store_clock() -> SteppingClock:
  return SteppingClock()


@pytest.fixture
def embedder() -> HashingEmbedder:
  return HashingEmbedder()


@pytest.fixture
def similarity_store() -> InMemorySimilarityStore:
  return InMemorySimilarityStore()


@pytest.fixture
def kv_cache(clock: FakeClock) -> InMemoryKeyValueCache:
  return InMemoryKeyValueCache(clock=clock)


@pytest.fixture
def jobs_repo() -> InMemoryJobsRepo:
  return InMemoryJobsRepo()
