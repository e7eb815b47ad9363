"""Three-tier lookup cache: semantic match, exact key, then the origin call.

Tier 1 searches embedded past queries in the similarity store and returns the
first unexpired hit at or above the semantic threshold. Tier 2 is an exact-key
lookup keyed by a hash of the normalized query; a hit there is also written back
to Tier 1. Tier 3 calls the origin and writes the result to both tiers. All
cache writes run as detached background tasks whose failures are logged.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import msgspec

from contentgen.ai.providers.base import Embedder, SearchOrigin
from contentgen.core.exceptions import TransientError
from contentgen.storage.kv_cache import KeyValueCache
from contentgen.storage.similarity_store import SimilarityStore
from contentgen.utils.background import BackgroundTaskSet
from contentgen.utils.ids import point_id_for

logger = logging.getLogger(__name__)

SEMANTIC_CANDIDATES = 3


class CacheTier(StrEnum):
  SEMANTIC = "semantic"
  EXACT = "exact"
  ORIGIN = "origin"


class CacheEntry(msgspec.Struct, frozen=True):
  """Cached origin payload as stored in both tiers."""

  key: str
  namespace: str
  query: str
  value: Any
  stored_at: float
  expires_at: float


@dataclass(frozen=True)
class CacheLookup:
  value: Any
  tier: CacheTier
  key: str
  similarity: float | None = None


def normalize_query(query: str) -> str:
  """Lowercase and collapse whitespace so trivially different spellings share a key."""
  return " ".join(query.lower().split())


class MultiTierCache:
  """Semantic + exact + origin cache shared by every job."""

  def __init__(
    self,
    *,
    embedder: Embedder,
    store: SimilarityStore,
    kv: KeyValueCache,
    collection: str,
    ttl_seconds: int,
    semantic_threshold: float = 0.85,
    key_prefix: str = "cache",
    clock: Callable[[], float] = time.time,
    tasks: BackgroundTaskSet | None = None,
  ) -> None:
    if ttl_seconds <= 0:
      raise ValueError("Cache TTL must be positive.")
    self._embedder = embedder
    self._store = store
    self._kv = kv
    self._collection = collection
    self._ttl_seconds = ttl_seconds
    self._semantic_threshold = semantic_threshold
    self._key_prefix = key_prefix
    self._clock = clock
    self._tasks = tasks or BackgroundTaskSet("semantic-cache")
    self._encoder = msgspec.json.Encoder()
    self._decoder = msgspec.json.Decoder(CacheEntry)

  @property
  def collection(self) -> str:
    return self._collection

  def cache_key(self, query: str, *, namespace: str = "default") -> str:
    digest = hashlib.sha256(normalize_query(query).encode("utf-8")).hexdigest()
    return f"{self._key_prefix}:{namespace}:{digest}"

  async def lookup(self, query: str, origin: SearchOrigin, *, namespace: str = "default") -> CacheLookup:
    """Resolve `query` through the tiers, calling `origin` only on a full miss."""
    normalized = normalize_query(query)
    key = self.cache_key(query, namespace=namespace)
    vector: list[float] | None = None

    # Tier 1: semantic match.
    try:
      vector = await self._embedder.embed(normalized)
      hit = await self._semantic_lookup(vector, namespace)
    except TransientError as exc:
      logger.warning("Semantic cache tier unavailable for key=%s: %s", key, exc)
      hit = None
    if hit is not None:
      logger.info("Cache hit tier=semantic key=%s similarity=%.3f", key, hit.similarity or 0.0)
      return hit

    # Tier 2: exact key.
    entry = await self._exact_lookup(key)
    if entry is not None:
      logger.info("Cache hit tier=exact key=%s", key)
      self._tasks.spawn(self._write_semantic(entry, vector), label=f"backfill:{key}")
      return CacheLookup(value=entry.value, tier=CacheTier.EXACT, key=key)

    # Tier 3: origin.
    value = await origin(query)
    now = self._clock()
    entry = CacheEntry(key=key, namespace=namespace, query=normalized, value=msgspec.to_builtins(value), stored_at=now, expires_at=now + self._ttl_seconds)
    self._tasks.spawn(self._write_semantic(entry, vector), label=f"semantic:{key}")
    self._tasks.spawn(self._write_exact(entry), label=f"exact:{key}")
    logger.info("Cache miss; origin served key=%s", key)
    return CacheLookup(value=entry.value, tier=CacheTier.ORIGIN, key=key)

  async def _semantic_lookup(self, vector: Sequence[float], namespace: str) -> CacheLookup | None:
    matches = await self._store.search(self._collection, vector, top_k=SEMANTIC_CANDIDATES, threshold=self._semantic_threshold, filter={"namespace": namespace})
    now = self._clock()
    for match in matches:
      if match.similarity < self._semantic_threshold:
        continue
      expires_at = float(match.payload.get("expires_at", 0.0))
      if expires_at <= now:
        continue
      return CacheLookup(value=match.payload.get("value"), tier=CacheTier.SEMANTIC, key=str(match.payload.get("key", match.id)), similarity=match.similarity)
    return None

  async def _exact_lookup(self, key: str) -> CacheEntry | None:
    try:
      raw = await self._kv.get(key)
    except TransientError as exc:
      logger.warning("Exact cache tier unavailable for key=%s: %s", key, exc)
      return None
    if raw is None:
      return None
    try:
      entry = self._decoder.decode(raw)
    except msgspec.DecodeError as exc:
      logger.warning("Discarding undecodable cache entry key=%s: %s", key, exc)
      return None
    if entry.expires_at <= self._clock():
      return None
    return entry

  async def _write_semantic(self, entry: CacheEntry, vector: list[float] | None) -> None:
    if vector is None:
      vector = await self._embedder.embed(entry.query)
    payload = {"key": entry.key, "namespace": entry.namespace, "query": entry.query, "value": entry.value, "stored_at": entry.stored_at, "expires_at": entry.expires_at}
    await self._store.upsert(self._collection, point_id_for(entry.key), vector, payload)

  async def _write_exact(self, entry: CacheEntry) -> None:
    ttl = max(1, int(entry.expires_at - self._clock()))
    await self._kv.set(entry.key, self._encoder.encode(entry), ttl_seconds=ttl)

  async def invalidate_pattern(self, pattern: str) -> int:
    """Remove every exact-tier key matching the glob `pattern` and its semantic twin."""
    keys = await self._kv.scan(pattern)
    if not keys:
      return 0
    removed = await self._kv.delete(*keys)
    try:
      await self._store.delete(self._collection, [point_id_for(key) for key in keys])
    except TransientError as exc:
      # Semantic entries still expire through their stored expires_at.
      logger.warning("Semantic cache invalidation failed for pattern=%s: %s", pattern, exc)
    logger.info("Invalidated %d cache key(s) matching %s", removed, pattern)
    return removed

  async def drain(self) -> None:
    """Wait for pending background cache writes."""
    await self._tasks.drain()
