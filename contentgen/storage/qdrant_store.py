"""Qdrant-backed similarity store for the item corpus and the semantic cache tier."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import Distance, FieldCondition, Filter, MatchValue, PointIdsList, PointStruct, VectorParams

from contentgen.core.exceptions import ProviderError, RateLimitedError, UpstreamUnavailableError
from contentgen.storage.similarity_store import SimilarityMatch
from contentgen.utils.ids import point_id_for

logger = logging.getLogger(__name__)

# Payload key that keeps the caller's id when it had to be mapped to a UUID.
ITEM_ID_KEY = "item_id"


def _build_filter(conditions: Mapping[str, Any] | None) -> Filter | None:
  if not conditions:
    return None
  return Filter(must=[FieldCondition(key=key, match=MatchValue(value=value)) for key, value in conditions.items()])


class QdrantSimilarityStore:
  """SimilarityStore over an AsyncQdrantClient using cosine distance."""

  def __init__(self, client: AsyncQdrantClient) -> None:
    self._client = client

  @classmethod
  def from_url(cls, url: str, *, api_key: str | None = None, timeout: int = 10) -> QdrantSimilarityStore:
    return cls(AsyncQdrantClient(url=url, api_key=api_key, timeout=timeout))

  async def _call[T](self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
    try:
      return await fn()
    except UnexpectedResponse as exc:
      status = exc.status_code or 0
      if status == 429:
        raise RateLimitedError(f"qdrant {operation}: {exc}") from exc
      if status >= 500:
        raise UpstreamUnavailableError(f"qdrant {operation}: {exc}") from exc
      raise ProviderError(f"qdrant {operation}: {exc}") from exc
    except (ResponseHandlingException, ConnectionError, OSError) as exc:
      raise UpstreamUnavailableError(f"qdrant {operation}: {exc}") from exc

  async def ensure_collection(self, collection: str, dimension: int) -> None:
    if await self._call("collection_exists", lambda: self._client.collection_exists(collection)):
      return
    await self._call("create_collection", lambda: self._client.create_collection(collection_name=collection, vectors_config=VectorParams(size=dimension, distance=Distance.COSINE)))
    logger.info("Created Qdrant collection %s (dim=%d)", collection, dimension)

  async def search(self, collection: str, vector: Sequence[float], *, top_k: int = 1, threshold: float | None = None, filter: Mapping[str, Any] | None = None) -> list[SimilarityMatch]:
    response = await self._call(
      "query_points",
      lambda: self._client.query_points(collection_name=collection, query=list(vector), limit=top_k, score_threshold=threshold, query_filter=_build_filter(filter), with_payload=True),
    )
    matches: list[SimilarityMatch] = []
    for point in response.points:
      payload = dict(point.payload or {})
      matches.append(SimilarityMatch(id=str(payload.get(ITEM_ID_KEY, point.id)), similarity=float(point.score), payload=payload))
    return matches

  async def upsert(self, collection: str, point_id: str, vector: Sequence[float], payload: Mapping[str, Any]) -> None:
    point = PointStruct(id=point_id_for(point_id), vector=list(vector), payload={**payload, ITEM_ID_KEY: point_id})
    await self._call("upsert", lambda: self._client.upsert(collection_name=collection, points=[point], wait=True))

  async def delete(self, collection: str, point_ids: Sequence[str]) -> None:
    if not point_ids:
      return
    selector = PointIdsList(points=[point_id_for(point_id) for point_id in point_ids])
    await self._call("delete", lambda: self._client.delete(collection_name=collection, points_selector=selector, wait=True))

  async def close(self) -> None:
    await self._client.close()
