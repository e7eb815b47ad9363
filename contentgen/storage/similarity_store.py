"""Storage interface for vector similarity search."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class SimilarityMatch:
  """Nearest-neighbour hit with its cosine similarity."""

  id: str
  similarity: float
  payload: dict[str, Any] = field(default_factory=dict)


class SimilarityStore(Protocol):
  """Nearest-neighbour search and idempotent upsert over vectors with metadata."""

  async def ensure_collection(self, collection: str, dimension: int) -> None:
    """Create the collection when missing."""

  async def search(self, collection: str, vector: Sequence[float], *, top_k: int = 1, threshold: float | None = None, filter: Mapping[str, Any] | None = None) -> list[SimilarityMatch]:
    """Return up to `top_k` matches ordered by descending similarity."""

  async def upsert(self, collection: str, point_id: str, vector: Sequence[float], payload: Mapping[str, Any]) -> None:
    """Insert or replace the point keyed by `point_id`."""

  async def delete(self, collection: str, point_ids: Sequence[str]) -> None:
    """Remove points by id; unknown ids are ignored."""
