"""Semantic duplicate detection against the current batch and the persistent corpus."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np

from contentgen.ai.providers.base import Embedder
from contentgen.storage.similarity_store import SimilarityMatch, SimilarityStore


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
  """dot(a, b) / (|a| * |b|), defined as 0.0 when either vector has zero norm."""
  left = np.asarray(a, dtype=np.float64)
  right = np.asarray(b, dtype=np.float64)
  if left.shape != right.shape:
    raise ValueError(f"Vector dimensions differ: {left.shape} vs {right.shape}")
  denominator = float(np.linalg.norm(left) * np.linalg.norm(right))
  if denominator == 0.0:
    return 0.0
  return float(np.dot(left, right) / denominator)


class DuplicateScope(Protocol):
  """Something a candidate can be compared against."""

  name: str

  async def best_match(self, vector: Sequence[float]) -> SimilarityMatch | None:
    """Return the most similar entry, if any."""


@dataclass(frozen=True)
class SessionEntry:
  id: str
  text: str
  embedding: tuple[float, ...]


class SessionScope:
  """Accepted items of one job, compared pairwise in memory. Never persisted."""

  name = "session"

  def __init__(self) -> None:
    self._entries: list[SessionEntry] = []
    self._matrix: np.ndarray | None = None

  def add(self, item_id: str, text: str, embedding: Sequence[float]) -> None:
    self._entries.append(SessionEntry(id=item_id, text=text, embedding=tuple(float(value) for value in embedding)))
    self._matrix = None

  @property
  def entries(self) -> list[SessionEntry]:
    return list(self._entries)

  def __len__(self) -> int:
    return len(self._entries)

  def _normalized(self) -> np.ndarray:
    if self._matrix is None:
      matrix = np.asarray([entry.embedding for entry in self._entries], dtype=np.float64)
      norms = np.linalg.norm(matrix, axis=1, keepdims=True)
      # Zero-norm rows stay zero so they score 0 against everything.
      self._matrix = np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)
    return self._matrix

  async def best_match(self, vector: Sequence[float]) -> SimilarityMatch | None:
    if not self._entries:
      return None
    query = np.asarray(vector, dtype=np.float64)
    matrix = self._normalized()
    if query.shape[0] != matrix.shape[1]:
      raise ValueError(f"Vector dimensions differ: {query.shape[0]} vs {matrix.shape[1]}")
    norm = float(np.linalg.norm(query))
    if norm == 0.0:
      return SimilarityMatch(id=self._entries[0].id, similarity=0.0)
    scores = matrix @ (query / norm)
    index = int(np.argmax(scores))
    return SimilarityMatch(id=self._entries[index].id, similarity=float(scores[index]), payload={"text": self._entries[index].text})


@dataclass
class CorpusScope:
  """Previously accepted items in the shared similarity store."""

  store: SimilarityStore
  collection: str
  filter: Mapping[str, Any] | None = None
  name: str = field(default="corpus", init=False)

  async def best_match(self, vector: Sequence[float]) -> SimilarityMatch | None:
    matches = await self.store.search(self.collection, vector, top_k=1, filter=self.filter)
    return matches[0] if matches else None


@dataclass(frozen=True)
class DuplicateCheck:
  """Outcome of one duplicate check."""

  duplicate: bool
  scope: str
  threshold: float
  match: SimilarityMatch | None = None
  embedding: tuple[float, ...] = field(default=(), repr=False)

  @property
  def similarity(self) -> float | None:
    return self.match.similarity if self.match is not None else None


class DuplicateDetector:
  """Embed a candidate and compare it against a scope."""

  def __init__(self, embedder: Embedder) -> None:
    self._embedder = embedder

  async def is_duplicate(self, candidate_text: str, scope: DuplicateScope, threshold: float, *, embedding: Sequence[float] | None = None) -> DuplicateCheck:
    """Return whether the best match in `scope` reaches `threshold`.

    Callers that check several scopes pass the embedding from the first check
    so the candidate is embedded once.
    """
    vector = list(embedding) if embedding is not None else await self._embedder.embed(candidate_text)
    match = await scope.best_match(vector)
    duplicate = match is not None and match.similarity >= threshold
    return DuplicateCheck(duplicate=duplicate, scope=scope.name, threshold=threshold, match=match, embedding=tuple(vector))
