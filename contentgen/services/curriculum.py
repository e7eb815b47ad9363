"""Curriculum draft generation grounded in cached syllabus search results."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from contentgen.ai.generation import ProgressReporter
from contentgen.ai.prompts import build_curriculum_prompt
from contentgen.ai.providers.base import Embedder, GenerationParams, SearchOrigin, TextGenerator
from contentgen.core.exceptions import ProviderError, TransientError, UpstreamUnavailableError
from contentgen.services.semantic_cache import CacheTier, MultiTierCache
from contentgen.storage.similarity_store import SimilarityStore
from contentgen.utils.ids import generate_item_id

logger = logging.getLogger(__name__)

DRAFT_STEPS = 3
CURRICULUM_PARAMS = GenerationParams(temperature=0.7, top_p=0.9, top_k=40, max_tokens=4096)


@dataclass(frozen=True)
class CurriculumRequest:
  subject: str
  class_name: str
  board: str = "CBSE"
  academic_year: str | None = None
  term: str | None = None
  description: str | None = None

  def reference_query(self) -> str:
    """Search query used to find the official syllabus for this course."""
    parts = (self.board, self.class_name, self.subject, "syllabus", self.academic_year, self.term)
    return " ".join(part for part in parts if part)

  def namespace(self) -> str:
    return self.board.lower().replace(" ", "-")


@dataclass(frozen=True)
class CurriculumDraft:
  draft_id: str
  text: str
  reference_tier: CacheTier | None
  reference_count: int

  def to_dict(self) -> dict[str, Any]:
    return {
      "draft_id": self.draft_id,
      "text": self.text,
      "reference_tier": str(self.reference_tier) if self.reference_tier else None,
      "reference_count": self.reference_count,
    }


class CurriculumDraftWorker:
  """Search (through the cache), generate, then index the draft for later lookups."""

  def __init__(
    self,
    *,
    generator: TextGenerator,
    embedder: Embedder,
    cache: MultiTierCache,
    search_origin: SearchOrigin | None,
    corpus_store: SimilarityStore,
    collection: str,
    params: GenerationParams = CURRICULUM_PARAMS,
    min_chars: int = 10,
    id_factory: Callable[[], str] = generate_item_id,
  ) -> None:
    self._generator = generator
    self._embedder = embedder
    self._cache = cache
    self._search_origin = search_origin
    self._corpus_store = corpus_store
    self._collection = collection
    self._params = params
    self._min_chars = min_chars
    self._id_factory = id_factory

  async def draft(self, request: CurriculumRequest, *, progress: ProgressReporter | None = None) -> CurriculumDraft:
    references, tier = await self._references(request)
    if progress is not None:
      await progress.report(completed=1, total=DRAFT_STEPS, message=f"Collected {len(references)} syllabus reference(s).")

    prompt = build_curriculum_prompt(
      subject=request.subject,
      class_name=request.class_name,
      board=request.board,
      academic_year=request.academic_year,
      term=request.term,
      description=request.description,
      references=references,
    )
    text = (await self._generator.generate(prompt, self._params)).strip()
    if len(text) < self._min_chars:
      raise UpstreamUnavailableError("Generator returned an empty curriculum draft.")
    if progress is not None:
      await progress.report(completed=2, total=DRAFT_STEPS, message="Curriculum draft generated.")

    draft = CurriculumDraft(draft_id=self._id_factory(), text=text, reference_tier=tier, reference_count=len(references))
    await self._index(request, draft)
    if progress is not None:
      await progress.report(completed=DRAFT_STEPS, total=DRAFT_STEPS, message="Curriculum draft stored.")
    return draft

  async def _references(self, request: CurriculumRequest) -> tuple[list[Mapping[str, Any]], CacheTier | None]:
    if self._search_origin is None:
      return [], None
    try:
      hit = await self._cache.lookup(request.reference_query(), self._search_origin, namespace=request.namespace())
    except (TransientError, ProviderError) as exc:
      logger.warning("Syllabus search unavailable for %s; drafting without references: %s", request.reference_query(), exc)
      return [], None
    value = hit.value if isinstance(hit.value, list) else []
    return [item for item in value if isinstance(item, Mapping)], hit.tier

  async def _index(self, request: CurriculumRequest, draft: CurriculumDraft) -> None:
    payload = {"subject": request.subject, "class_name": request.class_name, "board": request.board, "text": draft.text}
    try:
      vector = await self._embedder.embed(draft.text)
      await self._corpus_store.upsert(self._collection, draft.draft_id, vector, payload)
    except TransientError as exc:
      logger.warning("Could not index curriculum draft %s: %s", draft.draft_id, exc)
