"""Adaptive generate-and-deduplicate loop for batch item jobs.

One loop runs per job. Each iteration computes parameters from the job's
AdaptiveState, calls the (guarded) generator, embeds the candidate, and checks
it against the batch's SessionScope first and the persistent corpus second.
Accepted items go into both scopes. After `saturation_limit` consecutive
rejections the loop stops early and returns what it has as a saturated result.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from contentgen.ai.adaptive import DEFAULT_ADAPTIVE_CONFIG, AdaptiveConfig, AdaptiveParams, AdaptiveState
from contentgen.ai.dedup import CorpusScope, DuplicateCheck, DuplicateDetector, SessionScope
from contentgen.ai.prompts import build_item_prompt
from contentgen.ai.providers.base import Embedder, TextGenerator
from contentgen.core.exceptions import JobValidationError, TransientError
from contentgen.storage.similarity_store import SimilarityStore
from contentgen.utils.ids import generate_item_id

logger = logging.getLogger(__name__)


class AttemptOutcome(StrEnum):
  ACCEPTED = "accepted"
  DUPLICATE_SESSION = "duplicate_session"
  DUPLICATE_CORPUS = "duplicate_corpus"
  INVALID = "invalid"
  TRANSIENT_ERROR = "transient_error"


class BatchOutcome(StrEnum):
  SUCCESS = "success"
  PARTIAL = "partial"
  SATURATED = "saturated"


class ProgressReporter(Protocol):
  """Receives progress after each accepted item."""

  async def report(self, *, completed: int, total: int, message: str | None = None) -> None:
    """Record that `completed` of `total` units are done."""


@dataclass(frozen=True)
class GenerationRequest:
  """What to generate; mirrors the item job payload."""

  topic_id: str
  item_type: str = "short-answer"
  difficulty: str = "medium"
  instructions: str | None = None
  filters: Mapping[str, str] = field(default_factory=dict)

  def corpus_filter(self) -> dict[str, str]:
    return {**dict(self.filters), "topic_id": self.topic_id}


@dataclass(frozen=True)
class GenerationAttempt:
  """One loop iteration; kept in memory for observability only."""

  index: int
  params: AdaptiveParams
  outcome: AttemptOutcome
  text: str | None = None
  embedding: tuple[float, ...] = field(default=(), repr=False)
  similarity: float | None = None
  error: str | None = None


@dataclass(frozen=True)
class GeneratedItem:
  item_id: str
  text: str
  attempt: int

  def to_dict(self) -> dict[str, Any]:
    return {"item_id": self.item_id, "text": self.text, "attempt": self.attempt}


@dataclass(frozen=True)
class GenerationResult:
  """Accepted items plus how the loop ended."""

  items: tuple[GeneratedItem, ...]
  requested: int
  attempts_used: int
  max_attempts: int
  outcome: BatchOutcome
  attempts: tuple[GenerationAttempt, ...] = field(default=(), repr=False)

  @property
  def accepted(self) -> int:
    return len(self.items)

  @property
  def shortfall(self) -> int:
    return self.requested - len(self.items)

  def to_dict(self) -> dict[str, Any]:
    return {
      "items": [item.to_dict() for item in self.items],
      "requested": self.requested,
      "accepted": self.accepted,
      "shortfall": self.shortfall,
      "attempts_used": self.attempts_used,
      "max_attempts": self.max_attempts,
      "outcome": str(self.outcome),
    }


def max_attempts_for(target_count: int) -> int:
  """Attempt budget: three tries per item for small batches, two for larger ones."""
  if target_count <= 10:
    return target_count * 3
  return target_count * 2


PromptBuilder = Callable[[GenerationRequest, list[str]], str]


def default_prompt_builder(request: GenerationRequest, accepted: list[str]) -> str:
  return build_item_prompt(topic_id=request.topic_id, item_type=request.item_type, difficulty=request.difficulty, instructions=request.instructions, avoid=accepted)


class GenerationWorker:
  """Runs the adaptive generation loop for one job at a time per call."""

  def __init__(
    self,
    *,
    generator: TextGenerator,
    embedder: Embedder,
    corpus_store: SimilarityStore,
    corpus_collection: str,
    config: AdaptiveConfig = DEFAULT_ADAPTIVE_CONFIG,
    session_threshold_offset: float = 0.0,
    corpus_threshold_offset: float = 0.0,
    min_chars: int = 10,
    max_tokens: int = 1024,
    prompt_builder: PromptBuilder = default_prompt_builder,
    id_factory: Callable[[], str] = generate_item_id,
  ) -> None:
    self._generator = generator
    self._embedder = embedder
    self._detector = DuplicateDetector(embedder)
    self._corpus_store = corpus_store
    self._corpus_collection = corpus_collection
    self._config = config
    self._session_offset = session_threshold_offset
    self._corpus_offset = corpus_threshold_offset
    self._min_chars = min_chars
    self._max_tokens = max_tokens
    self._prompt_builder = prompt_builder
    self._id_factory = id_factory

  async def generate_batch(self, request: GenerationRequest, target_count: int, *, progress: ProgressReporter | None = None) -> GenerationResult:
    """Generate up to `target_count` mutually distinct items that are new to the corpus."""
    if target_count < 1:
      raise JobValidationError(f"target_count must be at least 1, got {target_count}.")

    budget = max_attempts_for(target_count)
    state = AdaptiveState(target=target_count, config=self._config)
    session = SessionScope()
    corpus = CorpusScope(store=self._corpus_store, collection=self._corpus_collection, filter=request.corpus_filter())
    items: list[GeneratedItem] = []
    trace: list[GenerationAttempt] = []
    last_transient: TransientError | None = None
    outcome: BatchOutcome | None = None
    attempts = 0

    while len(items) < target_count and attempts < budget:
      attempts += 1
      params = state.params

      # Generating
      prompt = self._prompt_builder(request, [item.text for item in items])
      try:
        text = (await self._generator.generate(prompt, params.generation_params(max_tokens=self._max_tokens))).strip()
      except TransientError as exc:
        last_transient = exc
        logger.warning("Generator call failed for topic=%s attempt=%d/%d: %s", request.topic_id, attempts, budget, exc)
        trace.append(GenerationAttempt(index=attempts, params=params, outcome=AttemptOutcome.TRANSIENT_ERROR, error=str(exc)))
        continue

      # Blank or truncated output counts as a rejection.
      if len(text) < self._min_chars:
        trace.append(GenerationAttempt(index=attempts, params=params, outcome=AttemptOutcome.INVALID, text=text))
        state = state.record_rejection()
        if state.saturated:
          outcome = BatchOutcome.SATURATED
          break
        continue

      # Checking
      try:
        rejection, check = await self._check(text, session, corpus, params)
      except TransientError as exc:
        last_transient = exc
        logger.warning("Duplicate check failed for topic=%s attempt=%d/%d: %s", request.topic_id, attempts, budget, exc)
        trace.append(GenerationAttempt(index=attempts, params=params, outcome=AttemptOutcome.TRANSIENT_ERROR, text=text, error=str(exc)))
        continue

      if rejection is not None:
        trace.append(GenerationAttempt(index=attempts, params=params, outcome=rejection, text=text, embedding=check.embedding, similarity=check.similarity))
        state = state.record_rejection()
        logger.debug("Rejected candidate topic=%s scope=%s similarity=%.3f threshold=%.3f consecutive=%d", request.topic_id, check.scope, check.similarity or 0.0, check.threshold, state.consecutive_failures)
        if state.saturated:
          outcome = BatchOutcome.SATURATED
          break
        continue

      # Accepted
      item = GeneratedItem(item_id=self._id_factory(), text=text, attempt=attempts)
      session.add(item.item_id, text, check.embedding)
      await self._store_in_corpus(request, item, check.embedding)
      items.append(item)
      state = state.record_acceptance()
      trace.append(GenerationAttempt(index=attempts, params=params, outcome=AttemptOutcome.ACCEPTED, text=text, embedding=check.embedding, similarity=check.similarity))
      if progress is not None:
        await progress.report(completed=len(items), total=target_count, message=f"Accepted item {len(items)}/{target_count} after {attempts} attempts.")

    # A batch that never got a usable response is a failed call, not a partial result.
    if not items and last_transient is not None and all(attempt.outcome is AttemptOutcome.TRANSIENT_ERROR for attempt in trace):
      raise last_transient

    if outcome is None:
      outcome = BatchOutcome.SUCCESS if len(items) == target_count else BatchOutcome.PARTIAL

    if outcome is BatchOutcome.SATURATED:
      logger.info("Generation saturated for topic=%s after %d consecutive duplicates: accepted %d/%d", request.topic_id, state.consecutive_failures, len(items), target_count)
    else:
      logger.info("Generation finished for topic=%s outcome=%s accepted=%d/%d attempts=%d/%d", request.topic_id, outcome, len(items), target_count, attempts, budget)

    return GenerationResult(items=tuple(items), requested=target_count, attempts_used=attempts, max_attempts=budget, outcome=outcome, attempts=tuple(trace))

  def _thresholds(self, params: AdaptiveParams) -> tuple[float, float]:
    return (self._config.clamp_threshold(params.threshold + self._session_offset), self._config.clamp_threshold(params.threshold + self._corpus_offset))

  async def _check(self, text: str, session: SessionScope, corpus: CorpusScope, params: AdaptiveParams) -> tuple[AttemptOutcome | None, DuplicateCheck]:
    """Check the session first (cheap), then the corpus (authoritative)."""
    session_threshold, corpus_threshold = self._thresholds(params)
    session_check = await self._detector.is_duplicate(text, session, session_threshold)
    if session_check.duplicate:
      return AttemptOutcome.DUPLICATE_SESSION, session_check

    corpus_check = await self._detector.is_duplicate(text, corpus, corpus_threshold, embedding=session_check.embedding)
    if corpus_check.duplicate:
      return AttemptOutcome.DUPLICATE_CORPUS, corpus_check
    return None, corpus_check

  async def _store_in_corpus(self, request: GenerationRequest, item: GeneratedItem, embedding: tuple[float, ...]) -> None:
    payload = {**request.corpus_filter(), "item_type": request.item_type, "difficulty": request.difficulty, "text": item.text}
    try:
      await self._corpus_store.upsert(self._corpus_collection, item.item_id, list(embedding), payload)
    except TransientError as exc:
      # The session scope still holds the item; only cross-job dedup loses it.
      logger.warning("Corpus upsert failed for item=%s topic=%s: %s", item.item_id, request.topic_id, exc)
