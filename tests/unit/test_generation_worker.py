from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import pytest

from contentgen.ai.adaptive import base_threshold
from contentgen.ai.generation import AttemptOutcome, BatchOutcome, GenerationRequest, GenerationWorker, max_attempts_for
from contentgen.core.exceptions import JobValidationError, UpstreamUnavailableError
from tests.support import HashingEmbedder, InMemorySimilarityStore, ScriptedGenerator

CORPUS = "generated-items"
REQUEST = GenerationRequest(topic_id="geo-1", item_type="short-answer", difficulty="easy")
DISTINCT = [
  "Name the longest river flowing through Egypt today.",
  "Which mountain range separates Europe from Asia?",
  "Describe how monsoon winds shape Indian agriculture.",
  "Identify the largest desert located in Africa.",
  "Explain why Iceland has many active volcanoes.",
]


class RecordingProgress:
  def __init__(self) -> None:
    self.reports: list[tuple[int, int]] = []

  async def report(self, *, completed: int, total: int, message: str | None = None) -> None:
    self.reports.append((completed, total))


class UpsertFailingStore(InMemorySimilarityStore):
  async def upsert(self, collection: str, point_id: str, vector: Sequence[float], payload: Mapping[str, Any]) -> None:
    raise UpstreamUnavailableError("qdrant write failed")


def _worker(generator: ScriptedGenerator, embedder: HashingEmbedder, store: InMemorySimilarityStore) -> GenerationWorker:
  counter = iter(range(1, 1000))
  return GenerationWorker(generator=generator, embedder=embedder, corpus_store=store, corpus_collection=CORPUS, id_factory=lambda: f"item-{next(counter)}")


@pytest.mark.parametrize(("target", "budget"), [(1, 3), (5, 15), (10, 30), (11, 22), (100, 200)])
def test_attempt_budget(target: int, budget: int) -> None:
  assert max_attempts_for(target) == budget


@pytest.mark.anyio
async def test_identical_outputs_saturate_after_ten_rejections(embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  generator = ScriptedGenerator(["What is the capital city of France and why?"])

  result = await _worker(generator, embedder, similarity_store).generate_batch(REQUEST, 5)

  assert result.accepted == 1
  assert result.attempts_used == 11
  assert result.outcome is BatchOutcome.SATURATED
  assert result.shortfall == 4
  rejections = [attempt.outcome for attempt in result.attempts[1:]]
  assert rejections == [AttemptOutcome.DUPLICATE_SESSION] * 10


@pytest.mark.anyio
async def test_distinct_outputs_fill_batch_without_escalation(embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  generator = ScriptedGenerator(DISTINCT)
  progress = RecordingProgress()

  result = await _worker(generator, embedder, similarity_store).generate_batch(REQUEST, 5, progress=progress)

  assert result.accepted == 5
  assert result.attempts_used == 5
  assert result.outcome is BatchOutcome.SUCCESS
  assert result.shortfall == 0
  assert [attempt.params.threshold for attempt in result.attempts] == [base_threshold(index / 5) for index in range(5)]
  assert all((params.temperature, params.top_p, params.top_k) == (0.9, 0.95, 60) for params in generator.params)
  assert progress.reports == [(index, 5) for index in range(1, 6)]
  assert similarity_store.count(CORPUS) == 5


@pytest.mark.anyio
async def test_accepted_items_are_written_to_the_corpus_with_scope_metadata(embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  request = GenerationRequest(topic_id="geo-1", filters={"course_id": "c-9"})
  result = await _worker(ScriptedGenerator(DISTINCT[:1]), embedder, similarity_store).generate_batch(request, 1)

  _, payload = similarity_store.collections[CORPUS][result.items[0].item_id]
  assert payload["topic_id"] == "geo-1"
  assert payload["course_id"] == "c-9"
  assert payload["text"] == DISTINCT[0]


@pytest.mark.anyio
async def test_prompts_list_previously_accepted_items(embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  generator = ScriptedGenerator(DISTINCT[:2])
  await _worker(generator, embedder, similarity_store).generate_batch(REQUEST, 2)

  assert DISTINCT[0] not in generator.prompts[0]
  assert DISTINCT[0] in generator.prompts[1]


@pytest.mark.anyio
async def test_corpus_duplicates_are_rejected(embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  await similarity_store.upsert(CORPUS, "old", await embedder.embed(DISTINCT[0]), {"topic_id": "geo-1"})
  generator = ScriptedGenerator([DISTINCT[0], DISTINCT[1]])

  result = await _worker(generator, embedder, similarity_store).generate_batch(REQUEST, 1)

  assert [attempt.outcome for attempt in result.attempts] == [AttemptOutcome.DUPLICATE_CORPUS, AttemptOutcome.ACCEPTED]
  assert result.items[0].text == DISTINCT[1]


@pytest.mark.anyio
async def test_corpus_dedup_is_scoped_to_the_topic(embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  await similarity_store.upsert(CORPUS, "old", await embedder.embed(DISTINCT[0]), {"topic_id": "other-topic"})

  result = await _worker(ScriptedGenerator(DISTINCT[:1]), embedder, similarity_store).generate_batch(REQUEST, 1)
  assert result.accepted == 1


@pytest.mark.anyio
async def test_budget_exhaustion_returns_partial_result(embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  await similarity_store.upsert(CORPUS, "old", await embedder.embed(DISTINCT[0]), {"topic_id": "geo-1"})

  result = await _worker(ScriptedGenerator(DISTINCT[:1]), embedder, similarity_store).generate_batch(REQUEST, 1)

  assert result.accepted == 0
  assert result.attempts_used == result.max_attempts == 3
  assert result.outcome is BatchOutcome.PARTIAL
  assert result.to_dict()["shortfall"] == 1


@pytest.mark.anyio
async def test_short_outputs_count_as_rejections(embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  generator = ScriptedGenerator(["   ", "ok", DISTINCT[0]])

  result = await _worker(generator, embedder, similarity_store).generate_batch(REQUEST, 1)

  assert [attempt.outcome for attempt in result.attempts] == [AttemptOutcome.INVALID, AttemptOutcome.INVALID, AttemptOutcome.ACCEPTED]
  assert generator.params[2].temperature == pytest.approx(1.0)


@pytest.mark.anyio
async def test_transient_errors_use_attempts_but_do_not_escalate(embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  generator = ScriptedGenerator([UpstreamUnavailableError("503"), UpstreamUnavailableError("503"), DISTINCT[0]])

  result = await _worker(generator, embedder, similarity_store).generate_batch(REQUEST, 1)

  assert result.accepted == 1
  assert result.attempts_used == 3
  assert [attempt.outcome for attempt in result.attempts][:2] == [AttemptOutcome.TRANSIENT_ERROR] * 2
  assert generator.params[2].temperature == 0.9


@pytest.mark.anyio
async def test_all_transient_attempts_raise_for_the_dispatcher(embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  generator = ScriptedGenerator([UpstreamUnavailableError("generator offline")])

  with pytest.raises(UpstreamUnavailableError):
    await _worker(generator, embedder, similarity_store).generate_batch(REQUEST, 2)
  assert generator.calls == max_attempts_for(2)


@pytest.mark.anyio
async def test_corpus_write_failure_keeps_the_item(embedder: HashingEmbedder) -> None:
  store = UpsertFailingStore()

  result = await _worker(ScriptedGenerator(DISTINCT[:2]), embedder, store).generate_batch(REQUEST, 2)

  assert result.accepted == 2
  assert store.count(CORPUS) == 0


@pytest.mark.anyio
async def test_target_count_must_be_positive(embedder: HashingEmbedder, similarity_store: InMemorySimilarityStore) -> None:
  with pytest.raises(JobValidationError):
    await _worker(ScriptedGenerator(DISTINCT), embedder, similarity_store).generate_batch(REQUEST, 0)
