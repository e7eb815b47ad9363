"""Job handlers binding job payloads to the generation workers."""

from __future__ import annotations

import logging
from typing import Any

from contentgen.ai.generation import GenerationRequest, GenerationWorker
from contentgen.core.exceptions import JobValidationError
from contentgen.jobs.dispatch import JobPayloadModel
from contentgen.jobs.models import BatchPayload, CurriculumDraftPayload, JobRecord, SingleItemPayload
from contentgen.jobs.progress import JobProgressTracker
from contentgen.services.curriculum import CurriculumDraftWorker, CurriculumRequest

logger = logging.getLogger(__name__)


class ItemGenerationHandler:
  """Runs single-item and batch jobs through the adaptive generation loop."""

  def __init__(self, worker: GenerationWorker) -> None:
    self._worker = worker

  async def process(self, job: JobRecord, payload: JobPayloadModel, tracker: JobProgressTracker) -> dict[str, Any]:
    if not isinstance(payload, SingleItemPayload | BatchPayload):
      raise JobValidationError(f"Job {job.job_id} has kind {job.kind} but an item handler was selected.")

    request = GenerationRequest(topic_id=payload.topic_id, item_type=payload.item_type, difficulty=payload.difficulty, instructions=payload.instructions, filters=payload.filters)
    result = await self._worker.generate_batch(request, payload.target_count, progress=tracker)
    if result.shortfall:
      tracker.add_logs(f"Completed with {result.accepted}/{result.requested} items ({result.outcome}); shortfall {result.shortfall}.")
    return result.to_dict()


class CurriculumDraftHandler:
  """Runs curriculum draft jobs."""

  def __init__(self, worker: CurriculumDraftWorker) -> None:
    self._worker = worker

  async def process(self, job: JobRecord, payload: JobPayloadModel, tracker: JobProgressTracker) -> dict[str, Any]:
    if not isinstance(payload, CurriculumDraftPayload):
      raise JobValidationError(f"Job {job.job_id} has kind {job.kind} but the curriculum handler was selected.")

    request = CurriculumRequest(subject=payload.subject, class_name=payload.class_name, board=payload.board, academic_year=payload.academic_year, term=payload.term, description=payload.description)
    draft = await self._worker.draft(request, progress=tracker)
    return draft.to_dict()
