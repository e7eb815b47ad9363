"""Dependency-injected job processor dispatch helpers."""

from __future__ import annotations

from typing import Any, Protocol

from contentgen.core.exceptions import JobValidationError
from contentgen.jobs.models import BatchPayload, CurriculumDraftPayload, JobKind, JobRecord, SingleItemPayload
from contentgen.jobs.progress import JobProgressTracker

JobPayloadModel = SingleItemPayload | BatchPayload | CurriculumDraftPayload


class JobProcessorHandler(Protocol):
  """Processor contract for one job kind."""

  async def process(self, job: JobRecord, payload: JobPayloadModel, tracker: JobProgressTracker) -> dict[str, Any]:
    """Run the job and return its JSON-safe result."""


class JobProcessorRegistry:
  """Registry mapping job kinds to processor handlers."""

  def __init__(self, handlers: dict[JobKind, JobProcessorHandler]) -> None:
    self._handlers = dict(handlers)

  def resolve(self, kind: JobKind | str) -> JobProcessorHandler:
    """Resolve the processor for a job kind."""
    try:
      handler = self._handlers.get(JobKind(kind))
    except ValueError:
      handler = None
    if handler is None:
      raise JobValidationError(f"Unsupported job kind: {kind}")
    return handler

  @property
  def kinds(self) -> list[JobKind]:
    return sorted(self._handlers)
