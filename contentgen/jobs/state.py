"""Allowed job state transitions."""

from __future__ import annotations

from typing import Final

from contentgen.core.exceptions import InvalidTransitionError
from contentgen.jobs.models import JobState

ALLOWED_TRANSITIONS: Final[dict[JobState, frozenset[JobState]]] = {
  JobState.WAITING: frozenset({JobState.ACTIVE}),
  # active -> active records progress or a new attempt.
  JobState.ACTIVE: frozenset({JobState.ACTIVE, JobState.COMPLETED, JobState.FAILED}),
  JobState.COMPLETED: frozenset(),
  JobState.FAILED: frozenset(),
}


def can_transition(current: JobState, requested: JobState) -> bool:
  return requested in ALLOWED_TRANSITIONS[current]


def ensure_transition(job_id: str, current: JobState, requested: JobState) -> None:
  if not can_transition(current, requested):
    raise InvalidTransitionError(job_id, str(current), str(requested))


def merge_progress(current: float, requested: float | None) -> float:
  """Clamp progress to [0, 100] and never let it move backwards."""
  if requested is None:
    return current
  return max(current, min(100.0, max(0.0, round(float(requested), 2))))
