"""Domain models for generation jobs."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from contentgen.core.exceptions import JobValidationError


class JobState(StrEnum):
  WAITING = "waiting"
  ACTIVE = "active"
  COMPLETED = "completed"
  FAILED = "failed"


class JobKind(StrEnum):
  SINGLE_ITEM = "single_item"
  BATCH = "batch"
  CURRICULUM_DRAFT = "curriculum_draft"


class JobPriority(IntEnum):
  LOW = 1
  NORMAL = 5
  HIGH = 10
  CRITICAL = 15


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class ItemRequestPayload(BaseModel):
  """Fields shared by single-item and batch item jobs."""

  model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

  topic_id: str = Field(min_length=1, max_length=200)
  item_type: str = Field(default="short-answer", min_length=1, max_length=50)
  difficulty: Literal["easy", "medium", "hard"] = "medium"
  instructions: str | None = Field(default=None, max_length=2000)
  # Metadata filters scoping corpus deduplication (e.g. {"course_id": "..."}).
  filters: dict[str, str] = Field(default_factory=dict)


class SingleItemPayload(ItemRequestPayload):
  kind: Literal["single_item"] = "single_item"

  @property
  def target_count(self) -> int:
    return 1


class BatchPayload(ItemRequestPayload):
  kind: Literal["batch"] = "batch"
  target_count: int = Field(ge=1, le=100)


class CurriculumDraftPayload(BaseModel):
  model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

  kind: Literal["curriculum_draft"] = "curriculum_draft"
  subject: str = Field(min_length=1, max_length=200)
  class_name: str = Field(min_length=1, max_length=100)
  board: str = Field(default="CBSE", min_length=1, max_length=100)
  academic_year: str | None = Field(default=None, max_length=20)
  term: str | None = Field(default=None, max_length=50)
  description: str | None = Field(default=None, max_length=2000)


JobPayload = Annotated[SingleItemPayload | BatchPayload | CurriculumDraftPayload, Field(discriminator="kind")]

_PAYLOAD_ADAPTER: TypeAdapter[SingleItemPayload | BatchPayload | CurriculumDraftPayload] = TypeAdapter(JobPayload)


def parse_payload(raw: Mapping[str, Any] | BaseModel) -> SingleItemPayload | BatchPayload | CurriculumDraftPayload:
  """Validate a job payload against its kind-specific model."""
  data = raw.model_dump() if isinstance(raw, BaseModel) else dict(raw)
  try:
    return _PAYLOAD_ADAPTER.validate_python(data)
  except ValidationError as exc:
    errors = exc.errors(include_url=False, include_context=False, include_input=False)
    raise JobValidationError(f"Invalid job payload: {exc.error_count()} validation error(s)", errors=[dict(error) for error in errors]) from exc


@dataclass
class JobRecord:
  """Represents a generation job and its lifecycle."""

  job_id: str
  kind: JobKind
  payload: dict[str, Any]
  state: JobState
  created_at: str
  updated_at: str
  priority: int = JobPriority.NORMAL
  enqueued_ns: int = 0
  progress: float = 0.0
  attempts_made: int = 0
  max_attempts: int = 3
  result: dict[str, Any] | None = None
  error: dict[str, Any] | None = None
  logs: list[str] = field(default_factory=list)
  started_at: str | None = None
  completed_at: str | None = None
  # Worker currently running the job and when its claim lapses unless renewed.
  owner_id: str | None = None
  lease_expires_at: str | None = None

  @property
  def is_terminal(self) -> bool:
    return self.state in TERMINAL_STATES
