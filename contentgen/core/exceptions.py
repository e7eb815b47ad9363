"""Error taxonomy for the generation engine.

Transient errors are retried locally (backoff, circuit breaker) and by the
dispatcher. Validation errors fail a job without retry. Duplicate saturation is
not an error at all: it surfaces as a completed job with a shortfall.
"""

from __future__ import annotations

from typing import Any


class ContentGenError(Exception):
  """Base class for engine errors."""


class TransientError(ContentGenError):
  """Retryable failure of an external call (timeout, network, upstream throttling)."""


class CallTimeoutError(TransientError):
  """An external call exceeded its hard deadline."""


class RateLimitedError(TransientError):
  """The local token bucket or the upstream service refused the call."""


class UpstreamUnavailableError(TransientError):
  """The upstream service could not be reached or answered with a server error."""


class CircuitOpenError(TransientError):
  """Raised without calling the wrapped service while its circuit is open."""

  def __init__(self, name: str, retry_after: float) -> None:
    super().__init__(f"Circuit '{name}' is open; retry in {retry_after:.1f}s.")
    self.name = name
    self.retry_after = retry_after


class ProviderError(ContentGenError):
  """Non-retryable rejection from an upstream provider (bad request, auth, unknown model)."""


class JobValidationError(ContentGenError):
  """Malformed job payload. Jobs failing validation are never retried."""

  def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None) -> None:
    super().__init__(message)
    self.errors = errors or []


class PersistenceError(ContentGenError):
  """The durable job store stayed unavailable after retries."""

  def __init__(self, operation: str, message: str) -> None:
    super().__init__(f"{operation}: {message}")
    self.operation = operation


class JobNotFoundError(ContentGenError):
  """No job exists for the requested id."""

  def __init__(self, job_id: str) -> None:
    super().__init__(f"Job not found: {job_id}")
    self.job_id = job_id


class InvalidTransitionError(ContentGenError):
  """The requested job state change is not allowed from the current state."""

  def __init__(self, job_id: str, current: str, requested: str) -> None:
    super().__init__(f"Job {job_id} cannot move from {current} to {requested}.")
    self.job_id = job_id
    self.current = current
    self.requested = requested


class LeaseLostError(ContentGenError):
  """Another worker now owns the job; the caller must stop working on it."""

  def __init__(self, job_id: str, owner_id: str, current_owner: str | None) -> None:
    super().__init__(f"Job {job_id} is owned by {current_owner}, not {owner_id}.")
    self.job_id = job_id
    self.owner_id = owner_id
    self.current_owner = current_owner


def describe_error(exc: BaseException) -> dict[str, Any]:
  """Return a JSON-safe summary of an exception for job records."""
  message = str(exc) or type(exc).__name__
  payload: dict[str, Any] = {"type": type(exc).__name__, "message": message}
  # Keep validation details so callers can fix their payloads.
  if isinstance(exc, JobValidationError) and exc.errors:
    payload["errors"] = exc.errors
  if isinstance(exc, PersistenceError):
    payload["operation"] = exc.operation
  return payload
