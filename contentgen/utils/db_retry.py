"""Job-store write retries with retryable vs non-retryable error classification."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError

from contentgen.core.exceptions import PersistenceError

logger = logging.getLogger(__name__)

# SQLSTATE codes that indicate a transaction can simply be replayed.
_RETRYABLE_SQLSTATES = {"40001": "serialization_conflict", "40P01": "deadlock", "08000": "connection_exception", "08003": "connection_does_not_exist", "08006": "connection_failure", "57P01": "admin_shutdown"}
_CONNECTIVITY_HINTS = ("connection", "timeout", "reset", "network", "broken pipe", "database is locked", "server closed")


@dataclass(frozen=True)
class DBFailureClassification:
  """Classification result for a job-store failure."""

  retryable: bool
  reason: str
  sqlstate: str | None
  category: str


def _extract_sqlstate(exc: BaseException) -> str | None:
  """Extract the driver SQLSTATE from a SQLAlchemy exception."""
  if not isinstance(exc, DBAPIError) or exc.orig is None:
    return None
  for attribute in ("pgcode", "sqlstate"):
    code = getattr(exc.orig, attribute, None)
    if code:
      return str(code)
  return None


def classify_db_failure(exc: BaseException) -> DBFailureClassification:
  """
  Classify a job-store failure as retryable or not.

  Primary signal: SQLSTATE. Fallback: exception type and message patterns.
  Serialization failures, deadlocks, and dropped connections are retried;
  integrity, schema, and programming errors fail immediately.
  """
  sqlstate = _extract_sqlstate(exc)

  if sqlstate in _RETRYABLE_SQLSTATES:
    return DBFailureClassification(retryable=True, reason="Transient transaction failure", sqlstate=sqlstate, category=_RETRYABLE_SQLSTATES[sqlstate])

  if isinstance(exc, IntegrityError) or (sqlstate and sqlstate.startswith("23")):
    return DBFailureClassification(retryable=False, reason="Integrity constraint violation", sqlstate=sqlstate, category="integrity_error")

  if sqlstate and sqlstate[:2] in {"42", "28"}:
    return DBFailureClassification(retryable=False, reason="Schema or permission error", sqlstate=sqlstate, category="schema_error")

  if isinstance(exc, (OperationalError, OSError, TimeoutError)):
    message = str(exc).lower()
    if isinstance(exc, (OSError, TimeoutError)) or any(hint in message for hint in _CONNECTIVITY_HINTS):
      return DBFailureClassification(retryable=True, reason="Transient connection/network error", sqlstate=sqlstate, category="connectivity_error")
    return DBFailureClassification(retryable=False, reason="Operational error (unknown cause)", sqlstate=sqlstate, category="operational_error_unknown")

  return DBFailureClassification(retryable=False, reason=f"Unclassified error: {type(exc).__name__}", sqlstate=sqlstate, category="unknown_error")


async def execute_with_retry[T](*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 100, max_backoff_ms: int = 2000, jitter: bool = True) -> T:
  """
  Run a job-store operation, retrying transient failures with exponential backoff.

  Store-level failures (SQLAlchemy or connection errors) that are not retryable,
  or that stay failing after `max_attempts`, are raised as PersistenceError so
  callers never mistake an unrecorded transition for a recorded one. Other
  exceptions propagate unchanged.
  """
  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
    except (SQLAlchemyError, OSError, TimeoutError) as exc:
      classification = classify_db_failure(exc)
      logger.warning("Job store operation failed: operation=%s, attempt=%d/%d, category=%s, sqlstate=%s, retryable=%s", operation_name, attempt, max_attempts, classification.category, classification.sqlstate or "none", classification.retryable)

      if not classification.retryable:
        logger.error("Job store operation failed with non-retryable error: operation=%s, category=%s", operation_name, classification.category, exc_info=True)
        raise PersistenceError(operation_name, classification.reason) from exc

      if attempt >= max_attempts:
        logger.error("Job store operation failed after %d attempts: operation=%s, category=%s - giving up", max_attempts, operation_name, classification.category)
        raise PersistenceError(operation_name, f"{classification.reason} after {attempt} attempts") from exc

      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      if jitter:
        backoff_ms += random.uniform(-0.25, 0.25) * backoff_ms
      await asyncio.sleep(backoff_ms / 1000.0)
      continue

    if attempt > 1:
      logger.info("Job store operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, max_attempts)
    return result
