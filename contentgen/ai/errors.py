"""Shared error classification helpers for AI provider handling."""

from __future__ import annotations

from collections.abc import Iterable

import httpx
import openai

from contentgen.core.exceptions import CallTimeoutError, ContentGenError, ProviderError, RateLimitedError, TransientError, UpstreamUnavailableError

_TRANSIENT_HINTS: tuple[str, ...] = (
  "rate limit",
  "too many requests",
  "quota",
  "timeout",
  "timed out",
  "connection",
  "network",
  "service unavailable",
  "bad gateway",
  "gateway",
  "overloaded",
  "temporarily",
)


def _match_hint(message: str, hints: Iterable[str]) -> bool:
  """Return True when any hint appears in the message."""
  return any(hint in message for hint in hints)


def _classify_status(status_code: int, message: str) -> ContentGenError:
  if status_code == 429:
    return RateLimitedError(message)
  if status_code == 408:
    return CallTimeoutError(message)
  if status_code >= 500:
    return UpstreamUnavailableError(message)
  return ProviderError(message)


def classify_provider_error(exc: BaseException, *, provider: str) -> ContentGenError:
  """Translate an SDK or transport exception into the engine's error taxonomy."""
  if isinstance(exc, ContentGenError):
    return exc

  message = f"{provider}: {exc}"

  # openai's timeout type subclasses its connection error, so check it first.
  if isinstance(exc, openai.APITimeoutError) or isinstance(exc, httpx.TimeoutException) or isinstance(exc, TimeoutError):
    return CallTimeoutError(message)
  if isinstance(exc, openai.APIConnectionError) or isinstance(exc, httpx.TransportError):
    return UpstreamUnavailableError(message)
  if isinstance(exc, openai.APIStatusError):
    return _classify_status(exc.status_code, message)
  if isinstance(exc, httpx.HTTPStatusError):
    return _classify_status(exc.response.status_code, message)

  # Fall back to message hints for SDKs without typed errors.
  if _match_hint(str(exc).lower(), _TRANSIENT_HINTS):
    return UpstreamUnavailableError(message)
  return ProviderError(message)


def is_transient(exc: BaseException) -> bool:
  """Return True when an exception should be retried with backoff."""
  return isinstance(exc, TransientError)
