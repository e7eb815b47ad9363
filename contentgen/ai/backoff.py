"""Exponential backoff with jitter for retrying external calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class ExponentialBackoff:
  """Delay policy: min(max_delay, base_delay * 2^(attempt-1)) * (1 + U(0, jitter))."""

  base_delay: float = 1.0
  max_delay: float = 32.0
  jitter: float = 0.3
  rng: Callable[[], float] = field(default=random.random, repr=False, compare=False)
  sleep: Sleep = field(default=asyncio.sleep, repr=False, compare=False)

  def __post_init__(self) -> None:
    if self.base_delay <= 0 or self.max_delay <= 0:
      raise ValueError("Backoff delays must be positive.")
    if not 0.0 <= self.jitter <= 1.0:
      raise ValueError("Backoff jitter must be within [0, 1].")

  def delay(self, attempt: int) -> float:
    """Return the wait before retrying after failed attempt number `attempt` (1-based)."""
    if attempt < 1:
      raise ValueError("Attempt numbers start at 1.")
    # Cap the exponent so huge attempt numbers cannot overflow the float.
    exponent = min(attempt - 1, 64)
    raw = min(self.max_delay, self.base_delay * (2**exponent))
    return raw * (1.0 + self.jitter * self.rng())

  async def retry[T](
    self,
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
    operation: str = "call",
  ) -> T:
    """
    Call `fn` until it succeeds or `max_attempts` calls have failed.

    Errors rejected by `should_retry` are raised immediately. After exhaustion the
    last error is re-raised unchanged.
    """
    if max_attempts < 1:
      raise ValueError("max_attempts must be at least 1.")
    policy = self if base_delay is None else replace(self, base_delay=base_delay)

    attempt = 0
    while True:
      attempt += 1
      try:
        return await fn()
      except Exception as exc:
        if should_retry is not None and not should_retry(exc):
          raise
        if attempt >= max_attempts:
          logger.warning("Giving up on %s after %d attempts: %s", operation, attempt, exc)
          raise
        wait = policy.delay(attempt)
        logger.info("Retrying %s after attempt %d/%d failed (%s); sleeping %.2fs", operation, attempt, max_attempts, type(exc).__name__, wait)
        if on_retry is not None:
          on_retry(attempt, exc, wait)
        await policy.sleep(wait)
