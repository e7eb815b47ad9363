"""Token-bucket rate limiting for outbound generator calls."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from contentgen.core.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


class TokenBucket:
  """Token bucket with lazy refill.

  Tokens are topped up only when the bucket is inspected:
  tokens = min(capacity, tokens + elapsed * refill_rate). A refused consume never
  deducts anything.
  """

  def __init__(self, *, capacity: float, refill_rate: float, clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
    if capacity <= 0:
      raise ValueError("Token bucket capacity must be positive.")
    if refill_rate <= 0:
      raise ValueError("Token bucket refill rate must be positive.")
    self.capacity = float(capacity)
    self.refill_rate = float(refill_rate)
    self._clock = clock
    self._sleep = sleep
    self._tokens = float(capacity)
    self._last_refill = clock()

  def _refill(self) -> None:
    now = self._clock()
    elapsed = now - self._last_refill
    if elapsed <= 0:
      return
    self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
    self._last_refill = now

  def available(self) -> float:
    """Return the current token count after refill."""
    self._refill()
    return self._tokens

  def try_consume(self, tokens: float = 1) -> bool:
    """Deduct `tokens` if enough are available; otherwise leave the bucket untouched."""
    if tokens <= 0:
      raise ValueError("Token count must be positive.")
    self._refill()
    if self._tokens >= tokens:
      self._tokens -= tokens
      return True
    return False

  async def acquire(self, tokens: float = 1, *, timeout: float | None = None) -> None:
    """Wait until `tokens` can be consumed, raising RateLimitedError after `timeout` seconds."""
    if tokens > self.capacity:
      raise ValueError(f"Cannot acquire {tokens} tokens from a bucket of capacity {self.capacity}.")

    started = self._clock()
    while not self.try_consume(tokens):
      wait = (tokens - self._tokens) / self.refill_rate
      if timeout is not None and (self._clock() - started) + wait > timeout:
        raise RateLimitedError(f"Rate limit wait of {wait:.2f}s exceeds the {timeout:.2f}s budget.")
      logger.debug("Rate limited; waiting %.2fs for %s token(s)", wait, tokens)
      await self._sleep(wait)
