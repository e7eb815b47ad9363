"""Circuit breaker guarding calls to a flaky upstream service."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum

from contentgen.core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(StrEnum):
  CLOSED = "closed"
  OPEN = "open"
  HALF_OPEN = "half_open"


class CircuitBreaker:
  """CLOSED -> OPEN -> HALF_OPEN -> CLOSED breaker.

  The circuit opens after `failure_threshold` consecutive failures. While open,
  calls raise CircuitOpenError without invoking the wrapped function. Once
  `timeout` seconds have passed it goes half-open and admits one probe at a
  time; `success_threshold` consecutive probe successes close it and any probe
  failure reopens it.
  """

  def __init__(self, *, name: str, failure_threshold: int = 5, timeout: float = 60.0, success_threshold: int = 2, clock: Callable[[], float] = time.monotonic) -> None:
    if failure_threshold < 1 or success_threshold < 1:
      raise ValueError("Circuit breaker thresholds must be at least 1.")
    if timeout <= 0:
      raise ValueError("Circuit breaker timeout must be positive.")
    self.name = name
    self.failure_threshold = failure_threshold
    self.timeout = timeout
    self.success_threshold = success_threshold
    self._clock = clock
    self._state = CircuitState.CLOSED
    self._failures = 0
    self._successes = 0
    self._opened_at = 0.0
    self._probe_in_flight = False

  @property
  def state(self) -> CircuitState:
    self._maybe_half_open()
    return self._state

  @property
  def failure_count(self) -> int:
    return self._failures

  def _maybe_half_open(self) -> None:
    if self._state is CircuitState.OPEN and self._clock() - self._opened_at >= self.timeout:
      self._transition(CircuitState.HALF_OPEN)

  def _transition(self, state: CircuitState) -> None:
    if state is self._state:
      return
    logger.info("Circuit %s: %s -> %s", self.name, self._state, state)
    self._state = state
    self._successes = 0
    if state is CircuitState.OPEN:
      self._opened_at = self._clock()
    if state is CircuitState.CLOSED:
      self._failures = 0

  def _before_call(self) -> None:
    self._maybe_half_open()
    if self._state is CircuitState.OPEN:
      raise CircuitOpenError(self.name, max(0.0, self.timeout - (self._clock() - self._opened_at)))
    if self._state is CircuitState.HALF_OPEN:
      if self._probe_in_flight:
        raise CircuitOpenError(self.name, 0.0)
      self._probe_in_flight = True

  def record_success(self) -> None:
    if self._state is CircuitState.HALF_OPEN:
      self._successes += 1
      if self._successes >= self.success_threshold:
        self._transition(CircuitState.CLOSED)
      return
    self._failures = 0

  def record_failure(self) -> None:
    if self._state is CircuitState.HALF_OPEN:
      self._transition(CircuitState.OPEN)
      return
    self._failures += 1
    if self._failures >= self.failure_threshold:
      logger.warning("Circuit %s opened after %d consecutive failures", self.name, self._failures)
      self._transition(CircuitState.OPEN)

  async def call[T](self, fn: Callable[[], Awaitable[T]]) -> T:
    """Invoke `fn` through the breaker."""
    self._before_call()
    probing = self._state is CircuitState.HALF_OPEN
    try:
      result = await fn()
    except Exception:
      self.record_failure()
      raise
    finally:
      if probing:
        self._probe_in_flight = False
    self.record_success()
    return result

  def reset(self) -> None:
    self._probe_in_flight = False
    self._transition(CircuitState.CLOSED)
    self._failures = 0
