"""Detached background tasks with an explicit error-logging policy."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTaskSet:
  """Own fire-and-forget tasks so they are neither garbage collected nor silently dropped.

  Failures are logged at warning level and never raised to the spawner.
  `drain()` waits for everything still pending, which shutdown and tests use.
  """

  def __init__(self, name: str) -> None:
    self._name = name
    self._tasks: set[asyncio.Task[Any]] = set()
    self.failures = 0

  def spawn(self, coro: Coroutine[Any, Any, Any], *, label: str) -> asyncio.Task[Any]:
    task = asyncio.create_task(coro, name=f"{self._name}:{label}")
    self._tasks.add(task)
    task.add_done_callback(self._on_done)
    return task

  def _on_done(self, task: asyncio.Task[Any]) -> None:
    self._tasks.discard(task)
    if task.cancelled():
      logger.info("Background task cancelled: %s", task.get_name())
      return
    exc = task.exception()
    if exc is not None:
      self.failures += 1
      logger.warning("Background task failed: %s error=%s", task.get_name(), exc, exc_info=exc)

  async def drain(self) -> None:
    """Wait until no tasks are pending, including tasks spawned while draining."""
    while self._tasks:
      await asyncio.gather(*list(self._tasks), return_exceptions=True)

  def __len__(self) -> int:
    return len(self._tasks)
