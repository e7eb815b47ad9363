"""Exact-match key-value cache tier."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from contentgen.core.exceptions import CallTimeoutError, ProviderError, UpstreamUnavailableError

logger = logging.getLogger(__name__)


class KeyValueCache(Protocol):
  """Byte-valued cache with per-key TTL and glob scans."""

  async def get(self, key: str) -> bytes | None:
    """Return the stored value or None."""

  async def set(self, key: str, value: bytes, *, ttl_seconds: int) -> None:
    """Store `value` under `key`, expiring after `ttl_seconds`."""

  async def delete(self, *keys: str) -> int:
    """Delete keys and return how many existed."""

  async def scan(self, pattern: str) -> list[str]:
    """Return every key matching the glob `pattern`."""


class RedisKeyValueCache:
  """KeyValueCache backed by redis.asyncio."""

  def __init__(self, client: redis.Redis) -> None:
    self._client = client

  @classmethod
  def from_url(cls, url: str) -> RedisKeyValueCache:
    return cls(redis.from_url(url))

  async def _call[T](self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
    try:
      return await fn()
    except RedisTimeoutError as exc:
      raise CallTimeoutError(f"redis {operation}: {exc}") from exc
    except RedisConnectionError as exc:
      raise UpstreamUnavailableError(f"redis {operation}: {exc}") from exc
    except RedisError as exc:
      raise ProviderError(f"redis {operation}: {exc}") from exc

  async def get(self, key: str) -> bytes | None:
    return await self._call("get", lambda: self._client.get(key))

  async def set(self, key: str, value: bytes, *, ttl_seconds: int) -> None:
    await self._call("set", lambda: self._client.set(key, value, ex=ttl_seconds))

  async def delete(self, *keys: str) -> int:
    if not keys:
      return 0
    return int(await self._call("delete", lambda: self._client.delete(*keys)))

  async def scan(self, pattern: str) -> list[str]:
    # SCAN instead of KEYS so large keyspaces do not block the server.
    async def _collect() -> list[str]:
      found: list[str] = []
      async for key in self._client.scan_iter(match=pattern, count=500):
        found.append(key.decode("utf-8") if isinstance(key, bytes) else str(key))
      return found

    return await self._call("scan", _collect)

  async def close(self) -> None:
    await self._client.aclose()
