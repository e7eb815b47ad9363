"""Tavily search origin for curriculum reference lookups."""

from __future__ import annotations

import functools
import logging
from typing import Any

import anyio
from tavily import TavilyClient

from contentgen.ai.errors import classify_provider_error

logger = logging.getLogger(__name__)


class TavilySearchOrigin:
  """Callable origin for the multi-tier cache backed by Tavily web search."""

  def __init__(self, api_key: str | None, *, max_results: int = 5, search_depth: str = "basic", client: TavilyClient | None = None) -> None:
    if client is None and not api_key:
      raise ValueError("Tavily API key is required.")
    self._client = client or TavilyClient(api_key=api_key)
    self._max_results = max_results
    self._search_depth = search_depth

  async def __call__(self, query: str) -> list[dict[str, Any]]:
    """Return the search hits for `query` as title/url/content dicts."""
    search = functools.partial(self._client.search, query=query, max_results=self._max_results, search_depth=self._search_depth)
    try:
      # Tavily client is synchronous
      response = await anyio.to_thread.run_sync(search)
    except Exception as exc:
      logger.error("Tavily search failed for query=%r: %s", query, exc)
      raise classify_provider_error(exc, provider="tavily") from exc

    results = response.get("results") or []
    logger.info("Tavily search returned %d results for query=%r", len(results), query)
    return [{"title": item.get("title", ""), "url": item.get("url", ""), "content": item.get("content", "")} for item in results]
