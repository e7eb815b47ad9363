"""Ollama generation and embedding clients over its HTTP API."""

from __future__ import annotations

import logging
from typing import Any, Final

import httpx

from contentgen.ai.errors import classify_provider_error
from contentgen.ai.providers.base import GenerationParams

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL: Final[str] = "http://localhost:11434"


class _OllamaClient:
  def __init__(self, *, model: str, base_url: str | None, client: httpx.AsyncClient | None, timeout: float) -> None:
    self.model = model
    self._owns_client = client is None
    self._client = client or httpx.AsyncClient(base_url=base_url or DEFAULT_BASE_URL, timeout=timeout)

  async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
    try:
      response = await self._client.post(path, json=body)
      response.raise_for_status()
      return response.json()
    except httpx.HTTPError as exc:
      raise classify_provider_error(exc, provider="ollama") from exc

  async def aclose(self) -> None:
    if self._owns_client:
      await self._client.aclose()


class OllamaGenerator(_OllamaClient):
  """Text generation via POST /api/generate (non-streaming)."""

  def __init__(self, *, model: str, base_url: str | None = None, client: httpx.AsyncClient | None = None, timeout: float = 120.0) -> None:
    super().__init__(model=model, base_url=base_url, client=client, timeout=timeout)

  async def generate(self, prompt: str, params: GenerationParams) -> str:
    body = {
      "model": self.model,
      "prompt": prompt,
      "stream": False,
      "options": {"temperature": params.temperature, "top_p": params.top_p, "top_k": params.top_k, "num_predict": params.max_tokens},
    }
    data = await self._post("/api/generate", body)
    content = str(data.get("response") or "")
    logger.debug("Ollama generated %d chars with model=%s temperature=%.2f", len(content), self.model, params.temperature)
    return content


class OllamaEmbedder(_OllamaClient):
  """Embeddings via POST /api/embed."""

  def __init__(self, *, model: str, base_url: str | None = None, client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
    super().__init__(model=model, base_url=base_url, client=client, timeout=timeout)

  async def embed(self, text: str) -> list[float]:
    data = await self._post("/api/embed", {"model": self.model, "input": text})
    embeddings = data.get("embeddings") or []
    if not embeddings:
      raise classify_provider_error(ValueError(f"Ollama returned no embedding for model {self.model}"), provider="ollama")
    return [float(value) for value in embeddings[0]]
