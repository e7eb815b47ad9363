"""OpenAI-compatible generation and embedding clients using the openai SDK."""

from __future__ import annotations

import logging

import openai
from openai import AsyncOpenAI

from contentgen.ai.errors import classify_provider_error
from contentgen.ai.providers.base import GenerationParams

logger = logging.getLogger(__name__)


def build_client(*, api_key: str | None, base_url: str | None, timeout: float) -> AsyncOpenAI:
  if not api_key:
    raise ValueError("An API key is required for the OpenAI-compatible provider.")
  # Retries are handled by the call guard; disable the SDK's own loop so attempts are counted once.
  return AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)


class OpenAICompatibleGenerator:
  """Chat-completions generator for OpenAI or any compatible endpoint (vLLM, OpenRouter)."""

  def __init__(self, *, model: str, client: AsyncOpenAI) -> None:
    self.model = model
    self._client = client

  async def generate(self, prompt: str, params: GenerationParams) -> str:
    try:
      response = await self._client.chat.completions.create(
        model=self.model,
        messages=[{"role": "user", "content": prompt}],
        temperature=params.temperature,
        top_p=params.top_p,
        max_tokens=params.max_tokens,
        # top_k is not part of the OpenAI schema; compatible servers read it from the body.
        extra_body={"top_k": params.top_k},
      )
    except openai.OpenAIError as exc:
      raise classify_provider_error(exc, provider="openai") from exc

    content = ""
    if response.choices:
      content = response.choices[0].message.content or ""
    if response.usage:
      logger.debug("OpenAI usage model=%s prompt_tokens=%s completion_tokens=%s", self.model, response.usage.prompt_tokens, response.usage.completion_tokens)
    return content


class OpenAICompatibleEmbedder:
  """Embeddings endpoint client."""

  def __init__(self, *, model: str, client: AsyncOpenAI) -> None:
    self.model = model
    self._client = client

  async def embed(self, text: str) -> list[float]:
    try:
      response = await self._client.embeddings.create(model=self.model, input=text)
    except openai.OpenAIError as exc:
      raise classify_provider_error(exc, provider="openai") from exc
    return [float(value) for value in response.data[0].embedding]
