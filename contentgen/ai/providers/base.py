"""Collaborator contracts for generation, embedding, and search providers."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class GenerationParams:
  """Sampling parameters for a single generator call."""

  temperature: float = 0.9
  top_p: float = 0.95
  top_k: int = 60
  max_tokens: int = 1024


class TextGenerator(Protocol):
  """Text generation backend."""

  async def generate(self, prompt: str, params: GenerationParams) -> str:
    """Return generated text for `prompt`."""


class Embedder(Protocol):
  """Embedding backend; identical input must produce identical vectors."""

  async def embed(self, text: str) -> list[float]:
    """Return a fixed-dimension vector for `text`."""


# Origin call used by the multi-tier cache: query -> JSON-safe payload.
SearchOrigin = Callable[[str], Awaitable[Any]]
