"""Provider implementations."""

from contentgen.ai.providers.base import Embedder, GenerationParams, SearchOrigin, TextGenerator

__all__ = ["Embedder", "GenerationParams", "SearchOrigin", "TextGenerator"]
