from __future__ import annotations

import json
from typing import Any

import httpx
import openai
import pytest

from contentgen.ai.errors import classify_provider_error, is_transient
from contentgen.ai.providers.base import GenerationParams
from contentgen.ai.providers.ollama import OllamaEmbedder, OllamaGenerator
from contentgen.ai.providers.tavily import TavilySearchOrigin
from contentgen.core.exceptions import CallTimeoutError, ProviderError, RateLimitedError, UpstreamUnavailableError

_REQUEST = httpx.Request("POST", "http://provider.test/v1")


def _status_error(status_code: int) -> httpx.HTTPStatusError:
  response = httpx.Response(status_code, request=_REQUEST)
  return httpx.HTTPStatusError(f"status {status_code}", request=_REQUEST, response=response)


@pytest.mark.parametrize(
  ("exc", "expected"),
  [
    (httpx.ReadTimeout("read timed out", request=_REQUEST), CallTimeoutError),
    (httpx.ConnectError("connection refused", request=_REQUEST), UpstreamUnavailableError),
    (_status_error(429), RateLimitedError),
    (_status_error(408), CallTimeoutError),
    (_status_error(503), UpstreamUnavailableError),
    (_status_error(400), ProviderError),
    (openai.APITimeoutError(request=_REQUEST), CallTimeoutError),
    (openai.APIConnectionError(request=_REQUEST), UpstreamUnavailableError),
    (openai.RateLimitError("slow down", response=httpx.Response(429, request=_REQUEST), body=None), RateLimitedError),
    (RuntimeError("model is overloaded, try later"), UpstreamUnavailableError),
    (RuntimeError("invalid prompt"), ProviderError),
  ],
)
def test_classification(exc: Exception, expected: type[Exception]) -> None:
  classified = classify_provider_error(exc, provider="test")
  assert type(classified) is expected


def test_engine_errors_pass_through() -> None:
  original = RateLimitedError("bucket empty")
  assert classify_provider_error(original, provider="test") is original


def test_transient_split() -> None:
  assert is_transient(RateLimitedError("429"))
  assert is_transient(CallTimeoutError("deadline"))
  assert is_transient(UpstreamUnavailableError("503"))
  assert not is_transient(ProviderError("400"))
  assert not is_transient(ValueError("bug"))


def _ollama_client(handler) -> httpx.AsyncClient:
  return httpx.AsyncClient(base_url="http://ollama.test", transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_ollama_generate_sends_sampling_options() -> None:
  seen: dict[str, Any] = {}

  def handler(request: httpx.Request) -> httpx.Response:
    seen["path"] = request.url.path
    seen["body"] = json.loads(request.content)
    return httpx.Response(200, json={"response": "Photosynthesis converts light to chemical energy."})

  async with _ollama_client(handler) as client:
    generator = OllamaGenerator(model="llama3", client=client)
    text = await generator.generate("Write one question.", GenerationParams(temperature=0.9, top_p=0.95, top_k=50, max_tokens=256))

  assert text.startswith("Photosynthesis")
  assert seen["path"] == "/api/generate"
  assert seen["body"]["stream"] is False
  assert seen["body"]["options"] == {"temperature": 0.9, "top_p": 0.95, "top_k": 50, "num_predict": 256}


@pytest.mark.anyio
@pytest.mark.parametrize(("status_code", "expected"), [(429, RateLimitedError), (503, UpstreamUnavailableError), (404, ProviderError)])
async def test_ollama_status_codes_are_classified(status_code: int, expected: type[Exception]) -> None:
  async with _ollama_client(lambda request: httpx.Response(status_code, json={"error": "nope"})) as client:
    generator = OllamaGenerator(model="llama3", client=client)
    with pytest.raises(expected):
      await generator.generate("prompt", GenerationParams())


@pytest.mark.anyio
async def test_ollama_transport_failures_are_transient() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)

  async with _ollama_client(handler) as client:
    with pytest.raises(UpstreamUnavailableError):
      await OllamaEmbedder(model="nomic-embed-text", client=client).embed("text")


@pytest.mark.anyio
async def test_ollama_embed() -> None:
  async with _ollama_client(lambda request: httpx.Response(200, json={"embeddings": [[0.25, 0.5, 1]]})) as client:
    assert await OllamaEmbedder(model="nomic-embed-text", client=client).embed("text") == [0.25, 0.5, 1.0]

  async with _ollama_client(lambda request: httpx.Response(200, json={"embeddings": []})) as client:
    with pytest.raises(ProviderError):
      await OllamaEmbedder(model="nomic-embed-text", client=client).embed("text")


class FakeTavilyClient:
  def __init__(self, response: dict[str, Any] | None = None, fail: Exception | None = None) -> None:
    self.response = response or {}
    self.fail = fail
    self.calls: list[dict[str, Any]] = []

  def search(self, **kwargs: Any) -> dict[str, Any]:
    self.calls.append(kwargs)
    if self.fail is not None:
      raise self.fail
    return self.response


@pytest.mark.anyio
async def test_tavily_results_are_normalized() -> None:
  client = FakeTavilyClient({"results": [{"title": "NCERT Physics", "url": "https://ncert.nic.in/physics", "content": "Motion", "score": 0.9}]})
  origin = TavilySearchOrigin(None, max_results=3, client=client)

  hits = await origin("CBSE Class 9 Physics syllabus")

  assert hits == [{"title": "NCERT Physics", "url": "https://ncert.nic.in/physics", "content": "Motion"}]
  assert client.calls[0]["max_results"] == 3


@pytest.mark.anyio
async def test_tavily_failures_are_classified() -> None:
  origin = TavilySearchOrigin(None, client=FakeTavilyClient(fail=RuntimeError("Request timed out")))
  with pytest.raises(UpstreamUnavailableError):
    await origin("query")


def test_tavily_requires_a_key() -> None:
  with pytest.raises(ValueError):
    TavilySearchOrigin(None)
