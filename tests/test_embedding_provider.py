"""Tests for huginn.embedding.provider: HTTP embedding backends and error mapping."""

import json

import httpx
import pytest

from huginn.core.config import EmbeddingConfig
from huginn.core.errors import ProviderError
from huginn.embedding.provider import HttpEmbeddingProvider, build_provider


def _provider(handler, **overrides):
    cfg = EmbeddingConfig(dimensions=3, **overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpEmbeddingProvider(cfg, http_client=client), client


@pytest.mark.asyncio
async def test_openai_request_shape_and_response():
    seen = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

    provider, client = _provider(handler, api_key="sk-test", base_url="https://api.example.com/")
    try:
        vector = await provider.embed("hello world")
    finally:
        await client.aclose()

    assert vector == [0.1, 0.2, 0.3]
    assert seen["url"] == "https://api.example.com/v1/embeddings"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"] == {"model": "text-embedding-ada-002", "input": "hello world"}


@pytest.mark.asyncio
async def test_ollama_request_shape_and_response():
    seen = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"embedding": [1, 2, 3]})

    provider, client = _provider(
        handler, provider="ollama", model="nomic-embed-text", base_url="http://localhost:11434"
    )
    try:
        vector = await provider.embed("hello")
    finally:
        await client.aclose()

    assert vector == [1.0, 2.0, 3.0]
    assert seen["url"] == "http://localhost:11434/api/embeddings"
    assert seen["body"] == {"model": "nomic-embed-text", "prompt": "hello"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, retryable",
    [(429, True), (500, True), (503, True), (400, False), (401, False)],
)
async def test_http_status_mapping(status, retryable):
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text="nope")

    provider, client = _provider(handler)
    try:
        with pytest.raises(ProviderError) as excinfo:
            await provider.embed("x")
    finally:
        await client.aclose()
    assert excinfo.value.retryable is retryable
    assert excinfo.value.status_code == status


@pytest.mark.asyncio
async def test_transport_error_is_retryable():
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider, client = _provider(handler)
    try:
        with pytest.raises(ProviderError) as excinfo:
            await provider.embed("x")
    finally:
        await client.aclose()
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"data": []}),
        httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2]}]}),
    ],
    ids=["invalid-json", "missing-vector", "wrong-dimensions"],
)
async def test_malformed_responses_are_not_retryable(response):
    async def handler(request: httpx.Request) -> httpx.Response:
        return response

    provider, client = _provider(handler)
    try:
        with pytest.raises(ProviderError) as excinfo:
            await provider.embed("x")
    finally:
        await client.aclose()
    assert excinfo.value.retryable is False


@pytest.mark.asyncio
async def test_build_provider_owns_and_closes_its_client():
    provider = build_provider(EmbeddingConfig(provider="ollama", dimensions=8))
    assert isinstance(provider, HttpEmbeddingProvider)
    assert provider.dimensions == 8
    await provider.close()
    assert provider._client.is_closed
