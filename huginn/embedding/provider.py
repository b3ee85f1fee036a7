"""
Huginn Embedding Providers
--------------------------
Thin async HTTP clients for the embedding collaborator.

Supported backends:
  - openai: POST {base_url}/v1/embeddings with a bearer key
  - ollama: POST {base_url}/api/embeddings

Every failure is translated into ProviderError. Rate limiting (429), server
errors (5xx) and transport errors are retryable; other client errors and
malformed responses are not. Retry and throttling policy live in the gateway,
not here.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from huginn.core.config import EmbeddingConfig
from huginn.core.errors import ProviderError

logger = logging.getLogger("Huginn.Embedding")


class EmbeddingProvider:
    """Interface: `await embed(text) -> List[float]`, raising ProviderError."""

    dimensions: int = 0

    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class HttpEmbeddingProvider(EmbeddingProvider):
    def __init__(
        self,
        config: EmbeddingConfig,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.dimensions = config.dimensions
        self._base_url = config.base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(headers={"Accept": "application/json"})

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpEmbeddingProvider":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _request_parts(self, text: str):
        if self.config.provider == "ollama":
            return (
                f"{self._base_url}/api/embeddings",
                {"model": self.config.model, "prompt": text},
                {},
            )
        headers = {}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return (
            f"{self._base_url}/v1/embeddings",
            {"model": self.config.model, "input": text},
            headers,
        )

    def _extract_vector(self, payload: Dict[str, Any]) -> List[float]:
        if self.config.provider == "ollama":
            vector = payload.get("embedding")
        else:
            data = payload.get("data") or []
            vector = data[0].get("embedding") if data else None
        if not isinstance(vector, list) or not vector:
            raise ProviderError("Embedding response did not contain a vector", retryable=False)
        if len(vector) != self.dimensions:
            raise ProviderError(
                f"Embedding has {len(vector)} dimensions, expected {self.dimensions}",
                retryable=False,
            )
        return [float(v) for v in vector]

    async def embed(self, text: str) -> List[float]:
        url, body, headers = self._request_parts(text)
        try:
            response = await self._client.post(
                url,
                json=body,
                headers=headers,
                timeout=self.config.request_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"Embedding request to {self._base_url} failed: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise ProviderError("Embedding provider unavailable", retryable=True, status_code=status)
        if status >= 400:
            raise ProviderError(
                f"Embedding provider rejected request: {response.text[:200]}",
                retryable=False,
                status_code=status,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("Embedding provider returned invalid JSON", retryable=False) from exc
        return self._extract_vector(payload)


def build_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    logger.info("Embedding provider: %s (%s, %d dims)", config.provider, config.model, config.dimensions)
    return HttpEmbeddingProvider(config)
