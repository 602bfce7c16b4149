"""Embedding provider capability interface + LiteLLM-backed implementation.

A provider always offers ``embed_query`` and ``embed_batch``. Providers whose
API speaks the OpenAI file/batch protocol also expose a ``batch_transport``;
for every other provider the remote batch pipeline is simply unavailable.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import litellm

from memindex.config import BATCH_CAPABLE_PROVIDERS, MemorySearchCfg
from memindex.errors import ConfigError

_DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
}

_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "cohere": "COHERE_API_KEY",
}


@dataclass
class BatchTransport:
    """Where and how to reach a provider's file + batch endpoints."""

    base_url: str
    model: str
    headers: dict[str, str] = field(default_factory=dict)


class EmbeddingProvider(ABC):
    """Capability set consumed by the indexer.

    Attributes:
        id: Provider name (``openai``, ``gemini`` ...).
        model: Embedding model identifier; stored with every vector.
        batch_transport: Set only for providers with a remote batch API.
    """

    id: str
    model: str
    batch_transport: BatchTransport | None = None

    @abstractmethod
    async def embed_query(self, text: str) -> list[float]:
        """Embed one search query."""

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts*, returning one vector per input in input order."""

    async def aclose(self) -> None:  # noqa: B027 - optional hook
        """Release provider resources. Default: nothing to release."""


class LiteLLMEmbeddingProvider(EmbeddingProvider):
    """Embeddings through ``litellm.aembedding()``."""

    def __init__(
        self,
        provider: str,
        model: str,
        *,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        batch_transport: BatchTransport | None = None,
    ) -> None:
        self.id = provider
        self.model = model
        self._base_url = base_url
        self._headers = dict(headers or {})
        self.batch_transport = batch_transport

    @property
    def litellm_model(self) -> str:
        """Provider-qualified model string in LiteLLM format."""
        if "/" in self.model:
            return self.model
        return f"{self.id}/{self.model}"

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        kwargs: dict[str, object] = {"model": self.litellm_model, "input": texts}
        if self._base_url:
            kwargs["api_base"] = self._base_url
        if self._headers:
            kwargs["extra_headers"] = self._headers
        response = await litellm.aembedding(**kwargs)
        return [item["embedding"] for item in response.data]


def _api_key(provider: str) -> str | None:
    env = _API_KEY_ENV.get(provider)
    if env is None:
        return None
    key = os.environ.get(env)
    if not key:
        raise ConfigError(
            f"No API key found for provider '{provider}'. "
            f"Set the {env} environment variable."
        )
    return key


def create_embedding_provider(settings: MemorySearchCfg) -> EmbeddingProvider:
    """Build the configured provider.

    Raises:
        ConfigError: If the provider needs an API key and none is set.
    """
    provider = settings.provider
    key = _api_key(provider)
    base_url = settings.remote.base_url or _DEFAULT_BASE_URLS.get(provider)

    transport: BatchTransport | None = None
    if provider in BATCH_CAPABLE_PROVIDERS and base_url:
        headers = dict(settings.remote.headers)
        if key and not any(h.lower() == "authorization" for h in headers):
            headers["Authorization"] = f"Bearer {key}"
        transport = BatchTransport(base_url=base_url.rstrip("/"), model=settings.model, headers=headers)

    return LiteLLMEmbeddingProvider(
        provider,
        settings.model,
        base_url=settings.remote.base_url,
        headers=settings.remote.headers,
        batch_transport=transport,
    )
