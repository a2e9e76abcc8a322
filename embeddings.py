"""Embedding generation with ordered provider failover.

Providers are plain objects sharing one interface (``available`` +
``generate``); the generator walks them in configured order. Adding a
provider means adding a class, with ``settings`` naming its config values,
and a name in ``PROVIDER_TYPES``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any

import numpy as np
import requests

from config import Config
from credentials import Credentials
from errors import AllProvidersExhausted, ConfigurationError, OversizedInputError, ProviderError
from models import Embedding

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

logger = logging.getLogger("recall.embeddings")

OPENAI_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

_genai_lock = threading.Lock()
_genai_clients: dict[str, GenAIClient] = {}


def get_genai_client(api_key: str) -> GenAIClient:
    """Get or create a GenAI client for ``api_key`` (thread-safe)."""
    client = _genai_clients.get(api_key)
    if client is None:
        with _genai_lock:
            client = _genai_clients.get(api_key)
            if client is None:
                from google import genai

                client = genai.Client(api_key=api_key)
                _genai_clients[api_key] = client
    return client


def normalize(values: list[float]) -> list[float]:
    embedding = np.asarray(values, dtype=np.float64)
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


# =============================================================================
# Providers
# =============================================================================


class EmbeddingProvider:
    """One embedding backend.

    Subclasses implement ``_call`` and raise ``ProviderError`` on failure;
    ``generate`` adds request spacing and bounded retries of transient errors.
    """

    name = "base"
    credential: str | None = None  # None: no secret needed (local service)
    batch_size = 1
    min_interval = 0.0  # seconds between requests
    max_input_chars = 8000

    def __init__(self, model: str, dimensions: int, *, timeout: float = 30.0, max_retries: int = 2):
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout
        self.max_retries = max_retries
        self.api_key: str | None = None
        self._last_call = 0.0
        self._sleep = time.sleep

    @classmethod
    def settings(cls, config: Config) -> dict[str, Any]:
        """Constructor arguments taken from ``config``."""
        return {}

    def available(self, credentials: Credentials) -> bool:
        if self.credential is None:
            return True
        self.api_key = credentials.get(self.credential)
        return self.api_key is not None

    def generate(self, texts: list[str]) -> list[list[float]]:
        for attempt in range(self.max_retries + 1):
            self._space_requests()
            try:
                vectors = self._call(texts)
            except ProviderError as e:
                if not e.transient or attempt >= self.max_retries:
                    raise
                logger.warning("%s attempt %d failed, retrying: %s", self.name, attempt + 1, e)
                self._sleep(0.5 * 2**attempt)
                continue
            return [self._check(v) for v in vectors]
        raise ProviderError(self.name, "retries exhausted")

    def _space_requests(self) -> None:
        if self.min_interval > 0:
            wait = self._last_call + self.min_interval - time.monotonic()
            if wait > 0:
                self._sleep(wait)
        self._last_call = time.monotonic()

    def _check(self, vector: list[float]) -> list[float]:
        if len(vector) != self.dimensions:
            raise ProviderError(
                self.name, f"returned {len(vector)} dimensions, expected {self.dimensions}"
            )
        return normalize(vector)

    def _call(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError

    def _raise_for_response(self, response: requests.Response) -> None:
        if response.status_code == 429:
            raise ProviderError(self.name, f"rate limited: {response.text[:200]}", quota=True)
        if response.status_code >= 500:
            raise ProviderError(self.name, f"server error {response.status_code}", transient=True)
        if response.status_code >= 400:
            raise ProviderError(self.name, f"error {response.status_code}: {response.text[:200]}")


class OpenAIProvider(EmbeddingProvider):
    name = "openai"
    credential = "openai"
    batch_size = 100
    min_interval = 0.1
    max_input_chars = 32000
    url = "https://api.openai.com/v1/embeddings"

    def __init__(self, model: str = "text-embedding-3-small", **kwargs):
        super().__init__(model, OPENAI_DIMENSIONS.get(model, 1536), **kwargs)

    @classmethod
    def settings(cls, config: Config) -> dict[str, Any]:
        return {"model": config.openai_model}

    def _call(self, texts: list[str]) -> list[list[float]]:
        try:
            response = requests.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"model": self.model, "input": texts, "encoding_format": "float"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(self.name, str(e), transient=True) from e
        self._raise_for_response(response)
        data = sorted(response.json()["data"], key=lambda item: item["index"])
        return [item["embedding"] for item in data]


class GoogleProvider(EmbeddingProvider):
    name = "google"
    credential = "google"
    batch_size = 100
    max_input_chars = 8000

    def __init__(self, model: str = "gemini-embedding-001", dimensions: int = 1536, **kwargs):
        super().__init__(model, dimensions, **kwargs)

    @classmethod
    def settings(cls, config: Config) -> dict[str, Any]:
        return {"model": config.google_model, "dimensions": config.google_dim}

    def _call(self, texts: list[str]) -> list[list[float]]:
        from google.genai import errors, types

        try:
            response = get_genai_client(self.api_key).models.embed_content(
                model=self.model,
                contents=texts,
                config=types.EmbedContentConfig(
                    task_type="SEMANTIC_SIMILARITY", output_dimensionality=self.dimensions
                ),
            )
        except errors.APIError as e:
            code = getattr(e, "code", None)
            if code == 429:
                raise ProviderError(self.name, str(e), quota=True) from e
            raise ProviderError(self.name, str(e), transient=bool(code and code >= 500)) from e
        except Exception as e:  # network errors surface as httpx exceptions
            raise ProviderError(self.name, str(e), transient=True) from e
        return [list(item.values) for item in response.embeddings]


class OllamaProvider(EmbeddingProvider):
    """Local Ollama server; needs no credential."""

    name = "ollama"
    max_input_chars = 32000

    def __init__(self, model: str = "qwen3-embedding:0.6b", dimensions: int = 1024, *, base_url: str = "http://localhost:11434", **kwargs):
        super().__init__(model, dimensions, **kwargs)
        self.base_url = base_url.rstrip("/")

    @classmethod
    def settings(cls, config: Config) -> dict[str, Any]:
        return {"model": config.ollama_model, "dimensions": config.ollama_dim, "base_url": config.ollama_base_url}

    def _call(self, texts: list[str]) -> list[list[float]]:
        vectors = []
        for text in texts:
            try:
                response = requests.post(
                    f"{self.base_url}/api/embeddings",
                    json={"model": self.model, "prompt": text},
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise ProviderError(self.name, str(e), transient=True) from e
            self._raise_for_response(response)
            vectors.append(response.json().get("embedding", []))
        return vectors


PROVIDER_TYPES = {
    "openai": OpenAIProvider,
    "google": GoogleProvider,
    "ollama": OllamaProvider,
}


def build_providers(config: Config) -> list[EmbeddingProvider]:
    """Instantiate the providers named in ``config.embedding_providers``, in order."""
    common = {"timeout": config.request_timeout, "max_retries": config.max_retries}
    providers: list[EmbeddingProvider] = []
    for name in config.embedding_providers:
        provider_type = PROVIDER_TYPES.get(name)
        if provider_type is None:
            raise ConfigurationError(f"Unknown embedding provider '{name}'. Valid: {sorted(PROVIDER_TYPES)}")
        providers.append(provider_type(**provider_type.settings(config), **common))
    return providers


# =============================================================================
# Generator
# =============================================================================


class EmbeddingGenerator:
    """Embed text with the first provider that can serve the request."""

    def __init__(self, providers: list[EmbeddingProvider], credentials: Credentials):
        self.providers = providers
        self.credentials = credentials

    def available_providers(self, model: str | None = None) -> list[EmbeddingProvider]:
        return [
            p
            for p in self.providers
            if (model is None or p.model == model) and p.available(self.credentials)
        ]

    def check_configuration(self) -> None:
        """Fail loudly when no provider can ever be used."""
        if not self.available_providers():
            names = ", ".join(p.name for p in self.providers) or "none"
            raise ConfigurationError(
                f"No usable embedding provider (configured: {names}). "
                "Set OPENAI_API_KEY or GOOGLE_API_KEY (environment or ~/.secrets/<NAME>), "
                "or add 'ollama' to EMBEDDING_PROVIDERS with a local Ollama server."
            )

    def dimensions(self, model: str) -> int:
        for provider in self.providers:
            if provider.model == model:
                return provider.dimensions
        raise ValueError(f"No configured provider serves model '{model}'")

    def embed(self, text: str, model: str | None = None) -> Embedding:
        if not text.strip():
            raise ValueError("text is required")
        return self.embed_batch([text], model=model)[0]

    def embed_batch(self, texts: list[str], model: str | None = None) -> list[Embedding]:
        """Embed ``texts`` in order; a failing provider hands the rest to the next one."""
        if not texts:
            return []
        candidates = self.available_providers(model)
        if not candidates:
            reason = f"no credentialed provider for model '{model}'" if model else "no credentialed provider"
            raise AllProvidersExhausted(reason=reason)

        longest = max(len(t) for t in texts)
        fitting = [p for p in candidates if p.max_input_chars >= longest]
        if not fitting:
            raise OversizedInputError(longest, max(p.max_input_chars for p in candidates))

        results: list[Embedding] = []
        errors: list[ProviderError] = []
        for provider in fitting:
            try:
                while len(results) < len(texts):
                    batch = texts[len(results) : len(results) + provider.batch_size]
                    vectors = provider.generate(batch)
                    if len(vectors) != len(batch):
                        raise ProviderError(
                            provider.name, f"returned {len(vectors)} vectors for {len(batch)} inputs"
                        )
                    results.extend(Embedding(v, provider.model, provider.name) for v in vectors)
                return results
            except ProviderError as e:
                errors.append(e)
                logger.warning("%s failed, falling back to next provider: %s", provider.name, e)
        raise AllProvidersExhausted(errors)
