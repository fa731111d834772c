"""Embedding provider interface and the Ollama-backed implementation.

The engine works without embeddings: recall falls back to text-only
scoring and similarity checks fall back to trigram overlap.  When a
provider is configured, records get an embedding at store time and
``hybrid`` recall adds a vector-similarity component.

Usage::

    from engrams.embeddings import OllamaEmbeddingProvider

    provider = OllamaEmbeddingProvider()
    if await provider.health_check():
        vec = await provider.embed("Redis SCAN is O(N)")
"""

from __future__ import annotations

import logging
import math
from typing import Protocol, runtime_checkable

import httpx
import ollama

from engrams.config import EmbeddingConfig, get_config

log = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that can turn text into a fixed-width float vector."""

    @property
    def dims(self) -> int: ...

    async def embed(self, text: str) -> list[float]: ...


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two equal-length vectors.

    Returns ``0.0`` when either vector has zero magnitude.
    """
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


class OllamaEmbeddingProvider:
    """Embedding provider backed by a local Ollama server.

    Parameters
    ----------
    config:
        Embedding settings; defaults to ``get_config().embedding``.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or get_config().embedding
        self._client = ollama.AsyncClient(
            host=self._config.ollama_url,
            timeout=self._config.timeout_seconds,
        )

    @property
    def dims(self) -> int:
        return self._config.dims

    @property
    def model(self) -> str:
        return self._config.model

    async def embed(self, text: str) -> list[float]:
        """Embed a single text.

        Raises
        ------
        RuntimeError
            If the Ollama server cannot be reached or returns a vector of
            the wrong width.
        """
        try:
            response = await self._client.embed(model=self._config.model, input=text)
        except (ConnectionError, httpx.HTTPError) as exc:
            raise RuntimeError(
                f"Ollama server is not running at {self._config.ollama_url}: {exc}"
            ) from exc
        except ollama.ResponseError as exc:
            raise RuntimeError(f"Ollama rejected embed request: {exc}") from exc

        vec = list(response.embeddings[0])
        if len(vec) != self._config.dims:
            raise RuntimeError(
                f"Model {self._config.model!r} returned {len(vec)} dims, "
                f"expected {self._config.dims}"
            )
        return vec

    async def health_check(self) -> bool:
        """Return ``True`` if the Ollama HTTP API answers."""
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self._config.ollama_url}/api/tags")
                return resp.status_code == 200
        except httpx.HTTPError as exc:
            log.debug("Ollama health check failed: %s", exc)
            return False
