"""
Visit Triage - Embedding Service

Maps text to a fixed-length vector for similarity search.

Architecture:
    - Protocol defines the interface
    - DummyEmbedder: Hashed bag-of-words vectors (deterministic, offline)
    - OllamaEmbedder: Ollama /api/embeddings endpoint over httpx
"""

from __future__ import annotations

import hashlib
import logging
import re
from abc import abstractmethod
from typing import Protocol, runtime_checkable

import httpx
import numpy as np

from visit_triage.core.exceptions import CollaboratorUnavailableError
from visit_triage.core.types import Embedding

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9']+")


@runtime_checkable
class Embedder(Protocol):
    """Protocol for text embedding backends."""

    @abstractmethod
    async def embed(self, text: str) -> Embedding:
        """
        Embed text into a vector.

        Raises:
            CollaboratorUnavailableError: If the backend cannot be reached
        """
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        ...


class DummyEmbedder:
    """
    Hashed bag-of-words embedder.

    Each lowercase token is hashed into one of `dimensions` buckets and the
    counts are L2-normalised, so texts sharing words have positive cosine
    similarity. Deterministic across processes (uses md5, not hash()).
    """

    def __init__(self, dimensions: int = 256):
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self._dimensions = dimensions

    @property
    def model_id(self) -> str:
        return f"dummy-embedder-{self._dimensions}d"

    async def embed(self, text: str) -> Embedding:
        vector = np.zeros(self._dimensions, dtype=np.float32)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "little") % self._dimensions] += 1.0

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return Embedding(vector.tolist())


class OllamaEmbedder:
    """Embeddings from a local Ollama server."""

    def __init__(self, base_url: str, model_name: str = "nomic-embed-text", timeout: float = 30.0):
        self._url = base_url.rstrip("/") + "/api/embeddings"
        self._model_name = model_name
        self._client = httpx.AsyncClient(timeout=timeout)
        logger.info("OllamaEmbedder initialized: url=%s, model=%s", self._url, model_name)

    @property
    def model_id(self) -> str:
        return f"ollama:{self._model_name}"

    async def embed(self, text: str) -> Embedding:
        try:
            response = await self._client.post(
                self._url,
                json={"model": self._model_name, "prompt": text},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailableError(
                f"Ollama embedding request failed: {type(exc).__name__}",
                details={"model": self._model_name},
            ) from exc

        vector = response.json().get("embedding")
        if not vector:
            raise CollaboratorUnavailableError(
                "Ollama returned no embedding",
                details={"model": self._model_name},
            )
        return Embedding([float(v) for v in vector])

    async def aclose(self) -> None:
        await self._client.aclose()
