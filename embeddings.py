"""Embedding providers.

Each provider maps text to a fixed-width, L2-normalised vector. Model loading
is lazy and happens once per process; a vector of the wrong width is a
configuration error, never a per-chunk error.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence

import numpy as np
import requests

from errors import ConfigurationError, EmbeddingError

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

    from config import Config

logger = logging.getLogger(__name__)

SUB_BATCH_SIZE = 32
QUERY_CACHE_SIZE = 128


class EmbeddingProvider:
    """Base class: subclasses implement the blocking `_embed_texts`."""

    def __init__(self, model_name: str, dim: int) -> None:
        self.model_name = model_name
        self.dim = dim
        self._embed_cached = lru_cache(maxsize=QUERY_CACHE_SIZE)(self._embed_one)

    def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError

    def _embed_one(self, text: str) -> tuple[float, ...]:
        return tuple(self._embed_texts([text])[0])

    def _normalize(self, raw: Any) -> list[float]:
        """Validate width and scale to unit length."""
        embedding = np.asarray(raw, dtype=np.float32).reshape(-1)
        if embedding.shape[0] != self.dim:
            raise ConfigurationError(
                f"Embedding model {self.model_name} returned {embedding.shape[0]}-dim vectors, "
                f"index expects {self.dim}. Set EMBEDDING_DIM to match or change EMBEDDING_MODEL."
            )
        norm = np.linalg.norm(embedding)
        return (embedding / norm).tolist() if norm > 0 else embedding.tolist()

    async def embed(self, text: str) -> list[float]:
        """Embed a single (query) text. Cached per provider."""
        try:
            cached = await asyncio.to_thread(self._embed_cached, text)
        except (ConfigurationError, EmbeddingError):
            raise
        except Exception as e:
            raise EmbeddingError(f"{self.model_name}: {e}") from e
        return list(cached)

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed many texts, one vector per input, in input order."""
        if not texts:
            return []
        vectors: list[list[float]] = []
        for start in range(0, len(texts), SUB_BATCH_SIZE):
            batch = list(texts[start : start + SUB_BATCH_SIZE])
            try:
                output = await asyncio.to_thread(self._embed_texts, batch)
            except (ConfigurationError, EmbeddingError):
                raise
            except Exception as e:
                raise EmbeddingError(f"{self.model_name}: {e}") from e
            if len(output) != len(batch):
                raise EmbeddingError(
                    f"{self.model_name} returned {len(output)} vectors for {len(batch)} texts"
                )
            vectors.extend(output)
            if len(texts) > SUB_BATCH_SIZE:
                logger.debug("Embedded %d/%d texts", len(vectors), len(texts))
        return vectors


class SentenceTransformerProvider(EmbeddingProvider):
    """Local model via sentence-transformers (mean pooling, normalised)."""

    def __init__(self, model_name: str, dim: int) -> None:
        super().__init__(model_name, dim)
        self._model = None
        self._lock = threading.Lock()

    def _get_model(self):
        """Load the model on first use (thread-safe)."""
        if self._model is None:
            with self._lock:
                if self._model is None:  # Double-check after acquiring lock
                    from sentence_transformers import SentenceTransformer

                    logger.info("Loading embedding model: %s...", self.model_name)
                    self._model = SentenceTransformer(self.model_name)
                    logger.info("Embedding model loaded.")
        return self._model

    def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        output = self._get_model().encode(
            texts,
            batch_size=len(texts),
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [self._normalize(row) for row in output]


class OllamaProvider(EmbeddingProvider):
    """Embeddings from a local Ollama server."""

    def __init__(self, model_name: str, dim: int, base_url: str, timeout: float = 60.0) -> None:
        super().__init__(model_name, dim)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        response = requests.post(
            f"{self.base_url}/api/embed",
            json={"model": self.model_name, "input": texts},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return [self._normalize(e) for e in response.json().get("embeddings", [])]


def _get_api_key() -> str:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    raise ConfigurationError(
        "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
    )


class GoogleProvider(EmbeddingProvider):
    """Embeddings from the Google GenAI API."""

    def __init__(self, model_name: str, dim: int) -> None:
        super().__init__(model_name, dim)
        self._client: GenAIClient | None = None
        self._lock = threading.Lock()

    def _get_client(self) -> GenAIClient:
        if self._client is None:
            with self._lock:
                if self._client is None:
                    from google import genai

                    self._client = genai.Client(api_key=_get_api_key())
        return self._client

    def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        from google.genai import types

        response = self._get_client().models.embed_content(
            model=self.model_name,
            contents=texts,
            config=types.EmbedContentConfig(
                task_type="SEMANTIC_SIMILARITY", output_dimensionality=self.dim
            ),
        )
        return [self._normalize(e.values) for e in response.embeddings]


def create_provider(config: Config) -> EmbeddingProvider:
    """Build the provider named by `config.embedding_provider`."""
    provider = config.embedding_provider.lower()
    if provider == "local":
        return SentenceTransformerProvider(config.embedding_model, config.embedding_dim)
    if provider == "ollama":
        return OllamaProvider(config.embedding_model, config.embedding_dim, config.ollama_base_url)
    if provider == "google":
        return GoogleProvider(config.embedding_model, config.embedding_dim)
    raise ConfigurationError(f"Unknown embedding provider: {config.embedding_provider!r}")
