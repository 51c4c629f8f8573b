"""Embeddings client supporting OpenAI, Ollama and Gemini.

OpenAI is the default backend; its vectors match the ``vector(1536)``
column of the ingested-item store. Empty or whitespace-only text never
reaches a backend: ``embed`` returns an empty vector instead.
"""

import asyncio
import re
from abc import ABC, abstractmethod

import httpx
import openai
from google import genai  # type: ignore[attr-defined]

from brainsync.config import get_settings
from brainsync.constants import EMBEDDING_MAX_INPUT_CHARS
from brainsync.integrations.errors import EmbeddingError
from brainsync.logging import get_logger

log = get_logger("brainsync.memory.embeddings")

# Embedding dimensions per backend
EMBEDDING_DIMENSIONS: dict[str, int] = {
    "openai": 1536,  # text-embedding-3-small
    "ollama": 768,  # nomic-embed-text
    "gemini": 768,  # text-embedding-004
}

_WHITESPACE = re.compile(r"\s+")


def get_embedding_dimension() -> int:
    """Get the embedding dimension for the configured backend."""
    settings = get_settings()
    if settings.embeddings_backend == "openai":
        return settings.openai_embedding_dimensions
    return EMBEDDING_DIMENSIONS.get(settings.embeddings_backend, 1536)


def build_embedding_text(title: str | None, content: str | None) -> str:
    """Join the non-blank title and content."""
    parts = [part for part in (title, content) if part and part.strip()]
    return "\n\n".join(parts)


def normalize_embedding_text(text: str) -> str:
    """Collapse whitespace and cap the input length."""
    return _WHITESPACE.sub(" ", text).strip()[:EMBEDDING_MAX_INPUT_CHARS]


class EmbeddingsClient(ABC):
    """Abstract base class for embeddings clients."""

    @abstractmethod
    async def embed_text(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        raise NotImplementedError

    async def embed(self, text: str) -> list[float]:
        """Normalize and embed ``text``; blank input yields ``[]``.

        Raises:
            EmbeddingError: If the backend call fails.
        """
        normalized = normalize_embedding_text(text)
        if not normalized:
            return []
        try:
            return await self.embed_text(normalized)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding generation failed: {e}") from e

    async def embed_query(self, query: str) -> list[float]:
        """Generate embedding for a search query."""
        return await self.embed(query)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts in parallel."""
        results = await asyncio.gather(*[self.embed(text) for text in texts])
        return list(results)

    async def close(self) -> None:
        """Close the client (no-op by default)."""
        return


class OpenAIEmbeddings(EmbeddingsClient):
    """Client for generating embeddings using OpenAI (cloud)."""

    def __init__(self) -> None:
        """Initialize the OpenAI embeddings client."""
        settings = get_settings()
        if not settings.openai_api_key:
            raise ValueError("OpenAI API key required for OpenAI embeddings")
        self._client = openai.AsyncOpenAI(api_key=settings.openai_api_key.get_secret_value())
        self._model = settings.openai_embedding_model
        self._dimensions = settings.openai_embedding_dimensions
        log.info(
            "openai_embeddings_initialized",
            model=self._model,
            dimensions=self._dimensions,
        )

    async def embed_text(self, text: str) -> list[float]:
        """Generate embedding using OpenAI.

        Args:
            text: The text to embed.

        Returns:
            A list of floats representing the embedding vector.
        """
        response = await self._client.embeddings.create(
            model=self._model,
            input=text,
            dimensions=self._dimensions,
        )
        if not response.data:
            return []
        return list(response.data[0].embedding)

    async def close(self) -> None:
        """Close the OpenAI client."""
        await self._client.close()


class OllamaEmbeddings(EmbeddingsClient):
    """Client for generating embeddings using Ollama (local)."""

    def __init__(self) -> None:
        """Initialize the Ollama embeddings client."""
        settings = get_settings()
        self._base_url = f"http://{settings.ollama_host}:{settings.ollama_port}"
        self._model = settings.ollama_embedding_model
        self._client = httpx.AsyncClient(timeout=settings.ollama_timeout)
        log.info(
            "ollama_embeddings_initialized",
            url=self._base_url,
            model=self._model,
        )

    async def embed_text(self, text: str) -> list[float]:
        """Generate embedding using Ollama."""
        response = await self._client.post(
            f"{self._base_url}/api/embed",
            json={
                "model": self._model,
                "input": text,
            },
        )
        response.raise_for_status()
        data = response.json()
        # Ollama returns {"embeddings": [[...]]} for a single input
        return list(data["embeddings"][0])

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


class GeminiEmbeddings(EmbeddingsClient):
    """Client for generating embeddings using Gemini (cloud)."""

    def __init__(self) -> None:
        """Initialize the Gemini embeddings client."""
        settings = get_settings()
        if not settings.gemini_api_key:
            raise ValueError("Gemini API key required for Gemini embeddings")
        self._client = genai.Client(api_key=settings.gemini_api_key.get_secret_value())
        self._model = settings.gemini_embedding_model
        log.info("gemini_embeddings_initialized", model=self._model)

    async def embed_text(self, text: str) -> list[float]:
        """Generate embedding using Gemini."""
        # Wrap synchronous Gemini call in thread to avoid blocking event loop
        result = await asyncio.to_thread(
            self._client.models.embed_content,
            model=self._model,
            contents=text,
        )
        return list(result.embeddings[0].values)  # type: ignore[index, arg-type]


def get_embeddings_client() -> EmbeddingsClient:
    """Factory function to get the configured embeddings client."""
    settings = get_settings()

    if settings.embeddings_backend == "ollama":
        return OllamaEmbeddings()
    if settings.embeddings_backend == "gemini":
        return GeminiEmbeddings()
    return OpenAIEmbeddings()
