"""Embedding generator for query vectors and entity descriptions.

Uses Azure OpenAI or OpenAI (or a compatible provider) to generate vectors.
Supports batching and retry with exponential backoff.
Caches identical content hashes to avoid redundant API calls.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Any, Dict, List

from memforge import config as cfg

logger = logging.getLogger(__name__)

_MAX_CACHE = 10_000


class EmbeddingError(RuntimeError):
    """Raised when no embedding could be produced."""


def _content_hash(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


class Embedder:
    """Async embedding client with a content-hash cache."""

    def __init__(
        self,
        client: Any | None = None,
        *,
        model: str | None = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ) -> None:
        self._client = client
        self._model = model or cfg.EMBED_MODEL
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._cache: Dict[str, List[float]] = {}

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        if cfg.AZURE_OPENAI_ENDPOINT and cfg.AZURE_OPENAI_API_KEY:
            from openai import AsyncAzureOpenAI

            self._client = AsyncAzureOpenAI(
                api_key=cfg.AZURE_OPENAI_API_KEY,
                azure_endpoint=cfg.AZURE_OPENAI_ENDPOINT,
                api_version=cfg.AZURE_OPENAI_API_VERSION,
            )
        elif cfg.OPENAI_API_KEY:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=cfg.OPENAI_API_KEY,
                base_url=cfg.OPENAI_BASE_URL or None,
            )
        else:
            raise EmbeddingError("Embedding credentials not configured")
        return self._client

    async def embed(self, text: str) -> List[float]:
        """Embed a single text."""
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        """Embed a batch of texts, preserving order."""
        results: List[List[float]] = []
        to_embed: List[tuple[int, str]] = []  # (index, text)

        for i, text in enumerate(texts):
            cached = self._cache.get(_content_hash(text))
            if cached is not None:
                results.append(cached)
            else:
                results.append([])  # placeholder
                to_embed.append((i, text))

        if not to_embed:
            return results

        vectors = await self._embed_with_retry([t for _, t in to_embed])
        if len(vectors) != len(to_embed):
            raise EmbeddingError(
                f"provider returned {len(vectors)} vectors for {len(to_embed)} inputs"
            )

        for vec, (orig_i, text) in zip(vectors, to_embed):
            results[orig_i] = vec
            if len(self._cache) < _MAX_CACHE:
                self._cache[_content_hash(text)] = vec

        return results

    async def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        """Call the embedding API with exponential backoff."""
        client = self._ensure_client()
        last_error: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                response = await client.embeddings.create(input=texts, model=self._model)
                return [item.embedding for item in response.data]
            except Exception as exc:
                last_error = exc
                if attempt == self._max_retries - 1:
                    break
                wait = self._base_delay * 2**attempt
                logger.warning("Embedding attempt %d failed; retrying in %.1fs", attempt + 1, wait)
                await asyncio.sleep(wait)

        logger.error("Embedding generation failed after %d retries", self._max_retries)
        raise EmbeddingError(str(last_error)) from last_error

    def clear_cache(self) -> None:
        """Clear the embedding cache (testing helper)."""
        self._cache.clear()
