"""Chat-completion client used for extraction, reranking and entity merges.

``OpenAIChatClient`` talks to Azure OpenAI when ``AZURE_OPENAI_ENDPOINT`` and
``AZURE_OPENAI_API_KEY`` are set, and to the OpenAI API (or any compatible
``OPENAI_BASE_URL``) otherwise.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from memforge import config as cfg

logger = logging.getLogger(__name__)

Message = Dict[str, str]


class LLMClient(Protocol):
    """Minimal chat-completion interface."""

    async def complete(
        self,
        *,
        model: str,
        messages: List[Message],
        temperature: float = 0.0,
        max_tokens: int = 256,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> str: ...


class OpenAIChatClient:
    """``LLMClient`` over the ``openai`` async SDK."""

    def __init__(self, client: Any | None = None) -> None:
        self._client = client
        self._init_lock = asyncio.Lock()

    async def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        async with self._init_lock:
            if self._client is None:
                if cfg.AZURE_OPENAI_ENDPOINT and cfg.AZURE_OPENAI_API_KEY:
                    from openai import AsyncAzureOpenAI

                    self._client = AsyncAzureOpenAI(
                        api_key=cfg.AZURE_OPENAI_API_KEY,
                        azure_endpoint=cfg.AZURE_OPENAI_ENDPOINT,
                        api_version=cfg.AZURE_OPENAI_API_VERSION,
                    )
                else:
                    from openai import AsyncOpenAI

                    self._client = AsyncOpenAI(
                        api_key=cfg.OPENAI_API_KEY or None,
                        base_url=cfg.OPENAI_BASE_URL or None,
                    )
        return self._client

    @property
    def raw(self) -> Any | None:
        """The underlying SDK client, once created."""
        return self._client

    async def complete(
        self,
        *,
        model: str,
        messages: List[Message],
        temperature: float = 0.0,
        max_tokens: int = 256,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> str:
        client = await self._ensure_client()
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format is not None:
            kwargs["response_format"] = response_format
        response = await client.chat.completions.create(**kwargs)
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
