"""Centralised configuration for the memforge core.

All values are read from environment variables with sensible defaults.
Components accept explicit overrides; ``None`` falls back to these values.
"""

from __future__ import annotations

import os


def _bool_env(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).lower() in ("true", "1", "yes")


def _int_env(name: str, default: int = 0) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _float_env(name: str, default: float = 0.0) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


# ── Memgraph (Bolt) ──────────────────────────────────────────────────
MEMGRAPH_URL: str = os.getenv("MEMGRAPH_URL", "bolt://localhost:7687")
MEMGRAPH_USER: str = os.getenv("MEMGRAPH_USER", os.getenv("MEMGRAPH_USERNAME", ""))
MEMGRAPH_PASSWORD: str = os.getenv("MEMGRAPH_PASSWORD", "")
MEMGRAPH_MAX_POOL_SIZE: int = _int_env("MEMGRAPH_MAX_POOL_SIZE", 25)
MEMGRAPH_ACQUISITION_TIMEOUT: float = _float_env("MEMGRAPH_ACQUISITION_TIMEOUT", 10.0)
MEMGRAPH_MAX_RETRIES: int = _int_env("MEMGRAPH_MAX_RETRIES", 3)
MEMGRAPH_RETRY_BASE_DELAY: float = _float_env("MEMGRAPH_RETRY_BASE_DELAY", 0.3)

# ── LLM / embeddings ────────────────────────────────────────────────
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "")
AZURE_OPENAI_ENDPOINT: str = os.getenv("AZURE_OPENAI_ENDPOINT", "")
AZURE_OPENAI_API_KEY: str = os.getenv("AZURE_OPENAI_API_KEY", "")
AZURE_OPENAI_API_VERSION: str = os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-01")
LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
SEARCH_RERANK_MODEL: str = os.getenv("SEARCH_RERANK_MODEL", LLM_MODEL)
EMBED_MODEL: str = os.getenv("EMBED_MODEL", "text-embedding-3-small")
EMBED_DIM: int = _int_env("EMBED_DIM", 1536)

# ── Search ───────────────────────────────────────────────────────────
SEARCH_TOP_K: int = _int_env("SEARCH_TOP_K", 10)
SEARCH_CANDIDATE_SIZE: int = _int_env("SEARCH_CANDIDATE_SIZE", 20)
RRF_K: int = _int_env("RRF_K", 60)
RERANK_CONCURRENCY: int = _int_env("RERANK_CONCURRENCY", 5)
MMR_LAMBDA: float = _float_env("MMR_LAMBDA", 0.7)

# ── Entity resolution ────────────────────────────────────────────────
ENTITY_FUZZY_THRESHOLD: float = _float_env("ENTITY_FUZZY_THRESHOLD", 0.9)
ENTITY_SEMANTIC_THRESHOLD: float = _float_env("ENTITY_SEMANTIC_THRESHOLD", 0.88)
ENTITY_SEMANTIC_TOP_K: int = _int_env("ENTITY_SEMANTIC_TOP_K", 5)

# ── Extraction ───────────────────────────────────────────────────────
EXTRACTION_MAX_GLEANINGS: int = max(0, min(_int_env("EXTRACTION_MAX_GLEANINGS", 1), 3))
EXTRACTION_CONCURRENCY: int = _int_env("EXTRACTION_CONCURRENCY", 4)
EXTRACTION_MAX_ATTEMPTS: int = _int_env("EXTRACTION_MAX_ATTEMPTS", 3)
EXTRACTION_RETRY_BASE_DELAY: float = _float_env("EXTRACTION_RETRY_BASE_DELAY", 2.0)

# ── History ──────────────────────────────────────────────────────────
HISTORY_DEFAULT_LIMIT: int = _int_env("HISTORY_DEFAULT_LIMIT", 100)

# ── Observability ────────────────────────────────────────────────────
OTEL_EXPORTER_OTLP_ENDPOINT: str = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")
OTEL_SERVICE_NAME: str = os.getenv("OTEL_SERVICE_NAME", "memforge-core")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "info")
