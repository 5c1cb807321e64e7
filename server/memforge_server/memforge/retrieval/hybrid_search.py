"""Hybrid search orchestrator over the memory graph.

``search``:
    1. Run the requested arms concurrently (full-text + vector), each capped
       at ``candidate_size``.
    2. Fuse via RRF (or pass a single arm through).
    3. Hydrate every fused id in one Cypher round-trip, skipping superseded
       memories (``invalidAt IS NULL``).
    4. Optionally re-rank (LLM cross-encoder or MMR).

Full-text search needs Memgraph's experimental text-search feature; when the
text arm fails the search degrades to vector-only instead of failing.
Hydration failures are never swallowed: returning partially wrong content is
worse than returning an error.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Tuple

from memforge import config as cfg
from memforge.adapter.llm_client import LLMClient
from memforge.adapter.memgraph_store import FactStore
from memforge.adapter.schema import MEMORY_TEXT_INDEX, MEMORY_VECTOR_INDEX
from memforge.concurrency import ConcurrencyLimiter
from memforge.ingestion.embedder import Embedder
from memforge.models import (
    RERANK_STRATEGIES,
    SEARCH_MODES,
    RankedCandidate,
    SearchOptions,
    SearchResult,
)
from memforge.observability.tracing import record_metric, span
from memforge.retrieval.hybrid_rrf import reciprocal_rank_fusion, single_arm
from memforge.retrieval.mmr import mmr_rerank
from memforge.retrieval.rerank import cross_encoder_rerank

logger = logging.getLogger(__name__)

TEXT_SEARCH_QUERY = f"""
CALL text_search.search_all("{MEMORY_TEXT_INDEX}", $query) YIELD node, score
MATCH (u:User {{userId: $userId}})-[:HAS_MEMORY]->(node)
WHERE node.invalidAt IS NULL AND node.state <> 'deleted'
RETURN node.id AS id, score
ORDER BY score DESC
LIMIT $limit
"""

VECTOR_SEARCH_QUERY = f"""
CALL vector_search.search("{MEMORY_VECTOR_INDEX}", $fetchLimit, $embedding) YIELD node, similarity
MATCH (u:User {{userId: $userId}})-[:HAS_MEMORY]->(node)
WHERE node.invalidAt IS NULL AND node.state <> 'deleted'
RETURN node.id AS id, similarity
ORDER BY similarity DESC
LIMIT $limit
"""

HYDRATE_QUERY = """
UNWIND $ids AS memId
MATCH (u:User {userId: $userId})-[:HAS_MEMORY]->(m:Memory {id: memId})
WHERE m.invalidAt IS NULL
OPTIONAL MATCH (m)-[:CREATED_BY]->(a:App)
OPTIONAL MATCH (m)-[:HAS_CATEGORY]->(c:Category)
RETURN m.id AS id, m.content AS content, m.createdAt AS createdAt,
       a.appName AS appName, collect(c.name) AS categories,
       coalesce(m.tags, []) AS tags
"""

# The vector index is global; over-fetch before the per-user filter.
VECTOR_FETCH_FACTOR = 2


class InvalidSearchOptions(ValueError):
    """Raised for out-of-range or unknown search options."""


class HydrationError(RuntimeError):
    """Raised when ranked ids could not be hydrated."""


def validate_options(options: SearchOptions) -> None:
    if not options.user_id:
        raise InvalidSearchOptions("user_id is required")
    if options.mode not in SEARCH_MODES:
        raise InvalidSearchOptions(f"mode must be one of {SEARCH_MODES}, got {options.mode!r}")
    if options.rerank not in RERANK_STRATEGIES:
        raise InvalidSearchOptions(
            f"rerank must be one of {RERANK_STRATEGIES}, got {options.rerank!r}"
        )
    if options.top_k < 1:
        raise InvalidSearchOptions("top_k must be >= 1")
    if options.candidate_size < 1:
        raise InvalidSearchOptions("candidate_size must be >= 1")
    if options.rerank_top_n is not None and options.rerank_top_n < 1:
        raise InvalidSearchOptions("rerank_top_n must be >= 1")


class HybridSearchOrchestrator:
    """Runs search arms, fuses, hydrates, optionally reranks."""

    def __init__(
        self,
        store: FactStore,
        embedder: Embedder,
        llm: LLMClient | None = None,
        *,
        rrf_k: int | None = None,
        rerank_limiter: ConcurrencyLimiter | None = None,
        mmr_lambda: float | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._llm = llm
        self._rrf_k = rrf_k
        self._rerank_limiter = rerank_limiter or ConcurrencyLimiter(cfg.RERANK_CONCURRENCY)
        self._mmr_lambda = mmr_lambda

    # -- Search arms ---------------------------------------------------

    async def text_search(self, query: str, user_id: str, limit: int) -> List[Tuple[str, float]]:
        rows = await self._store.run_read(
            TEXT_SEARCH_QUERY, {"query": query, "userId": user_id, "limit": limit}
        )
        return [(row["id"], row.get("score") or 0.0) for row in rows]

    async def vector_search(self, query: str, user_id: str, limit: int) -> List[Tuple[str, float]]:
        embedding = await self._embedder.embed(query)
        rows = await self._store.run_read(
            VECTOR_SEARCH_QUERY,
            {
                "embedding": embedding,
                "userId": user_id,
                "fetchLimit": limit * VECTOR_FETCH_FACTOR,
                "limit": limit,
            },
        )
        return [(row["id"], row.get("similarity") or 0.0) for row in rows]

    async def _text_arm(self, query: str, options: SearchOptions) -> List[Tuple[str, float]]:
        try:
            return await self.text_search(query, options.user_id, options.candidate_size)
        except Exception as exc:
            logger.warning("text search unavailable, falling back to vector-only: %s", exc)
            record_metric("search_text_arm_fallback_count")
            return []

    async def _vector_arm(self, query: str, options: SearchOptions) -> List[Tuple[str, float]]:
        if options.mode == "vector":
            return await self.vector_search(query, options.user_id, options.candidate_size)
        try:
            return await self.vector_search(query, options.user_id, options.candidate_size)
        except Exception as exc:
            logger.warning("vector search unavailable, falling back to text-only: %s", exc)
            record_metric("search_vector_arm_fallback_count")
            return []

    async def _no_arm(self) -> List[Tuple[str, float]]:
        return []

    # -- Hydration -----------------------------------------------------

    async def hydrate(self, ranked: List[RankedCandidate], user_id: str) -> List[SearchResult]:
        """Join content, categories, tags and app for *ranked* in one read."""
        ids = [r.id for r in ranked]
        try:
            rows = await self._store.run_read(HYDRATE_QUERY, {"ids": ids, "userId": user_id})
        except Exception as exc:
            raise HydrationError(f"hydration of {len(ids)} ids failed: {exc}") from exc

        row_map: Dict[str, Dict[str, Any]] = {row["id"]: row for row in rows}
        hydrated: List[SearchResult] = []
        for r in ranked:
            row = row_map.get(r.id)
            if row is None:
                # Superseded or removed between ranking and hydration.
                record_metric("search_hydration_dropped")
                continue
            hydrated.append(
                SearchResult(
                    id=r.id,
                    content=row.get("content") or "",
                    rrf_score=r.rrf_score,
                    text_rank=r.text_rank,
                    vector_rank=r.vector_rank,
                    categories=list(row.get("categories") or []),
                    tags=list(row.get("tags") or []),
                    created_at=row.get("createdAt") or "",
                    app_name=row.get("appName"),
                )
            )
        return hydrated

    # -- Entry point ---------------------------------------------------

    async def search(self, query: str, options: SearchOptions) -> List[SearchResult]:
        """Run a hybrid search over a user's memories."""
        validate_options(options)
        if not query.strip():
            return []

        with span("memforge.search", user_id=options.user_id, mode=options.mode, rerank=options.rerank):
            return await self._search(query, options)

    async def _search(self, query: str, options: SearchOptions) -> List[SearchResult]:
        start = time.monotonic()
        mode = options.mode

        text_results, vector_results = await asyncio.gather(
            self._text_arm(query, options) if mode != "vector" else self._no_arm(),
            self._vector_arm(query, options) if mode != "text" else self._no_arm(),
        )

        if mode == "text":
            merged = single_arm(text_results, "text", top_k=options.top_k)
        elif mode == "vector":
            merged = single_arm(vector_results, "vector", top_k=options.top_k)
        else:
            merged = reciprocal_rank_fusion(
                text_results, vector_results, k=self._rrf_k, top_k=options.top_k
            )

        if not merged:
            return []

        hydrated = await self.hydrate(merged, options.user_id)

        top_n = options.rerank_top_n or options.top_k
        if options.rerank == "cross_encoder" and self._llm is not None:
            results = await cross_encoder_rerank(
                query, hydrated, top_n, llm=self._llm, limiter=self._rerank_limiter
            )
        elif options.rerank == "cross_encoder":
            logger.warning("cross_encoder rerank requested but no LLM client; keeping fused order")
            results = hydrated[:top_n]
        elif options.rerank == "mmr":
            results = mmr_rerank(hydrated, top_n, mmr_lambda=self._mmr_lambda)
        else:
            results = hydrated[: options.top_k]

        elapsed_ms = (time.monotonic() - start) * 1000
        record_metric("search_count")
        record_metric("search_latency_ms_total", elapsed_ms)
        logger.info(
            "search mode=%s rerank=%s text=%d vector=%d hits=%d elapsed_ms=%.1f",
            mode,
            options.rerank,
            len(text_results),
            len(vector_results),
            len(results),
            elapsed_ms,
        )
        return results


async def hybrid_search(
    query: str,
    options: SearchOptions,
    orchestrator: HybridSearchOrchestrator,
) -> List[SearchResult]:
    """Convenience wrapper around ``HybridSearchOrchestrator.search``."""
    return await orchestrator.search(query, options)
