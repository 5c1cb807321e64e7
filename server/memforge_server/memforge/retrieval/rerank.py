"""Optional cross-encoder re-ranking stage.

Each hydrated candidate is scored against the query by an independent LLM
call that answers with a single integer 0–10.  Calls are fanned out under a
``ConcurrencyLimiter``.  A failing call only affects its own candidate, which
scores 0; the other candidates are unaffected.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from typing import List

from memforge import config as cfg
from memforge.adapter.llm_client import LLMClient
from memforge.concurrency import ConcurrencyLimiter
from memforge.models import SearchResult
from memforge.observability.tracing import record_metric

logger = logging.getLogger(__name__)

RERANK_PROMPT = """You are a relevance scoring assistant.
Given a user query and a memory statement, score how directly and usefully the memory answers the query.

Score 0-10:
- 10: Directly and completely answers the query
- 7-9: Highly relevant, addresses the main topic
- 4-6: Partially relevant, related topic
- 1-3: Tangentially related
- 0: Irrelevant

Respond with ONLY a single integer 0-10."""

MIN_SCORE = 0
MAX_SCORE = 10

_LEADING_INT_RE = re.compile(r"\s*([+-]?\d+)")


def parse_score(raw: str | None) -> int:
    """Parse the model's answer into a clamped 0–10 integer.

    Only a leading integer counts ("7", "7/10", " 8."); anything else is 0.
    """
    match = _LEADING_INT_RE.match(raw or "")
    if not match:
        return MIN_SCORE
    return max(MIN_SCORE, min(MAX_SCORE, int(match.group(1))))


async def cross_encoder_rerank(
    query: str,
    candidates: List[SearchResult],
    top_n: int = 10,
    *,
    llm: LLMClient,
    model: str | None = None,
    concurrency: int | None = None,
    limiter: ConcurrencyLimiter | None = None,
) -> List[SearchResult]:
    """Re-rank *candidates* by LLM relevance score.

    Parameters
    ----------
    query:
        The user query.
    candidates:
        Hydrated results, already in fused order.
    top_n:
        Number of results to keep after sorting.
    llm:
        Chat-completion client.
    model:
        Scoring model; defaults to ``SEARCH_RERANK_MODEL``.
    concurrency / limiter:
        Bound on simultaneous LLM calls.  A shared *limiter* wins over
        *concurrency* (default ``RERANK_CONCURRENCY``).

    Returns
    -------
    Copies of the top *top_n* candidates with ``rerank_score`` set, sorted
    descending; ties keep their fused order.
    """
    if not candidates or top_n <= 0:
        return []

    model = model or cfg.SEARCH_RERANK_MODEL
    limiter = limiter or ConcurrencyLimiter(concurrency or cfg.RERANK_CONCURRENCY)

    async def _score(candidate: SearchResult) -> int:
        try:
            raw = await llm.complete(
                model=model,
                messages=[
                    {"role": "system", "content": RERANK_PROMPT},
                    {"role": "user", "content": f"Query: {query}\n\nMemory: {candidate.content}"},
                ],
                temperature=0,
                max_tokens=5,
            )
            return parse_score(raw)
        except Exception:
            logger.warning("Rerank scoring failed for %s; scoring 0", candidate.id, exc_info=True)
            record_metric("rerank_candidate_failure")
            return MIN_SCORE

    scores = await asyncio.gather(*(limiter.run(_score, c) for c in candidates))

    scored = [dataclasses.replace(c, rerank_score=s) for c, s in zip(candidates, scores)]
    scored.sort(key=lambda r: r.rerank_score, reverse=True)
    return scored[:top_n]
