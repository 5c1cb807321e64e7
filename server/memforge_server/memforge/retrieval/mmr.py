"""
Maximal Marginal Relevance (MMR) for diversity in search results.

Greedy selection over already-hydrated candidates; no model calls, no I/O.
Similarity between candidates is token-set Jaccard over normalised content.
"""

from __future__ import annotations

import dataclasses
import re
import string
from typing import FrozenSet, List

from memforge import config as cfg
from memforge.models import SearchResult

_PUNCT_TABLE = str.maketrans("", "", string.punctuation)
_WS_RE = re.compile(r"\s+")


def content_tokens(text: str) -> FrozenSet[str]:
    """Lowercase, strip punctuation, split on whitespace."""
    text = _WS_RE.sub(" ", text.lower().translate(_PUNCT_TABLE)).strip()
    return frozenset(text.split()) if text else frozenset()


def jaccard(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def _relevances(candidates: List[SearchResult]) -> List[float]:
    """Normalise fused scores to [0, 1]; fall back to input order when flat."""
    scores = [c.rrf_score for c in candidates]
    lo, hi = min(scores), max(scores)
    if hi > lo:
        return [(s - lo) / (hi - lo) for s in scores]
    n = len(candidates)
    return [(n - i) / n for i in range(n)]


def mmr_rerank(
    candidates: List[SearchResult],
    top_n: int,
    *,
    mmr_lambda: float | None = None,
) -> List[SearchResult]:
    """
    Select *top_n* candidates balancing relevance against redundancy.

    Formula: MMR = λ * relevance - (1-λ) * max_similarity_to_selected

    Args:
        candidates: Hydrated results in fused order
        top_n: Number of results to select
        mmr_lambda: Balance parameter (0=max diversity, 1=max relevance),
            defaults to ``MMR_LAMBDA`` (0.7, biased toward relevance)

    Returns:
        Copies of the selected results, in pick order, with ``mmr_score`` set
    """
    if not candidates or top_n <= 0:
        return []

    lam = cfg.MMR_LAMBDA if mmr_lambda is None else mmr_lambda
    relevance = _relevances(candidates)
    tokens = [content_tokens(c.content) for c in candidates]

    remaining = list(range(len(candidates)))
    selected: List[int] = []
    picked: List[SearchResult] = []

    while remaining and len(selected) < top_n:
        if not selected:
            # First pick: highest relevance, earliest on ties.
            best = max(remaining, key=lambda i: (relevance[i], -i))
            best_score = relevance[best]
        else:
            best, best_score = -1, float("-inf")
            for i in remaining:
                max_sim = max(jaccard(tokens[i], tokens[j]) for j in selected)
                score = lam * relevance[i] - (1 - lam) * max_sim
                if score > best_score:
                    best, best_score = i, score

        remaining.remove(best)
        selected.append(best)
        picked.append(dataclasses.replace(candidates[best], mmr_score=best_score))

    return picked
