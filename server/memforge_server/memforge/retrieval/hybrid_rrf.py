"""Reciprocal Rank Fusion (RRF) for hybrid retrieval.

Fuses the ranked lists from the full-text arm and the vector arm into a
single ranking using the formula:

    score(doc) = Σ  1 / (k + rank_i)

where ``k`` is a configurable constant (default 60) and ``rank_i`` is the
1-based rank of the document in arm *i*.  A document found by both arms
accumulates both terms.
"""

from __future__ import annotations

from typing import Dict, List, Tuple

from memforge.config import RRF_K
from memforge.models import RankedCandidate

Ranked = List[Tuple[str, float]]


def reciprocal_rank_fusion(
    text_ranked: Ranked,
    vector_ranked: Ranked,
    *,
    k: int | None = None,
    top_k: int | None = None,
) -> List[RankedCandidate]:
    """Fuse the text and vector arms via RRF.

    Each arm is a sequence of ``(doc_id, score)`` tuples **already sorted by
    score descending**.  The original scores are ignored; only ordinal ranks
    matter.

    Parameters
    ----------
    text_ranked, vector_ranked:
        Ranked ``(doc_id, score)`` lists; either may be empty.
    k:
        RRF constant.  Higher values reduce the impact of high-ranked docs.
        Defaults to ``RRF_K`` from config (typically 60).
    top_k:
        Number of results to return.  ``None`` returns all.

    Returns
    -------
    List of ``RankedCandidate`` sorted descending by RRF score.  Ties prefer
    documents found by both arms, then the better single rank, then first
    appearance (text arm before vector arm).
    """
    if k is None:
        k = RRF_K

    fused: Dict[str, RankedCandidate] = {}
    first_seen: Dict[str, int] = {}

    for arm, ranked in (("text", text_ranked), ("vector", vector_ranked)):
        for rank_0, (doc_id, _original_score) in enumerate(ranked):
            rank_1 = rank_0 + 1  # 1-based rank
            entry = fused.get(doc_id)
            if entry is None:
                entry = fused[doc_id] = RankedCandidate(id=doc_id)
                first_seen[doc_id] = len(first_seen)
            elif (arm == "text" and entry.text_rank is not None) or (
                arm == "vector" and entry.vector_rank is not None
            ):
                continue  # duplicate id within one arm; keep the better rank
            entry.rrf_score += 1.0 / (k + rank_1)
            if arm == "text":
                entry.text_rank = rank_1
            else:
                entry.vector_rank = rank_1

    def _sort_key(c: RankedCandidate) -> tuple:
        both = c.text_rank is not None and c.vector_rank is not None
        best_rank = min(r for r in (c.text_rank, c.vector_rank) if r is not None)
        return (-c.rrf_score, not both, best_rank, first_seen[c.id])

    ordered = sorted(fused.values(), key=_sort_key)

    if top_k is not None:
        ordered = ordered[:top_k]

    return ordered


def single_arm(
    ranked: Ranked,
    arm: str,
    *,
    top_k: int | None = None,
) -> List[RankedCandidate]:
    """Pass one arm through without fusion (``text`` or ``vector`` mode)."""
    if arm not in ("text", "vector"):
        raise ValueError(f"unknown search arm: {arm!r}")
    if top_k is not None:
        ranked = ranked[:top_k]
    return [
        RankedCandidate(
            id=doc_id,
            rrf_score=0.0,
            text_rank=i + 1 if arm == "text" else None,
            vector_rank=i + 1 if arm == "vector" else None,
        )
        for i, (doc_id, _score) in enumerate(ranked)
    ]
