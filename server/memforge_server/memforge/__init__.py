"""Hybrid retrieval and knowledge-graph ingestion core for memforge.

READ path: full-text + vector search over Memgraph, fused with RRF, hydrated
    in one round-trip, optionally reranked (LLM cross-encoder or MMR).
WRITE path: per-memory entity extraction queued off the request path
    → LLM extraction → tiered entity resolution → graph linking, with a
    bitemporal history ledger for every content change.
"""

from memforge.models import (
    Entity,
    HistoryRecord,
    Memory,
    RankedCandidate,
    SearchOptions,
    SearchResult,
)
from memforge.concurrency import ConcurrencyLimiter, KeyedLock
from memforge.retrieval.hybrid_search import HybridSearchOrchestrator, hybrid_search
from memforge.ingestion.extraction_worker import EntityExtractionWorker, process_entity_extraction
from memforge.history.ledger import MemoryHistoryLedger

__all__ = [
    "Entity",
    "HistoryRecord",
    "Memory",
    "RankedCandidate",
    "SearchOptions",
    "SearchResult",
    "ConcurrencyLimiter",
    "KeyedLock",
    "HybridSearchOrchestrator",
    "hybrid_search",
    "EntityExtractionWorker",
    "process_entity_extraction",
    "MemoryHistoryLedger",
]
