"""Data models for hybrid retrieval and knowledge-graph ingestion."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# ── Memory lifecycle ─────────────────────────────────────────────────

MEMORY_STATES = ("active", "paused", "archived", "deleted")

EXTRACTION_ABSENT = "absent"
EXTRACTION_PENDING = "pending"
EXTRACTION_DONE = "done"
EXTRACTION_FAILED = "failed"

# ── Search options ───────────────────────────────────────────────────

SEARCH_MODES = ("hybrid", "text", "vector")
RERANK_STRATEGIES = ("none", "cross_encoder", "mmr")


@dataclass
class Memory:
    """A Memory node as stored in the graph (one version of the content)."""

    id: str
    content: str
    created_at: str = ""
    valid_at: Optional[str] = None
    invalid_at: Optional[str] = None
    state: str = "active"
    extraction_status: str = EXTRACTION_ABSENT
    extraction_attempts: int = 0
    extraction_error: Optional[str] = None
    superseded_by: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Memory":
        return cls(
            id=row["id"],
            content=row.get("content") or "",
            created_at=row.get("createdAt") or "",
            valid_at=row.get("validAt"),
            invalid_at=row.get("invalidAt"),
            state=row.get("state") or "active",
            extraction_status=row.get("extractionStatus") or EXTRACTION_ABSENT,
            extraction_attempts=row.get("extractionAttempts") or 0,
            extraction_error=row.get("extractionError"),
            superseded_by=row.get("supersededBy"),
            tags=list(row.get("tags") or []),
        )


@dataclass
class Entity:
    """An Entity node scoped to one user."""

    id: str
    name: str
    type: str
    description: str = ""
    normalized_name: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Entity":
        return cls(
            id=row["id"],
            name=row.get("name") or "",
            type=row.get("type") or "",
            description=row.get("description") or "",
            normalized_name=row.get("normalizedName") or "",
        )


@dataclass
class ExtractedEntity:
    """An entity mention produced by the LLM extractor."""

    name: str
    type: str = "OTHER"
    description: str = ""


@dataclass
class ExtractedRelationship:
    source: str
    target: str
    type: str
    description: str = ""


@dataclass
class ExtractionResult:
    entities: List[ExtractedEntity] = field(default_factory=list)
    relationships: List[ExtractedRelationship] = field(default_factory=list)


@dataclass
class RankedCandidate:
    """A fused ranking entry; derived, never persisted."""

    id: str
    rrf_score: float = 0.0
    text_rank: Optional[int] = None
    vector_rank: Optional[int] = None


@dataclass
class SearchResult:
    """A ranked and hydrated search hit."""

    id: str
    content: str
    rrf_score: float = 0.0
    text_rank: Optional[int] = None
    vector_rank: Optional[int] = None
    categories: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    created_at: str = ""
    app_name: Optional[str] = None
    rerank_score: Optional[int] = None
    mmr_score: Optional[float] = None


@dataclass
class SearchOptions:
    """Options for a hybrid search call."""

    user_id: str
    top_k: int = 10
    mode: str = "hybrid"
    candidate_size: int = 20
    rerank: str = "none"
    rerank_top_n: Optional[int] = None


@dataclass(frozen=True)
class HistoryRecord:
    """An immutable audit record for one memory change."""

    id: str
    memory_id: str
    action: str
    created_at: str
    previous_value: Optional[str] = None
    new_value: Optional[str] = None
    updated_at: Optional[str] = None
    is_deleted: int = 0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "HistoryRecord":
        return cls(
            id=row["id"],
            memory_id=row["memoryId"],
            action=row["action"],
            created_at=row["createdAt"],
            previous_value=row.get("previousValue"),
            new_value=row.get("newValue"),
            updated_at=row.get("updatedAt"),
            is_deleted=row.get("isDeleted") or 0,
        )
