"""Memgraph schema definition.

Provides the DDL as a list of Cypher statements and a helper that applies
it idempotently.  Safe to run on every startup.
"""

from __future__ import annotations

import logging
from typing import List

from memforge.adapter.memgraph_store import FactStore
from memforge.config import EMBED_DIM

logger = logging.getLogger(__name__)

MEMORY_VECTOR_INDEX = "memory_vectors"
ENTITY_VECTOR_INDEX = "entity_vectors"
MEMORY_TEXT_INDEX = "memory_text"

# Errors Memgraph raises when the schema is already (or cannot be) in place.
_IGNORABLE = ("already exists", "violates", "experimental")


def get_schema_statements(dim: int | None = None) -> List[str]:
    """Return the full DDL for the memory graph."""
    dim = dim or EMBED_DIM
    return [
        "CREATE CONSTRAINT ON (u:User) ASSERT u.userId IS UNIQUE",
        "CREATE CONSTRAINT ON (m:Memory) ASSERT m.id IS UNIQUE",
        "CREATE CONSTRAINT ON (a:App) ASSERT a.id IS UNIQUE",
        "CREATE CONSTRAINT ON (e:Entity) ASSERT e.id IS UNIQUE",
        f"CREATE VECTOR INDEX {MEMORY_VECTOR_INDEX} ON :Memory(embedding) "
        f'WITH CONFIG {{"dimension": {dim}, "capacity": 100000, "metric": "cos"}}',
        f"CREATE TEXT INDEX {MEMORY_TEXT_INDEX} ON :Memory",
        # Bitemporal filters
        "CREATE INDEX ON :Memory(validAt)",
        "CREATE INDEX ON :Memory(invalidAt)",
        "CREATE INDEX ON :Memory(extractionStatus)",
        # Entity identity is (userId, type, normalizedName)
        "CREATE INDEX ON :Entity(normalizedName)",
        "CREATE INDEX ON :Entity(type)",
        "CREATE INDEX ON :Entity(userId)",
        f"CREATE VECTOR INDEX {ENTITY_VECTOR_INDEX} ON :Entity(descriptionEmbedding) "
        f'WITH CONFIG {{"dimension": {dim}, "capacity": 10000, "metric": "cos"}}',
        "CREATE INDEX ON :MemoryHistory(memoryId)",
    ]


async def apply_schema(store: FactStore, dim: int | None = None) -> int:
    """Apply every DDL statement, ignoring "already exists" style errors.

    Returns the number of statements that were newly applied.
    """
    applied = 0
    for stmt in get_schema_statements(dim):
        try:
            await store.run_write(stmt)
            applied += 1
        except Exception as exc:
            if any(marker in str(exc) for marker in _IGNORABLE):
                logger.debug("schema statement skipped: %s", stmt)
                continue
            logger.warning("schema statement failed: %s", str(exc)[:200])
            raise
    logger.info("schema ready (%d statements applied)", applied)
    return applied
