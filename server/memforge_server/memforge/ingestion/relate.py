"""Graph linking for extracted entities.

Both writes use ``MERGE`` so re-running them is a no-op rather than a
duplicate edge.
"""

from __future__ import annotations

from datetime import datetime, timezone

from memforge.adapter.memgraph_store import FactStore

LINK_MEMORY_QUERY = """
MATCH (m:Memory {id: $memoryId})
MATCH (e:Entity {id: $entityId})
MERGE (m)-[r:MENTIONS]->(e)
ON CREATE SET r.createdAt = $now
"""

LINK_ENTITIES_QUERY = """
MATCH (src:Entity {id: $sourceId})
MATCH (tgt:Entity {id: $targetId})
MERGE (src)-[r:RELATED_TO {type: $relType}]->(tgt)
ON CREATE SET r.description = $desc, r.createdAt = $now, r.updatedAt = $now
ON MATCH SET r.description = CASE
               WHEN size(coalesce(r.description, '')) < size($desc)
               THEN $desc ELSE r.description END,
             r.updatedAt = $now
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def link_memory_to_entity(store: FactStore, memory_id: str, entity_id: str) -> None:
    """Create the ``(Memory)-[:MENTIONS]->(Entity)`` edge if missing."""
    await store.run_write(
        LINK_MEMORY_QUERY, {"memoryId": memory_id, "entityId": entity_id, "now": _now()}
    )


async def link_entities(
    store: FactStore,
    source_id: str,
    target_id: str,
    rel_type: str,
    description: str = "",
) -> None:
    """Create or update a typed ``RELATED_TO`` edge; the longer description wins."""
    await store.run_write(
        LINK_ENTITIES_QUERY,
        {
            "sourceId": source_id,
            "targetId": target_id,
            "relType": "_".join(rel_type.upper().split()),
            "desc": description,
            "now": _now(),
        },
    )
