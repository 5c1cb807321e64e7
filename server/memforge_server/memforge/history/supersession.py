"""Bitemporal write path: memory content is never edited in place.

``supersede`` closes the old version (``invalidAt = now``,
``supersededBy = new id``) and opens a new node (``validAt = now``) linked by
``(new)-[:SUPERSEDES {at}]->(old)``, in a single write.  Search filters on
``invalidAt IS NULL``, so only the newest version surfaces; the chain stays in
the graph for audit through ``version_chain``.
"""

from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from memforge.adapter.memgraph_store import FactStore
from memforge.history.ledger import MemoryHistoryLedger, utc_now
from memforge.ingestion.embedder import Embedder
from memforge.models import Memory

logger = logging.getLogger(__name__)

READ_CURRENT_QUERY = """
MATCH (u:User {userId: $userId})-[:HAS_MEMORY]->(m:Memory {id: $oldId})
WHERE m.invalidAt IS NULL
RETURN m.content AS content, coalesce(m.tags, []) AS tags
"""

SUPERSEDE_QUERY = """
MATCH (u:User {userId: $userId})-[:HAS_MEMORY]->(old:Memory {id: $oldId})
WHERE old.invalidAt IS NULL
SET old.invalidAt = $now, old.updatedAt = $now, old.supersededBy = $newId
WITH u, old
CREATE (new:Memory {
  id: $newId,
  content: $content,
  state: 'active',
  embedding: $embedding,
  tags: $tags,
  validAt: $now,
  createdAt: $now,
  updatedAt: $now,
  extractionStatus: 'absent'
})
CREATE (u)-[:HAS_MEMORY]->(new)
CREATE (new)-[:SUPERSEDES {at: $now}]->(old)
RETURN new.id AS id
"""

ATTACH_APP_QUERY = """
MATCH (u:User {userId: $userId})-[:HAS_MEMORY]->(m:Memory {id: $memoryId})
MERGE (u)-[:HAS_APP]->(a:App {appName: $appName})
ON CREATE SET a.id = $appId, a.createdAt = $now, a.isActive = true
MERGE (m)-[:CREATED_BY]->(a)
"""

DELETE_QUERY = """
MATCH (u:User {userId: $userId})-[:HAS_MEMORY]->(m:Memory {id: $memoryId})
WHERE m.state <> 'deleted'
SET m.state = 'deleted', m.invalidAt = coalesce(m.invalidAt, $now), m.deletedAt = $now
RETURN m.id AS id
"""

ARCHIVE_QUERY = """
MATCH (u:User {userId: $userId})-[:HAS_MEMORY]->(m:Memory {id: $memoryId})
WHERE m.state = 'active'
SET m.state = 'archived', m.archivedAt = $now,
    m.invalidAt = coalesce(m.invalidAt, $now), m.updatedAt = $now
RETURN m.id AS id
"""

PAUSE_QUERY = """
MATCH (u:User {userId: $userId})-[:HAS_MEMORY]->(m:Memory {id: $memoryId})
WHERE m.state = 'active'
SET m.state = 'paused', m.updatedAt = $now
RETURN m.id AS id
"""

VERSION_CHAIN_QUERY = """
MATCH (m:Memory {id: $memoryId})
OPTIONAL MATCH (newer:Memory)-[:SUPERSEDES*1..]->(m)
OPTIONAL MATCH (m)-[:SUPERSEDES*1..]->(older:Memory)
WITH collect(DISTINCT newer) + [m] + collect(DISTINCT older) AS versions
UNWIND versions AS v
RETURN v.id AS id, v.content AS content, v.createdAt AS createdAt,
       v.validAt AS validAt, v.invalidAt AS invalidAt, v.state AS state,
       v.extractionStatus AS extractionStatus, v.supersededBy AS supersededBy,
       coalesce(v.tags, []) AS tags
ORDER BY coalesce(v.validAt, v.createdAt) DESC
"""


class MemoryNotFound(LookupError):
    """Raised when the target memory is missing, not owned, or already superseded."""


class SupersessionWriter:
    def __init__(self, store: FactStore, ledger: MemoryHistoryLedger, embedder: Embedder) -> None:
        self._store = store
        self._ledger = ledger
        self._embedder = embedder

    async def supersede(
        self,
        old_id: str,
        new_content: str,
        user_id: str,
        *,
        app_name: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> str:
        """Replace the live version *old_id* with *new_content*; returns the new id."""
        current = await self._store.run_read(READ_CURRENT_QUERY, {"userId": user_id, "oldId": old_id})
        if not current:
            raise MemoryNotFound(old_id)
        previous_content = current[0].get("content")
        effective_tags = list(current[0].get("tags") or []) if tags is None else list(tags)

        new_id = str(uuid.uuid4())
        now = utc_now()
        embedding = await self._embedder.embed(new_content)
        rows = await self._store.run_write(
            SUPERSEDE_QUERY,
            {
                "userId": user_id,
                "oldId": old_id,
                "newId": new_id,
                "content": new_content,
                "embedding": embedding,
                "tags": effective_tags,
                "now": now,
            },
        )
        if not rows:
            # Superseded concurrently between the read and the write.
            raise MemoryNotFound(old_id)

        if app_name:
            await self._store.run_write(
                ATTACH_APP_QUERY,
                {
                    "userId": user_id,
                    "memoryId": new_id,
                    "appName": app_name,
                    "appId": str(uuid.uuid4()),
                    "now": now,
                },
            )

        await self._record(new_id, previous_content, new_content, "SUPERSEDE")
        logger.info("memory %s superseded by %s", old_id, new_id)
        return new_id

    async def delete(self, memory_id: str, user_id: str) -> bool:
        return await self._transition(DELETE_QUERY, memory_id, user_id, "DELETE")

    async def archive(self, memory_id: str, user_id: str) -> bool:
        return await self._transition(ARCHIVE_QUERY, memory_id, user_id, "ARCHIVE")

    async def pause(self, memory_id: str, user_id: str) -> bool:
        """Paused memories keep ``invalidAt`` unset; only the state changes."""
        return await self._transition(PAUSE_QUERY, memory_id, user_id, "PAUSE")

    async def version_chain(self, memory_id: str) -> List[Memory]:
        """Every version linked to *memory_id* through SUPERSEDES, newest first."""
        rows = await self._store.run_read(VERSION_CHAIN_QUERY, {"memoryId": memory_id})
        return [Memory.from_row(row) for row in rows if row.get("id")]

    async def _transition(self, query: str, memory_id: str, user_id: str, action: str) -> bool:
        rows = await self._store.run_write(
            query, {"userId": user_id, "memoryId": memory_id, "now": utc_now()}
        )
        if not rows:
            return False
        await self._record(memory_id, None, None, action)
        return True

    async def _record(
        self, memory_id: str, previous: Optional[str], new: Optional[str], action: str
    ) -> None:
        # The graph write has already committed; a failed audit append must not undo it.
        try:
            await self._ledger.add_history(memory_id, previous, new, action)
        except Exception:
            logger.exception("history append failed for memory %s (%s)", memory_id, action)
