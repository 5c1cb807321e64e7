"""Entity extraction worker (per-memory state machine).

``extractionStatus`` on a Memory node moves::

    absent | failed  ->  pending  ->  done | failed

``done`` is terminal: processing a done memory again performs no writes.
A missing memory or a memory with no owning user is skipped silently.
The worker never raises into its caller.  Failures after the move to
``pending`` are recorded on the node as ``failed`` plus ``extractionError``
and retried by re-submission (see ``extraction_queue``); a failure before it
leaves the status untouched, and ``failed`` never overwrites ``done``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from memforge.adapter.memgraph_store import FactStore
from memforge.ingestion.entity_resolver import EntityKey, EntityResolver, entity_key, normalize_name
from memforge.ingestion.extract import EntityExtractor
from memforge.ingestion.relate import link_entities, link_memory_to_entity
from memforge.models import EXTRACTION_DONE, ExtractedEntity
from memforge.observability.tracing import log_with_context, record_metric, span

logger = logging.getLogger(__name__)

READ_MEMORY_QUERY = """
MATCH (m:Memory {id: $memoryId})
RETURN m.content AS content, m.extractionStatus AS status
"""

READ_OWNER_QUERY = """
MATCH (u:User)-[:HAS_MEMORY]->(m:Memory {id: $memoryId})
RETURN u.userId AS userId
"""

READ_RECENT_QUERY = """
MATCH (u:User {userId: $userId})-[:HAS_MEMORY]->(m:Memory)
WHERE m.id <> $memoryId AND m.invalidAt IS NULL
RETURN m.content AS content
ORDER BY m.createdAt DESC
LIMIT 3
"""

MARK_PENDING_QUERY = """
MATCH (m:Memory {id: $memoryId})
SET m.extractionStatus = 'pending',
    m.extractionAttempts = coalesce(m.extractionAttempts, 0) + 1
"""

MARK_DONE_QUERY = """
MATCH (m:Memory {id: $memoryId})
SET m.extractionStatus = 'done', m.extractionError = null
"""

MARK_FAILED_QUERY = """
MATCH (m:Memory {id: $memoryId})
WHERE coalesce(m.extractionStatus, 'absent') <> 'done'
SET m.extractionStatus = 'failed', m.extractionError = $error
"""

READ_STATUS_QUERY = """
MATCH (m:Memory {id: $memoryId})
RETURN m.extractionStatus AS status
"""


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class EntityExtractionWorker:
    """Extracts, resolves and links the entities of one memory at a time."""

    def __init__(self, store: FactStore, extractor: EntityExtractor, resolver: EntityResolver) -> None:
        self._store = store
        self._extractor = extractor
        self._resolver = resolver

    @property
    def store(self) -> FactStore:
        return self._store

    async def extraction_status(self, memory_id: str) -> Optional[str]:
        """Current ``extractionStatus`` (``None`` when the memory is missing)."""
        rows = await self._store.run_read(READ_STATUS_QUERY, {"memoryId": memory_id})
        if not rows:
            return None
        return rows[0].get("status") or "absent"

    async def process(self, memory_id: str) -> None:
        with span("memforge.extract", memory_id=memory_id):
            try:
                claimed = await self._claim(memory_id)
            except Exception as exc:
                # Nothing was claimed, so the stored status stays as it was.
                record_metric("extraction_failed")
                log_with_context(
                    logging.WARNING,
                    f"entity extraction could not start: {_error_message(exc)}",
                    memory_id=memory_id,
                )
                return
            if claimed is None:
                return

            content, user_id = claimed
            try:
                await self._extract_and_link(memory_id, content, user_id)
            except Exception as exc:
                record_metric("extraction_failed")
                log_with_context(
                    logging.WARNING,
                    f"entity extraction failed: {_error_message(exc)}",
                    user_id=user_id,
                    memory_id=memory_id,
                )
                try:
                    await self._store.run_write(
                        MARK_FAILED_QUERY, {"memoryId": memory_id, "error": _error_message(exc)}
                    )
                except Exception:
                    logger.exception("could not record failed extraction for memory %s", memory_id)

    async def _claim(self, memory_id: str) -> Optional[Tuple[str, str]]:
        """Move the memory to ``pending``; ``None`` when there is nothing to do."""
        rows = await self._store.run_read(READ_MEMORY_QUERY, {"memoryId": memory_id})
        if not rows:
            record_metric("extraction_skipped")
            logger.debug("memory %s not found; skipping extraction", memory_id)
            return None
        if rows[0].get("status") == EXTRACTION_DONE:
            record_metric("extraction_skipped")
            return None
        content = rows[0].get("content") or ""

        owners = await self._store.run_read(READ_OWNER_QUERY, {"memoryId": memory_id})
        if not owners:
            record_metric("extraction_skipped")
            logger.debug("memory %s has no owning user; skipping extraction", memory_id)
            return None

        await self._store.run_write(MARK_PENDING_QUERY, {"memoryId": memory_id})
        record_metric("extraction_started")
        return content, owners[0]["userId"]

    async def _extract_and_link(self, memory_id: str, content: str, user_id: str) -> None:
        previous = await self._recent_memories(user_id, memory_id)
        result = await self._extractor.extract(content, previous)
        # Names like "..." or "-" normalize to nothing and cannot be resolved.
        candidates = [e for e in result.entities if normalize_name(e.name)]

        hits = await self._resolver.find_exact(candidates, user_id) if candidates else {}
        resolved = await asyncio.gather(
            *(self._resolve_and_link(c, hits, user_id, memory_id) for c in candidates)
        )

        name_to_id: Dict[str, str] = {}
        for candidate, entity_id in zip(candidates, resolved):
            name_to_id.setdefault(candidate.name.lower(), entity_id)

        for rel in result.relationships:
            source_id = name_to_id.get(rel.source.lower())
            target_id = name_to_id.get(rel.target.lower())
            if source_id and target_id and source_id != target_id:
                await link_entities(self._store, source_id, target_id, rel.type, rel.description)

        await self._store.run_write(MARK_DONE_QUERY, {"memoryId": memory_id})
        record_metric("extraction_done")
        log_with_context(
            logging.INFO,
            f"entity extraction done: {len(candidates)} entities, "
            f"{len(result.relationships)} relationships",
            user_id=user_id,
            memory_id=memory_id,
        )

    async def _recent_memories(self, user_id: str, memory_id: str) -> List[str]:
        try:
            rows = await self._store.run_read(
                READ_RECENT_QUERY, {"userId": user_id, "memoryId": memory_id}
            )
        except Exception:
            logger.debug("co-reference context unavailable for %s", memory_id, exc_info=True)
            return []
        return [r["content"] for r in rows if r.get("content")]

    async def _resolve_and_link(
        self,
        candidate: ExtractedEntity,
        hits: Dict[EntityKey, str],
        user_id: str,
        memory_id: str,
    ) -> str:
        entity_id = hits.get(entity_key(candidate))
        if entity_id is None:
            entity_id = await self._resolver.resolve(candidate, user_id)
        else:
            await self._resolver.update_description(entity_id, candidate.name, candidate.description)
        await link_memory_to_entity(self._store, memory_id, entity_id)
        return entity_id


async def process_entity_extraction(memory_id: str, worker: EntityExtractionWorker) -> None:
    """Run extraction for *memory_id*; never raises."""
    await worker.process(memory_id)
