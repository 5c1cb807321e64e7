"""Tiered entity resolution (match-or-create) scoped per user.

Identity is ``(userId, type, normalizedName)``: "OrderService",
"Order Service" and "order-service" are the same SERVICE, but "Apple" the
ORGANIZATION and "Apple" the PRODUCT are two entities.

Tiers:
    1. Exact normalized-name match.  The extraction worker probes this for a
       whole batch in one round-trip (``find_exact``); ``resolve`` repeats it
       for a single name so it is self-sufficient.
    2. Alias / fuzzy match among the user's entities of the same type
       ("Alice" <-> "Alice Chen", "Postgres DB" <-> "PostgresDB").
    3. Semantic match: embed ``name: description``, look up close entities
       in the ``entity_vectors`` index, and ask the LLM to confirm the best
       one.  Any failure here means "no match".

On a match the stored description is replaced only by a strictly longer one.
Otherwise the entity is created with ``MERGE`` on its identity key, under an
in-process lock for the same key.
"""

from __future__ import annotations

import difflib
import json
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Tuple

from memforge import config as cfg
from memforge.adapter.llm_client import LLMClient
from memforge.adapter.memgraph_store import FactStore
from memforge.adapter.schema import ENTITY_VECTOR_INDEX
from memforge.concurrency import KeyedLock
from memforge.ingestion.embedder import Embedder
from memforge.ingestion.prompts import build_entity_merge_prompt
from memforge.models import Entity, ExtractedEntity
from memforge.observability.tracing import record_metric

logger = logging.getLogger(__name__)

EntityKey = Tuple[str, str]  # (normalizedName, type)

_NORMALIZE_RE = re.compile(r"[\s\-_./\\]+")
_NUMBER_RE = re.compile(r"\d+")

# Bounds the tier-2 candidate scan.
ALIAS_SCAN_LIMIT = 50

ENSURE_USER_QUERY = """
MERGE (u:User {userId: $userId})
ON CREATE SET u.createdAt = $now
"""

FIND_EXACT_BATCH_QUERY = """
UNWIND $keys AS key
MATCH (u:User {userId: $userId})-[:HAS_ENTITY]->(e:Entity)
WHERE e.normalizedName = key.normalizedName AND e.type = key.type
RETURN key.normalizedName AS normalizedName, key.type AS type, e.id AS id
"""

FIND_EXACT_QUERY = """
MATCH (u:User {userId: $userId})-[:HAS_ENTITY]->(e:Entity)
WHERE e.normalizedName = $normalizedName AND e.type = $type
RETURN e.id AS id, e.name AS name, e.type AS type,
       coalesce(e.description, '') AS description, e.normalizedName AS normalizedName
LIMIT 1
"""

FIND_ALIAS_CANDIDATES_QUERY = """
MATCH (u:User {userId: $userId})-[:HAS_ENTITY]->(e:Entity)
WHERE e.type = $type
  AND (toLower(e.name) STARTS WITH ($lowerName + ' ')
       OR $lowerName STARTS WITH (toLower(e.name) + ' ')
       OR left(e.normalizedName, 3) = left($normalizedName, 3))
RETURN e.id AS id, e.name AS name, e.type AS type,
       coalesce(e.description, '') AS description, e.normalizedName AS normalizedName
LIMIT $limit
"""

FIND_SEMANTIC_QUERY = f"""
CALL vector_search.search("{ENTITY_VECTOR_INDEX}", $fetchLimit, $embedding) YIELD node, similarity
MATCH (u:User {{userId: $userId}})-[:HAS_ENTITY]->(node)
WHERE node.type = $type AND similarity >= $threshold
RETURN node.id AS id, node.name AS name, node.type AS type,
       coalesce(node.description, '') AS description,
       node.normalizedName AS normalizedName, similarity
ORDER BY similarity DESC
LIMIT $limit
"""

RENAME_ENTITY_QUERY = """
MATCH (e:Entity {id: $entityId})
OPTIONAL MATCH (other:Entity {userId: e.userId, type: e.type, normalizedName: $normalizedName})
WHERE other.id <> e.id
WITH e, other
WHERE other IS NULL
SET e.name = $name, e.normalizedName = $normalizedName, e.updatedAt = $now
RETURN e.id AS id
"""

UPDATE_DESCRIPTION_QUERY = """
MATCH (e:Entity {id: $entityId})
WHERE size(coalesce(e.description, '')) < size($description)
SET e.description = $description, e.updatedAt = $now
RETURN e.id AS id
"""

CREATE_ENTITY_QUERY = """
MATCH (u:User {userId: $userId})
MERGE (u)-[:HAS_ENTITY]->(e:Entity {userId: $userId, normalizedName: $normalizedName, type: $type})
ON CREATE SET e.id = $id, e.name = $name, e.description = $description,
              e.createdAt = $now, e.updatedAt = $now
RETURN e.id AS id
"""

STORE_EMBEDDING_QUERY = """
MATCH (e:Entity {id: $entityId})
SET e.descriptionEmbedding = $embedding
"""


def normalize_name(name: str) -> str:
    """Lowercase and strip whitespace, ``-``, ``_``, ``.``, ``/`` and ``\\``.

    "Order Service", "OrderService", "order-service" -> "orderservice".
    """
    return _NORMALIZE_RE.sub("", name.lower())


def normalize_type(entity_type: str | None) -> str:
    return "_".join((entity_type or "").upper().split()) or "OTHER"


def entity_key(candidate: ExtractedEntity) -> EntityKey:
    return normalize_name(candidate.name), normalize_type(candidate.type)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_alias(a: str, b: str) -> bool:
    """Word-boundary prefix alias: "Alice" <-> "Alice Chen"."""
    a, b = a.lower().strip(), b.lower().strip()
    return b.startswith(a + " ") or a.startswith(b + " ")


class EntityResolver:
    """Match-or-create for extracted entity mentions."""

    def __init__(
        self,
        store: FactStore,
        embedder: Embedder | None = None,
        llm: LLMClient | None = None,
        *,
        model: str | None = None,
        fuzzy_threshold: float | None = None,
        semantic_threshold: float | None = None,
        semantic_top_k: int | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._llm = llm
        self._model = model or cfg.LLM_MODEL
        self._fuzzy_threshold = (
            cfg.ENTITY_FUZZY_THRESHOLD if fuzzy_threshold is None else fuzzy_threshold
        )
        self._semantic_threshold = (
            cfg.ENTITY_SEMANTIC_THRESHOLD if semantic_threshold is None else semantic_threshold
        )
        self._semantic_top_k = semantic_top_k or cfg.ENTITY_SEMANTIC_TOP_K
        self._locks = locks or KeyedLock()

    # -- Tier 1 --------------------------------------------------------

    async def find_exact(
        self, candidates: Iterable[ExtractedEntity], user_id: str
    ) -> Dict[EntityKey, str]:
        """Batch exact-match probe: one round-trip for all *candidates*."""
        keys = list(dict.fromkeys(entity_key(c) for c in candidates))
        if not keys:
            return {}
        rows = await self._store.run_read(
            FIND_EXACT_BATCH_QUERY,
            {
                "userId": user_id,
                "keys": [{"normalizedName": n, "type": t} for n, t in keys],
            },
        )
        hits: Dict[EntityKey, str] = {}
        for row in rows:
            hits.setdefault((row["normalizedName"], row["type"]), row["id"])
        return hits

    async def _find_exact_one(self, key: EntityKey, user_id: str) -> Optional[Entity]:
        rows = await self._store.run_read(
            FIND_EXACT_QUERY, {"userId": user_id, "normalizedName": key[0], "type": key[1]}
        )
        return Entity.from_row(rows[0]) if rows else None

    # -- Tier 2 --------------------------------------------------------

    async def _find_alias(
        self, candidate: ExtractedEntity, key: EntityKey, user_id: str
    ) -> Optional[Entity]:
        rows = await self._store.run_read(
            FIND_ALIAS_CANDIDATES_QUERY,
            {
                "userId": user_id,
                "type": key[1],
                "lowerName": candidate.name.lower().strip(),
                "normalizedName": key[0],
                "limit": ALIAS_SCAN_LIMIT,
            },
        )
        existing = [Entity.from_row(r) for r in rows]

        aliases = [e for e in existing if _is_alias(candidate.name, e.name)]
        if aliases:
            best = max(aliases, key=lambda e: len(e.name))
            if len(candidate.name) > len(best.name):
                # Keep the longer form ("Alice Chen"); the identity key moves with
                # the name unless another entity already owns it.
                renamed = await self._store.run_write(
                    RENAME_ENTITY_QUERY,
                    {
                        "entityId": best.id,
                        "name": candidate.name,
                        "normalizedName": key[0],
                        "now": _now(),
                    },
                )
                if renamed:
                    best.name, best.normalized_name = candidate.name, key[0]
            return best

        best_entity, best_ratio = None, 0.0
        for entity in existing:
            other = entity.normalized_name or normalize_name(entity.name)
            # "Project Alpha 2" and "Project Alpha 3" are different things.
            if _NUMBER_RE.findall(key[0]) != _NUMBER_RE.findall(other):
                continue
            ratio = difflib.SequenceMatcher(None, key[0], other).ratio()
            if ratio > best_ratio:
                best_entity, best_ratio = entity, ratio
        if best_entity is not None and best_ratio >= self._fuzzy_threshold:
            return best_entity
        return None

    # -- Tier 3 --------------------------------------------------------

    async def _find_semantic(
        self, candidate: ExtractedEntity, key: EntityKey, user_id: str
    ) -> Optional[Entity]:
        if self._embedder is None or self._llm is None:
            return None
        try:
            text = candidate.name + (f": {candidate.description}" if candidate.description else "")
            embedding = await self._embedder.embed(text)
            rows = await self._store.run_read(
                FIND_SEMANTIC_QUERY,
                {
                    "userId": user_id,
                    "type": key[1],
                    "embedding": embedding,
                    "threshold": self._semantic_threshold,
                    "fetchLimit": self._semantic_top_k * 3,
                    "limit": self._semantic_top_k,
                },
            )
            if not rows:
                return None
            best = Entity.from_row(rows[0])
            return best if await self._confirm_merge(candidate, key[1], best) else None
        except Exception:
            logger.debug("semantic entity lookup unavailable for %r", candidate.name, exc_info=True)
            return None

    async def _confirm_merge(self, candidate: ExtractedEntity, entity_type: str, existing: Entity) -> bool:
        raw = await self._llm.complete(
            model=self._model,
            messages=[
                {
                    "role": "user",
                    "content": build_entity_merge_prompt(
                        candidate.name,
                        entity_type,
                        candidate.description,
                        existing.name,
                        existing.type,
                        existing.description,
                    ),
                }
            ],
            temperature=0,
            max_tokens=20,
        )
        try:
            return json.loads(raw.strip()).get("same") is True
        except (ValueError, AttributeError):
            return False

    # -- Writes --------------------------------------------------------

    async def _create(self, candidate: ExtractedEntity, key: EntityKey, user_id: str) -> str:
        new_id = str(uuid.uuid4())
        now = _now()
        await self._store.run_write(ENSURE_USER_QUERY, {"userId": user_id, "now": now})
        rows = await self._store.run_write(
            CREATE_ENTITY_QUERY,
            {
                "userId": user_id,
                "id": new_id,
                "name": candidate.name,
                "normalizedName": key[0],
                "type": key[1],
                "description": candidate.description,
                "now": now,
            },
        )
        # A concurrent creator may have won the MERGE; use the stored id.
        entity_id = rows[0]["id"] if rows else new_id
        if entity_id == new_id:
            record_metric("entity_created")
            text = candidate.name + (f": {candidate.description}" if candidate.description else "")
            await self._store_embedding(entity_id, text)
        return entity_id

    async def _store_embedding(self, entity_id: str, text: str) -> None:
        if self._embedder is None:
            return
        try:
            embedding = await self._embedder.embed(text)
            await self._store.run_write(
                STORE_EMBEDDING_QUERY, {"entityId": entity_id, "embedding": embedding}
            )
        except Exception:
            logger.warning("description embedding failed for entity %s", entity_id, exc_info=True)

    # -- Entry point ---------------------------------------------------

    async def resolve(self, candidate: ExtractedEntity, user_id: str) -> str:
        """Return the id of the entity *candidate* refers to, creating it if new."""
        key = entity_key(candidate)
        if not key[0]:
            raise ValueError(f"entity name {candidate.name!r} normalizes to nothing")

        async with self._locks.hold((user_id, key[1], key[0])):
            existing = (
                await self._find_exact_one(key, user_id)
                or await self._find_alias(candidate, key, user_id)
                or await self._find_semantic(candidate, key, user_id)
            )
            if existing is None:
                return await self._create(candidate, key, user_id)

        record_metric("entity_matched")
        if len(candidate.description) > len(existing.description):
            await self.update_description(existing.id, existing.name, candidate.description)
        return existing.id

    async def update_description(self, entity_id: str, name: str, description: str) -> None:
        """Replace the stored description only when *description* is strictly longer."""
        if not description:
            return
        rows = await self._store.run_write(
            UPDATE_DESCRIPTION_QUERY,
            {"entityId": entity_id, "description": description, "now": _now()},
        )
        if rows:
            await self._store_embedding(entity_id, f"{name}: {description}")
