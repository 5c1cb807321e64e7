"""Append-only audit trail of memory changes.

Every ADD / SUPERSEDE / DELETE / ARCHIVE / PAUSE is stored as one immutable
``MemoryHistory`` node.  Records are never updated; ``reset_history`` is the
only bulk removal and exists for administration and tests.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from memforge import config as cfg
from memforge.adapter.memgraph_store import FactStore
from memforge.models import HistoryRecord

logger = logging.getLogger(__name__)

HISTORY_ACTIONS = ("ADD", "SUPERSEDE", "DELETE", "ARCHIVE", "PAUSE")

ADD_HISTORY_QUERY = """
CREATE (h:MemoryHistory {
  id: $id,
  memoryId: $memoryId,
  previousValue: $previousValue,
  newValue: $newValue,
  action: $action,
  createdAt: $createdAt,
  updatedAt: $updatedAt,
  isDeleted: $isDeleted,
  sequence: $sequence
})
"""

GET_HISTORY_QUERY = """
MATCH (h:MemoryHistory {memoryId: $memoryId})
RETURN h.id AS id, h.memoryId AS memoryId,
       h.previousValue AS previousValue, h.newValue AS newValue,
       h.action AS action, h.createdAt AS createdAt,
       h.updatedAt AS updatedAt, h.isDeleted AS isDeleted
ORDER BY h.createdAt DESC, coalesce(h.sequence, 0) DESC, h.id DESC
LIMIT $limit
"""

RESET_HISTORY_QUERY = "MATCH (h:MemoryHistory) DETACH DELETE h"


_last_sequence = 0


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _next_sequence() -> int:
    """Strictly increasing append order; breaks ``createdAt`` ties."""
    global _last_sequence
    _last_sequence = max(time.time_ns(), _last_sequence + 1)
    return _last_sequence


class MemoryHistoryLedger:
    def __init__(self, store: FactStore) -> None:
        self._store = store

    async def add_history(
        self,
        memory_id: str,
        previous_value: Optional[str],
        new_value: Optional[str],
        action: str,
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
        is_deleted: int = 0,
    ) -> HistoryRecord:
        """Append one record; *created_at* defaults to now (UTC, ISO-8601)."""
        if action not in HISTORY_ACTIONS:
            raise ValueError(f"unknown history action {action!r}")
        record = HistoryRecord(
            id=str(uuid.uuid4()),
            memory_id=memory_id,
            action=action,
            created_at=created_at or utc_now(),
            previous_value=previous_value,
            new_value=new_value,
            updated_at=updated_at,
            is_deleted=is_deleted,
        )
        await self._store.run_write(
            ADD_HISTORY_QUERY,
            {
                "id": record.id,
                "memoryId": record.memory_id,
                "previousValue": record.previous_value,
                "newValue": record.new_value,
                "action": record.action,
                "createdAt": record.created_at,
                "updatedAt": record.updated_at,
                "isDeleted": record.is_deleted,
                "sequence": _next_sequence(),
            },
        )
        return record

    async def get_history(self, memory_id: str, limit: Optional[int] = None) -> List[HistoryRecord]:
        """Records for *memory_id*, newest first, at most *limit* (default 100)."""
        limit = cfg.HISTORY_DEFAULT_LIMIT if limit is None else limit
        if limit < 1:
            return []
        rows = await self._store.run_read(GET_HISTORY_QUERY, {"memoryId": memory_id, "limit": limit})
        return [HistoryRecord.from_row(row) for row in rows[:limit]]

    async def reset_history(self) -> None:
        await self._store.run_write(RESET_HISTORY_QUERY, {})
        logger.warning("memory history reset")
