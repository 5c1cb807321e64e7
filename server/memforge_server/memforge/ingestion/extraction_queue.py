"""In-process task queue for entity extraction.

Callers ``submit`` a memory id and return immediately; the queue runs the
worker under a concurrency cap and re-runs memories whose status comes back
``failed``, with exponential backoff, until ``max_attempts`` runs.  Progress
is observed through the memory's ``extractionStatus`` field.

Guarantees:
- At most one in-flight task per memory id (duplicate submits coalesce).
- Worker runs are bounded by a FIFO ``ConcurrencyLimiter``.
- ``close()`` cancels outstanding work; nothing is left dangling.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from memforge import config as cfg
from memforge.concurrency import ConcurrencyLimiter
from memforge.ingestion.extraction_worker import EntityExtractionWorker
from memforge.models import EXTRACTION_FAILED
from memforge.observability.tracing import record_metric

logger = logging.getLogger(__name__)

INCOMPLETE_MEMORIES_QUERY = """
MATCH (u:User {userId: $userId})-[:HAS_MEMORY]->(m:Memory)
WHERE m.invalidAt IS NULL AND m.state <> 'deleted'
  AND (m.extractionStatus IS NULL OR m.extractionStatus IN ['absent', 'failed'])
RETURN m.id AS id
ORDER BY m.createdAt ASC
"""


class ExtractionQueue:
    """Bounded, retrying executor for ``EntityExtractionWorker.process``."""

    def __init__(
        self,
        worker: EntityExtractionWorker,
        *,
        concurrency: int | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
    ) -> None:
        self._worker = worker
        self._limiter = ConcurrencyLimiter(concurrency or cfg.EXTRACTION_CONCURRENCY)
        self._max_attempts = max(1, max_attempts or cfg.EXTRACTION_MAX_ATTEMPTS)
        self._base_delay = cfg.EXTRACTION_RETRY_BASE_DELAY if base_delay is None else base_delay
        self._tasks: Dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def submit(self, memory_id: str) -> asyncio.Task:
        """Schedule extraction for *memory_id* and return its task."""
        if self._closed:
            raise RuntimeError("extraction queue is closed")
        task = self._tasks.get(memory_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._run(memory_id), name=f"extract:{memory_id}")
        self._tasks[memory_id] = task
        task.add_done_callback(lambda t, mid=memory_id: self._forget(mid, t))
        return task

    def _forget(self, memory_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(memory_id) is task:
            del self._tasks[memory_id]

    async def _run(self, memory_id: str) -> Optional[str]:
        status: Optional[str] = None
        for attempt in range(1, self._max_attempts + 1):
            async with self._limiter:
                await self._worker.process(memory_id)
            try:
                status = await self._worker.extraction_status(memory_id)
            except Exception:
                logger.warning("could not read extraction status for %s", memory_id, exc_info=True)
                return None
            if status != EXTRACTION_FAILED:
                return status
            if attempt < self._max_attempts:
                delay = self._base_delay * (2 ** (attempt - 1))
                record_metric("extraction_retried")
                logger.info(
                    "extraction of %s failed (attempt %d/%d); retrying in %.1fs",
                    memory_id,
                    attempt,
                    self._max_attempts,
                    delay,
                )
                await asyncio.sleep(delay)
        logger.error("extraction of %s failed after %d attempts", memory_id, self._max_attempts)
        return status

    async def requeue_incomplete(self, user_id: str) -> int:
        """Submit every live memory of *user_id* whose extraction is absent or failed."""
        rows = await self._worker.store.run_read(INCOMPLETE_MEMORIES_QUERY, {"userId": user_id})
        ids: List[str] = [row["id"] for row in rows]
        for memory_id in ids:
            self.submit(memory_id)
        logger.info("requeued %d memories for extraction (user=%s)", len(ids), user_id)
        return len(ids)

    async def drain(self) -> None:
        """Wait until every submitted task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding work and refuse further submissions."""
        self._closed = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
