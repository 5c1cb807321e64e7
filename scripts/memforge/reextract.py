#!/usr/bin/env python3
"""Re-run entity extraction for a user's absent or failed memories.

Usage:
    python reextract.py <user_id> [--dry-run]

Queues every live memory whose extractionStatus is absent or failed,
waits for the queue to drain, and prints the resulting status counts.
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections import Counter

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "memforge_server"))

from dotenv import load_dotenv

load_dotenv()

from memforge.adapter.llm_client import OpenAIChatClient
from memforge.adapter.memgraph_store import MemgraphFactStore
from memforge.ingestion.embedder import Embedder
from memforge.ingestion.entity_resolver import EntityResolver
from memforge.ingestion.extract import EntityExtractor
from memforge.ingestion.extraction_queue import INCOMPLETE_MEMORIES_QUERY, ExtractionQueue
from memforge.ingestion.extraction_worker import EntityExtractionWorker
from memforge.observability.tracing import configure_logging


async def reextract(user_id: str, dry_run: bool = False) -> None:
    configure_logging()
    store = MemgraphFactStore()
    llm = OpenAIChatClient()
    try:
        rows = await store.run_read(INCOMPLETE_MEMORIES_QUERY, {"userId": user_id})
        if dry_run:
            for row in rows:
                print(f"  [dry-run] Would re-extract memory: {row['id']}")
            print(f"\n{len(rows)} memories pending re-extraction for {user_id}")
            return

        embedder = Embedder()
        worker = EntityExtractionWorker(
            store, EntityExtractor(llm), EntityResolver(store, embedder, llm)
        )
        queue = ExtractionQueue(worker)
        tasks = [queue.submit(row["id"]) for row in rows]
        print(f"Queued {len(tasks)} memories for {user_id}; waiting...")
        results = await asyncio.gather(*tasks, return_exceptions=True)
        outcomes = Counter(
            "error" if isinstance(r, BaseException) else (r or "missing") for r in results
        )
        summary = " ".join(f"{k}={v}" for k, v in sorted(outcomes.items()))
        print(f"\nRe-extraction complete: {summary or 'nothing to do'}")
    finally:
        await llm.close()
        await store.close()


if __name__ == "__main__":
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    if not args:
        print(__doc__)
        sys.exit(2)
    asyncio.run(reextract(args[0], dry_run="--dry-run" in sys.argv))
