#!/usr/bin/env python3
"""Create the Memgraph constraints and indexes used by memforge.

Usage:
    python create_schema.py [--print]

Requires MEMGRAPH_URL (and MEMGRAPH_USER / MEMGRAPH_PASSWORD when auth is
enabled) in the environment.  ``--print`` only prints the DDL.
"""

from __future__ import annotations

import asyncio
import os
import sys

# Allow running from repo root or scripts/memforge/.
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "memforge_server"))

from dotenv import load_dotenv

load_dotenv()

from memforge.adapter.memgraph_store import MemgraphFactStore
from memforge.adapter.schema import apply_schema, get_schema_statements
from memforge.config import EMBED_DIM, MEMGRAPH_URL


async def create_schema() -> None:
    store = MemgraphFactStore()
    print(f"Applying schema (embedding dim={EMBED_DIM}) at {MEMGRAPH_URL}...")
    try:
        if not await store.verify_connectivity():
            print(f"✗ Memgraph is not reachable at {MEMGRAPH_URL}")
            sys.exit(1)
        applied = await apply_schema(store)
        print(f"✓ Schema is ready ({applied} statements applied).")
    except Exception as e:
        print(f"✗ Schema operation failed: {e}")
        sys.exit(1)
    finally:
        await store.close()


if __name__ == "__main__":
    if "--print" in sys.argv:
        for stmt in get_schema_statements():
            print(f"{stmt};")
    else:
        asyncio.run(create_schema())
