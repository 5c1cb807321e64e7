"""In-memory stand-ins for the fact store, the LLM and the embedder.

``FakeGraph`` implements the ``FactStore`` protocol by routing the exact
Cypher constants defined in the memforge modules to Python handlers over a
small dict-based graph.  Tests can override any query with ``on()`` and make
any query fail with ``fail()``.
"""

import os
import sys
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "memforge_server"))

from memforge.history import ledger, supersession
from memforge.ingestion import entity_resolver, extraction_queue, extraction_worker, relate
from memforge.retrieval import hybrid_search

Row = Dict[str, Any]


class FakeGraph:
    def __init__(self) -> None:
        self.users: set = set()
        self.memories: Dict[str, Dict[str, Any]] = {}
        self.entities: Dict[str, Dict[str, Any]] = {}
        self.mentions: set = set()
        self.related: Dict[tuple, str] = {}
        self.supersedes: List[tuple] = []
        self.apps: Dict[str, str] = {}
        self.history: List[Row] = []
        self.reads: List[tuple] = []
        self.writes: List[tuple] = []
        self._failures: Dict[str, BaseException] = {}
        self._handlers: Dict[str, Callable[[Dict[str, Any]], List[Row]]] = {
            # extraction worker
            extraction_worker.READ_MEMORY_QUERY: self._read_memory,
            extraction_worker.READ_OWNER_QUERY: self._read_owner,
            extraction_worker.READ_RECENT_QUERY: self._read_recent,
            extraction_worker.MARK_PENDING_QUERY: self._mark_pending,
            extraction_worker.MARK_DONE_QUERY: self._mark_done,
            extraction_worker.MARK_FAILED_QUERY: self._mark_failed,
            extraction_worker.READ_STATUS_QUERY: self._read_status,
            extraction_queue.INCOMPLETE_MEMORIES_QUERY: self._incomplete,
            # entity resolver
            entity_resolver.ENSURE_USER_QUERY: self._ensure_user,
            entity_resolver.FIND_EXACT_BATCH_QUERY: self._find_exact_batch,
            entity_resolver.FIND_EXACT_QUERY: self._find_exact,
            entity_resolver.FIND_ALIAS_CANDIDATES_QUERY: self._find_alias_candidates,
            entity_resolver.FIND_SEMANTIC_QUERY: lambda p: [],
            entity_resolver.RENAME_ENTITY_QUERY: self._rename_entity,
            entity_resolver.UPDATE_DESCRIPTION_QUERY: self._update_description,
            entity_resolver.CREATE_ENTITY_QUERY: self._create_entity,
            entity_resolver.STORE_EMBEDDING_QUERY: self._store_embedding,
            # linking
            relate.LINK_MEMORY_QUERY: self._link_memory,
            relate.LINK_ENTITIES_QUERY: self._link_entities,
            # search
            hybrid_search.TEXT_SEARCH_QUERY: lambda p: [],
            hybrid_search.VECTOR_SEARCH_QUERY: lambda p: [],
            hybrid_search.HYDRATE_QUERY: self._hydrate,
            # history
            ledger.ADD_HISTORY_QUERY: self._add_history,
            ledger.GET_HISTORY_QUERY: self._get_history,
            ledger.RESET_HISTORY_QUERY: self._reset_history,
            supersession.READ_CURRENT_QUERY: self._read_current,
            supersession.SUPERSEDE_QUERY: self._supersede,
            supersession.ATTACH_APP_QUERY: self._attach_app,
            supersession.DELETE_QUERY: self._delete,
            supersession.ARCHIVE_QUERY: self._archive,
            supersession.PAUSE_QUERY: self._pause,
            supersession.VERSION_CHAIN_QUERY: self._version_chain,
        }

    # -- Scripting -------------------------------------------------------

    def on(self, query: str, handler: Any) -> None:
        """Override *query*: a callable receives params, anything else is returned as rows."""
        self._handlers[query] = handler if callable(handler) else (lambda p, rows=handler: rows)

    def fail(self, query: str, exc: BaseException) -> None:
        self._failures[query] = exc

    def add_memory(self, memory_id: str, content: str, user_id: Optional[str] = "alice", **props: Any) -> None:
        if user_id is not None:
            self.users.add(user_id)
        self.memories[memory_id] = {
            "id": memory_id,
            "content": content,
            "userId": user_id,
            "state": "active",
            "createdAt": props.pop("createdAt", f"2000-01-01T00:00:{len(self.memories):02d}+00:00"),
            "invalidAt": None,
            "validAt": None,
            "extractionStatus": None,
            "extractionAttempts": 0,
            "extractionError": None,
            "tags": [],
            "categories": [],
            "appName": None,
            **props,
        }

    def entities_named(self, normalized_name: str) -> List[Dict[str, Any]]:
        return [e for e in self.entities.values() if e["normalizedName"] == normalized_name]

    # -- FactStore protocol ---------------------------------------------

    async def run_read(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Row]:
        self.reads.append((query, params or {}))
        return self._dispatch(query, params or {})

    async def run_write(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Row]:
        self.writes.append((query, params or {}))
        return self._dispatch(query, params or {})

    def writes_of(self, query: str) -> List[Dict[str, Any]]:
        return [p for q, p in self.writes if q == query]

    def _dispatch(self, query: str, params: Dict[str, Any]) -> List[Row]:
        if query in self._failures:
            raise self._failures[query]
        handler = self._handlers.get(query)
        if handler is None:
            raise AssertionError(f"unexpected query:\n{query}")
        return handler(params)

    # -- Memories / extraction ------------------------------------------

    def _read_memory(self, p):
        m = self.memories.get(p["memoryId"])
        return [{"content": m["content"], "status": m["extractionStatus"]}] if m else []

    def _read_owner(self, p):
        m = self.memories.get(p["memoryId"])
        return [{"userId": m["userId"]}] if m and m["userId"] else []

    def _read_recent(self, p):
        rows = [
            m for m in self.memories.values()
            if m["userId"] == p["userId"] and m["id"] != p["memoryId"] and m["invalidAt"] is None
        ]
        rows.sort(key=lambda m: m["createdAt"], reverse=True)
        return [{"content": m["content"]} for m in rows[:3]]

    def _mark_pending(self, p):
        m = self.memories[p["memoryId"]]
        m["extractionStatus"] = "pending"
        m["extractionAttempts"] = (m["extractionAttempts"] or 0) + 1
        return []

    def _mark_done(self, p):
        self.memories[p["memoryId"]].update(extractionStatus="done", extractionError=None)
        return []

    def _mark_failed(self, p):
        m = self.memories.get(p["memoryId"])
        if m and m["extractionStatus"] != "done":
            m.update(extractionStatus="failed", extractionError=p["error"])
        return []

    def _read_status(self, p):
        m = self.memories.get(p["memoryId"])
        return [{"status": m["extractionStatus"]}] if m else []

    def _incomplete(self, p):
        rows = [
            m for m in self.memories.values()
            if m["userId"] == p["userId"]
            and m["invalidAt"] is None
            and m["state"] != "deleted"
            and m["extractionStatus"] in (None, "absent", "failed")
        ]
        rows.sort(key=lambda m: m["createdAt"])
        return [{"id": m["id"]} for m in rows]

    # -- Entities -------------------------------------------------------

    def _entity_row(self, e):
        return {k: e[k] for k in ("id", "name", "type", "description", "normalizedName")}

    def _ensure_user(self, p):
        self.users.add(p["userId"])
        return []

    def _find_exact_batch(self, p):
        rows = []
        for key in p["keys"]:
            for e in self.entities.values():
                if (
                    e["userId"] == p["userId"]
                    and e["normalizedName"] == key["normalizedName"]
                    and e["type"] == key["type"]
                ):
                    rows.append({"normalizedName": key["normalizedName"], "type": key["type"], "id": e["id"]})
        return rows

    def _find_exact(self, p):
        for e in self.entities.values():
            if (
                e["userId"] == p["userId"]
                and e["normalizedName"] == p["normalizedName"]
                and e["type"] == p["type"]
            ):
                return [self._entity_row(e)]
        return []

    def _find_alias_candidates(self, p):
        rows = []
        for e in self.entities.values():
            if e["userId"] != p["userId"] or e["type"] != p["type"]:
                continue
            lower = e["name"].lower()
            if (
                lower.startswith(p["lowerName"] + " ")
                or p["lowerName"].startswith(lower + " ")
                or e["normalizedName"][:3] == p["normalizedName"][:3]
            ):
                rows.append(self._entity_row(e))
        return rows[: p["limit"]]

    def _rename_entity(self, p):
        e = self.entities[p["entityId"]]
        for other in self.entities.values():
            if (
                other["id"] != e["id"]
                and other["userId"] == e["userId"]
                and other["type"] == e["type"]
                and other["normalizedName"] == p["normalizedName"]
            ):
                return []
        e.update(name=p["name"], normalizedName=p["normalizedName"])
        return [{"id": e["id"]}]

    def _update_description(self, p):
        e = self.entities.get(p["entityId"])
        if e is None or len(e["description"] or "") >= len(p["description"]):
            return []
        e["description"] = p["description"]
        return [{"id": e["id"]}]

    def _create_entity(self, p):
        for e in self.entities.values():
            if (
                e["userId"] == p["userId"]
                and e["normalizedName"] == p["normalizedName"]
                and e["type"] == p["type"]
            ):
                return [{"id": e["id"]}]
        self.entities[p["id"]] = {
            "id": p["id"],
            "name": p["name"],
            "type": p["type"],
            "description": p["description"],
            "normalizedName": p["normalizedName"],
            "userId": p["userId"],
            "descriptionEmbedding": None,
        }
        return [{"id": p["id"]}]

    def _store_embedding(self, p):
        self.entities[p["entityId"]]["descriptionEmbedding"] = p["embedding"]
        return []

    def _link_memory(self, p):
        self.mentions.add((p["memoryId"], p["entityId"]))
        return []

    def _link_entities(self, p):
        key = (p["sourceId"], p["targetId"], p["relType"])
        if key not in self.related or len(self.related[key]) < len(p["desc"]):
            self.related[key] = p["desc"]
        return []

    # -- Search ---------------------------------------------------------

    def _hydrate(self, p):
        rows = []
        for memory_id in p["ids"]:
            m = self.memories.get(memory_id)
            if m is None or m["userId"] != p["userId"] or m["invalidAt"] is not None:
                continue
            rows.append(
                {
                    "id": m["id"],
                    "content": m["content"],
                    "createdAt": m["createdAt"],
                    "appName": m["appName"],
                    "categories": list(m["categories"]),
                    "tags": list(m["tags"]),
                }
            )
        return rows

    # -- History / supersession -----------------------------------------

    def _add_history(self, p):
        self.history.append(dict(p))
        return []

    def _get_history(self, p):
        rows = [h for h in self.history if h["memoryId"] == p["memoryId"]]
        rows.sort(key=lambda h: (h["createdAt"], h.get("sequence") or 0, h["id"]), reverse=True)
        return [dict(h) for h in rows[: p["limit"]]]

    def _reset_history(self, p):
        self.history.clear()
        return []

    def _owned_live(self, p, memory_id):
        m = self.memories.get(memory_id)
        if m is None or m["userId"] != p["userId"]:
            return None
        return m

    def _read_current(self, p):
        m = self._owned_live(p, p["oldId"])
        if m is None or m["invalidAt"] is not None:
            return []
        return [{"content": m["content"], "tags": list(m["tags"])}]

    def _supersede(self, p):
        old = self._owned_live(p, p["oldId"])
        if old is None or old["invalidAt"] is not None:
            return []
        old.update(invalidAt=p["now"], supersededBy=p["newId"])
        self.add_memory(
            p["newId"],
            p["content"],
            user_id=p["userId"],
            createdAt=p["now"],
            validAt=p["now"],
            tags=list(p["tags"]),
            extractionStatus="absent",
        )
        self.supersedes.append((p["newId"], p["oldId"]))
        return [{"id": p["newId"]}]

    def _attach_app(self, p):
        self.apps.setdefault(p["appName"], p["appId"])
        self.memories[p["memoryId"]]["appName"] = p["appName"]
        return []

    def _delete(self, p):
        m = self._owned_live(p, p["memoryId"])
        if m is None or m["state"] == "deleted":
            return []
        m.update(state="deleted", invalidAt=m["invalidAt"] or p["now"])
        return [{"id": m["id"]}]

    def _archive(self, p):
        m = self._owned_live(p, p["memoryId"])
        if m is None or m["state"] != "active":
            return []
        m.update(state="archived", invalidAt=m["invalidAt"] or p["now"])
        return [{"id": m["id"]}]

    def _pause(self, p):
        m = self._owned_live(p, p["memoryId"])
        if m is None or m["state"] != "active":
            return []
        m["state"] = "paused"
        return [{"id": m["id"]}]

    def _version_chain(self, p):
        if p["memoryId"] not in self.memories:
            return []
        chain = {p["memoryId"]}
        changed = True
        while changed:
            changed = False
            for new, old in self.supersedes:
                if (new in chain) != (old in chain):
                    chain.update((new, old))
                    changed = True
        rows = [self.memories[i] for i in chain]
        rows.sort(key=lambda m: m["validAt"] or m["createdAt"], reverse=True)
        return [
            {
                "id": m["id"],
                "content": m["content"],
                "createdAt": m["createdAt"],
                "validAt": m["validAt"],
                "invalidAt": m["invalidAt"],
                "state": m["state"],
                "extractionStatus": m["extractionStatus"],
                "supersededBy": m.get("supersededBy"),
                "tags": list(m["tags"]),
            }
            for m in rows
        ]


def make_llm(*responses: Any) -> MagicMock:
    """An ``LLMClient`` whose ``complete`` returns *responses* in order.

    An exception instance in *responses* is raised for that call.
    """
    llm = MagicMock()
    llm.complete = AsyncMock(side_effect=list(responses))
    return llm


def make_embedder(vector: Optional[List[float]] = None) -> MagicMock:
    embedder = MagicMock()
    embedder.embed = AsyncMock(return_value=vector or [0.1, 0.2, 0.3])
    return embedder
