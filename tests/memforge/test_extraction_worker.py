"""Tests for the entity extraction state machine."""

import asyncio
import json
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "memforge_server"))

from memforge.ingestion.entity_resolver import CREATE_ENTITY_QUERY, EntityResolver
from memforge.ingestion.extract import EntityExtractor
from memforge.ingestion.extraction_worker import (
    MARK_FAILED_QUERY,
    READ_MEMORY_QUERY,
    READ_RECENT_QUERY,
    EntityExtractionWorker,
    process_entity_extraction,
)
from memforge.observability.tracing import get_metrics, reset_metrics

from fakes import FakeGraph, make_llm

ALICE_AT_ACME = json.dumps(
    {
        "entities": [
            {"name": "Alice", "type": "PERSON", "description": "An engineer"},
            {"name": "Acme", "type": "ORGANIZATION", "description": "A company"},
            {"name": "  ", "type": "OTHER"},
        ],
        "relationships": [
            {"source": "Alice", "target": "Acme", "type": "WORKS_AT", "description": "employment"},
            {"source": "Alice", "target": "Nobody", "type": "KNOWS"},
        ],
    }
)


def setup_function():
    reset_metrics()


def _worker(graph, *responses):
    llm = make_llm(*responses)
    worker = EntityExtractionWorker(graph, EntityExtractor(llm, max_gleanings=0), EntityResolver(graph))
    return worker, llm


def _ids_by_name(graph):
    return {e["name"]: e["id"] for e in graph.entities.values()}


def test_extracts_resolves_and_links():
    graph = FakeGraph()
    graph.add_memory("m1", "Alice works at Acme")
    worker, _ = _worker(graph, ALICE_AT_ACME)

    asyncio.run(worker.process("m1"))

    memory = graph.memories["m1"]
    assert memory["extractionStatus"] == "done"
    assert memory["extractionAttempts"] == 1
    ids = _ids_by_name(graph)
    assert set(ids) == {"Alice", "Acme"}
    assert graph.mentions == {("m1", ids["Alice"]), ("m1", ids["Acme"])}
    assert graph.related == {(ids["Alice"], ids["Acme"], "WORKS_AT"): "employment"}
    assert get_metrics()["extraction_done"] == 1


def test_done_memory_is_a_no_op():
    graph = FakeGraph()
    graph.add_memory("m1", "Alice works at Acme", extractionStatus="done")
    worker, llm = _worker(graph)

    asyncio.run(worker.process("m1"))

    assert graph.writes == []
    assert llm.complete.await_count == 0


def test_missing_memory_is_skipped_silently():
    graph = FakeGraph()
    worker, _ = _worker(graph)
    asyncio.run(worker.process("nope"))
    assert graph.writes == []
    assert get_metrics()["extraction_skipped"] == 1


def test_memory_without_owner_is_skipped_silently():
    graph = FakeGraph()
    graph.add_memory("m1", "orphan", user_id=None)
    worker, llm = _worker(graph)
    asyncio.run(worker.process("m1"))
    assert graph.writes == []
    assert llm.complete.await_count == 0


def test_failure_sets_failed_with_message_and_does_not_raise():
    graph = FakeGraph()
    graph.add_memory("m1", "Alice works at Acme")
    worker, _ = _worker(graph, RuntimeError("LLM timed out"))

    asyncio.run(worker.process("m1"))

    memory = graph.memories["m1"]
    assert memory["extractionStatus"] == "failed"
    assert memory["extractionError"] == "LLM timed out"
    assert memory["extractionAttempts"] == 1
    assert get_metrics()["extraction_failed"] == 1


def test_failure_with_empty_message_records_exception_type():
    graph = FakeGraph()
    graph.add_memory("m1", "Alice works at Acme")
    worker, _ = _worker(graph, TimeoutError())
    asyncio.run(worker.process("m1"))
    assert graph.memories["m1"]["extractionError"] == "TimeoutError"


def test_unparseable_extraction_marks_failed():
    graph = FakeGraph()
    graph.add_memory("m1", "Alice works at Acme")
    worker, _ = _worker(graph, "not json")
    asyncio.run(worker.process("m1"))
    assert graph.memories["m1"]["extractionStatus"] == "failed"
    assert graph.memories["m1"]["extractionError"]


def test_store_failure_before_pending_leaves_status_untouched():
    graph = FakeGraph()
    graph.add_memory("m1", "Alice works at Acme")
    graph.fail(READ_MEMORY_QUERY, RuntimeError("Connection was closed by server"))
    worker, _ = _worker(graph)
    asyncio.run(process_entity_extraction("m1", worker))
    assert graph.memories["m1"]["extractionStatus"] is None
    assert graph.writes == []
    assert get_metrics()["extraction_failed"] == 1


def test_done_stays_done_when_first_read_fails():
    graph = FakeGraph()
    graph.add_memory("m1", "Alice works at Acme", extractionStatus="done")
    graph.fail(READ_MEMORY_QUERY, ConnectionError("Connection refused"))
    worker, _ = _worker(graph)

    asyncio.run(worker.process("m1"))

    assert graph.memories["m1"]["extractionStatus"] == "done"
    assert graph.writes == []


def test_stale_run_failure_does_not_overwrite_done():
    graph = FakeGraph()
    graph.add_memory("m1", "Alice works at Acme")

    def finished_elsewhere(params):
        # Another run completes while this one is still extracting.
        graph.memories["m1"]["extractionStatus"] = "done"
        return []

    graph.on(READ_RECENT_QUERY, finished_elsewhere)
    worker, _ = _worker(graph, RuntimeError("LLM timed out"))

    asyncio.run(worker.process("m1"))

    assert graph.memories["m1"]["extractionStatus"] == "done"
    assert graph.memories["m1"]["extractionError"] is None


def test_unnormalizable_names_are_dropped_not_fatal():
    graph = FakeGraph()
    graph.add_memory("m1", "Alice ... -")
    payload = json.dumps(
        {
            "entities": [
                {"name": "Alice", "type": "PERSON"},
                {"name": "...", "type": "OTHER"},
                {"name": "-", "type": "OTHER"},
            ],
            "relationships": [{"source": "Alice", "target": "...", "type": "KNOWS"}],
        }
    )
    worker, _ = _worker(graph, payload)

    asyncio.run(worker.process("m1"))

    memory = graph.memories["m1"]
    assert memory["extractionStatus"] == "done"
    assert memory["extractionError"] is None
    assert [e["name"] for e in graph.entities.values()] == ["Alice"]
    assert graph.mentions == {("m1", _ids_by_name(graph)["Alice"])}
    assert graph.related == {}


def test_failed_status_write_is_swallowed():
    graph = FakeGraph()
    graph.add_memory("m1", "Alice works at Acme")
    graph.fail(MARK_FAILED_QUERY, RuntimeError("down"))
    worker, _ = _worker(graph, RuntimeError("LLM down"))
    asyncio.run(worker.process("m1"))
    assert graph.memories["m1"]["extractionStatus"] == "pending"


def test_failed_memory_can_be_reprocessed():
    graph = FakeGraph()
    graph.add_memory("m1", "Alice works at Acme")
    worker, _ = _worker(graph, RuntimeError("boom"), ALICE_AT_ACME)

    asyncio.run(worker.process("m1"))
    asyncio.run(worker.process("m1"))

    memory = graph.memories["m1"]
    assert memory["extractionStatus"] == "done"
    assert memory["extractionError"] is None
    assert memory["extractionAttempts"] == 2


def test_existing_entities_are_reused_via_exact_batch_probe():
    graph = FakeGraph()
    graph.add_memory("m0", "Acme is hiring")
    graph.add_memory("m1", "Alice works at Acme")
    worker, _ = _worker(
        graph,
        json.dumps({"entities": [{"name": "ACME", "type": "ORGANIZATION", "description": "Co"}]}),
        ALICE_AT_ACME,
    )

    asyncio.run(worker.process("m0"))
    acme_id = _ids_by_name(graph)["ACME"]
    creates_before = len(graph.writes_of(CREATE_ENTITY_QUERY))
    asyncio.run(worker.process("m1"))

    # Only Alice is new; Acme was a tier-1 hit.
    assert len(graph.writes_of(CREATE_ENTITY_QUERY)) == creates_before + 1
    assert ("m1", acme_id) in graph.mentions
    assert graph.entities[acme_id]["description"] == "A company"


def test_self_relationships_are_skipped():
    graph = FakeGraph()
    graph.add_memory("m1", "Alice Chen is Alice")
    payload = json.dumps(
        {
            "entities": [{"name": "Alice", "type": "PERSON"}, {"name": "alice", "type": "PERSON"}],
            "relationships": [{"source": "Alice", "target": "alice", "type": "SAME_AS"}],
        }
    )
    worker, _ = _worker(graph, payload)
    asyncio.run(worker.process("m1"))
    assert graph.related == {}
    assert graph.memories["m1"]["extractionStatus"] == "done"


def test_recent_memories_are_passed_as_context():
    graph = FakeGraph()
    graph.add_memory("m0", "Alice joined Acme last year")
    graph.add_memory("m1", "She was promoted")
    graph.add_memory("other", "Bob's memory", user_id="bob")
    worker, llm = _worker(graph, json.dumps({"entities": []}))

    asyncio.run(worker.process("m1"))

    user_message = llm.complete.await_args.kwargs["messages"][1]["content"]
    assert "Alice joined Acme last year" in user_message
    assert "Bob's memory" not in user_message


def test_extraction_status():
    graph = FakeGraph()
    graph.add_memory("m1", "x")
    graph.add_memory("m2", "y", extractionStatus="failed")
    worker, _ = _worker(graph)
    assert asyncio.run(worker.extraction_status("m1")) == "absent"
    assert asyncio.run(worker.extraction_status("m2")) == "failed"
    assert asyncio.run(worker.extraction_status("missing")) is None
