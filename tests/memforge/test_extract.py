"""Tests for LLM entity/relationship extraction and gleaning."""

import asyncio
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "memforge_server"))

from memforge.ingestion.extract import (
    EntityExtractor,
    ExtractionError,
    normalize_entities,
    normalize_relationships,
)
from memforge.ingestion.prompts import build_entity_merge_prompt, build_previous_context

from fakes import make_llm

EMPTY = json.dumps({"entities": [], "relationships": []})


def _payload(entities=(), relationships=()):
    return json.dumps({"entities": list(entities), "relationships": list(relationships)})


def test_normalize_entities_drops_blank_names_and_defaults_type():
    entities = normalize_entities(
        [
            {"name": "  Alice ", "type": "person", "description": "Engineer"},
            {"name": "   ", "type": "PERSON"},
            {"name": "Acme"},
            {"name": "Order Service", "type": "micro service"},
            "not a dict",
        ]
    )
    assert [(e.name, e.type) for e in entities] == [
        ("Alice", "PERSON"),
        ("Acme", "OTHER"),
        ("Order Service", "MICRO_SERVICE"),
    ]
    assert entities[0].description == "Engineer"


def test_normalize_relationships_requires_endpoints_and_type():
    rels = normalize_relationships(
        [
            {"source": "Alice", "target": "Acme", "type": "works at", "description": "employee"},
            {"source": "Alice", "target": "", "type": "KNOWS"},
            {"source": "Alice", "target": "Bob"},
        ]
    )
    assert len(rels) == 1
    assert rels[0].type == "WORKS_AT"


def test_extract_single_pass():
    llm = make_llm(
        _payload(
            [{"name": "Alice", "type": "PERSON"}, {"name": "Acme", "type": "ORGANIZATION"}],
            [{"source": "Alice", "target": "Acme", "type": "WORKS_AT"}],
        )
    )
    result = asyncio.run(EntityExtractor(llm, max_gleanings=0).extract("Alice works at Acme"))
    assert [e.name for e in result.entities] == ["Alice", "Acme"]
    assert result.relationships[0].type == "WORKS_AT"
    kwargs = llm.complete.await_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["temperature"] == 0


def test_extract_includes_previous_memories_as_context():
    llm = make_llm(EMPTY)
    asyncio.run(EntityExtractor(llm, max_gleanings=0).extract("She moved", ["Alice lives in Paris"]))
    user_message = llm.complete.await_args.kwargs["messages"][1]["content"]
    assert user_message.startswith("Memory: She moved")
    assert "1. Alice lives in Paris" in user_message


def test_gleaning_adds_only_new_names():
    llm = make_llm(
        _payload([{"name": "Alice", "type": "PERSON"}]),
        _payload([{"name": "alice", "type": "PERSON"}, {"name": "Paris", "type": "LOCATION"}]),
        EMPTY,
    )
    result = asyncio.run(EntityExtractor(llm, max_gleanings=2).extract("Alice in Paris"))
    assert [e.name for e in result.entities] == ["Alice", "Paris"]
    # Second gleaning added nothing, so no third call.
    assert llm.complete.await_count == 3


def test_gleaning_failure_keeps_primary_result():
    llm = make_llm(_payload([{"name": "Alice", "type": "PERSON"}]), RuntimeError("timeout"))
    result = asyncio.run(EntityExtractor(llm, max_gleanings=1).extract("Alice"))
    assert [e.name for e in result.entities] == ["Alice"]


def test_unparseable_primary_output_raises():
    llm = make_llm("I found Alice and Acme")
    with pytest.raises(ExtractionError):
        asyncio.run(EntityExtractor(llm, max_gleanings=0).extract("Alice works at Acme"))


def test_max_gleanings_is_clamped():
    assert EntityExtractor(make_llm(), max_gleanings=10)._max_gleanings == 3
    assert EntityExtractor(make_llm(), max_gleanings=-1)._max_gleanings == 0


def test_previous_context_limits_to_three():
    block = build_previous_context(["a", "b", "c", "d"])
    assert "3. c" in block
    assert "4." not in block
    assert build_previous_context([]) == ""


def test_merge_prompt_fills_missing_descriptions():
    prompt = build_entity_merge_prompt("Postgres", "DATABASE", "", "PostgreSQL", "DATABASE", "Main DB")
    assert "Name: Postgres" in prompt
    assert "Description: (none)" in prompt
    assert '{"same": true}' in prompt
