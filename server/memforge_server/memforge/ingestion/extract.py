"""LLM-based entity & relationship extraction.

A single JSON-mode chat completion extracts both entities and the
relationships between them.  Optional gleaning passes ask the model for
anything it missed; gleaned entities are added only when their name is new.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, List

from memforge import config as cfg
from memforge.adapter.llm_client import LLMClient
from memforge.ingestion.prompts import (
    ENTITY_EXTRACTION_PROMPT,
    GLEANING_PROMPT,
    build_previous_context,
)
from memforge.models import ExtractedEntity, ExtractedRelationship, ExtractionResult

logger = logging.getLogger(__name__)

_JSON_MODE = {"type": "json_object"}


class ExtractionError(RuntimeError):
    """Raised when the model's primary extraction output is unusable."""


def _clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _snake_upper(value: str) -> str:
    return "_".join(value.upper().split())


def normalize_entities(raw: Any) -> List[ExtractedEntity]:
    """Coerce the model's ``entities`` array; entries without a name are dropped."""
    if not isinstance(raw, list):
        return []
    entities: List[ExtractedEntity] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        name = _clean_str(item.get("name"))
        if not name:
            continue
        entity_type = _snake_upper(_clean_str(item.get("type"))) or "OTHER"
        entities.append(
            ExtractedEntity(name=name, type=entity_type, description=_clean_str(item.get("description")))
        )
    return entities


def normalize_relationships(raw: Any) -> List[ExtractedRelationship]:
    if not isinstance(raw, list):
        return []
    relationships: List[ExtractedRelationship] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        source = _clean_str(item.get("source"))
        target = _clean_str(item.get("target"))
        rel_type = _snake_upper(_clean_str(item.get("type")))
        if not (source and target and rel_type):
            continue
        relationships.append(
            ExtractedRelationship(
                source=source,
                target=target,
                type=rel_type,
                description=_clean_str(item.get("description")),
            )
        )
    return relationships


def _parse(raw: str) -> dict:
    parsed = json.loads(raw.strip() or "{}")
    if not isinstance(parsed, dict):
        raise ValueError("extraction output is not a JSON object")
    return parsed


class EntityExtractor:
    """Extracts entities and relationships from one memory's content."""

    def __init__(
        self,
        llm: LLMClient,
        *,
        model: str | None = None,
        max_gleanings: int | None = None,
    ) -> None:
        self._llm = llm
        self._model = model or cfg.LLM_MODEL
        self._max_gleanings = (
            cfg.EXTRACTION_MAX_GLEANINGS if max_gleanings is None else max(0, min(max_gleanings, 3))
        )

    async def extract(self, content: str, previous_memories: Iterable[str] = ()) -> ExtractionResult:
        messages = [
            {"role": "system", "content": ENTITY_EXTRACTION_PROMPT},
            {
                "role": "user",
                "content": f"Memory: {content}{build_previous_context(list(previous_memories))}",
            },
        ]
        raw = await self._llm.complete(
            model=self._model,
            messages=messages,
            temperature=0,
            max_tokens=800,
            response_format=_JSON_MODE,
        )
        try:
            parsed = _parse(raw)
        except ValueError as exc:
            raise ExtractionError(f"unparseable extraction output: {exc}") from exc

        result = ExtractionResult(
            entities=normalize_entities(parsed.get("entities")),
            relationships=normalize_relationships(parsed.get("relationships")),
        )

        for attempt in range(self._max_gleanings):
            added = await self._glean(messages, raw, result)
            if not added:
                break
            logger.debug("gleaning pass %d added %d items", attempt + 1, added)

        return result

    async def _glean(self, messages: list, previous_raw: str, result: ExtractionResult) -> int:
        """Run one gleaning pass, merging new items into *result* in place."""
        names = ", ".join(e.name for e in result.entities) or "(none)"
        try:
            raw = await self._llm.complete(
                model=self._model,
                messages=[
                    *messages,
                    {"role": "assistant", "content": previous_raw},
                    {"role": "user", "content": GLEANING_PROMPT.format(previous_entities=names)},
                ],
                temperature=0,
                max_tokens=600,
                response_format=_JSON_MODE,
            )
            parsed = _parse(raw)
        except Exception:
            logger.warning("gleaning pass failed; keeping primary extraction", exc_info=True)
            return 0

        known = {e.name.lower() for e in result.entities}
        added = 0
        for entity in normalize_entities(parsed.get("entities")):
            if entity.name.lower() not in known:
                known.add(entity.name.lower())
                result.entities.append(entity)
                added += 1
        existing_rels = {(r.source.lower(), r.target.lower(), r.type) for r in result.relationships}
        for rel in normalize_relationships(parsed.get("relationships")):
            key = (rel.source.lower(), rel.target.lower(), rel.type)
            if key not in existing_rels:
                existing_rels.add(key)
                result.relationships.append(rel)
                added += 1
        return added
