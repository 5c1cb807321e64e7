"""Prompts for entity/relationship extraction and entity merge confirmation.

Open ontology: the model assigns UPPER_SNAKE_CASE types.  Well-known base
types (PERSON, ORGANIZATION, LOCATION, PRODUCT) are used for conventional
classes; more precise domain types are encouraged.
"""

from __future__ import annotations

from typing import List

ENTITY_EXTRACTION_PROMPT = """You are an entity and relationship extraction assistant.
Extract named entities AND relationships between them from the given memory statement.

For each entity, provide:
- name: The canonical name of the entity (use the most complete, official form)
- type: A short entity type in UPPER_SNAKE_CASE. Use domain-specific types when precise
  (e.g. SERVICE, DATABASE, LIBRARY, FRAMEWORK, TEAM, INCIDENT, METRIC, API).
  Fall back to well-known base types for conventional entity classes:
  PERSON, ORGANIZATION, LOCATION, PRODUCT.
  Use CONCEPT only for abstract ideas without a more specific type.
  Use OTHER only when nothing else fits.
- description: A brief description based on context (1 sentence max)

For each relationship between entities, provide:
- source: Name of the source entity (must match an entity name above)
- target: Name of the target entity (must match an entity name above)
- type: Relationship type in UPPER_SNAKE_CASE (e.g. WORKS_AT, USES, DEPENDS_ON, LOCATED_IN, MANAGES, PART_OF)
- description: A brief description of the relationship (1 sentence max)

Return ONLY valid JSON:
{"entities": [{"name": "...", "type": "...", "description": "..."}], "relationships": [{"source": "...", "target": "...", "type": "...", "description": "..."}]}
If no entities found, return {"entities": [], "relationships": []}"""

GLEANING_PROMPT = """Many entities and relationships were missed in the previous extraction.
Using the same output format, extract any ADDITIONAL entities and relationships that were not captured before.

Previously extracted entities: {previous_entities}

Return ONLY newly found items. Do NOT repeat entities or relationships already listed above.
Return valid JSON: {{"entities": [...], "relationships": [...]}}
If nothing additional found, return {{"entities": [], "relationships": []}}"""

ENTITY_MERGE_PROMPT = """You are an entity deduplication assistant. Determine whether two entity records
refer to the SAME real-world person, organization, system, concept, or thing.

Entity A (incoming):
  Name: {incoming_name}
  Type: {incoming_type}
  Description: {incoming_description}

Entity B (existing):
  Name: {existing_name}
  Type: {existing_type}
  Description: {existing_description}

Answer with a single JSON object: {{"same": true}} if they are the same entity,
or {{"same": false}} if they are distinct. No explanation."""


def build_previous_context(memories: List[str], limit: int = 3) -> str:
    """Co-reference context block appended to the extraction request."""
    if not memories:
        return ""
    lines = "\n".join(f"{i}. {m}" for i, m in enumerate(memories[:limit], start=1))
    return (
        "\n\n[Previous memories for co-reference context. DO NOT extract entities from these, "
        "only use them to resolve pronouns and references in the current memory]\n"
        f"{lines}\n"
    )


def build_entity_merge_prompt(
    incoming_name: str,
    incoming_type: str,
    incoming_description: str,
    existing_name: str,
    existing_type: str,
    existing_description: str,
) -> str:
    return ENTITY_MERGE_PROMPT.format(
        incoming_name=incoming_name,
        incoming_type=incoming_type,
        incoming_description=incoming_description or "(none)",
        existing_name=existing_name,
        existing_type=existing_type,
        existing_description=existing_description or "(none)",
    )
