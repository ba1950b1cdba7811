"""
LLM prompts and JSON schemas for the concept graph and activity stages.

Each prompt is a (system, user template, schema) triple registered under a
name. ``build_prompt`` fills the template and validates required inputs:

    >>> p = build_prompt(CONCEPT_INVENTORY, excerpts=text, path_intent_md=intent)
    >>> obj = await llm.generate_json(p.system, p.user, p.schema_name, p.schema)
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.pipeline.errors import StageValidationError

CONCEPT_INVENTORY = "concept_inventory"
CONCEPT_INVENTORY_DELTA = "concept_inventory_delta"
CONCEPT_EDGES = "concept_edges"
ASSUMED_KNOWLEDGE = "assumed_knowledge"
CONCEPT_ALIGNMENT = "concept_alignment"
FORMULA_EXTRACTION = "formula_extraction"
ACTIVITY_CONTENT = "activity_content"
COMPOUND_CONCEPT_LABEL = "compound_concept_label"


# =============================================================================
# Schema helpers
# =============================================================================

def _string() -> dict[str, Any]:
    return {"type": "string"}


def _strings() -> dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}}


def _object(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required if required is not None else list(properties),
        "additionalProperties": False,
    }


def _versioned(version: int, properties: dict[str, Any]) -> dict[str, Any]:
    props = {"schema_version": {"type": "integer", "const": version}}
    props.update(properties)
    return _object(props)


def _concept_item() -> dict[str, Any]:
    return _object(
        {
            "key": _string(),
            "name": _string(),
            "parent_key": {"type": ["string", "null"]},
            "depth": {"type": "integer"},
            "summary": _string(),
            "key_points": _strings(),
            "aliases": _strings(),
            "importance": {"type": "integer"},
            "citations": _strings(),
        }
    )


def _coverage() -> dict[str, Any]:
    return _object(
        {
            "confidence": {"type": "number"},
            "notes": _string(),
            "missing_topics_suspected": _strings(),
        }
    )


def concept_inventory_schema() -> dict[str, Any]:
    return _versioned(3, {"concepts": {"type": "array", "items": _concept_item()}, "coverage": _coverage()})


def concept_inventory_delta_schema() -> dict[str, Any]:
    return _versioned(1, {"new_concepts": {"type": "array", "items": _concept_item()}, "coverage": _coverage()})


def concept_edges_schema() -> dict[str, Any]:
    edge = _object(
        {
            "from_key": _string(),
            "to_key": _string(),
            "edge_type": {"type": "string", "enum": ["prereq", "related", "analogy"]},
            "strength": {"type": "number"},
            "rationale": _string(),
            "citations": _strings(),
        }
    )
    return _versioned(1, {"edges": {"type": "array", "items": edge}})


def assumed_knowledge_schema() -> dict[str, Any]:
    item = _object(
        {
            "key": _string(),
            "name": _string(),
            "summary": _string(),
            "aliases": _strings(),
            "importance": {"type": "integer"},
            "citations": _strings(),
            "required_by": _strings(),
        }
    )
    return _versioned(1, {"assumed_concepts": {"type": "array", "items": item}, "notes": _string()})


def concept_alignment_schema() -> dict[str, Any]:
    alias = _object({"canonical_key": _string(), "alias_keys": _strings(), "rationale": _string()})
    meaning = _object(
        {
            "key": _string(),
            "name": _string(),
            "summary": _string(),
            "aliases": _strings(),
            "citations": _strings(),
            "rationale": _string(),
        }
    )
    split = _object({"ambiguous_key": _string(), "meanings": {"type": "array", "items": meaning}})
    return _versioned(
        1,
        {"aliases": {"type": "array", "items": alias}, "splits": {"type": "array", "items": split}},
    )


def formula_extraction_schema() -> dict[str, Any]:
    formula = _object({"raw": _string(), "latex": _string(), "symbolic": _string(), "notes": _string()})
    item = _object({"chunk_id": _string(), "formulas": {"type": "array", "items": formula}})
    return _versioned(1, {"items": {"type": "array", "items": item}})


BLOCK_KINDS = ["heading", "paragraph", "bullets", "steps", "callout", "divider", "image", "video_embed", "diagram"]


def content_json_schema() -> dict[str, Any]:
    block = _object(
        {
            "kind": {"type": "string", "enum": BLOCK_KINDS},
            "content_md": _string(),
            "items": _strings(),
            "asset_refs": _strings(),
        }
    )
    return _object(
        {
            "version": {"type": "integer"},
            "blocks": {"type": "array", "items": block},
            "citations": _strings(),
        }
    )


def compound_concept_label_schema() -> dict[str, Any]:
    return _object({"name": _string(), "summary": _string()})


def activity_content_schema() -> dict[str, Any]:
    return _versioned(
        1,
        {
            "title": _string(),
            "kind": _string(),
            "estimated_minutes": {"type": "integer"},
            "content_json": content_json_schema(),
            "citations": _strings(),
        },
    )


# =============================================================================
# Templates
# =============================================================================

CONCEPT_INVENTORY_SYSTEM = """You are constructing an exhaustive concept inventory that will drive a personalized learning path.
Every concept must be grounded in the excerpts with citations (chunk_id strings).
Concept keys must be stable snake_case.
Return JSON only."""

CONCEPT_INVENTORY_USER = """PATH_INTENT_MD (optional; user goal context for relevance/noise filtering):
{path_intent_md}

SEED_CONCEPT_KEYS (optional; keys suggested by per-file signatures, confirm against excerpts):
{seed_keys}

CROSS_DOC_SECTION_GRAPH_JSON (optional; related sections across files):
{cross_doc_sections_json}

EXCERPTS (each line includes chunk_id):
{excerpts}

Task:
- Extract ALL distinct concepts present in excerpts, but prioritize those that support the PATH_INTENT_MD.
- If PATH_INTENT_MD implies deprioritized topics, include them only if they are prerequisite scaffolding.
- Organize into hierarchy via parent_key + depth.
- Provide summary + key_points + aliases + importance.
  - Prefer full descriptive concept keys over abbreviations (put abbreviations/acronyms in aliases).
- citations must be chunk_id strings actually used.
- coverage: estimate completeness and list suspected missing topics."""

CONCEPT_INVENTORY_DELTA_SYSTEM = """You are extending an existing concept inventory using additional excerpts from the same material set.
You must only add concepts that are truly missing from the existing inventory.
Every new concept must be grounded in the excerpts with citations (chunk_id strings).
Concept keys must be stable snake_case and must not collide with existing keys.
Return JSON only."""

CONCEPT_INVENTORY_DELTA_USER = """PATH_INTENT_MD (optional; user goal context for relevance/noise filtering):
{path_intent_md}

EXISTING_CONCEPTS_JSON (do not repeat these; use these keys for parent_key when appropriate):
{concepts_json}

NEW_EXCERPTS (each line includes chunk_id):
{excerpts}

Task:
- Extract NEW distinct concepts present in NEW_EXCERPTS that are missing from EXISTING_CONCEPTS_JSON.
- Prefer missing high-signal concepts and prerequisite scaffolding; avoid exploding into micro-topics.
- parent_key should reference an existing key when possible; otherwise null.
- Provide summary + key_points + aliases + importance.
- citations must be chunk_id strings actually used.
- coverage: estimate whether more passes are needed and list suspected missing topics."""

CONCEPT_EDGES_SYSTEM = """You are building a concept graph for sequencing.
Edges must be supported by excerpts.
Avoid dense graphs; keep only meaningful edges.
Return JSON only."""

CONCEPT_EDGES_USER = """PATH_INTENT_MD (optional; user goal context for relevance/noise filtering):
{path_intent_md}

CONCEPTS_JSON:
{concepts_json}

EXCERPTS:
{excerpts}

Create edges between concept keys.
edge_type: prereq|related|analogy.
strength: 0..1.
citations: chunk_id strings you used."""

ASSUMED_KNOWLEDGE_SYSTEM = """You identify prerequisite knowledge that the material assumes but does not explicitly explain.
Every assumed concept must be grounded by citations where the assumption is implied.
Return JSON only."""

ASSUMED_KNOWLEDGE_USER = """PATH_INTENT_MD (optional; user goal context for relevance/noise filtering):
{path_intent_md}

EXISTING_CONCEPTS_JSON (already extracted; do not repeat unless needed for prerequisites):
{concepts_json}

EXCERPTS (each line includes chunk_id):
{excerpts}

Task:
- List prerequisite concepts assumed by the material but not explicitly taught.
- For each assumed concept, include required_by (keys from EXISTING_CONCEPTS_JSON) where relevant.
- Provide summary, aliases, importance, and citations (chunk_id strings) showing the assumption.
- Keep the list compact and high-signal; avoid micro-topics."""

CONCEPT_ALIGNMENT_SYSTEM = """You align concepts across documents and resolve ambiguous term collisions.
Return JSON only."""

CONCEPT_ALIGNMENT_USER = """CONCEPTS_JSON (existing concept list with citations):
{concepts_json}

CROSS_DOC_SECTION_GRAPH_JSON (optional; related sections across files):
{cross_doc_sections_json}

Task:
- Identify synonyms/aliases across concepts; choose a canonical_key and list alias_keys to merge.
- Identify ambiguous concepts that represent multiple meanings; split into distinct meanings with new keys.
- Only use keys that exist or are created in this response; do not invent duplicates.
- Provide citations for splits when possible."""

FORMULA_EXTRACTION_SYSTEM = """You extract mathematical formulas from raw text snippets.
Return JSON only."""

FORMULA_EXTRACTION_USER = """FORMULA_CANDIDATES_JSON:
{formula_candidates_json}

Task:
- For each candidate, return clean LaTeX and a symbolic representation (plain text).
- Preserve variable names; avoid introducing new symbols.
- If a candidate is not actually a formula, return an empty formulas list for that chunk."""

ACTIVITY_CONTENT_SYSTEM = """You generate canonical learning activity content in block-based JSON.
Write like a great tutor: engaging, coherent and concrete, not terse lecture notes.
You MUST ground all factual claims in the provided excerpts (chunk_id lines).
Do not invent facts or sources.
Return JSON only."""

ACTIVITY_CONTENT_USER = """USER_PROFILE_DOC:
{user_profile_doc}

PATH_CHARTER_JSON (optional):
{path_charter_json}

ACTIVITY_KIND: {activity_kind}
ACTIVITY_TITLE: {activity_title}
CONCEPT_KEYS: {concept_keys_csv}

USER_KNOWLEDGE_JSON (optional; mastery/exposure for CONCEPT_KEYS; do not mention explicitly):
{user_knowledge_json}

EXCERPTS (each line includes chunk_id):
{activity_excerpts}

Rules:
- Use blocks: heading|paragraph|bullets|steps|callout|divider|image|video_embed|diagram
- Target word counts (approx; err on the side of longer): lesson-like ~1000-1600 words; drill ~450-800 words; quiz ~250-450 words.
- If USER_KNOWLEDGE_JSON marks a concept as "known", skip basics and focus on nuance and faster recall prompts.
- If USER_KNOWLEDGE_JSON marks a concept as "weak" or "unseen", add extra scaffolding and more guided practice.
- For lesson-like activities: why it matters, intuition, explanation, worked example, guided practice, recap.
- For drills, include a clear prompt, guided steps, and at least one hint callout to support retries.
- For quizzes, include brief explanations for answers grounded in excerpts.
- Prefer paragraphs + callouts over wall-of-bullets.
- Include at least one worked example and at least one quick self-check prompt.
- Do not include image or video_embed blocks.
- citations must be chunk_id strings actually used."""

COMPOUND_CONCEPT_LABEL_SYSTEM = """You name an umbrella concept that unifies the provided member concepts. Return JSON only."""

COMPOUND_CONCEPT_LABEL_USER = """MEMBER_CONCEPTS:
{member_concepts_csv}"""


# =============================================================================
# Registry
# =============================================================================

@dataclass(frozen=True)
class PromptSpec:
    name: str
    system: str
    user: str
    schema_fn: Any
    required: tuple[str, ...] = ()


@dataclass
class Prompt:
    system: str
    user: str
    schema_name: str
    schema: dict[str, Any]


PROMPTS: dict[str, PromptSpec] = {
    CONCEPT_INVENTORY: PromptSpec(
        CONCEPT_INVENTORY, CONCEPT_INVENTORY_SYSTEM, CONCEPT_INVENTORY_USER,
        concept_inventory_schema, ("excerpts",),
    ),
    CONCEPT_INVENTORY_DELTA: PromptSpec(
        CONCEPT_INVENTORY_DELTA, CONCEPT_INVENTORY_DELTA_SYSTEM, CONCEPT_INVENTORY_DELTA_USER,
        concept_inventory_delta_schema, ("concepts_json", "excerpts"),
    ),
    CONCEPT_EDGES: PromptSpec(
        CONCEPT_EDGES, CONCEPT_EDGES_SYSTEM, CONCEPT_EDGES_USER,
        concept_edges_schema, ("concepts_json", "excerpts"),
    ),
    ASSUMED_KNOWLEDGE: PromptSpec(
        ASSUMED_KNOWLEDGE, ASSUMED_KNOWLEDGE_SYSTEM, ASSUMED_KNOWLEDGE_USER,
        assumed_knowledge_schema, ("concepts_json", "excerpts"),
    ),
    CONCEPT_ALIGNMENT: PromptSpec(
        CONCEPT_ALIGNMENT, CONCEPT_ALIGNMENT_SYSTEM, CONCEPT_ALIGNMENT_USER,
        concept_alignment_schema, ("concepts_json",),
    ),
    FORMULA_EXTRACTION: PromptSpec(
        FORMULA_EXTRACTION, FORMULA_EXTRACTION_SYSTEM, FORMULA_EXTRACTION_USER,
        formula_extraction_schema, ("formula_candidates_json",),
    ),
    ACTIVITY_CONTENT: PromptSpec(
        ACTIVITY_CONTENT, ACTIVITY_CONTENT_SYSTEM, ACTIVITY_CONTENT_USER,
        activity_content_schema,
        ("user_profile_doc", "activity_kind", "activity_title", "concept_keys_csv", "activity_excerpts"),
    ),
    COMPOUND_CONCEPT_LABEL: PromptSpec(
        COMPOUND_CONCEPT_LABEL, COMPOUND_CONCEPT_LABEL_SYSTEM, COMPOUND_CONCEPT_LABEL_USER,
        compound_concept_label_schema, ("member_concepts_csv",),
    ),
}

_TEMPLATE_FIELDS = (
    "path_intent_md",
    "seed_keys",
    "cross_doc_sections_json",
    "excerpts",
    "concepts_json",
    "formula_candidates_json",
    "user_profile_doc",
    "path_charter_json",
    "activity_kind",
    "activity_title",
    "concept_keys_csv",
    "user_knowledge_json",
    "activity_excerpts",
    "member_concepts_csv",
)


def build_prompt(name: str, **fields: str) -> Prompt:
    """
    Fill a registered prompt.

    Args:
        name: Prompt name (e.g. ``CONCEPT_INVENTORY``).
        **fields: Template values; missing optional fields render empty.

    Returns:
        Prompt with system, user, schema name and schema.

    Raises:
        StageValidationError: Unknown prompt or an empty required field.
    """
    template = PROMPTS.get(name)
    if template is None:
        raise StageValidationError(f"unknown prompt {name!r}")
    for req in template.required:
        if not str(fields.get(req) or "").strip():
            raise StageValidationError(f"{name}: missing {req}")
    values = {k: str(fields.get(k) or "").strip() for k in _TEMPLATE_FIELDS}
    return Prompt(
        system=template.system,
        user=template.user.format(**values),
        schema_name=name,
        schema=template.schema_fn(),
    )
