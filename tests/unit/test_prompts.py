"""
Unit tests for prompt templates, response schemas and error classification.
"""
import pytest

from src.pipeline.errors import (
    ContextLengthError,
    LLMError,
    MissingInputError,
    StageValidationError,
    is_context_length_error,
)
from src.pipeline.prompts import (
    ACTIVITY_CONTENT,
    BLOCK_KINDS,
    COMPOUND_CONCEPT_LABEL,
    CONCEPT_INVENTORY,
    PROMPTS,
    build_prompt,
)


def walk_objects(schema):
    """Yield every object schema nested in ``schema``."""
    if isinstance(schema, dict):
        if schema.get("type") == "object":
            yield schema
        for value in schema.values():
            yield from walk_objects(value)
    elif isinstance(schema, list):
        for value in schema:
            yield from walk_objects(value)


class TestBuildPrompt:
    """Template filling and required fields."""

    def test_fills_fields(self):
        prompt = build_prompt(CONCEPT_INVENTORY, excerpts="[chunk_id=1] text", path_intent_md="  Learn calculus  ")

        assert prompt.schema_name == CONCEPT_INVENTORY
        assert "[chunk_id=1] text" in prompt.user
        assert "Learn calculus\n" in prompt.user
        assert "{" not in prompt.user.split("EXCERPTS")[0]

    def test_missing_required_field(self):
        with pytest.raises(StageValidationError, match="missing excerpts"):
            build_prompt(CONCEPT_INVENTORY, excerpts="   ")

    def test_unknown_prompt(self):
        with pytest.raises(StageValidationError, match="unknown prompt"):
            build_prompt("poem")

    def test_activity_requires_every_core_field(self):
        fields = dict(
            user_profile_doc="Visual learner",
            activity_kind="reading",
            activity_title="Vectors",
            concept_keys_csv="vectors",
            activity_excerpts="[chunk_id=1] x",
        )
        build_prompt(ACTIVITY_CONTENT, **fields)

        for name in fields:
            with pytest.raises(StageValidationError):
                build_prompt(ACTIVITY_CONTENT, **{**fields, name: ""})

    def test_label_prompt(self):
        prompt = build_prompt(COMPOUND_CONCEPT_LABEL, member_concepts_csv="Angles, Vectors")

        assert prompt.user.endswith("Angles, Vectors")


class TestSchemas:
    """Strict JSON schemas for structured output."""

    @pytest.mark.parametrize("name", sorted(PROMPTS))
    def test_objects_are_closed_and_fully_required(self, name):
        schema = PROMPTS[name].schema_fn()

        objects = list(walk_objects(schema))

        assert objects
        for obj in objects:
            assert obj["additionalProperties"] is False
            assert sorted(obj["required"]) == sorted(obj["properties"])

    def test_versioned_schemas(self):
        assert PROMPTS[CONCEPT_INVENTORY].schema_fn()["properties"]["schema_version"]["const"] == 3
        assert PROMPTS[ACTIVITY_CONTENT].schema_fn()["properties"]["schema_version"]["const"] == 1

    def test_block_kinds(self):
        block = PROMPTS[ACTIVITY_CONTENT].schema_fn()["properties"]["content_json"]["properties"]["blocks"]["items"]

        assert block["properties"]["kind"]["enum"] == BLOCK_KINDS
        assert "diagram" in BLOCK_KINDS


class TestErrors:
    def test_context_length_by_type_or_message(self):
        assert is_context_length_error(ContextLengthError("x"))
        assert is_context_length_error(RuntimeError("Input token count exceeds the limit"))
        assert not is_context_length_error(LLMError("rate limited"))
        assert not is_context_length_error(None)

    def test_context_length_through_cause(self):
        try:
            try:
                raise RuntimeError("prompt is too long: 300000 tokens")
            except RuntimeError as inner:
                raise LLMError("generation failed") from inner
        except LLMError as outer:
            assert is_context_length_error(outer)

    def test_missing_input_message(self):
        err = MissingInputError("concept_graph_build", "material_set_id")

        assert str(err) == "concept_graph_build: missing material_set_id"
        assert err.field == "material_set_id"
