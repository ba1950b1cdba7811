"""
Unit tests for concept graph build helpers: budgets, row identity and
inventory bookkeeping.
"""
import json
from types import SimpleNamespace
from uuid import uuid4

import pytest

from config import Settings
from src.pipeline.adaptive import AdaptiveParams, AdaptiveSignals
from src.pipeline.concept_graph import (
    MIN_FILE_INVENTORY_TOTAL,
    ConceptGraphOutput,
    ExcerptBudget,
    InventoryResult,
    concept_document,
    concept_row_id,
    edge_row_id,
    evidence_row_id,
    file_inventory_budget,
    resolve_excerpt_budgets,
    seed_prompt_json,
    shorter_budget,
)
from src.pipeline.concept_graph_patch import concept_items_from_rows
from src.pipeline.inventory import ConceptItem, Coverage, SeedMeta


def record_for(signals, enabled):
    return AdaptiveParams(stage="concept_graph_build", enabled=enabled, signals=signals)


class TestExcerptBudgets:
    """Inventory and edge excerpt budgets."""

    def test_settings_used_as_is(self):
        signals = AdaptiveSignals()

        inv, edge = resolve_excerpt_budgets(Settings(_env_file=None), signals, False, record_for(signals, False))

        assert inv.as_tuple() == (14, 700, 0, 45000)
        assert edge.as_tuple() == (14, 700, 0, 45000)

    def test_adaptive_scales_from_signals(self):
        signals = AdaptiveSignals(file_count=2, page_count=100, content_type="slides").finalize()
        record = record_for(signals, True)

        inv, edge = resolve_excerpt_budgets(Settings(_env_file=None), signals, True, record)

        assert inv.as_tuple() == (5, 490, 0, 25000)
        assert edge.as_tuple() == (5, 490, 0, 20000)
        assert record.params["CONCEPT_GRAPH_EXCERPT_MAX_CHARS"] == {"actual": 490, "ceiling": 700}

    def test_file_share(self):
        signals = AdaptiveSignals(file_count=2, page_count=100).finalize()

        budget = file_inventory_budget(ExcerptBudget(5, 490, 0, 25000), signals, True)

        assert budget.as_tuple() == (2, 490, 0, 12500)

    def test_file_share_without_total(self):
        signals = AdaptiveSignals(file_count=2, page_count=100).finalize()

        assert file_inventory_budget(ExcerptBudget(5, 700, 0, 0), signals, True).max_total == 10000
        assert file_inventory_budget(ExcerptBudget(5, 700, 0, 0), signals, False).max_total == 12000

    def test_file_share_floor(self):
        signals = AdaptiveSignals(file_count=4, page_count=4).finalize()

        budget = file_inventory_budget(ExcerptBudget(5, 700, 0, 3000), signals, False)

        assert budget.max_total == MIN_FILE_INVENTORY_TOTAL

    @pytest.mark.parametrize("current,expected", [(0, 12000), (30000, 15000), (20000, 12000), (12000, 0), (5000, 0)])
    def test_shorter_budget(self, current, expected):
        assert shorter_budget(current) == expected


class TestRowIdentity:
    """Deterministic row IDs."""

    def test_concept_ids_are_stable_per_path_and_key(self):
        path = uuid4()

        assert concept_row_id(path, "vectors") == concept_row_id(path, "vectors")
        assert concept_row_id(path, "vectors") != concept_row_id(path, "angles")
        assert concept_row_id(path, "vectors") != concept_row_id(uuid4(), "vectors")

    def test_edge_and_evidence_ids(self):
        a, b = uuid4(), uuid4()

        assert edge_row_id(a, b, "prereq") != edge_row_id(b, a, "prereq")
        assert edge_row_id(a, b, "prereq") != edge_row_id(a, b, "related")
        assert evidence_row_id(a, b) == evidence_row_id(a, b)


class TestConceptDocument:
    def test_joins_text_fields(self):
        c = ConceptItem("vectors", "Vectors", summary="Magnitude and direction.", key_points=["add", "scale"])

        assert concept_document(c) == "Vectors\nMagnitude and direction.\nadd\nscale"

    def test_falls_back_to_key(self):
        assert concept_document(ConceptItem("vectors", "")) == "vectors"


class TestSeedPromptJson:
    def test_unusable_seeds(self):
        assert seed_prompt_json(["a"], SeedMeta(usable=False)) == ""
        assert seed_prompt_json([], SeedMeta(usable=True)) == ""

    def test_usable_seeds(self):
        payload = json.loads(seed_prompt_json(["vectors"], SeedMeta(usable=True, seed_count=1)))

        assert payload["seed_concept_keys"] == ["vectors"]
        assert payload["seed_quality"]["seed_count"] == 1


class TestInventoryResult:
    """Merging per-file inventories."""

    def test_absorb_and_finish(self):
        c1, c2 = uuid4(), uuid4()
        result = InventoryResult()

        result.absorb(Coverage(0.6, "first", ["limits"]), [ConceptItem("a", "A")], [c1])
        result.absorb(Coverage(0.0, "ignored", ["limits", "series"]), [ConceptItem("b", "B")], [c1, c2])
        result.absorb(Coverage(0.8, "third"), [])
        result.finish()

        assert [c.key for c in result.concepts] == ["a", "b"]
        assert result.coverage.confidence == pytest.approx(0.7)
        assert result.coverage.notes == "first third"
        assert result.coverage.missing_topics == ["limits", "series"]
        assert result.chunk_ids == [c1, c2]


def test_concept_items_from_rows():
    parent_id = uuid4()
    rows = [
        SimpleNamespace(
            id=parent_id, key="vectors", name="Vectors", parent_id=None, depth=0, summary=" s ",
            key_points=["a", "a", "b"], meta={"aliases": ["vector"]}, sort_index=3,
        ),
        SimpleNamespace(
            id=uuid4(), key="dot_product", name="Dot product", parent_id=parent_id, depth=1, summary="",
            key_points=None, meta={"importance": 7}, sort_index=0,
        ),
        SimpleNamespace(id=uuid4(), key=" ", name="", parent_id=None, depth=0, summary="", key_points=[], meta=None, sort_index=0),
    ]

    items = concept_items_from_rows(rows)

    assert [i.key for i in items] == ["vectors", "dot_product"]
    assert (items[0].summary, items[0].key_points, items[0].aliases, items[0].importance) == ("s", ["a", "b"], ["vector"], 3)
    assert (items[1].parent_key, items[1].importance, items[1].citations) == ("vectors", 7, [])


def test_concept_items_from_rows_keep_inventory_extras():
    """Assumed prerequisites keep required_by so prereq edges can be rebuilt."""
    meta = {"aliases": [], "assumed": True, "required_by": ["determinants"], "importance": 1, "unrelated": "x"}
    row = SimpleNamespace(
        id=uuid4(), key="linear_equations", name="Linear equations", parent_id=None, depth=0, summary="",
        key_points=[], meta=meta, sort_index=0,
    )

    item = concept_items_from_rows([row])[0]

    assert item.extra == {"assumed": True, "required_by": ["determinants"]}


def test_output_to_dict():
    out = ConceptGraphOutput(path_id=None, concepts_made=3, cached=True)

    assert out.to_dict()["path_id"] is None
    assert out.to_dict()["concepts_made"] == 3
    assert out.to_dict()["cached"] is True
