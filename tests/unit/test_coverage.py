"""
Unit tests for coverage completion.

The engine runs against the scripted LLM with no vector store, so candidate
chunks come from the stratified share of unseen chunks.
"""
import itertools
from uuid import uuid4

import pytest

from config import Settings
from src.pipeline.adaptive import AdaptiveSignals
from src.pipeline.coverage import (
    CoverageEngine,
    CoverageInput,
    CoverageParams,
    build_section_sweep_tasks,
    collect_section_chunks,
    coverage_stall_min_added,
    merge_new_concepts,
    merge_seed_topics,
    resolve_coverage_params,
    same_topic_set,
    section_min_citations,
    split_batches,
    undercovered_sections,
)
from src.pipeline.inventory import ConceptItem, Coverage
from tests.conftest import FakeLLM, make_chunk


def params(**kw):
    base = dict(
        passes=6,
        max_concepts=100,
        per_file=2,
        max_chars=200,
        max_lines=0,
        max_total=0,
        max_missing_topics=8,
        topic_top_k=4,
        targeted_only=False,
        concurrency=2,
        max_rounds=6,
        section_sweep=False,
    )
    base.update(kw)
    return CoverageParams(**base)


def delta_reply(per_call, topics):
    """A reply factory adding ``per_call`` fresh concepts every call."""
    counter = itertools.count(1)

    def reply():
        n = next(counter)
        return {
            "new_concepts": [{"key": f"new_{n}_{i}", "name": f"New {n}.{i}"} for i in range(per_call)],
            "coverage": {"confidence": 0.6, "notes": "", "missing_topics_suspected": list(topics)},
        }

    return reply


class TestRoundHelpers:
    """Pure helpers used between rounds."""

    @pytest.mark.parametrize(
        "total,pages,chunks,expected",
        [(0, 0, 0, 1), (10, 0, 0, 2), (450, 0, 0, 4), (50, 500, 0, 4), (50, 0, 1500, 4), (800, 0, 0, 8)],
    )
    def test_stall_min_added(self, total, pages, chunks, expected):
        signals = AdaptiveSignals(page_count=pages, chunk_count=chunks)

        assert coverage_stall_min_added(total, signals) == expected

    def test_same_topic_set(self):
        assert same_topic_set(["Limits", " series", ""], ["series", "limits"])
        assert not same_topic_set(["limits"], ["limits", "series"])

    def test_split_batches(self):
        assert split_batches(["a", "b", "c"], 2) == [["a", "b"], ["c"]]
        assert split_batches(["a"], 0) == [["a"]]
        assert split_batches([], 3) == []

    @pytest.mark.parametrize("n,expected", [(1, 1), (11, 1), (12, 2), (29, 2), (30, 3)])
    def test_section_min_citations(self, n, expected):
        assert section_min_citations(n) == expected

    def test_seed_topics_join_few_missing(self):
        small = AdaptiveSignals()

        assert merge_seed_topics(["x"], ["Outline"], 8, small) == ["x", "Outline"]
        many = [f"t{i}" for i in range(8)]
        assert merge_seed_topics(many, ["Outline"], 8, small) == many
        assert merge_seed_topics(many, ["Outline"], 8, AdaptiveSignals(page_count=300))[-1] == "Outline"

    def test_merge_new_concepts_counts_unknown_keys(self):
        known = {"a"}
        concepts = [ConceptItem("a", "A")]

        merged, added = merge_new_concepts(concepts, [ConceptItem("A", "A again"), ConceptItem("b", "B")], known, None)

        assert [c.key for c in merged] == ["a", "b"]
        assert added == 1
        assert known == {"a", "b"}


class TestParams:
    """Budget resolution from settings and signals."""

    def test_non_adaptive_uses_settings(self):
        p, record = resolve_coverage_params(Settings(_env_file=None), AdaptiveSignals(), adaptive=False)

        assert (p.passes, p.max_concepts, p.per_file, p.max_chars) == (1, 180, 6, 700)
        assert p.max_total == 45000
        assert p.max_rounds == 1
        assert record.params["CONCEPT_GRAPH_COVERAGE_PASSES"] == {"actual": 1, "ceiling": 0}

    def test_adaptive_scales_with_signals(self):
        signals = AdaptiveSignals(file_count=1, page_count=100, content_type="mixed").finalize()

        p, _ = resolve_coverage_params(Settings(_env_file=None), signals, adaptive=True)

        assert p.max_concepts == 40
        assert p.per_file == 6
        assert p.max_chars == 630
        assert p.max_total == 25000

    def test_overrides_ignore_zero(self):
        p, _ = resolve_coverage_params(
            Settings(_env_file=None), AdaptiveSignals(), adaptive=False, overrides={"passes": 3, "max_concepts": 0}
        )

        assert p.passes == 3
        assert p.max_concepts == 180


class TestSectionSweep:
    """Undercovered sections."""

    def test_undercovered(self):
        big = [make_chunk(f"a{i}", index=i, meta={"section_path": "A"}) for i in range(12)]
        small = [make_chunk(f"b{i}", index=i, meta={"section_path": "B"}) for i in range(3)]
        sections = collect_section_chunks(big + small + [make_chunk("loose")])
        chunk_by_id = {c.id: c for c in big + small}
        concepts = [ConceptItem("x", "X", citations=[str(big[0].id), str(small[0].id)])]

        assert list(sections) == ["A", "B"]
        assert undercovered_sections(sections, concepts, chunk_by_id) == ["A"]

    def test_sweep_tasks_mark_chunks_seen(self):
        chunks = [make_chunk(f"text {i}", index=i, meta={"section_path": "A"}) for i in range(6)]
        sections = collect_section_chunks(chunks)
        seen = set()

        tasks = build_section_sweep_tasks(["A"], sections, seen, 2, 200, 5000, AdaptiveSignals())

        assert len(tasks) == 1
        assert tasks[0].label == "section_sweep"
        assert len(tasks[0].candidate_ids) == 2
        assert seen == set(tasks[0].candidate_ids)


class TestCoverageEngine:
    """Coverage rounds end to end."""

    @pytest.fixture
    def inp(self):
        file_id = uuid4()
        chunks = [make_chunk(f"Chunk {i} about limits and series.", file_id, i) for i in range(30)]
        return CoverageInput(
            path_id=uuid4(),
            material_set_id=uuid4(),
            chunks_namespace="",
            intent_md="Calculus",
            chunks=chunks,
            concepts=[ConceptItem("limits", "Limits"), ConceptItem("series", "Series"), ConceptItem("sums", "Sums")],
            initial_coverage=Coverage(confidence=0.5, missing_topics=["limits", "series"]),
        )

    @pytest.mark.asyncio
    async def test_stalls_after_two_rounds(self, inp):
        """One new concept per round with unchanged missing topics stalls at round 2."""
        llm = FakeLLM({"concept_inventory_delta": [delta_reply(1, ["Series", "limits"])]})

        result = await CoverageEngine(llm).complete(inp, params())

        assert result.rounds == 2
        assert result.added == 2
        assert len(llm.calls) == 2
        assert {c.key for c in result.concepts} >= {"new_1_0", "new_2_0"}

    @pytest.mark.asyncio
    async def test_progress_continues_until_rounds_run_out(self, inp):
        llm = FakeLLM({"concept_inventory_delta": [delta_reply(3, ["limits"])]})

        result = await CoverageEngine(llm).complete(inp, params(max_rounds=4))

        assert result.rounds == 4
        assert result.added == 12
        assert result.missing_topics == ["limits"]

    @pytest.mark.asyncio
    async def test_stops_when_no_topics_remain(self, inp):
        llm = FakeLLM({"concept_inventory_delta": [delta_reply(3, [])]})

        result = await CoverageEngine(llm).complete(inp, params())

        assert result.rounds == 1
        assert result.added == 3

    @pytest.mark.asyncio
    async def test_concept_cap_stops_before_calling(self, inp):
        llm = FakeLLM()

        result = await CoverageEngine(llm).complete(inp, params(max_concepts=3))

        assert llm.calls == []
        assert result.concepts == inp.concepts

    @pytest.mark.asyncio
    async def test_failed_delta_adds_nothing(self, inp):
        llm = FakeLLM({"concept_inventory_delta": [RuntimeError("boom")]})

        result = await CoverageEngine(llm).complete(inp, params())

        assert result.added == 0
        assert [c.key for c in result.concepts] == ["limits", "series", "sums"]

    @pytest.mark.asyncio
    async def test_empty_inventory_is_returned_untouched(self, inp):
        inp.concepts = []

        result = await CoverageEngine(FakeLLM()).complete(inp, params())

        assert result.rounds == 0
        assert result.concepts == []

    @pytest.mark.asyncio
    async def test_excerpts_only_use_unseen_chunks(self, inp):
        """Chunks rendered in the initial inventory are never sent again."""
        inp.initial_chunk_ids = [c.id for c in inp.chunks[:29]]
        llm = FakeLLM({"concept_inventory_delta": [delta_reply(3, ["limits"])]})

        await CoverageEngine(llm).complete(inp, params())

        assert len(llm.calls) == 1
        assert f"[chunk_id={inp.chunks[29].id}]" in llm.calls[0]["user"]
        assert f"[chunk_id={inp.chunks[0].id}]" not in llm.calls[0]["user"]
