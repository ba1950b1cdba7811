"""
Unit tests for excerpt rendering, formula extraction and the section graph.
"""
import json
from uuid import UUID

import pytest

from src.pipeline.errors import LLMError
from src.pipeline.excerpts import (
    build_activity_excerpts,
    build_stratified_excerpts,
    enriched_chunk_line,
    group_chunks_by_file,
    render_excerpts_by_ids,
    stratified_indices,
)
from src.pipeline.formulas import (
    apply_formula_updates,
    collect_formula_candidates,
    detect_formula_candidates,
    extract_formulas,
    parse_formula_extraction,
)
from src.pipeline.section_graph import (
    SectionNode,
    build_cross_doc_section_graph,
    group_sections,
    link_sections,
    render_section_graph,
)
from tests.conftest import FakeLLM, make_chunk, make_file

FILE_A = UUID(int=1)
FILE_B = UUID(int=2)


# ========================================
# Excerpts
# ========================================


class TestStratifiedExcerpts:
    """Evenly spaced per-file excerpts under budgets."""

    @pytest.mark.parametrize(
        "n,k,expected",
        [(10, 3, [0, 3, 6]), (4, 10, [0, 1, 2, 3]), (5, 1, [0]), (0, 3, []), (3, 0, [])],
    )
    def test_indices(self, n, k, expected):
        assert stratified_indices(n, k) == expected

    def test_groups_skip_unusable_chunks(self):
        chunks = [
            make_chunk("b", FILE_A, 2),
            make_chunk("a", FILE_A, 1),
            make_chunk("  ", FILE_A, 3),
            make_chunk("No extractable text", FILE_B, 0),
        ]

        groups = group_chunks_by_file(chunks)

        assert list(groups) == [FILE_A]
        assert [c.text for c in groups[FILE_A]] == ["a", "b"]

    def test_files_separated_and_ids_in_render_order(self):
        a = [make_chunk(f"a{i}", FILE_A, i) for i in range(4)]
        b = [make_chunk(f"b{i}", FILE_B, i) for i in range(2)]

        text, ids = build_stratified_excerpts(b + a, per_file=2)

        assert ids == [a[0].id, a[2].id, b[0].id, b[1].id]
        assert "\n\n" in text
        assert text.startswith(f"[chunk_id={a[0].id}] a0")

    def test_line_budget_spans_files(self):
        a = [make_chunk(f"a{i}", FILE_A, i) for i in range(4)]
        b = [make_chunk(f"b{i}", FILE_B, i) for i in range(4)]

        _, ids = build_stratified_excerpts(a + b, per_file=2, max_lines=3)

        assert ids == [a[0].id, a[2].id, b[0].id]

    def test_char_budget_stops_at_first_overflow(self):
        chunks = [make_chunk("x" * 50, FILE_A, i) for i in range(4)]
        one_line = len(f"[chunk_id={chunks[0].id}] " + "x" * 50) + 1

        _, ids = build_stratified_excerpts(chunks, per_file=4, max_total_chars=one_line * 2 + 5)

        assert ids == [chunks[0].id, chunks[1].id]

    def test_file_order(self):
        a = make_chunk("a", FILE_A)
        b = make_chunk("b", FILE_B)

        _, ids = build_stratified_excerpts([a, b], file_order=[FILE_B, FILE_A])

        assert ids == [b.id, a.id]

    def test_enriched_line(self):
        ch = make_chunk(
            "Energy relation",
            meta={"section_path": "Ch 1 > Energy", "formula_latex": ["E=mc^2"], "table_json": {"rows": [[1, 2]]}},
        )

        line = enriched_chunk_line(ch, 700)

        assert line.startswith(f"[chunk_id={ch.id}] [section=Ch 1 > Energy] Energy relation")
        assert "| formulas: E=mc^2" in line
        assert '| table: {"rows": [[1, 2]]}' in line

    def test_plain_rendering(self):
        ch = make_chunk("text", meta={"section_path": "S"})

        text, _ = build_stratified_excerpts([ch], enriched=False)

        assert text == f"[chunk_id={ch.id}] text"


class TestExcerptsById:
    def test_order_dedupe_and_budget(self):
        a, b, c = (make_chunk(t) for t in ("alpha", "beta", "gamma"))
        by_id = {ch.id: ch for ch in (a, b, c)}

        text, ids = render_excerpts_by_ids(by_id, [b.id, b.id, None, a.id, c.id])

        assert ids == [b.id, a.id, c.id]
        assert text.splitlines()[0] == f"[chunk_id={b.id}] beta"

    def test_activity_excerpts_line_cap(self):
        chunks = [make_chunk(f"line {i}") for i in range(5)]
        by_id = {ch.id: ch for ch in chunks}

        text = build_activity_excerpts(by_id, [ch.id for ch in chunks], max_lines=2)

        assert text.count("\n") == 1
        assert "line 0" in text and "line 1" in text


# ========================================
# Formulas
# ========================================


class TestFormulaCandidates:
    """Formula-looking lines."""

    def test_detects_formula_lines(self):
        text = "Intro sentence.\nE = mc^2\nx ≤ 5\nE = mc^2\n\\frac{a}{b}\nplain words"

        assert detect_formula_candidates(text) == ["E = mc^2", "x ≤ 5", "\\frac{a}{b}"]

    def test_at_most_six(self):
        text = "\n".join(f"x{i} = {i}" for i in range(10))

        assert len(detect_formula_candidates(text)) == 6

    def test_collect_respects_allowlist(self):
        keep = make_chunk("a = b + c")
        other = make_chunk("y = 2x")
        prose = make_chunk("nothing here")

        out = collect_formula_candidates([keep, other, prose], {str(keep.id)})

        assert [c["chunk_id"] for c in out] == [str(keep.id)]
        assert out[0]["candidates"] == ["a = b + c"]

    def test_parse_drops_empty_items(self):
        obj = {
            "items": [
                {"chunk_id": "c1", "formulas": [{"latex": "a=b", "symbolic": "Eq(a, b)"}, {"latex": "a=b", "symbolic": ""}]},
                {"chunk_id": "c2", "formulas": [{"latex": " ", "symbolic": ""}]},
                {"chunk_id": "", "formulas": [{"latex": "x"}]},
                "junk",
            ]
        }

        assert parse_formula_extraction(obj) == {"c1": {"formula_latex": ["a=b"], "formula_symbolic": ["Eq(a, b)"]}}


class TestExtractFormulas:
    @pytest.mark.asyncio
    async def test_updates_only_known_chunks(self):
        ch = make_chunk("F = ma")
        llm = FakeLLM(
            {
                "formula_extraction": [
                    {
                        "items": [
                            {"chunk_id": str(ch.id), "formulas": [{"latex": "F = ma", "symbolic": "Eq(F, m*a)"}]},
                            {"chunk_id": "ghost", "formulas": [{"latex": "x", "symbolic": ""}]},
                        ]
                    }
                ]
            }
        )

        updates = await extract_formulas(llm, [ch])
        applied = apply_formula_updates([ch], updates)

        assert list(updates) == [str(ch.id)]
        assert applied == 1
        assert ch.meta["formula_symbolic"] == ["Eq(F, m*a)"]
        assert f'"chunk_id": "{ch.id}"' in llm.calls[0]["user"]

    @pytest.mark.asyncio
    async def test_failed_batch_is_skipped(self):
        llm = FakeLLM({"formula_extraction": [LLMError("quota")]})

        assert await extract_formulas(llm, [make_chunk("a = b")]) == {}

    @pytest.mark.asyncio
    async def test_no_candidates_no_call(self):
        llm = FakeLLM()

        assert await extract_formulas(llm, [make_chunk("prose only")]) == {}
        assert llm.calls == []


# ========================================
# Section graph
# ========================================


class TestSectionGraph:
    """Sections and cross-file links."""

    def test_group_sections(self):
        files = [make_file("a.pdf", file_id=FILE_A)]
        chunks = [
            make_chunk("second", FILE_A, 2, meta={"section_path": "1", "section_title": "Intro"}),
            make_chunk("first", FILE_A, 1, meta={"section_path": "1", "section_depth": 2}),
            make_chunk("loose", FILE_A, 0),
        ]

        sections = group_sections(files, chunks)

        assert [s.id for s in sections] == [f"{FILE_A}|", f"{FILE_A}|1"]
        assert sections[0].title == "Document"
        intro = sections[1]
        assert (intro.title, intro.depth, intro.file_name) == ("Intro", 2, "a.pdf")
        assert intro.summary == "first\nsecond"
        assert intro.vector is None

    def test_mean_vector_needs_three_embeddings(self):
        chunks = [make_chunk(str(i), FILE_A, i, embedding=[1.0, float(i)]) for i in range(3)]

        (section,) = group_sections([], chunks)

        assert section.vector == [1.0, 1.0]

    def test_links_only_across_files(self):
        a1 = SectionNode("a|1", FILE_A, vector=[1.0, 0.0])
        a2 = SectionNode("a|2", FILE_A, vector=[1.0, 0.0])
        b1 = SectionNode("b|1", FILE_B, vector=[1.0, 0.1])
        b2 = SectionNode("b|2", FILE_B, vector=[0.0, 1.0])

        edges = link_sections([a1, a2, b1, b2], 0.9, 3)

        assert {(e.from_id, e.to_id) for e in edges} == {("a|1", "b|1"), ("a|2", "b|1"), ("b|1", "a|1"), ("b|1", "a|2")}

    def test_render_empty_without_edges(self):
        assert render_section_graph([SectionNode("a|", FILE_A)], []) == ""

    @pytest.mark.asyncio
    async def test_summaries_embedded_when_chunks_lack_vectors(self):
        files = [make_file("a.pdf", file_id=FILE_A), make_file("b.pdf", file_id=FILE_B)]
        chunks = [make_chunk("Vectors have size", FILE_A), make_chunk("Vectors point", FILE_B)]
        llm = FakeLLM()

        graph, sections = await build_cross_doc_section_graph(llm, files, chunks, min_score=0.0)

        assert len(llm.embed_calls) == 1
        assert all(s.vector for s in sections)
        payload = json.loads(graph)
        assert len(payload["sections"]) == 2
        assert len(payload["edges"]) == 2

    @pytest.mark.asyncio
    async def test_no_input(self):
        assert await build_cross_doc_section_graph(FakeLLM(), [], []) == ("", [])
