"""
Unit tests for canonical concept identity.
"""
import json
from contextlib import contextmanager
from types import SimpleNamespace
from uuid import uuid4

import pytest

from config import Settings
from src.integrations.vector_store import VectorMatch
from src.pipeline import canonicalize
from src.pipeline.adaptive import AdaptiveSignals
from src.pipeline.canonicalize import (
    SemanticMatchParams,
    best_semantic_match,
    canonicalize_path_concepts,
    concept_id_from_vector_id,
    global_roots_by_key,
    resolve_semantic_match_params,
    semantic_match_canonical_concepts,
)
from src.pipeline.inventory import ConceptItem
from tests.conftest import FakeVectorStore, make_concept


class TestBestSemanticMatch:
    """Score and gap thresholds with deterministic ties."""

    def test_clear_winner(self):
        a, b = uuid4(), uuid4()
        matches = [VectorMatch(f"concept:{b}", 0.90), VectorMatch(f"concept:{a}", 0.95)]

        assert best_semantic_match(matches, 0.885, 0.02) == a

    def test_below_min_score(self):
        assert best_semantic_match([VectorMatch(str(uuid4()), 0.80)], 0.885, 0.02) is None

    def test_gap_too_small(self):
        matches = [VectorMatch(str(uuid4()), 0.95), VectorMatch(str(uuid4()), 0.94)]

        assert best_semantic_match(matches, 0.885, 0.02) is None

    def test_equal_scores_resolve_by_id(self):
        """With no gap required, the lexically smallest ID wins regardless of input order."""
        a, b = sorted([uuid4(), uuid4()], key=str)
        forward = [VectorMatch(str(a), 0.95), VectorMatch(str(b), 0.95)]

        assert best_semantic_match(forward, 0.9, 0.0) == a
        assert best_semantic_match(list(reversed(forward)), 0.9, 0.0) == a

    def test_empty(self):
        assert best_semantic_match([], 0.5, 0.0) is None

    def test_vector_id_prefix(self):
        u = uuid4()

        assert concept_id_from_vector_id(f"concept:{u}") == u
        assert concept_id_from_vector_id(str(u)) == u
        assert concept_id_from_vector_id("activity_variant:x") is None


class TestParams:
    def test_defaults(self):
        p = resolve_semantic_match_params(Settings(_env_file=None), AdaptiveSignals(), adaptive=False)

        assert (p.min_score, p.min_gap, p.top_k, p.concurrency, p.timeout) == (0.885, 0.02, 6, 32, 2.5)

    def test_adaptive_slides(self):
        signals = AdaptiveSignals(content_type="slides", concept_count=50)

        p = resolve_semantic_match_params(Settings(_env_file=None), signals, adaptive=True)

        assert p.min_score == pytest.approx(0.845)
        assert p.min_gap == pytest.approx(0.03)
        assert p.top_k == 4


def test_global_roots_follow_redirects():
    root = uuid4()
    rows = [
        SimpleNamespace(id=root, key="Vector", canonical_concept_id=None),
        SimpleNamespace(id=uuid4(), key="vectors", canonical_concept_id=root),
    ]

    assert global_roots_by_key(rows) == {"vector": root, "vectors": root}


# ========================================
# In-memory concept store
# ========================================


class ConceptStore:
    def __init__(self):
        self.rows = {}
        self.inserted = []

    def add_global(self, key, canonical=None):
        row = SimpleNamespace(id=uuid4(), key=key, name=key, scope="global", canonical_concept_id=canonical, meta={})
        self.rows[row.id] = row
        return row


class MemoryConceptRepository:
    def __init__(self, session):
        self.store = session.store

    def global_by_keys(self, keys):
        wanted = set(keys)
        return [r for r in self.store.rows.values() if r.scope == "global" and r.key in wanted]

    def get_by_ids(self, ids):
        return [self.store.rows[i] for i in ids if i in self.store.rows]

    def insert_global_ignore(self, row):
        if self.global_by_keys([row["key"]]):
            return
        self.store.inserted.append(row)
        self.store.rows[row["id"]] = SimpleNamespace(
            id=row["id"],
            key=row["key"],
            name=row["name"],
            scope="global",
            canonical_concept_id=row["canonical_id"],
            meta=json.loads(row["metadata"]),
        )

    def set_canonical(self, concept_id, canonical_id):
        if concept_id in self.store.rows:
            self.store.rows[concept_id].canonical_concept_id = canonical_id


class MemorySession:
    def __init__(self, store):
        self.store = store

    def flush(self):
        pass


@pytest.fixture
def store(monkeypatch):
    monkeypatch.setattr(canonicalize, "ConceptRepository", MemoryConceptRepository)
    return ConceptStore()


class TestCanonicalizePathConcepts:
    """Linking path concepts to global concepts."""

    def test_links_existing_and_creates_missing(self, store):
        existing = store.add_global("vectors")
        path = [make_concept("vectors"), make_concept("Angles", meta={"aliases": ["angle"]})]

        out = canonicalize_path_concepts(MemorySession(store), path)

        assert out["vectors"] == existing.id
        created = store.inserted[0]
        assert created["key"] == "angles"
        assert created["canonical_id"] is None
        assert json.loads(created["metadata"]) == {"source": "canonicalize", "aliases": ["angle"]}
        assert out["angles"] == created["id"]
        assert [c.canonical_concept_id for c in path] == [existing.id, created["id"]]

    def test_alias_rows_resolve_to_root(self, store):
        root = store.add_global("vector")
        store.add_global("vectors", canonical=root.id)
        path = [make_concept("vectors")]

        out = canonicalize_path_concepts(MemorySession(store), path)

        assert out == {"vectors": root.id}
        assert path[0].canonical_concept_id == root.id

    def test_semantic_match_creates_alias_row(self, store):
        root = store.add_global("vector")
        path = [make_concept("arrows")]

        out = canonicalize_path_concepts(MemorySession(store), path, {"arrows": root.id})

        created = store.inserted[0]
        assert created["canonical_id"] == root.id
        assert json.loads(created["metadata"])["alias_for"] == str(root.id)
        assert out == {"arrows": root.id}
        assert path[0].canonical_concept_id == root.id

    def test_repeat_is_stable(self, store):
        path = [make_concept("norms")]
        first = canonicalize_path_concepts(MemorySession(store), path)

        second = canonicalize_path_concepts(MemorySession(store), [make_concept("norms")])

        assert first == second
        assert len(store.inserted) == 1

    def test_no_keys(self, store):
        assert canonicalize_path_concepts(MemorySession(store), [make_concept("")]) == {}


class TestSemanticMatching:
    """Vector proposals for keys with no global row."""

    def factory(self, store):
        @contextmanager
        def session_factory():
            yield MemorySession(store)

        return session_factory

    @pytest.mark.asyncio
    async def test_existing_alias_and_vector_matches(self, store):
        store.add_global("vectors")
        arrows_root = store.add_global("arrow")
        target = store.add_global("matrix")
        vec = FakeVectorStore(matches=[(f"concept:{target.id}", 0.97), (str(uuid4()), 0.5)])
        concepts = [
            ConceptItem("vectors", "Vectors"),
            ConceptItem("arrows", "Arrows", aliases=["Arrow"]),
            ConceptItem("matrices", "Matrices"),
        ]

        out = await semantic_match_canonical_concepts(
            self.factory(store), vec, concepts, [[1.0, 0.0]] * 3, SemanticMatchParams()
        )

        assert out == {"arrows": arrows_root.id, "matrices": target.id}
        assert len(vec.queries) == 1

    @pytest.mark.asyncio
    async def test_matches_follow_redirects(self, store):
        root = store.add_global("matrix")
        alias = store.add_global("matrix_alias", canonical=root.id)
        vec = FakeVectorStore(matches=[(f"concept:{alias.id}", 0.99)])

        out = await semantic_match_canonical_concepts(
            self.factory(store), vec, [ConceptItem("matrices", "Matrices")], [[1.0]], SemanticMatchParams()
        )

        assert out == {"matrices": root.id}

    @pytest.mark.asyncio
    async def test_no_vector_store(self, store):
        out = await semantic_match_canonical_concepts(
            self.factory(store), None, [ConceptItem("a", "A")], [[1.0]], SemanticMatchParams()
        )

        assert out == {}

    @pytest.mark.asyncio
    async def test_query_failure_is_no_match(self, store):
        class BrokenStore(FakeVectorStore):
            async def query_matches(self, namespace, embedding, top_k, filter=None):
                raise RuntimeError("index offline")

        progress = []
        out = await semantic_match_canonical_concepts(
            self.factory(store),
            BrokenStore(),
            [ConceptItem("a", "A")],
            [[1.0]],
            SemanticMatchParams(),
            progress=lambda done, total: progress.append((done, total)),
        )

        assert out == {}
        assert progress == [(1, 1)]
