"""
Unit tests for PSU promotion.

Pure decision helpers are tested directly; the stage runs against an
in-memory store patched in place of the repositories.
"""
import json
from contextlib import contextmanager
from types import SimpleNamespace
from uuid import uuid4

import pytest

from config import Settings
from src.pipeline import psu_promotion
from src.pipeline.errors import MissingInputError
from src.pipeline.psu_promotion import (
    COMPOSES_EDGE,
    COMPOUND_KEY_PREFIX,
    DEMOTE,
    KEEP,
    PROMOTE,
    SKIP,
    PromotionThresholds,
    compound_label,
    group_structural_units,
    infer_misconception_signature,
    misconception_signature,
    promotion_decision,
    rank_candidates,
    signature_for_concept_ids,
)
from src.pipeline.stage import StageDeps, StageInput
from tests.conftest import FakeLLM, make_state


def psu(path_id, concept_ids):
    return SimpleNamespace(id=uuid4(), path_id=path_id, derived_canonical_concept_ids=[str(c) for c in concept_ids])


class TestSignature:
    """Order-independent concept-set signatures."""

    def test_permutations_share_a_signature(self):
        a, b, c = uuid4(), uuid4(), uuid4()

        sig = signature_for_concept_ids([a, b, c])

        assert sig == signature_for_concept_ids([c, a, b]) == signature_for_concept_ids([b, c, a])
        assert len(sig) == 64

    def test_empty_and_none(self):
        assert signature_for_concept_ids([]) == ""
        assert signature_for_concept_ids([None]) == ""

    def test_different_sets_differ(self):
        a, b = uuid4(), uuid4()

        assert signature_for_concept_ids([a]) != signature_for_concept_ids([a, b])


class TestPromotionDecision:
    """Promote/demote/keep/skip table."""

    @pytest.mark.parametrize(
        "active,mastery,confidence,miscon,expected",
        [
            (False, 0.9, 0.9, False, PROMOTE),
            (False, 0.80, 0.60, False, PROMOTE),
            (False, 0.79, 0.9, False, SKIP),
            (False, 0.9, 0.59, False, SKIP),
            (False, 0.9, 0.9, True, SKIP),
            (True, 0.9, 0.9, True, DEMOTE),
            (True, 0.64, 0.9, False, DEMOTE),
            (True, 0.9, 0.49, False, DEMOTE),
            (True, 0.65, 0.50, False, KEEP),
            (True, 0.9, 0.9, False, KEEP),
        ],
    )
    def test_decision(self, active, mastery, confidence, miscon, expected):
        assert promotion_decision(active, mastery, confidence, miscon) == expected

    def test_custom_thresholds(self):
        t = PromotionThresholds(promote_mastery=0.5, promote_confidence=0.5)

        assert promotion_decision(False, 0.55, 0.55, False, t) == PROMOTE


class TestMisconceptionSignature:
    """Structural misconception taxonomy."""

    @pytest.mark.parametrize(
        "polarity,scope,expected",
        [
            ("confusion", "anything", "frame_error"),
            ("confident_wrong", "explanation", "frame_error"),
            ("confident_wrong", "assertion", "frame_error"),
            ("confident_wrong", "question", "procedural_gap"),
            ("Confident_Wrong", " Attempt ", "procedural_gap"),
            ("confident_wrong", "", "frame_error"),
            ("", "", "unknown"),
            ("hesitant", "question", "unknown"),
        ],
    )
    def test_infer(self, polarity, scope, expected):
        assert infer_misconception_signature(polarity, scope) == expected

    def test_stored_signature_wins(self):
        m = SimpleNamespace(signature="frame_error", polarity="confident_wrong", scope="question")

        assert misconception_signature(m) == "frame_error"

    def test_unknown_signature_is_inferred(self):
        m = SimpleNamespace(signature="unknown", polarity="confident_wrong", scope="attempt")

        assert misconception_signature(m) == "procedural_gap"


class TestGrouping:
    """Grouping structural units by signature."""

    def test_groups_across_paths(self):
        a, b, c = uuid4(), uuid4(), uuid4()
        p1, p2 = uuid4(), uuid4()
        units = [psu(p1, [a, b]), psu(p2, [b, a]), psu(p2, [a, b, c]), psu(p1, [c])]

        groups = group_structural_units(units, min_concepts=2)

        assert len(groups) == 2
        pair = groups[signature_for_concept_ids([a, b])]
        assert pair.path_ids == {p1, p2}
        assert len(pair.psu_ids) == 2

    def test_rank_by_path_count(self):
        a, b, c = uuid4(), uuid4(), uuid4()
        units = [psu(uuid4(), [a, b]), psu(uuid4(), [a, b]), psu(uuid4(), [b, c])]
        groups = group_structural_units(units, min_concepts=2)

        ranked = rank_candidates(groups, max_candidates=5)

        assert ranked[0].signature == signature_for_concept_ids([a, b])
        assert len(rank_candidates(groups, max_candidates=1)) == 1

    def test_compound_label(self):
        name, summary = compound_label(["Vectors", "Angles", "Vectors", " "], max_members=8)

        assert name == "Angles + Vectors"
        assert summary == "Compound concept derived from: Angles, Vectors"
        assert compound_label([], 8)[0] == "Compound concept"


# ========================================
# Stage with an in-memory store
# ========================================


class MemoryStore:
    def __init__(self):
        self.path_ids = []
        self.psus = []
        self.concepts = {}
        self.states = {}
        self.misconceptions = []
        self.edges = {}

    def add_concept(self, key, name):
        row = SimpleNamespace(id=uuid4(), key=key, name=name, canonical_concept_id=None, meta={})
        self.concepts[row.id] = row
        return row


class MemorySession:
    def __init__(self, store):
        self.store = store

    def flush(self):
        pass


class MemoryPathRepository:
    def __init__(self, session):
        self.store = session.store

    def ids_for_owner(self, owner_user_id):
        return list(self.store.path_ids)


class MemoryLearnerRepository:
    def __init__(self, session):
        self.store = session.store

    def structural_units(self, path_ids, since):
        ids = set(path_ids)
        return [p for p in self.store.psus if p.path_id in ids]

    def concept_states(self, user_id, concept_ids):
        return {cid: self.store.states[(user_id, cid)] for cid in concept_ids if (user_id, cid) in self.store.states}

    def active_misconceptions(self, user_id, canonical_ids):
        ids = set(canonical_ids)
        return [m for m in self.store.misconceptions if m.canonical_concept_id in ids]

    def upsert_concept_state(self, user_id, concept_id, mastery, confidence, last_seen_at):
        self.store.states[(user_id, concept_id)] = make_state(mastery, confidence, last_seen_at=last_seen_at)


class MemoryConceptRepository:
    def __init__(self, session):
        self.store = session.store

    def get_by_ids(self, ids):
        return [self.store.concepts[i] for i in ids if i in self.store.concepts]

    def global_by_keys(self, keys):
        wanted = set(keys)
        return [c for c in self.store.concepts.values() if c.key in wanted]

    def insert_global_ignore(self, row):
        if any(c.key == row["key"] for c in self.store.concepts.values()):
            return
        self.store.concepts[row["id"]] = SimpleNamespace(
            id=row["id"],
            key=row["key"],
            name=row["name"],
            summary=row["summary"],
            canonical_concept_id=row["canonical_id"],
            meta=json.loads(row["metadata"]),
        )

    def upsert_edge(self, row):
        self.store.edges[row["id"]] = row


class TestPSUPromoterStage:
    """The stage end to end against the in-memory store."""

    @pytest.fixture
    def store(self, monkeypatch):
        store = MemoryStore()
        monkeypatch.setattr(psu_promotion, "PathRepository", MemoryPathRepository)
        monkeypatch.setattr(psu_promotion, "LearnerRepository", MemoryLearnerRepository)
        monkeypatch.setattr(psu_promotion, "ConceptRepository", MemoryConceptRepository)
        return store

    @pytest.fixture
    def user_id(self):
        return uuid4()

    @pytest.fixture
    def members(self, store):
        """Two global concepts seen together on two paths."""
        alpha = store.add_concept("vectors", "Vectors")
        beta = store.add_concept("angles", "Angles")
        p1, p2 = uuid4(), uuid4()
        store.path_ids = [p1, p2]
        store.psus = [psu(p1, [alpha.id, beta.id]), psu(p2, [beta.id, alpha.id])]
        return alpha, beta

    def deps(self, store, llm=None, **overrides):
        @contextmanager
        def factory():
            yield MemorySession(store)

        settings = Settings(_env_file=None, psu_promotion_enabled=True, **overrides)
        return StageDeps(llm=llm, session_factory=factory, settings=settings)

    def compound(self, store, members):
        key = COMPOUND_KEY_PREFIX + signature_for_concept_ids([m.id for m in members])
        rows = [c for c in store.concepts.values() if c.key == key]
        return rows[0] if rows else None

    @pytest.mark.asyncio
    async def test_requires_owner(self, store):
        with pytest.raises(MissingInputError):
            await psu_promotion.run(self.deps(store), StageInput(None, None, None))

    @pytest.mark.asyncio
    async def test_disabled_does_nothing(self, store, members, user_id):
        deps = self.deps(store)
        deps.settings = Settings(_env_file=None, psu_promotion_enabled=False)

        out = await psu_promotion.run(deps, StageInput(user_id, None, None))

        assert out.to_dict() == {
            "user_id": str(user_id),
            "candidates": 0,
            "considered": 0,
            "promoted": 0,
            "demoted": 0,
        }
        assert self.compound(store, members) is None

    @pytest.mark.asyncio
    async def test_promotes_mastered_group(self, store, members, user_id):
        """Mastered members on two paths create the compound, its state and composes edges."""
        alpha, beta = members
        store.states[(user_id, alpha.id)] = make_state(0.9, 0.9)
        store.states[(user_id, beta.id)] = make_state(0.95, 0.85)

        out = await psu_promotion.run(self.deps(store), StageInput(user_id, None, None))

        assert (out.candidates, out.considered, out.promoted, out.demoted) == (1, 1, 1, 0)
        compound = self.compound(store, members)
        assert compound.name == "Angles + Vectors"
        assert compound.meta["kind"] == "compound"
        assert compound.meta["member_concepts"] == sorted([str(alpha.id), str(beta.id)])
        state = store.states[(user_id, compound.id)]
        assert (state.mastery, state.confidence) == (0.9, 0.85)
        edges = list(store.edges.values())
        assert {e["to_id"] for e in edges} == {alpha.id, beta.id}
        assert all(e["from_id"] == compound.id and e["edge_type"] == COMPOSES_EDGE for e in edges)
        assert all(e["strength"] == 0.85 for e in edges)

    @pytest.mark.asyncio
    async def test_rerun_keeps_and_is_idempotent(self, store, members, user_id):
        alpha, beta = members
        store.states[(user_id, alpha.id)] = make_state(0.9, 0.9)
        store.states[(user_id, beta.id)] = make_state(0.9, 0.9)
        deps = self.deps(store)
        await psu_promotion.run(deps, StageInput(user_id, None, None))
        concept_count, edge_count = len(store.concepts), len(store.edges)

        out = await psu_promotion.run(deps, StageInput(user_id, None, None))

        assert (out.promoted, out.demoted) == (0, 0)
        assert len(store.concepts) == concept_count
        assert len(store.edges) == edge_count

    @pytest.mark.asyncio
    async def test_misconception_demotes_active_compound(self, store, members, user_id):
        """An active misconception on a member caps the compound state at the demote thresholds."""
        alpha, beta = members
        store.states[(user_id, alpha.id)] = make_state(0.9, 0.9)
        store.states[(user_id, beta.id)] = make_state(0.9, 0.9)
        deps = self.deps(store)
        await psu_promotion.run(deps, StageInput(user_id, None, None))
        store.misconceptions.append(
            SimpleNamespace(canonical_concept_id=alpha.id, signature="", polarity="confident_wrong", scope="question")
        )

        out = await psu_promotion.run(deps, StageInput(user_id, None, None))

        assert out.demoted == 1
        compound = self.compound(store, members)
        state = store.states[(user_id, compound.id)]
        assert (state.mastery, state.confidence) == (0.65, 0.50)
        evidence = [json.loads(e["evidence"]) for e in store.edges.values() if e["to_id"] == alpha.id]
        assert evidence[0]["misconception_signature"] == "procedural_gap"

    @pytest.mark.asyncio
    async def test_misconception_blocks_promotion(self, store, members, user_id):
        alpha, beta = members
        store.states[(user_id, alpha.id)] = make_state(0.9, 0.9)
        store.states[(user_id, beta.id)] = make_state(0.9, 0.9)
        store.misconceptions.append(
            SimpleNamespace(canonical_concept_id=beta.id, signature="frame_error", polarity="", scope="")
        )

        out = await psu_promotion.run(self.deps(store), StageInput(user_id, None, None))

        assert out.considered == 1
        assert out.promoted == 0
        assert self.compound(store, members) is None
        assert store.edges == {}

    @pytest.mark.asyncio
    async def test_member_without_state_blocks_promotion(self, store, members, user_id):
        alpha, _ = members
        store.states[(user_id, alpha.id)] = make_state(0.99, 0.99)

        out = await psu_promotion.run(self.deps(store), StageInput(user_id, None, None))

        assert out.promoted == 0

    @pytest.mark.asyncio
    async def test_single_path_needs_template(self, store, members, user_id):
        """A group seen on one path is only considered when its signature is a template."""
        alpha, beta = members
        store.psus = store.psus[:1]
        store.states[(user_id, alpha.id)] = make_state(0.9, 0.9)
        store.states[(user_id, beta.id)] = make_state(0.9, 0.9)

        out = await psu_promotion.run(self.deps(store), StageInput(user_id, None, None))
        assert (out.candidates, out.considered) == (1, 0)

        sig = signature_for_concept_ids([alpha.id, beta.id])
        deps = self.deps(store, psu_promotion_template_signatures=sig)
        out = await psu_promotion.run(deps, StageInput(user_id, None, None))
        assert (out.considered, out.promoted) == (1, 1)

    @pytest.mark.asyncio
    async def test_llm_label(self, store, members, user_id):
        alpha, beta = members
        store.states[(user_id, alpha.id)] = make_state(0.9, 0.9)
        store.states[(user_id, beta.id)] = make_state(0.9, 0.9)
        llm = FakeLLM({"compound_concept_label": [{"name": "Vector geometry", "summary": "Angles between vectors."}]})

        await psu_promotion.run(self.deps(store, llm=llm, psu_promotion_use_llm=True), StageInput(user_id, None, None))

        compound = self.compound(store, members)
        assert compound.name == "Vector geometry"
        assert compound.summary == "Angles between vectors."
        assert "MEMBER_CONCEPTS:\nAngles, Vectors" in llm.calls[0]["user"]

    @pytest.mark.asyncio
    async def test_llm_label_failure_falls_back(self, store, members, user_id):
        alpha, beta = members
        store.states[(user_id, alpha.id)] = make_state(0.9, 0.9)
        store.states[(user_id, beta.id)] = make_state(0.9, 0.9)
        llm = FakeLLM({"compound_concept_label": [RuntimeError("quota")]})

        out = await psu_promotion.run(
            self.deps(store, llm=llm, psu_promotion_use_llm=True), StageInput(user_id, None, None)
        )

        assert out.promoted == 1
        assert self.compound(store, members).name == "Angles + Vectors"
