"""
Stage-level tests for the concept graph patch.

An existing two-concept graph (vectors, matrices) is patched against a
three-chunk corpus using a MemoryGraphStore and the scripted fakes.
"""
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from config import Settings
from src.db.models import Concept
from src.integrations.vector_store import path_concepts_namespace
from src.pipeline import concept_graph, concept_graph_patch
from src.pipeline.adaptive import signals_from_corpus
from src.pipeline.concept_graph import GraphInputs
from src.pipeline.concept_graph_patch import ConceptGraphPatcher, patch_input_hash
from src.pipeline.stage import PathContext, StageDeps, StageInput
from tests.conftest import (
    FakeLLM,
    FakeVectorStore,
    MemoryConceptRepository,
    MemoryGraphStore,
    make_chunk,
    make_file,
)

OWNER_ID = UUID("00000000-0000-0000-0000-0000000000a1")
MATERIAL_SET_ID = UUID("00000000-0000-0000-0000-0000000000b2")
SAGA_ID = UUID("00000000-0000-0000-0000-0000000000c3")
PATH_ID = UUID("00000000-0000-0000-0000-0000000000d4")
FILE_ID = UUID(int=7)
CHUNK_IDS = [UUID(int=101), UUID(int=102), UUID(int=103)]

TEXTS = [
    "A vector has a magnitude and a direction; vectors add tip to tail.",
    "A matrix is a rectangular array of numbers that acts on vectors.",
    "The determinant of a square matrix is zero exactly when it is singular.",
]


class DuplicateKey(Exception):
    pgcode = "23505"


def corpus():
    f = make_file(
        "linear_algebra.pdf",
        file_id=FILE_ID,
        updated_at=None,
        extracted_at=None,
        size_bytes=2048,
        storage_key="materials/linear_algebra.pdf",
        status="extracted",
    )
    chunks = [
        make_chunk(text, FILE_ID, i, embedding=[1.0, float(i), 0.5, 0.0], page=i + 1, chunk_id=CHUNK_IDS[i])
        for i, text in enumerate(TEXTS)
    ]
    return [f], chunks


def path_row(key):
    cid = uuid4()
    return Concept(
        id=cid,
        scope="path",
        scope_id=PATH_ID,
        key=key,
        name=key.title(),
        summary=f"{key.title()} in linear algebra",
        key_points=[],
        depth=0,
        sort_index=2,
        vector_id=f"concept:{cid}",
        meta={"aliases": [], "importance": 2},
    )


def delta_reply(confidence, *new):
    return {
        "coverage": {"confidence": confidence, "missing_topics_suspected": ["determinants"] if new else []},
        "new_concepts": [
            {
                "key": key,
                "name": key.title(),
                "summary": f"{key.title()} of a square matrix",
                "citations": [str(CHUNK_IDS[2])],
            }
            for key in new
        ],
    }


def patch_llm(first_pass, edges=None, assumed=None):
    return FakeLLM(
        {
            "concept_inventory_delta": [first_pass, {"new_concepts": []}],
            "assumed_knowledge": [assumed if assumed is not None else {"assumed_concepts": []}],
            "concept_edges": [{"edges": edges or []}],
        }
    )


def prereq(from_key, to_key):
    return {"from_key": from_key, "to_key": to_key, "edge_type": "prereq", "strength": 0.8}


def patcher(llm, store, vector_store=None, **overrides):
    values = {
        "adaptive_params_enabled": False,
        "canonical_concept_semantic_enabled": False,
        "concept_graph_pinecone_batch_size": 2,
    }
    values.update(overrides)
    deps = StageDeps(
        llm=llm,
        vector_store=vector_store,
        session_factory=store.session_factory,
        settings=Settings(_env_file=None, **values),
    )
    return ConceptGraphPatcher(deps, StageInput(OWNER_ID, MATERIAL_SET_ID, SAGA_ID))


@pytest.fixture
def store(monkeypatch):
    """
    Graph store wired into the patch module (and the shared writer).

    Keys listed in ``store.unseen_keys`` are present in the store but missing
    from the inputs the patch reads, as if another run wrote them meanwhile.
    """
    store = MemoryGraphStore([path_row("vectors"), path_row("matrices")])
    store.unseen_keys = set()
    files, chunks = corpus()

    async def resolve(deps, inp):
        return PATH_ID

    def load(session, material_set_id, path_id, stage, adaptive):
        existing = MemoryConceptRepository(session).get_by_scope("path", path_id)
        return GraphInputs(
            ctx=PathContext(intent_md="Understand determinants"),
            existing=[c for c in existing if c.key not in store.unseen_keys],
            files=files,
            chunks=chunks,
            signals=signals_from_corpus(files, chunks),
        )

    def canonicalize(session_factory, path_id, semantic):
        store.canonicalized.append(path_id)
        return {}

    def lock(session, namespace, key):
        store.locks.append((namespace, key))

    def saga_delete(session, saga_id, namespace, ids):
        store.saga_actions.append((saga_id, namespace, list(ids)))

    def cache_get(session, owner, material_set_id, path_id, artifact_type, input_hash):
        return None, store.cache.get((path_id, artifact_type)) == input_hash

    def cache_upsert(session, owner, material_set_id, path_id, artifact_type, input_hash, meta=None):
        store.cache[(path_id, artifact_type)] = input_hash
        return True

    monkeypatch.setattr(concept_graph_patch, "resolve_path_id", resolve)
    monkeypatch.setattr(concept_graph_patch, "load_graph_inputs", load)
    monkeypatch.setattr(concept_graph_patch, "ConceptRepository", MemoryConceptRepository)
    monkeypatch.setattr(concept_graph_patch, "advisory_xact_lock", lock)
    monkeypatch.setattr(concept_graph_patch, "canonicalize_path", canonicalize)
    monkeypatch.setattr(concept_graph_patch, "artifact_cache_enabled", lambda: False)
    monkeypatch.setattr(concept_graph_patch, "artifact_cache_get", cache_get)
    monkeypatch.setattr(concept_graph_patch, "artifact_cache_upsert", cache_upsert)
    monkeypatch.setattr(concept_graph, "ConceptRepository", MemoryConceptRepository)
    monkeypatch.setattr(concept_graph, "append_pinecone_delete", saga_delete)
    return store


class TestPatchSkip:
    """The first delta pass decides whether the graph already covers the corpus."""

    @pytest.mark.asyncio
    async def test_confident_first_pass_skips_without_more_calls(self, store, monkeypatch):
        monkeypatch.setattr(concept_graph_patch, "artifact_cache_enabled", lambda: True)
        llm = patch_llm(delta_reply(0.9))

        out = await patcher(llm, store, FakeVectorStore()).run()

        assert out.skipped
        assert [c["schema_name"] for c in llm.calls] == ["concept_inventory_delta"]
        assert llm.embed_calls == []
        assert sorted(c.key for c in store.concepts) == ["matrices", "vectors"]
        assert (PATH_ID, "concept_graph_patch_build") in store.cache

    @pytest.mark.asyncio
    async def test_proposed_concepts_prevent_the_skip(self, store):
        llm = patch_llm(delta_reply(0.95, "determinants"))

        out = await patcher(llm, store, FakeVectorStore()).run()

        assert not out.skipped
        assert out.concepts_made == 1

    @pytest.mark.asyncio
    async def test_force_ignores_high_confidence(self, store):
        llm = patch_llm(delta_reply(0.95))

        out = await patcher(llm, store, FakeVectorStore(), concept_graph_patch_force=True).run()

        assert not out.skipped
        assert out.concepts_made == 0
        assert len(llm.calls) > 1

    @pytest.mark.asyncio
    async def test_no_existing_graph(self, store):
        store.concepts.clear()
        llm = FakeLLM()

        out = await patcher(llm, store).run()

        assert out.skipped
        assert llm.calls == []


class TestPatchPersist:
    """New concepts are embedded, written and indexed; existing ones are left alone."""

    @pytest.mark.asyncio
    async def test_only_new_concepts_are_embedded(self, store):
        llm = patch_llm(delta_reply(0.4, "determinants"), edges=[prereq("matrices", "determinants")])
        vec = FakeVectorStore()

        out = await patcher(llm, store, vec, concept_graph_assumed_knowledge_enabled=False).run()

        assert len(llm.embed_calls) == 1
        assert len(llm.embed_calls[0]) == 1
        assert llm.embed_calls[0][0].startswith("Determinants")
        new = store.concept_by_key("determinants")
        namespace = path_concepts_namespace(PATH_ID)
        assert [v.id for ns, batch in vec.upserts if ns == namespace for v in batch] == [new.vector_id]
        assert store.saga_actions == [(SAGA_ID, namespace, [new.vector_id])]
        assert out.concepts_made == 1
        assert out.pinecone_batches == 1

    @pytest.mark.asyncio
    async def test_edges_link_new_rows_to_existing_ones(self, store):
        llm = patch_llm(delta_reply(0.4, "determinants"), edges=[prereq("matrices", "determinants")])

        out = await patcher(llm, store, FakeVectorStore()).run()

        matrices = store.concept_by_key("matrices")
        determinants = store.concept_by_key("determinants")
        assert out.edges_made == 1
        assert [(e["from_id"], e["to_id"]) for e in store.edges.values()] == [(matrices.id, determinants.id)]
        assert store.locks == [("concept_graph_build", PATH_ID)]
        assert store.canonicalized == [PATH_ID]

    @pytest.mark.asyncio
    async def test_vector_store_outage_is_tolerated(self, store):
        llm = patch_llm(delta_reply(0.4, "determinants"))

        out = await patcher(llm, store, FakeVectorStore(fail_upsert=True)).run()

        assert out.concepts_made == 1
        assert out.pinecone_skipped


class TestPatchRaces:
    """Another run writes the same path between reading inputs and persisting."""

    @pytest.mark.asyncio
    async def test_key_written_meanwhile_is_linked_not_reinserted(self, store):
        store.concepts.append(path_row("determinants"))
        store.unseen_keys.add("determinants")
        raced = store.concept_by_key("determinants")
        llm = patch_llm(delta_reply(0.4, "determinants", "rank"), edges=[prereq("determinants", "rank")])

        out = await patcher(llm, store, FakeVectorStore()).run()

        assert sorted(c.key for c in store.concepts) == ["determinants", "matrices", "rank", "vectors"]
        assert store.concept_by_key("determinants") is raced
        rank = store.concept_by_key("rank")
        assert out.concepts_made == 1
        assert [(e["from_id"], e["to_id"]) for e in store.edges.values()] == [(raced.id, rank.id)]
        assert [ids for _, _, ids in store.saga_actions] == [[rank.vector_id]]

    @pytest.mark.asyncio
    async def test_every_key_written_meanwhile_skips(self, store):
        store.concepts.append(path_row("determinants"))
        store.unseen_keys.add("determinants")
        llm = patch_llm(delta_reply(0.4, "determinants"))
        vec = FakeVectorStore()

        out = await patcher(llm, store, vec).run()

        assert out.skipped
        assert out.concepts_made == 0
        assert len(store.concepts) == 3
        assert vec.upserts == []
        assert len(llm.embed_calls) == 1

    @pytest.mark.asyncio
    async def test_unique_violation_on_insert_skips(self, store):
        store.insert_error = IntegrityError("INSERT INTO concepts", {}, DuplicateKey("duplicate key value"))
        vec = FakeVectorStore()

        out = await patcher(patch_llm(delta_reply(0.4, "determinants")), store, vec).run()

        assert out.skipped
        assert out.concepts_made == 0
        assert sorted(c.key for c in store.concepts) == ["matrices", "vectors"]
        assert vec.upserts == []


class TestPatchAssumedKnowledge:
    """Prerequisites the material takes for granted join the patch."""

    @pytest.mark.asyncio
    async def test_assumed_concept_gets_prereq_edge(self, store):
        assumed = {
            "assumed_concepts": [
                {"key": "linear_equations", "name": "Linear Equations", "required_by": ["determinants"]}
            ]
        }
        llm = patch_llm(delta_reply(0.4, "determinants"), assumed=assumed)

        out = await patcher(llm, store, FakeVectorStore()).run()

        eq = store.concept_by_key("linear_equations")
        det = store.concept_by_key("determinants")
        assert out.concepts_made == 2
        assert eq.meta["assumed"] is True
        assert eq.meta["required_by"] == ["determinants"]
        edges = [(e["from_id"], e["to_id"], e["edge_type"]) for e in store.edges.values()]
        assert edges == [(eq.id, det.id, "prereq")]
        assert sorted(len(batch) for batch in llm.embed_calls) == [2]

    @pytest.mark.asyncio
    async def test_stored_prerequisite_links_to_new_dependent(self, store):
        """required_by read back from an existing row points at a concept this patch adds."""
        vectors = store.concept_by_key("vectors")
        vectors.meta = {**vectors.meta, "assumed": True, "required_by": ["determinants"]}
        llm = patch_llm(delta_reply(0.4, "determinants"))

        await patcher(llm, store, FakeVectorStore(), concept_graph_assumed_knowledge_enabled=False).run()

        det = store.concept_by_key("determinants")
        edges = [(e["from_id"], e["to_id"], e["edge_type"]) for e in store.edges.values()]
        assert edges == [(vectors.id, det.id, "prereq")]

    @pytest.mark.asyncio
    async def test_failed_assumed_pass_is_ignored(self, store):
        llm = patch_llm(delta_reply(0.4, "determinants"), assumed=RuntimeError("overloaded"))

        out = await patcher(llm, store, FakeVectorStore()).run()

        assert out.concepts_made == 1
        assert store.concept_by_key("determinants") is not None


class TestPatchInputHash:
    def inputs(self, intent):
        files, chunks = corpus()
        ctx = PathContext(intent_md=intent)
        return GraphInputs(ctx=ctx, existing=[path_row("vectors")], files=files, chunks=chunks)

    def test_whitespace_only_intent_edits_hash_the_same(self):
        a = self.inputs("Understand  determinants\n")
        b = self.inputs(" Understand determinants")
        b.existing = a.existing

        assert patch_input_hash(MATERIAL_SET_ID, PATH_ID, a) == patch_input_hash(MATERIAL_SET_ID, PATH_ID, b)

    def test_intent_wording_changes_the_hash(self):
        a = self.inputs("Understand determinants")
        b = self.inputs("Understand eigenvalues")
        b.existing = a.existing

        assert patch_input_hash(MATERIAL_SET_ID, PATH_ID, a) != patch_input_hash(MATERIAL_SET_ID, PATH_ID, b)
