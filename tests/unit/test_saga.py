"""
Unit tests for the saga log and compensator.
"""
from uuid import uuid4

import pytest

from src.pipeline import saga
from src.pipeline.saga import (
    ACTION_GCS_DELETE_KEY,
    ACTION_OBJECT_STORE_DELETE_KEY,
    ACTION_OBJECT_STORE_DELETE_PREFIX,
    ACTION_PINECONE_DELETE_IDS,
    SagaError,
    SagaService,
    append_action,
    append_pinecone_delete,
)
from tests.conftest import FakeVectorStore


class MemorySagaRepository:
    """Saga rows keyed by id; shared across instances within a test."""

    runs = set()
    actions = []

    def __init__(self, session):
        self.session = session

    def lock_run(self, saga_id):
        return saga_id in self.runs

    def next_seq(self, saga_id):
        return 1 + max((a["seq"] for a in self.actions if a["saga_id"] == saga_id), default=0)

    def add_action(self, saga_id, seq, kind, payload):
        self.actions.append({"saga_id": saga_id, "seq": seq, "kind": kind, "payload": payload})


class FakeObjectStore:
    def __init__(self, fail_keys=()):
        self.deleted_keys = []
        self.deleted_prefixes = []
        self.fail_keys = set(fail_keys)

    async def delete_key(self, category, key):
        if key in self.fail_keys:
            raise RuntimeError(f"cannot delete {key}")
        self.deleted_keys.append((category, key))

    async def delete_prefix(self, category, prefix):
        self.deleted_prefixes.append((category, prefix))


@pytest.fixture
def repo(monkeypatch):
    monkeypatch.setattr(MemorySagaRepository, "runs", set())
    monkeypatch.setattr(MemorySagaRepository, "actions", [])
    monkeypatch.setattr(saga, "SagaRepository", MemorySagaRepository)
    return MemorySagaRepository


class TestAppendAction:
    """Appending compensations inside the caller's transaction."""

    def test_sequence_numbers_increase(self, repo):
        saga_id = uuid4()
        repo.runs.add(saga_id)

        first = append_action(object(), saga_id, ACTION_OBJECT_STORE_DELETE_KEY, {"key": "a"})
        second = append_action(object(), saga_id, ACTION_OBJECT_STORE_DELETE_PREFIX, {"prefix": "p/"})

        assert (first, second) == (1, 2)
        assert [a["kind"] for a in repo.actions] == [ACTION_OBJECT_STORE_DELETE_KEY, ACTION_OBJECT_STORE_DELETE_PREFIX]

    def test_missing_saga_id(self, repo):
        with pytest.raises(SagaError, match="missing saga_id"):
            append_action(object(), None, ACTION_PINECONE_DELETE_IDS, {})

    def test_unknown_kind(self, repo):
        saga_id = uuid4()
        repo.runs.add(saga_id)

        with pytest.raises(SagaError, match="unknown kind"):
            append_action(object(), saga_id, "drop_table", {})

    def test_unknown_saga(self, repo):
        with pytest.raises(SagaError, match="not found"):
            append_action(object(), uuid4(), ACTION_PINECONE_DELETE_IDS, {"ids": ["x"]})
        assert repo.actions == []

    def test_pinecone_delete_helper(self, repo):
        saga_id = uuid4()
        repo.runs.add(saga_id)

        assert append_pinecone_delete(object(), saga_id, "concepts", []) is None
        assert append_pinecone_delete(object(), saga_id, "concepts", ["concept:1"]) == 1
        assert repo.actions[0]["payload"] == {"namespace": "concepts", "ids": ["concept:1"]}


class TestExecute:
    """Single-action execution."""

    @pytest.mark.asyncio
    async def test_vector_delete(self):
        vec = FakeVectorStore()

        await SagaService(vector_store=vec).execute(ACTION_PINECONE_DELETE_IDS, {"namespace": " ns ", "ids": ["a", "b"]})

        assert vec.deletes == [("ns", ["a", "b"])]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", [ACTION_OBJECT_STORE_DELETE_KEY, ACTION_GCS_DELETE_KEY])
    async def test_object_key_delete(self, kind):
        store = FakeObjectStore()

        await SagaService(object_store=store).execute(kind, {"category": "avatar", "key": "u/1.png"})

        assert store.deleted_keys == [("avatar", "u/1.png")]

    @pytest.mark.asyncio
    async def test_prefix_delete(self):
        store = FakeObjectStore()

        await SagaService(object_store=store).execute(ACTION_OBJECT_STORE_DELETE_PREFIX, {"prefix": "paths/1/"})

        assert store.deleted_prefixes == [("", "paths/1/")]

    @pytest.mark.asyncio
    async def test_empty_payloads_are_no_ops(self):
        service = SagaService()

        await service.execute(ACTION_PINECONE_DELETE_IDS, {"namespace": "ns", "ids": []})
        await service.execute(ACTION_OBJECT_STORE_DELETE_KEY, {"key": " "})
        await service.execute(ACTION_OBJECT_STORE_DELETE_PREFIX, None)

    @pytest.mark.asyncio
    async def test_missing_backends(self):
        service = SagaService()

        with pytest.raises(SagaError, match="no vector store"):
            await service.execute(ACTION_PINECONE_DELETE_IDS, {"namespace": "ns", "ids": ["a"]})
        with pytest.raises(SagaError, match="no object store"):
            await service.execute(ACTION_OBJECT_STORE_DELETE_KEY, {"key": "k"})

    @pytest.mark.asyncio
    async def test_unknown_kind(self):
        with pytest.raises(SagaError):
            await SagaService().execute("drop_table", {})


class TestCompensate:
    """Reverse-order replay with per-action outcomes."""

    def service(self, actions, **stores):
        service = SagaService(**stores)
        service.marks = []
        service.finished = []
        service._load_actions = lambda saga_id: list(actions)
        service._mark = lambda action_id, status, error="": service.marks.append((action_id, status, error))
        service._finish = lambda saga_id, status: service.finished.append(status)
        return service

    @pytest.mark.asyncio
    async def test_all_succeed(self):
        store = FakeObjectStore()
        a1, a2 = uuid4(), uuid4()
        service = self.service(
            [
                (a2, ACTION_OBJECT_STORE_DELETE_KEY, {"key": "second"}, "pending"),
                (a1, ACTION_OBJECT_STORE_DELETE_KEY, {"key": "first"}, "pending"),
            ],
            object_store=store,
        )

        stats = await service.compensate(uuid4())

        assert stats == {"executed": 2, "failed": 0, "skipped": 0}
        assert [k for _, k in store.deleted_keys] == ["second", "first"]
        assert [m[:2] for m in service.marks] == [(a2, "done"), (a1, "done")]
        assert service.finished == ["compensated"]

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_loop_continues(self):
        store = FakeObjectStore(fail_keys={"bad"})
        bad, good = uuid4(), uuid4()
        service = self.service(
            [
                (bad, ACTION_OBJECT_STORE_DELETE_KEY, {"key": "bad"}, "pending"),
                (good, ACTION_OBJECT_STORE_DELETE_KEY, {"key": "good"}, "pending"),
            ],
            object_store=store,
        )

        stats = await service.compensate(uuid4())

        assert stats == {"executed": 1, "failed": 1, "skipped": 0}
        assert service.marks[0] == (bad, "failed", "cannot delete bad")
        assert service.marks[1][:2] == (good, "done")
        assert service.finished == ["failed"]

    @pytest.mark.asyncio
    async def test_done_actions_are_skipped(self):
        store = FakeObjectStore()
        service = self.service(
            [(uuid4(), ACTION_OBJECT_STORE_DELETE_KEY, {"key": "k"}, "done")],
            object_store=store,
        )

        stats = await service.compensate(uuid4())

        assert stats == {"executed": 0, "failed": 0, "skipped": 1}
        assert store.deleted_keys == []
        assert service.marks == []
        assert service.finished == ["compensated"]

    @pytest.mark.asyncio
    async def test_empty_log(self):
        service = self.service([])

        assert await service.compensate(uuid4()) == {"executed": 0, "failed": 0, "skipped": 0}
        assert service.finished == ["compensated"]
