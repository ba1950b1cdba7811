"""
Saga log and compensator.

Stages append compensating actions inside the same transaction as their
canonical write, one per external side effect they are about to perform after
commit. When a job fails, ``SagaService.compensate`` replays the log in
reverse order. Deletes of missing IDs/keys are no-ops, so replays are safe.
"""

from __future__ import annotations

import asyncio
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy.orm import Session

from src.db.database import SessionFactory, session_scope
from src.db.repositories import SagaRepository
from src.integrations.object_store import ObjectStore
from src.integrations.vector_store import VectorStore
from src.pipeline.errors import PipelineError
from src.pipeline.primitives import map_from_any, string_from_any, string_list_from_any

ACTION_PINECONE_DELETE_IDS = "pinecone_delete_ids"
ACTION_OBJECT_STORE_DELETE_KEY = "object_store_delete_key"
ACTION_GCS_DELETE_KEY = "gcs_delete_key"
ACTION_OBJECT_STORE_DELETE_PREFIX = "object_store_delete_prefix"

ACTION_KINDS = {
    ACTION_PINECONE_DELETE_IDS,
    ACTION_OBJECT_STORE_DELETE_KEY,
    ACTION_GCS_DELETE_KEY,
    ACTION_OBJECT_STORE_DELETE_PREFIX,
}


class SagaError(PipelineError):
    """Invalid saga action or unknown saga."""


def append_action(session: Session, saga_id: UUID | None, kind: str, payload: dict[str, Any]) -> int:
    """
    Append a compensating action inside the caller's transaction.

    Locks the saga row so concurrent appends get distinct sequence numbers.

    Returns:
        The action's sequence number.

    Raises:
        SagaError: If the saga does not exist or the kind is unknown.
    """
    if saga_id is None:
        raise SagaError("append_action: missing saga_id")
    if kind not in ACTION_KINDS:
        raise SagaError(f"append_action: unknown kind {kind!r}")
    repo = SagaRepository(session)
    if not repo.lock_run(saga_id):
        raise SagaError(f"append_action: saga {saga_id} not found")
    seq = repo.next_seq(saga_id)
    repo.add_action(saga_id, seq, kind, payload)
    return seq


def append_pinecone_delete(session: Session, saga_id: UUID | None, namespace: str, ids: list[str]) -> int | None:
    if not ids:
        return None
    return append_action(session, saga_id, ACTION_PINECONE_DELETE_IDS, {"namespace": namespace, "ids": list(ids)})


class SagaService:
    """
    Runs compensations for a saga.

    Example:
        >>> service = SagaService(vector_store=vec, object_store=gcs)
        >>> await service.compensate(saga_id)
    """

    def __init__(
        self,
        vector_store: VectorStore | None = None,
        object_store: ObjectStore | None = None,
        session_factory: SessionFactory = session_scope,
    ):
        self.vector_store = vector_store
        self.object_store = object_store
        self.session_factory = session_factory

    def append_action(self, session: Session, saga_id: UUID | None, kind: str, payload: dict[str, Any]) -> int:
        return append_action(session, saga_id, kind, payload)

    def _load_actions(self, saga_id: UUID) -> list[tuple[UUID, str, dict[str, Any], str]]:
        with self.session_factory() as session:
            repo = SagaRepository(session)
            repo.set_status(saga_id, "compensating")
            return [(a.id, a.kind, dict(a.payload or {}), a.status) for a in repo.actions_desc(saga_id)]

    def _mark(self, action_id: UUID, status: str, error: str = "") -> None:
        with self.session_factory() as session:
            SagaRepository(session).mark_action(action_id, status, error)

    def _finish(self, saga_id: UUID, status: str) -> None:
        with self.session_factory() as session:
            SagaRepository(session).set_status(saga_id, status)

    async def compensate(self, saga_id: UUID) -> dict[str, int]:
        """
        Execute pending actions by descending seq.

        Individual failures are logged and recorded on the action; the loop
        always continues. The saga ends ``compensated``, or ``failed`` when any
        action failed.

        Returns:
            Counters: executed, failed, skipped.
        """
        actions = await asyncio.to_thread(self._load_actions, saga_id)
        stats = {"executed": 0, "failed": 0, "skipped": 0}
        for action_id, kind, payload, status in actions:
            if status == "done":
                stats["skipped"] += 1
                continue
            try:
                await self.execute(kind, payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                stats["failed"] += 1
                logger.warning(f"Saga {saga_id}: {kind} action {action_id} failed: {e}")
                await asyncio.to_thread(self._mark, action_id, "failed", str(e))
                continue
            stats["executed"] += 1
            await asyncio.to_thread(self._mark, action_id, "done")

        final = "failed" if stats["failed"] else "compensated"
        await asyncio.to_thread(self._finish, saga_id, final)
        logger.info(
            f"Saga {saga_id} {final}: executed={stats['executed']} failed={stats['failed']} skipped={stats['skipped']}"
        )
        return stats

    async def execute(self, kind: str, payload: dict[str, Any]) -> None:
        payload = map_from_any(payload)
        if kind == ACTION_PINECONE_DELETE_IDS:
            namespace = string_from_any(payload.get("namespace")).strip()
            ids = string_list_from_any(payload.get("ids"))
            if not namespace or not ids:
                return
            if self.vector_store is None:
                raise SagaError("pinecone_delete_ids: no vector store configured")
            await self.vector_store.delete_ids(namespace, ids)
        elif kind in (ACTION_OBJECT_STORE_DELETE_KEY, ACTION_GCS_DELETE_KEY):
            key = string_from_any(payload.get("key")).strip()
            if not key:
                return
            if self.object_store is None:
                raise SagaError(f"{kind}: no object store configured")
            await self.object_store.delete_key(string_from_any(payload.get("category")), key)
        elif kind == ACTION_OBJECT_STORE_DELETE_PREFIX:
            prefix = string_from_any(payload.get("prefix")).strip()
            if not prefix:
                return
            if self.object_store is None:
                raise SagaError(f"{kind}: no object store configured")
            await self.object_store.delete_prefix(string_from_any(payload.get("category")), prefix)
        else:
            raise SagaError(f"unknown saga action kind {kind!r}")
