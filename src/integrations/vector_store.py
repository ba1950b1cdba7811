"""
Vector store interface and the Pinecone implementation.

Vector writes are treated as a cache of the relational state: stages call
these after commit and swallow failures. Namespaces:

- ``chunks:<material_set_id>``
- ``concepts:path:<path_id>`` / ``concepts:global``
- ``activities:path:<path_id>``
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

from loguru import logger

from config import get_settings


@dataclass
class VectorRecord:
    id: str
    values: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorMatch:
    id: str
    score: float


class VectorStore(Protocol):
    async def upsert(self, namespace: str, vectors: list[VectorRecord]) -> None: ...

    async def query_matches(
        self, namespace: str, embedding: list[float], top_k: int, filter: dict[str, Any] | None = None
    ) -> list[VectorMatch]: ...

    async def query_ids(
        self, namespace: str, embedding: list[float], top_k: int, filter: dict[str, Any] | None = None
    ) -> list[str]: ...

    async def delete_ids(self, namespace: str, ids: list[str]) -> None: ...


def chunks_namespace(material_set_id: UUID | str) -> str:
    return f"chunks:{material_set_id}"


def path_concepts_namespace(path_id: UUID | str) -> str:
    return f"concepts:path:{path_id}"


GLOBAL_CONCEPTS_NAMESPACE = "concepts:global"


def path_activities_namespace(path_id: UUID | str) -> str:
    return f"activities:path:{path_id}"


def chunk_filter(file_ids: list[UUID] | None = None) -> dict[str, Any]:
    """Chunk-type filter, optionally restricted to a file allowlist."""
    out: dict[str, Any] = {"type": {"$eq": "chunk"}}
    if file_ids:
        out["material_file_id"] = {"$in": [str(f) for f in file_ids]}
    return out


class PineconeVectorStore:
    """
    Pinecone-backed vector store.

    The SDK is synchronous; calls run in a worker thread. The index handle is
    created lazily on first use.
    """

    def __init__(self, api_key: str | None = None, index_name: str | None = None):
        settings = get_settings()
        self.api_key = api_key or settings.pinecone_api_key
        self.index_name = index_name or settings.pinecone_index
        self._index = None

        if not self.api_key:
            raise ValueError("Pinecone API key required")

    @property
    def index(self):
        if self._index is None:
            from pinecone import Pinecone

            client = Pinecone(api_key=self.api_key)
            self._index = client.Index(self.index_name)
            logger.info(f"Pinecone index ready: {self.index_name}")
        return self._index

    async def upsert(self, namespace: str, vectors: list[VectorRecord]) -> None:
        if not vectors:
            return
        payload = [{"id": v.id, "values": v.values, "metadata": v.metadata} for v in vectors]
        await asyncio.to_thread(self.index.upsert, vectors=payload, namespace=namespace)

    async def query_matches(
        self, namespace: str, embedding: list[float], top_k: int, filter: dict[str, Any] | None = None
    ) -> list[VectorMatch]:
        if not embedding or top_k <= 0:
            return []
        kwargs: dict[str, Any] = {
            "vector": embedding,
            "top_k": top_k,
            "namespace": namespace,
            "include_metadata": False,
        }
        if filter:
            kwargs["filter"] = filter
        response = await asyncio.to_thread(self.index.query, **kwargs)
        return [VectorMatch(id=m.id, score=float(m.score or 0.0)) for m in (response.matches or [])]

    async def query_ids(
        self, namespace: str, embedding: list[float], top_k: int, filter: dict[str, Any] | None = None
    ) -> list[str]:
        return [m.id for m in await self.query_matches(namespace, embedding, top_k, filter)]

    async def delete_ids(self, namespace: str, ids: list[str]) -> None:
        if not ids:
            return
        await asyncio.to_thread(self.index.delete, ids=list(ids), namespace=namespace)
