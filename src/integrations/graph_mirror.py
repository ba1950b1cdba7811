"""
Graph database mirror interface.

The mirror is a read-optimized copy of the relational concept graph. Every
call site treats it as best-effort: failures are logged and swallowed.
"""

from __future__ import annotations

from typing import Any, Protocol
from uuid import UUID

from loguru import logger


class GraphMirror(Protocol):
    async def upsert_path_concept_graph(self, path_id: UUID, concepts: list[Any], edges: list[Any]) -> None: ...

    async def upsert_user_concept_states(self, user_id: UUID, states: list[Any]) -> None: ...

    async def upsert_path_activities_graph(self, path_id: UUID, activities: list[Any]) -> None: ...


class NullGraphMirror:
    """Mirror that records nothing; used when no graph database is configured."""

    async def upsert_path_concept_graph(self, path_id: UUID, concepts: list[Any], edges: list[Any]) -> None:
        logger.debug(f"Graph mirror disabled; skipping concept graph for path {path_id}")

    async def upsert_user_concept_states(self, user_id: UUID, states: list[Any]) -> None:
        logger.debug(f"Graph mirror disabled; skipping {len(states)} concept states for user {user_id}")

    async def upsert_path_activities_graph(self, path_id: UUID, activities: list[Any]) -> None:
        logger.debug(f"Graph mirror disabled; skipping activities for path {path_id}")
