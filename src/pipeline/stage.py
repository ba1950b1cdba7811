"""
Shared stage scaffolding.

Every stage is ``async def run(deps, inp) -> Output``. The helpers here cover
the common prologue: dependency/input validation, canonical path resolution,
path metadata parsing (intake gate, intent, material allowlist) and
best-effort side effects.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings, get_settings
from src.db.database import SessionFactory, is_unique_violation, session_scope
from src.db.repositories import PathRepository
from src.integrations.graph_mirror import GraphMirror, NullGraphMirror
from src.integrations.llm_client import LLMClient
from src.integrations.vector_store import VectorStore
from src.pipeline.errors import MissingDependencyError, MissingInputError, PipelineError
from src.pipeline.primitives import bool_from_any, map_from_any, string_from_any, uuids_from_strings
from src.pipeline.progress import ProgressReporter

ProgressCallback = Callable[[str, int, str], None]

# Keys a stage may write into Path.metadata
PATH_META_KEYS = frozenset(
    {
        "intake",
        "intake_md",
        "intake_material_filter",
        "charter",
        "web_resources_seed",
        "web_resources_consent",
        "material_signal_weights",
    }
)


@dataclass
class StageInput:
    owner_user_id: UUID | None
    material_set_id: UUID | None
    saga_id: UUID | None
    path_id: UUID | None = None
    mode: str = ""
    report: ProgressCallback | None = None


@dataclass
class StageDeps:
    """External collaborators shared by stages. ``None`` means not configured."""

    llm: LLMClient | None = None
    vector_store: VectorStore | None = None
    graph_mirror: GraphMirror = field(default_factory=NullGraphMirror)
    session_factory: SessionFactory = session_scope
    settings: Settings | None = None

    def get_settings(self) -> Settings:
        return self.settings or get_settings()


def require_deps(stage: str, *deps: Any) -> None:
    if any(d is None for d in deps):
        raise MissingDependencyError(stage)


def require_input(stage: str, inp: StageInput, need_saga: bool = True) -> None:
    if inp.owner_user_id is None:
        raise MissingInputError(stage, "owner_user_id")
    if inp.material_set_id is None:
        raise MissingInputError(stage, "material_set_id")
    if need_saga and inp.saga_id is None:
        raise MissingInputError(stage, "saga_id")


# ========================================
# Canonical path
# ========================================


def ensure_path(
    session_factory: SessionFactory,
    owner_user_id: UUID,
    material_set_id: UUID,
    path_id: UUID | None = None,
) -> UUID:
    """
    Resolve the canonical path for (owner, set), creating it if needed.

    An explicit ``path_id`` wins when it exists. Concurrent creators race on
    the (owner, set) unique constraint; the loser re-reads the winner's row.
    """
    with session_factory() as session:
        repo = PathRepository(session)
        if path_id is not None and repo.get_by_id(path_id) is not None:
            return path_id
        existing = repo.get_by_owner_set(owner_user_id, material_set_id)
        if existing is not None:
            return existing.id

    try:
        with session_factory() as session:
            created = PathRepository(session).create(owner_user_id, material_set_id)
            logger.info(f"Created path {created.id} for set {material_set_id}")
            return created.id
    except IntegrityError as e:
        if not is_unique_violation(e):
            raise
        with session_factory() as session:
            existing = PathRepository(session).get_by_owner_set(owner_user_id, material_set_id)
            if existing is None:
                raise
            return existing.id


async def resolve_path_id(deps: StageDeps, inp: StageInput) -> UUID:
    return await asyncio.to_thread(
        ensure_path, deps.session_factory, inp.owner_user_id, inp.material_set_id, inp.path_id
    )


# ========================================
# Path metadata
# ========================================


@dataclass
class PathContext:
    meta: dict[str, Any] = field(default_factory=dict)
    paths_confirmed: bool = True
    intent_md: str = ""
    allow_files: set[UUID] = field(default_factory=set)


def intake_material_allowlist(meta: dict[str, Any]) -> set[UUID]:
    flt = map_from_any(meta.get("intake_material_filter"))
    return set(uuids_from_strings(flt.get("include_file_ids") or []))


def parse_path_context(meta: dict[str, Any] | None) -> PathContext:
    """
    Read the fields stages care about from Path.metadata.

    ``paths_confirmed`` is only false when an intake block exists and says so.
    """
    meta = map_from_any(meta)
    ctx = PathContext(meta=meta)
    intake = meta.get("intake")
    if isinstance(intake, dict):
        ctx.paths_confirmed = bool_from_any(intake.get("paths_confirmed"))
    ctx.intent_md = string_from_any(meta.get("intake_md")).strip()
    ctx.allow_files = intake_material_allowlist(meta)
    return ctx


def load_path_context(session: Session, path_id: UUID) -> PathContext:
    path = PathRepository(session).get_by_id(path_id)
    if path is None:
        raise PipelineError(f"path {path_id} not found")
    return parse_path_context(path.meta)


def filter_files_by_allowlist(files: list[Any], allow: set[UUID], stage: str, path_id: UUID | None) -> list[Any]:
    """Apply the intake allowlist; an allowlist that excludes every file is ignored."""
    if not allow:
        return files
    filtered = [f for f in files if f is not None and f.id in allow]
    if filtered:
        return filtered
    logger.warning(f"{stage}: intake filter excluded all files; ignoring filter (path {path_id})")
    return files


def sanitize_path_meta(patch: dict[str, Any], stage: str = "") -> dict[str, Any]:
    """Drop keys outside the path metadata allowlist."""
    out = {}
    for key, value in (patch or {}).items():
        if key in PATH_META_KEYS:
            out[key] = value
        else:
            logger.warning(f"{stage or 'stage'}: dropping unknown path metadata key {key!r}")
    return out


def merge_path_meta(session: Session, path_id: UUID, patch: dict[str, Any], stage: str = "") -> None:
    clean = sanitize_path_meta(patch, stage)
    if clean:
        PathRepository(session).merge_meta(path_id, clean)


# ========================================
# Best-effort side effects
# ========================================


async def best_effort(label: str, call: Callable[[], Awaitable[Any]]) -> bool:
    """Await ``call()``; log and swallow failures. Returns whether it succeeded."""
    try:
        await call()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(f"{label} failed (ignored): {e}")
        return False
    return True


def stage_reporter(inp: StageInput, stage: str) -> ProgressReporter:
    """Progress reporter bound to ``inp.report`` (a no-op when the caller passed none)."""
    if inp.report is None:
        return ProgressReporter(None, stage)
    report = inp.report
    return ProgressReporter(lambda pct, msg: report(stage, pct, msg), stage)
