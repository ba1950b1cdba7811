"""
Canonical (global) concept identity.

Path concepts keep their own IDs; ``canonical_concept_id`` links each one to
a global concept so mastery can transfer across paths. A global row may
itself redirect to a root concept (an alias row), in which case links point
at the root.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy.orm import Session

from config import Settings
from src.db.database import advisory_xact_lock
from src.db.repositories import ConceptRepository
from src.integrations.vector_store import GLOBAL_CONCEPTS_NAMESPACE, VectorStore
from src.pipeline.adaptive import AdaptiveSignals, adjust_threshold_by_content_type, clamp_int_ceiling
from src.pipeline.concurrency import run_limited_settled
from src.pipeline.inventory import ConceptItem
from src.pipeline.primitives import clamp01, dedupe_strings, normalize_concept_key, parse_uuid, string_list_from_any

GLOBAL_CONCEPT_FILTER = {"type": "concept", "scope": "global", "canonical": True}

_GAP_DELTAS = {"slides": 0.01, "mixed": 0.01, "prose": -0.005, "code": -0.003}


@dataclass
class SemanticMatchParams:
    min_score: float = 0.885
    min_gap: float = 0.02
    top_k: int = 6
    concurrency: int = 32
    timeout: float = 2.5

    def to_meta(self, top_k_ceiling: int) -> dict[str, Any]:
        return {
            "CANONICAL_CONCEPT_SEMANTIC_MIN_SCORE": {"actual": self.min_score},
            "CANONICAL_CONCEPT_SEMANTIC_MIN_GAP": {"actual": self.min_gap},
            "CANONICAL_CONCEPT_SEMANTIC_TOP_K": {"actual": self.top_k, "ceiling": top_k_ceiling},
        }


def resolve_semantic_match_params(
    settings: Settings, signals: AdaptiveSignals, adaptive: bool
) -> SemanticMatchParams:
    content_type = signals.content_type
    min_score = settings.canonical_concept_semantic_min_score
    if adaptive:
        min_score = clamp01(
            adjust_threshold_by_content_type("CANONICAL_CONCEPT_SEMANTIC_MIN_SCORE", min_score, content_type)
        )

    min_gap = settings.canonical_concept_semantic_min_gap
    if adaptive:
        min_gap += _GAP_DELTAS.get(content_type, 0.0)
    min_gap = min(max(min_gap, 0.0), 0.2)

    top_k = settings.canonical_concept_semantic_top_k if settings.canonical_concept_semantic_top_k > 0 else 6
    if adaptive and signals.concept_count > 0:
        top_k = clamp_int_ceiling(round(signals.concept_count / 100) + 4, 4, top_k)

    return SemanticMatchParams(
        min_score=min_score,
        min_gap=min_gap,
        top_k=top_k,
        concurrency=max(settings.canonical_concept_semantic_concurrency, 1),
        timeout=max(settings.canonical_concept_semantic_timeout_ms, 250) / 1000.0,
    )


def concept_id_from_vector_id(raw: str) -> UUID | None:
    raw = (raw or "").strip()
    if raw.startswith("concept:"):
        raw = raw[len("concept:") :]
    return parse_uuid(raw)


def best_semantic_match(matches: list[Any], min_score: float, min_gap: float) -> UUID | None:
    """
    Pick the top match when it clears ``min_score`` and beats the runner-up by ``min_gap``.

    Matches are ranked by score, then by ID so equal scores resolve the same
    way on every run.
    """
    if not matches:
        return None
    ranked = sorted(matches, key=lambda m: (-float(m.score), str(m.id)))
    best = ranked[0]
    if best.score < min_score:
        return None
    if len(ranked) > 1 and best.score - ranked[1].score < min_gap:
        return None
    return concept_id_from_vector_id(best.id)


def _root_id(row: Any) -> UUID:
    return row.canonical_concept_id or row.id


def global_roots_by_key(rows: Iterable[Any]) -> dict[str, UUID]:
    out: dict[str, UUID] = {}
    for g in rows or []:
        key = (g.key or "").strip().lower()
        if key and g.id:
            out[key] = _root_id(g)
    return out


async def semantic_match_canonical_concepts(
    session_factory,
    vector_store: VectorStore | None,
    concepts: list[ConceptItem],
    embeddings: list[list[float]],
    params: SemanticMatchParams,
    progress=None,
) -> dict[str, UUID]:
    """
    Propose a global concept for each path concept key.

    Keys that already exist globally are left to ``canonicalize_path_concepts``.
    Alias keys that hit an existing global key win over vector matches. The
    vector query is best-effort: errors and timeouts mean "no match".

    Returns:
        key -> root global concept ID
    """
    out: dict[str, UUID] = {}
    if vector_store is None or not concepts or len(embeddings) != len(concepts):
        return out

    keys: list[str] = []
    alias_keys_by_key: dict[str, list[str]] = {}
    for c in concepts:
        key = (c.key or "").strip().lower()
        if not key:
            continue
        keys.append(key)
        for alias in c.aliases:
            ak = normalize_concept_key(alias)
            if ak and ak != key:
                alias_keys_by_key.setdefault(key, []).append(ak)
    keys = dedupe_strings(keys)
    query_keys = dedupe_strings(keys + [a for v in alias_keys_by_key.values() for a in v])

    def load_roots() -> dict[str, UUID]:
        with session_factory() as session:
            return global_roots_by_key(ConceptRepository(session).global_by_keys(query_keys))

    roots = await asyncio.to_thread(load_roots) if query_keys else {}

    todo: list[int] = []
    alias_matched = 0
    for i, c in enumerate(concepts):
        key = (c.key or "").strip().lower()
        if not key or key in roots:
            continue
        found = next((roots[ak] for ak in dedupe_strings(alias_keys_by_key.get(key, [])) if ak in roots), None)
        if found is not None:
            out[key] = found
            alias_matched += 1
            continue
        todo.append(i)

    semantic_matched = 0
    if params.min_score > 0 and todo:
        done = 0

        async def worker(_: int, idx: int) -> tuple[str, UUID] | None:
            nonlocal done
            try:
                vec = embeddings[idx]
                if not vec:
                    return None
                try:
                    matches = await asyncio.wait_for(
                        vector_store.query_matches(GLOBAL_CONCEPTS_NAMESPACE, vec, params.top_k, GLOBAL_CONCEPT_FILTER),
                        timeout=params.timeout,
                    )
                except asyncio.TimeoutError:
                    return None
                cid = best_semantic_match(matches, params.min_score, params.min_gap)
                return (concepts[idx].key.strip().lower(), cid) if cid else None
            finally:
                done += 1
                if progress is not None:
                    progress(done, len(todo))

        for res in await run_limited_settled(todo, worker, params.concurrency, "canonical semantic match"):
            if res is not None:
                out[res[0]] = res[1]
                semantic_matched += 1

    if out:
        def load_redirects() -> dict[UUID, UUID]:
            with session_factory() as session:
                rows = ConceptRepository(session).get_by_ids(set(out.values()))
                return {r.id: r.canonical_concept_id for r in rows if r.canonical_concept_id}

        redirects = await asyncio.to_thread(load_redirects)
        out = {k: redirects.get(v, v) for k, v in out.items()}

    if alias_matched or semantic_matched:
        logger.info(
            f"Canonical concept matches: alias={alias_matched} semantic={semantic_matched} candidates={len(concepts)}"
        )
    return out


def canonicalize_path_concepts(
    session: Session, path_concepts: list[Any], semantic_match_by_key: dict[str, UUID] | None = None
) -> dict[str, UUID]:
    """
    Link every path concept to a global concept, creating global rows as needed.

    Runs inside the caller's transaction and is safe to repeat. Inserts use
    ON CONFLICT DO NOTHING and are re-read afterwards, so a concurrent worker
    creating the same key yields the same links.

    Args:
        session: Open session (the caller holds the canonicalize advisory lock).
        path_concepts: Concept rows with scope="path".
        semantic_match_by_key: Optional key -> root ID from the semantic matcher;
            a missing key is then created as an alias row pointing at that root.

    Returns:
        key -> canonical (root) concept ID
    """
    repo = ConceptRepository(session)
    semantic = semantic_match_by_key or {}
    out: dict[str, UUID] = {}

    info: dict[str, Any] = {}
    for c in path_concepts or []:
        key = (c.key or "").strip().lower()
        if key and key not in info:
            info[key] = c
    keys = list(info)
    if not keys:
        return out

    global_by_key = {(g.key or "").strip().lower(): g for g in repo.global_by_keys(keys)}
    out.update(global_roots_by_key(global_by_key.values()))

    to_create = []
    for key in keys:
        if key in out:
            continue
        c = info[key]
        aliases = dedupe_strings(string_list_from_any((c.meta or {}).get("aliases")))
        root = semantic.get(key)
        row_id = uuid4()
        meta: dict[str, Any] = {"source": "canonicalize", "aliases": aliases}
        if root is not None:
            meta = {"source": "canonicalize", "alias_for": str(root), "aliases": aliases}
        to_create.append(
            {
                "id": row_id,
                "key": key,
                "name": (c.name or "").strip() or key,
                "summary": (c.summary or "").strip(),
                "key_points": json.dumps(c.key_points or []),
                "vector_id": f"concept:{row_id}",
                "metadata": json.dumps(meta),
                "canonical_id": root,
            }
        )
        out[key] = root or row_id

    if to_create:
        for row in to_create:
            repo.insert_global_ignore(row)
        session.flush()

        global_by_key = {(g.key or "").strip().lower(): g for g in repo.global_by_keys(keys)}
        out.update(global_roots_by_key(global_by_key.values()))

        # A concurrent insert may have created a plain canonical row for a
        # key we matched semantically; turn it into a redirect.
        for key, root in sorted(semantic.items()):
            row = global_by_key.get(key)
            if root is None or row is None or row.canonical_concept_id is not None or row.id == root:
                continue
            repo.set_canonical(row.id, root)
            out[key] = root

    linked = 0
    for c in path_concepts or []:
        cid = out.get((c.key or "").strip().lower())
        if cid is None or c.id is None:
            continue
        if c.canonical_concept_id != cid:
            repo.set_canonical(c.id, cid)
            c.canonical_concept_id = cid
            linked += 1
    if linked:
        logger.debug(f"Canonicalized {linked} path concepts ({len(to_create)} new global rows)")
    return out


CANONICALIZE_LOCK = "concept_canonicalize"


def canonicalize_path(
    session_factory, path_id: UUID, semantic_match_by_key: dict[str, UUID] | None = None
) -> dict[str, UUID]:
    """Canonicalize every live concept of a path in its own transaction (advisory-locked per path)."""
    with session_factory() as session:
        advisory_xact_lock(session, CANONICALIZE_LOCK, path_id)
        concepts = ConceptRepository(session).get_by_scope("path", path_id)
        return canonicalize_path_concepts(session, concepts, semantic_match_by_key)
