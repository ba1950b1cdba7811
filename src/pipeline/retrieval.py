"""
Graph-assisted chunk retrieval.

Seeds come from a dense vector query and a lexical full-text query run in
parallel (dense first when merged). With no seeds, a local cosine pass over
stored chunk embeddings takes over. Seeds are then expanded through the
concept graph: seed chunks -> grounded concepts -> one edge hop -> evidence
chunks. Every seed keeps its own score, so expansion can only add chunks.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.db.database import SessionFactory
from src.db.queries import QUERIES
from src.integrations.vector_store import VectorStore, chunk_filter
from src.pipeline.primitives import parse_uuid
from src.semantic.vectors import cosine_sim, top_k_chunk_ids_by_cosine

LEXICAL_SEED_SCORE = 0.35

# Edge-type weights for one-hop concept expansion: (from->to, to->from)
_PREREQ_WEIGHTS = (0.35, 0.75)
_ANALOGY_WEIGHTS = (0.45, 0.45)
_RELATED_WEIGHTS = (0.55, 0.55)
_EVIDENCE_WEIGHT = 0.80
_EDGE_HOP_TOP = 30


@dataclass
class ChunkRetrievePlan:
    """One retrieval request."""

    material_set_id: UUID | None
    chunks_ns: str
    query_text: str
    query_emb: list[float]
    file_ids: list[UUID] = field(default_factory=list)
    allow_files: set[UUID] = field(default_factory=set)
    seed_k: int = 12
    lexical_k: int = 6
    final_k: int = 12
    # chunk_id -> embedding, for the local cosine fallback
    chunk_embs: dict[str, list[float]] = field(default_factory=dict)


@dataclass
class ExpandOptions:
    """
    Bounds for graph expansion.

    max_entities/max_claims bound entity and claim hops; the concept graph is
    the only expansion source this data model carries, so they are recorded
    in the trace but do not select rows.
    """

    max_seeds: int = 12
    max_concepts: int = 45
    max_entities: int = 30
    max_claims: int = 30
    max_evidence_per_concept: int = 10
    max_out: int = 60

    def clamped(self) -> ExpandOptions:
        return ExpandOptions(
            max_seeds=_bound(self.max_seeds, 12, 40),
            max_concepts=_bound(self.max_concepts, 40, 120),
            max_entities=_bound(self.max_entities, 30, 120),
            max_claims=_bound(self.max_claims, 30, 120),
            max_evidence_per_concept=_bound(self.max_evidence_per_concept, 10, 40),
            max_out=_bound(self.max_out, 60, 160),
        )


@dataclass
class EvidenceRow:
    concept_id: UUID
    chunk_id: UUID
    weight: float = 1.0


@dataclass
class EdgeRow:
    from_id: UUID
    to_id: UUID
    edge_type: str
    strength: float = 1.0


def _bound(v: int, default: int, hi: int) -> int:
    if v <= 0:
        return default
    return min(v, hi)


def _top_keys(scores: dict[UUID, float], k: int) -> list[UUID]:
    ranked = sorted((item for item in scores.items() if item[1] > 0), key=lambda t: (-t[1], str(t[0])))
    return [cid for cid, _ in ranked[:k]]


# ========================================
# Seed sources
# ========================================


def lexical_chunk_ids(session: Session, file_ids: list[UUID], query: str, limit: int) -> list[UUID]:
    """Full-text search over chunk text within the given files."""
    if not file_ids or not query.strip() or limit <= 0:
        return []
    rows = session.execute(
        text(QUERIES["lexical_chunks"]),
        {"file_ids": list(file_ids), "query": query.strip(), "limit": limit},
    ).all()
    return [r.id for r in rows if r.id is not None]


def normalize_seed_scores(seeds: list[tuple[UUID, float]], max_seeds: int) -> list[tuple[UUID, float]]:
    """Dedupe seeds (max score wins), scale to [0, 1] and keep the top ``max_seeds``."""
    best: dict[UUID, float] = {}
    max_score = 0.0
    for cid, score in seeds:
        if cid is None:
            continue
        score = abs(score)
        if score > best.get(cid, 0.0):
            best[cid] = score
        max_score = max(max_score, score)
    out = [(cid, score / max_score if max_score > 0 else 1.0) for cid, score in best.items()]
    out.sort(key=lambda t: (-t[1], str(t[0])))
    return out[:max_seeds]


# ========================================
# Graph expansion
# ========================================


def score_concepts_from_seeds(seeds: list[tuple[UUID, float]], evidence: list[EvidenceRow]) -> dict[UUID, float]:
    seed_score = dict(seeds)
    out: dict[UUID, float] = defaultdict(float)
    for ev in evidence:
        s = seed_score.get(ev.chunk_id, 0.0)
        if s <= 0:
            continue
        out[ev.concept_id] += s * (ev.weight if ev.weight > 0 else 1.0)
    return dict(out)


def apply_edge_hop(concept_scores: dict[UUID, float], edges: list[EdgeRow], top: list[UUID]) -> dict[UUID, float]:
    """
    Spread scores one hop along concept edges.

    Prerequisites of a scored concept gain more than its dependents; analogy
    and related edges spread symmetrically.
    """
    base = {cid: concept_scores[cid] for cid in top if cid in concept_scores}
    delta: dict[UUID, float] = defaultdict(float)
    for e in edges:
        s = e.strength if e.strength > 0 else 0.5
        edge_type = (e.edge_type or "").strip().lower()
        if edge_type == "prereq":
            forward, backward = _PREREQ_WEIGHTS
        elif edge_type == "analogy":
            forward, backward = _ANALOGY_WEIGHTS
        else:
            forward, backward = _RELATED_WEIGHTS
        if base.get(e.from_id, 0) > 0:
            delta[e.to_id] += base[e.from_id] * s * forward
        if base.get(e.to_id, 0) > 0:
            delta[e.from_id] += base[e.to_id] * s * backward
    out = dict(concept_scores)
    for cid, v in delta.items():
        out[cid] = out.get(cid, 0.0) + v
    return out


def score_chunks_from_concepts(
    seeds: list[tuple[UUID, float]],
    concept_scores: dict[UUID, float],
    evidence: list[EvidenceRow],
    max_evidence_per_concept: int,
) -> dict[UUID, float]:
    out: dict[UUID, float] = defaultdict(float)
    for cid, s in seeds:
        out[cid] += s
    by_concept: dict[UUID, list[EvidenceRow]] = defaultdict(list)
    for ev in evidence:
        by_concept[ev.concept_id].append(ev)
    for concept_id, rows in by_concept.items():
        cs = concept_scores.get(concept_id, 0.0)
        if cs <= 0:
            continue
        rows.sort(key=lambda r: (-r.weight, str(r.chunk_id)))
        for r in rows[:max_evidence_per_concept]:
            out[r.chunk_id] += cs * (r.weight if r.weight > 0 else 1.0) * _EVIDENCE_WEIGHT
    return dict(out)


def expand_chunk_scores(
    session: Session,
    material_set_id: UUID,
    seeds: list[tuple[UUID, float]],
    allow_files: set[UUID],
    opts: ExpandOptions,
) -> tuple[dict[UUID, float], dict[str, Any]]:
    """Load the concept neighbourhood of the seeds and score candidate chunks."""
    trace: dict[str, Any] = {}
    opts = opts.clamped()
    seed_list = normalize_seed_scores(seeds, opts.max_seeds)
    trace["seed_count"] = len(seed_list)
    trace["allow_files"] = len(allow_files)
    trace["max_entities"] = opts.max_entities
    trace["max_claims"] = opts.max_claims
    if not seed_list:
        return {}, trace

    seed_rows = session.execute(
        text(QUERIES["seed_chunk_evidence"]), {"chunk_ids": [cid for cid, _ in seed_list]}
    ).all()
    seed_ev = [EvidenceRow(r.concept_id, r.material_chunk_id, float(r.weight or 0)) for r in seed_rows]
    trace["concept_seed_rows"] = len(seed_ev)
    concept_scores = score_concepts_from_seeds(seed_list, seed_ev)

    top = _top_keys(concept_scores, _EDGE_HOP_TOP)
    if top:
        edge_rows = session.execute(text(QUERIES["edges_touching_concepts"]), {"concept_ids": top}).all()
        edges = [EdgeRow(r.from_concept_id, r.to_concept_id, r.edge_type, float(r.strength or 0)) for r in edge_rows]
        trace["concept_edge_rows"] = len(edges)
        concept_scores = apply_edge_hop(concept_scores, edges, top)

    top_concepts = _top_keys(concept_scores, opts.max_concepts)
    trace["concept_top"] = len(top_concepts)
    evidence: list[EvidenceRow] = []
    if top_concepts:
        rows = session.execute(
            text(QUERIES["evidence_for_concepts"]),
            {"set_id": material_set_id, "concept_ids": top_concepts, "file_ids": sorted(allow_files, key=str)},
        ).all()
        evidence = [EvidenceRow(r.concept_id, r.material_chunk_id, float(r.weight or 0)) for r in rows]
        trace["concept_evidence_rows"] = len(evidence)

    scores = score_chunks_from_concepts(seed_list, concept_scores, evidence, opts.max_evidence_per_concept)
    if len(scores) > opts.max_out:
        keep = set(_top_keys(scores, opts.max_out)) | {cid for cid, _ in seed_list}
        scores = {cid: s for cid, s in scores.items() if cid in keep}
    return scores, trace


# ========================================
# Entry point
# ========================================


async def graph_assisted_chunk_ids(
    vec: VectorStore | None,
    plan: ChunkRetrievePlan,
    session_factory: SessionFactory | None = None,
    opts: ExpandOptions | None = None,
) -> tuple[list[UUID], dict[str, Any]]:
    """
    Select up to ``plan.final_k`` chunk IDs for a query.

    Branch failures (dense, lexical, expansion) are recorded in the returned
    trace and never raised.

    Returns:
        (chunk IDs, trace map with per-branch timings and counts)
    """
    trace: dict[str, Any] = {}
    if plan.material_set_id is None or not plan.chunks_ns.strip() or not plan.query_emb or plan.final_k <= 0:
        return [], trace
    seed_k = min(plan.seed_k if plan.seed_k > 0 else 12, 40)
    final_k = min(plan.final_k, 80)

    async def dense() -> list[tuple[UUID, float]]:
        if vec is None:
            return []
        started = time.monotonic()
        try:
            matches = await vec.query_matches(
                plan.chunks_ns, plan.query_emb, seed_k, chunk_filter(sorted(plan.allow_files, key=str))
            )
        except Exception as e:  # Retrieval branches are best-effort
            trace["dense_err"] = str(e)
            return []
        finally:
            trace["dense_ms"] = int((time.monotonic() - started) * 1000)
        trace["dense_count"] = len(matches)
        out = []
        for m in matches:
            cid = parse_uuid(m.id)
            if cid is not None:
                out.append((cid, m.score))
        return out

    async def lexical() -> list[tuple[UUID, float]]:
        if session_factory is None or plan.lexical_k <= 0 or not plan.file_ids or not plan.query_text.strip():
            return []
        started = time.monotonic()

        def run() -> list[UUID]:
            with session_factory() as session:
                return lexical_chunk_ids(session, plan.file_ids, plan.query_text, plan.lexical_k)

        try:
            ids = await asyncio.to_thread(run)
        except SQLAlchemyError as e:
            trace["lex_err"] = str(e)
            return []
        finally:
            trace["lex_ms"] = int((time.monotonic() - started) * 1000)
        trace["lex_count"] = len(ids)
        return [(cid, LEXICAL_SEED_SCORE) for cid in ids]

    dense_seeds, lex_seeds = await asyncio.gather(dense(), lexical())

    seeds: list[tuple[UUID, float]] = []
    seen: set[UUID] = set()
    for cid, score in dense_seeds + lex_seeds:
        if cid in seen:
            continue
        seen.add(cid)
        seeds.append((cid, score))

    if not seeds and plan.chunk_embs:
        started = time.monotonic()
        local = top_k_chunk_ids_by_cosine(plan.query_emb, plan.chunk_embs, seed_k)
        trace["dense_local_ms"] = int((time.monotonic() - started) * 1000)
        trace["dense_local_count"] = len(local)
        for sid in local:
            cid = parse_uuid(sid)
            if cid is not None and cid not in seen:
                seen.add(cid)
                seeds.append((cid, cosine_sim(plan.query_emb, plan.chunk_embs[sid])))

    trace["seed_count"] = len(seeds)
    if not seeds:
        return [], trace

    scores: dict[UUID, float] = {}
    if session_factory is not None:
        started = time.monotonic()
        expand_opts = replace(opts or ExpandOptions(), max_seeds=seed_k, max_out=max(final_k * 4, 60))

        def run_expand() -> tuple[dict[UUID, float], dict[str, Any]]:
            with session_factory() as session:
                return expand_chunk_scores(session, plan.material_set_id, seeds, plan.allow_files, expand_opts)

        try:
            scores, gtrace = await asyncio.to_thread(run_expand)
            if gtrace:
                trace["graph"] = gtrace
        except SQLAlchemyError as e:
            trace["graph_err"] = str(e)
            logger.warning(f"Graph expansion failed for set {plan.material_set_id}: {e}")
        trace["graph_ms"] = int((time.monotonic() - started) * 1000)

    if not scores:
        return [cid for cid, _ in seeds][:final_k], trace

    ranked = sorted((item for item in scores.items() if item[1] > 0), key=lambda t: (-t[1], str(t[0])))
    return [cid for cid, _ in ranked[:final_k]], trace
