"""
Concept graph build stage.

Turns a material set into a path-scoped concept graph:

1. Per-file concept inventories (global sliced inventory as fallback)
2. Coverage completion until the inventory stalls
3. Assumed-knowledge and alignment enrichment
4. Edges and concept embeddings
5. One advisory-locked transaction for concepts, evidences, edges and saga actions
6. Canonical linking, vector upserts and the graph mirror (best-effort)

The helpers below the stage class are shared with the patch stage.
"""

from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass, field, replace
from typing import Any
from uuid import UUID, uuid5

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings
from src.db.database import advisory_xact_lock, is_unique_violation
from src.db.models import Concept
from src.db.repositories import ConceptRepository, MaterialRepository
from src.integrations.graph_mirror import NullGraphMirror
from src.integrations.llm_client import LLMClient
from src.integrations.vector_store import (
    GLOBAL_CONCEPTS_NAMESPACE,
    VectorRecord,
    VectorStore,
    chunks_namespace,
    path_concepts_namespace,
)
from src.pipeline.adaptive import (
    AdaptiveParams,
    AdaptiveSignals,
    adaptive_from_ratio,
    adjust_excerpt_chars_by_content_type,
    adjust_excerpt_lines_by_content_type,
    adjust_threshold_by_content_type,
    clamp_int_ceiling,
    load_adaptive_signals,
    signals_from_corpus,
)
from src.pipeline.artifact_cache import (
    artifact_cache_enabled,
    artifact_cache_get,
    artifact_cache_upsert,
    chunks_fingerprint,
    compute_artifact_hash,
    env_snapshot,
    files_fingerprint,
    normalize_hash_text,
    signatures_fingerprint,
    sorted_id_strings,
)
from src.pipeline.canonicalize import (
    canonicalize_path,
    resolve_semantic_match_params,
    semantic_match_canonical_concepts,
)
from src.pipeline.concurrency import batched, run_limited, run_limited_settled
from src.pipeline.coverage import RETRY_MIN_TOTAL_CHARS, CoverageEngine, CoverageInput, resolve_coverage_params
from src.pipeline.errors import ContextLengthError, StageValidationError
from src.pipeline.excerpts import build_stratified_excerpts
from src.pipeline.formulas import apply_formula_updates, extract_formulas, persist_formula_updates
from src.pipeline.inventory import (
    ConceptItem,
    Coverage,
    EdgeItem,
    SeedMeta,
    apply_assumed_knowledge,
    apply_concept_alignment,
    assumed_prereq_edges,
    boost_inventory_slice_count,
    build_concept_seed_from_signatures,
    build_inventory_slices,
    concept_inventory_weak,
    concepts_json_for_prompt,
    dedupe_concept_inventory_by_key,
    desired_coverage_passes,
    estimate_inventory_sample_count,
    inventory_slice_concurrency,
    inventory_slice_count,
    inventory_slice_max,
    inventory_slice_max_total,
    min_concepts_guardrail,
    normalize_concept_edges,
    normalize_concept_inventory,
    outline_seed_topics,
    parse_concept_edges,
    parse_concept_inventory,
    parse_coverage,
    slice_file_order,
)
from src.pipeline.primitives import dedupe_strings, filter_chunk_id_strings, uuids_from_strings
from src.pipeline.progress import ProgressReporter, llm_timer
from src.pipeline.prompts import (
    ASSUMED_KNOWLEDGE,
    CONCEPT_ALIGNMENT,
    CONCEPT_EDGES,
    CONCEPT_INVENTORY,
    build_prompt,
)
from src.pipeline.saga import append_pinecone_delete
from src.pipeline.section_graph import build_cross_doc_section_graph
from src.pipeline.stage import (
    PathContext,
    StageDeps,
    StageInput,
    best_effort,
    filter_files_by_allowlist,
    load_path_context,
    require_deps,
    require_input,
    resolve_path_id,
    stage_reporter,
)
from src.semantic.vectors import chunk_embeddings_by_id

STAGE = "concept_graph_build"
ARTIFACT_TYPE = "concept_graph_build"

# Row IDs are derived from (path, key) so identical inventories yield identical graphs.
CONCEPT_ID_NAMESPACE = UUID("6f1c2a8e-3b7d-5e4f-9a10-2c4b8d6e0f13")

MIN_FILE_INVENTORY_TOTAL = 2000


@dataclass
class ConceptGraphOutput:
    path_id: UUID | None = None
    concepts_made: int = 0
    edges_made: int = 0
    pinecone_batches: int = 0
    skipped: bool = False
    cached: bool = False
    pinecone_skipped: bool = False
    adaptive: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path_id": str(self.path_id) if self.path_id else None,
            "concepts_made": self.concepts_made,
            "edges_made": self.edges_made,
            "pinecone_batches": self.pinecone_batches,
            "skipped": self.skipped,
            "cached": self.cached,
            "pinecone_skipped": self.pinecone_skipped,
            "adaptive": self.adaptive,
        }


@dataclass
class GraphInputs:
    """Everything a concept graph stage reads from the database up front."""

    ctx: PathContext
    existing: list[Concept] = field(default_factory=list)
    files: list[Any] = field(default_factory=list)
    chunks: list[Any] = field(default_factory=list)
    signatures: list[Any] = field(default_factory=list)
    chunks_namespace: str = ""
    signals: AdaptiveSignals = field(default_factory=AdaptiveSignals)


@dataclass
class ExcerptBudget:
    per_file: int
    max_chars: int
    max_lines: int
    max_total: int

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.per_file, self.max_chars, self.max_lines, self.max_total)


@dataclass
class InventoryResult:
    concepts: list[ConceptItem] = field(default_factory=list)
    coverage: Coverage = field(default_factory=Coverage)
    chunk_ids: list[UUID] = field(default_factory=list)
    conf_sum: float = 0.0
    conf_count: int = 0

    def absorb(self, coverage: Coverage, concepts: list[ConceptItem], chunk_ids: list[UUID] | None = None) -> None:
        self.concepts.extend(concepts)
        self.coverage.missing_topics.extend(coverage.missing_topics)
        if coverage.confidence > 0:
            self.conf_sum += coverage.confidence
            self.conf_count += 1
            self.coverage.notes = " ".join(p for p in (self.coverage.notes, coverage.notes) if p).strip()
        for cid in chunk_ids or []:
            if cid not in self.chunk_ids:
                self.chunk_ids.append(cid)

    def finish(self) -> InventoryResult:
        if self.conf_count:
            self.coverage.confidence = self.conf_sum / self.conf_count
        self.coverage.missing_topics = dedupe_strings(self.coverage.missing_topics)
        return self


# ========================================
# Inputs & budgets
# ========================================


def load_graph_inputs(
    session: Session, material_set_id: UUID, path_id: UUID, stage: str, adaptive: bool
) -> GraphInputs:
    """
    Read path context, existing concepts and the (allowlisted) corpus.

    The corpus is left empty when intake has not confirmed the path.
    """
    ctx = load_path_context(session, path_id)
    out = GraphInputs(ctx=ctx, existing=ConceptRepository(session).get_by_scope("path", path_id))
    if not ctx.paths_confirmed:
        return out

    materials = MaterialRepository(session)
    files = filter_files_by_allowlist(materials.files_by_set(material_set_id), ctx.allow_files, stage, path_id)
    file_ids = {f.id for f in files}
    out.files = files
    out.chunks = materials.chunks_by_files(sorted(file_ids, key=str))
    out.signatures = [s for s in materials.signatures_by_set(material_set_id) if s.material_file_id in file_ids]

    material_set = materials.get_set(material_set_id)
    source_id = (material_set.source_material_set_id if material_set else None) or material_set_id
    out.chunks_namespace = chunks_namespace(source_id)

    if adaptive:
        out.signals = load_adaptive_signals(session, material_set_id, path_id)
    else:
        out.signals = signals_from_corpus(files, out.chunks)
    return out


def resolve_excerpt_budgets(
    settings: Settings, signals: AdaptiveSignals, adaptive: bool, record: AdaptiveParams
) -> tuple[ExcerptBudget, ExcerptBudget]:
    """Inventory and edge excerpt budgets (settings act as ceilings when adaptive)."""
    ct = signals.content_type

    per_file_ceiling = settings.concept_graph_excerpts_per_file
    per_file = per_file_ceiling
    if adaptive:
        per_file = clamp_int_ceiling(round(signals.avg_pages_per_file / 10), 2, per_file_ceiling)
    if per_file <= 0:
        per_file = 14
    record.record("CONCEPT_GRAPH_EXCERPTS_PER_FILE", per_file, per_file_ceiling)

    chars_ceiling = settings.concept_graph_excerpt_max_chars or 700
    max_chars = chars_ceiling
    if adaptive:
        max_chars = clamp_int_ceiling(adjust_excerpt_chars_by_content_type(chars_ceiling, ct), 200, chars_ceiling)
    record.record("CONCEPT_GRAPH_EXCERPT_MAX_CHARS", max_chars, chars_ceiling)

    lines_ceiling = settings.concept_graph_excerpt_max_lines
    max_lines = lines_ceiling
    if adaptive and lines_ceiling > 0:
        max_lines = clamp_int_ceiling(adjust_excerpt_lines_by_content_type(lines_ceiling, ct), 8, lines_ceiling)
    record.record("CONCEPT_GRAPH_EXCERPT_MAX_LINES", max_lines, lines_ceiling)

    total_ceiling = settings.concept_graph_excerpt_max_total_chars
    max_total = total_ceiling
    if adaptive:
        max_total = clamp_int_ceiling(round(signals.page_count * 250), 8000, total_ceiling)
    record.record("CONCEPT_GRAPH_EXCERPT_MAX_TOTAL_CHARS", max_total, total_ceiling)

    edge_chars_ceiling = settings.concept_graph_edge_excerpt_max_chars or chars_ceiling
    edge_chars = edge_chars_ceiling
    if adaptive:
        edge_chars = clamp_int_ceiling(
            adjust_excerpt_chars_by_content_type(edge_chars_ceiling, ct), 200, edge_chars_ceiling
        )
    edge_lines_ceiling = settings.concept_graph_edge_excerpt_max_lines
    edge_lines = edge_lines_ceiling
    if adaptive and edge_lines_ceiling > 0:
        edge_lines = clamp_int_ceiling(
            adjust_excerpt_lines_by_content_type(edge_lines_ceiling, ct), 8, edge_lines_ceiling
        )
    edge_total_ceiling = settings.concept_graph_edge_excerpt_max_total_chars or total_ceiling
    edge_total = edge_total_ceiling
    if adaptive:
        edge_total = clamp_int_ceiling(round(signals.page_count * 200), 6000, edge_total_ceiling)
    record.record("CONCEPT_GRAPH_EDGE_EXCERPT_MAX_TOTAL_CHARS", edge_total, edge_total_ceiling)

    return (
        ExcerptBudget(per_file, max_chars, max_lines, max_total),
        ExcerptBudget(per_file, edge_chars, edge_lines, edge_total),
    )


def file_inventory_budget(base: ExcerptBudget, signals: AdaptiveSignals, adaptive: bool) -> ExcerptBudget:
    """Per-file share of the inventory budget."""
    per_file = base.per_file
    if adaptive:
        per_file = clamp_int_ceiling(round(signals.avg_pages_per_file / 25), 2, base.per_file)
    max_total = base.max_total
    if max_total <= 0:
        max_total = clamp_int_ceiling(round(signals.avg_pages_per_file * 200), 4000, 14000) if adaptive else 12000
    elif signals.file_count > 1:
        max_total = math.ceil(max_total / signals.file_count)
    return ExcerptBudget(per_file, base.max_chars, base.max_lines, max(max_total, MIN_FILE_INVENTORY_TOTAL))


def seed_prompt_json(keys: list[str], meta: SeedMeta) -> str:
    if not meta.usable or not keys:
        return ""
    return json.dumps({"seed_concept_keys": keys, "seed_quality": meta.to_meta()}, ensure_ascii=False)


def shorter_budget(max_total: int) -> int:
    """Halved excerpt budget for a context-length retry, or 0 when too small to retry."""
    current = max_total if max_total > 0 else 20000
    if current <= RETRY_MIN_TOTAL_CHARS:
        return 0
    return max(RETRY_MIN_TOTAL_CHARS, current // 2)


# ========================================
# Row identity & persistence
# ========================================


def concept_row_id(path_id: UUID, key: str) -> UUID:
    return uuid5(CONCEPT_ID_NAMESPACE, f"{path_id}:{key}")


def evidence_row_id(concept_id: UUID, chunk_id: UUID) -> UUID:
    return uuid5(CONCEPT_ID_NAMESPACE, f"evidence:{concept_id}:{chunk_id}")


def edge_row_id(from_id: UUID, to_id: UUID, edge_type: str) -> UUID:
    return uuid5(CONCEPT_ID_NAMESPACE, f"edge:{from_id}:{to_id}:{edge_type}")


def concept_document(c: ConceptItem) -> str:
    """Text embedded for a concept: name, summary and key points (the key when all are empty)."""
    doc = "\n".join([c.name, c.summary, "\n".join(c.key_points)]).strip()
    return doc or c.key


def write_concept_graph(
    session: Session,
    path_id: UUID,
    saga_id: UUID | None,
    concepts: list[ConceptItem],
    edges: list[EdgeItem],
    ids_by_key: dict[str, UUID],
    allowed_chunk_ids: set[str] | None,
    vector_namespace: str = "",
    pinecone_batch_size: int = 64,
) -> tuple[list[Concept], int]:
    """
    Insert concept rows, parent links, evidences and edges inside the caller's transaction.

    ``ids_by_key`` must cover every key referenced by ``concepts`` and
    ``edges``; keys of already persisted concepts may appear there so new
    rows can link to them. When ``vector_namespace`` is set, one
    ``pinecone_delete_ids`` saga action is appended per upsert batch.

    Returns:
        (created rows, edges written)
    """
    repo = ConceptRepository(session)
    rows: list[Concept] = []
    for c in concepts:
        cid = ids_by_key[c.key]
        rows.append(
            Concept(
                id=cid,
                scope="path",
                scope_id=path_id,
                key=c.key,
                name=c.name,
                summary=c.summary,
                key_points=list(c.key_points),
                depth=c.depth,
                sort_index=c.importance,
                vector_id=f"concept:{cid}",
                meta={"aliases": list(c.aliases), "importance": c.importance, **c.extra},
            )
        )
    session.add_all(rows)
    session.flush()

    # Parents are linked after every row exists
    by_id = {r.id: r for r in rows}
    for c in concepts:
        parent_id = ids_by_key.get(c.parent_key) if c.parent_key else None
        row = by_id.get(ids_by_key[c.key])
        if parent_id is not None and row is not None and parent_id != row.id:
            row.parent_id = parent_id
    session.flush()

    for c in concepts:
        cid = ids_by_key[c.key]
        for chunk_id in uuids_from_strings(filter_chunk_id_strings(c.citations, allowed_chunk_ids)):
            repo.insert_evidence_ignore(
                {
                    "id": evidence_row_id(cid, chunk_id),
                    "concept_id": cid,
                    "chunk_id": chunk_id,
                    "kind": "grounding",
                    "weight": 1.0,
                }
            )

    edges_made = 0
    for e in edges:
        from_id = ids_by_key.get(e.from_key)
        to_id = ids_by_key.get(e.to_key)
        if from_id is None or to_id is None:
            continue
        evidence = {"rationale": e.rationale, "citations": filter_chunk_id_strings(e.citations, allowed_chunk_ids)}
        repo.upsert_edge(
            {
                "id": edge_row_id(from_id, to_id, e.edge_type),
                "from_id": from_id,
                "to_id": to_id,
                "edge_type": e.edge_type,
                "strength": e.strength,
                "evidence": json.dumps(evidence, ensure_ascii=False),
            }
        )
        edges_made += 1

    if vector_namespace:
        for batch in batched([r.vector_id for r in rows], pinecone_batch_size):
            append_pinecone_delete(session, saga_id, vector_namespace, batch)
    return rows, edges_made


def restore_soft_deleted_graph(session_factory, path_id: UUID, lock_namespace: str = STAGE) -> str:
    """
    Recover after a unique violation on concept insert.

    Returns "exists" when a live graph is present, "restored" when
    soft-deleted rows were brought back, or "" when nothing could be done.
    """
    with session_factory() as session:
        if ConceptRepository(session).get_by_scope("path", path_id):
            return "exists"
    with session_factory() as session:
        advisory_xact_lock(session, lock_namespace, path_id)
        restored = ConceptRepository(session).restore_path(path_id)
    return "restored" if restored > 0 else ""


# ========================================
# LLM helpers
# ========================================


async def embed_documents(
    llm: LLMClient, docs: list[str], batch_size: int, concurrency: int, stage: str = STAGE
) -> list[list[float]]:
    """
    Embed documents in batches with bounded concurrency.

    Raises:
        StageValidationError: Empty input, a batch with the wrong count, or an
            empty vector anywhere in the result.
    """
    if not docs:
        raise StageValidationError(f"{stage}: empty embed docs")
    batch_size = batch_size if batch_size > 0 else 64
    starts = list(range(0, len(docs), batch_size))

    async def worker(_: int, start: int) -> list[list[float]]:
        part = docs[start : start + batch_size]
        with llm_timer("concept_embeddings", {"stage": stage, "batch_size": len(part), "batch_start": start}):
            vectors = await llm.embed(part)
        if len(vectors) != len(part):
            raise StageValidationError(
                f"{stage}: embedding count mismatch (got {len(vectors)} want {len(part)})"
            )
        return [list(v) for v in vectors]

    out = [v for batch in await run_limited(starts, worker, concurrency) for v in batch]
    for i, vec in enumerate(out):
        if not vec:
            raise StageValidationError(f"{stage}: empty embedding at index {i}")
    return out


async def generate_edges(
    llm: LLMClient,
    concepts: list[ConceptItem],
    excerpts: str,
    intent_md: str,
    stage: str = STAGE,
    shorter_excerpts=None,
) -> list[EdgeItem]:
    """
    Ask the edge prompt for relations between ``concepts``.

    ``shorter_excerpts`` is a zero-argument callable used once when the
    prompt overflows the model context.
    """
    concepts_json = concepts_json_for_prompt(concepts)

    async def call(text: str, retry: str = "") -> list[EdgeItem]:
        prompt = build_prompt(CONCEPT_EDGES, concepts_json=concepts_json, excerpts=text, path_intent_md=intent_md)
        fields = {"stage": stage, "concept_count": len(concepts), "excerpt_chars": len(text)}
        if retry:
            fields["retry"] = retry
        with llm_timer("concept_edges", fields):
            obj = await llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)
        return parse_concept_edges(obj)

    try:
        return await call(excerpts)
    except ContextLengthError:
        shorter = shorter_excerpts() if shorter_excerpts is not None else ""
        if not shorter:
            raise
        return await call(shorter, "shorter")


async def generate_assumed_knowledge(
    llm: LLMClient,
    concepts: list[ConceptItem],
    excerpts: str,
    intent_md: str,
    stage: str = STAGE,
    path_id: UUID | None = None,
) -> dict[str, Any]:
    """Ask for prerequisites the material assumes but never explains."""
    prompt = build_prompt(
        ASSUMED_KNOWLEDGE,
        concepts_json=concepts_json_for_prompt(concepts),
        excerpts=excerpts,
        path_intent_md=intent_md,
    )
    fields = {"stage": stage, "path_id": str(path_id), "concept_count": len(concepts)}
    with llm_timer("assumed_knowledge", fields):
        return await llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)


# ========================================
# Vectors & mirror
# ========================================


async def upsert_concept_vectors(
    vector_store: VectorStore,
    path_id: UUID,
    rows: list[Concept],
    embeddings_by_key: dict[str, list[float]],
    canonical_by_key: dict[str, UUID],
    batch_size: int = 64,
    concurrency: int = 32,
    reporter: ProgressReporter | None = None,
    progress_range: tuple[int, int] = (92, 96),
) -> tuple[int, bool]:
    """
    Index concept vectors in the path namespace and canonical vectors in the global namespace.

    Failures are logged and swallowed.

    Returns:
        (path batches upserted, whether any upsert failed)
    """
    reporter = reporter or ProgressReporter()
    namespace = path_concepts_namespace(path_id)
    records = [
        VectorRecord(
            id=r.vector_id,
            values=embeddings_by_key[r.key],
            metadata={
                "type": "concept",
                "concept_id": str(r.id),
                "key": r.key,
                "name": r.name,
                "path_id": str(path_id),
            },
        )
        for r in rows
        if embeddings_by_key.get(r.key)
    ]
    batches = batched(records, batch_size)
    done = 0

    async def worker(_: int, batch: list[VectorRecord]) -> bool:
        nonlocal done
        await vector_store.upsert(namespace, batch)
        done += 1
        lo, hi = progress_range
        reporter.update_range(done, len(batches), lo, hi, f"Indexing concepts {done}/{len(batches)}")
        return True

    results = await run_limited_settled(batches, worker, concurrency, f"pinecone upsert ({namespace})")
    ok = sum(1 for r in results if r)
    failed = ok < len(batches)

    global_records: list[VectorRecord] = []
    seen: set[str] = set()
    for r in rows:
        canonical_id = canonical_by_key.get(r.key)
        vec = embeddings_by_key.get(r.key)
        if canonical_id is None or not vec:
            continue
        vid = f"concept:{canonical_id}"
        if vid in seen:
            continue
        seen.add(vid)
        global_records.append(
            VectorRecord(
                id=vid,
                values=vec,
                metadata={
                    "type": "concept",
                    "scope": "global",
                    "canonical": True,
                    "concept_id": str(canonical_id),
                    "observedKey": r.key,
                    "observedName": r.name or r.key,
                },
            )
        )
    if global_records:
        if not await best_effort(
            f"pinecone global concept upsert ({GLOBAL_CONCEPTS_NAMESPACE})",
            lambda: vector_store.upsert(GLOBAL_CONCEPTS_NAMESPACE, global_records),
        ):
            failed = True
    return ok, failed


async def mirror_concept_graph(deps: StageDeps, path_id: UUID) -> None:
    """Push the path's live concepts and edges to the graph mirror."""
    if deps.graph_mirror is None or isinstance(deps.graph_mirror, NullGraphMirror):
        return

    def load() -> tuple[list[Concept], list[Any]]:
        with deps.session_factory() as session:
            repo = ConceptRepository(session)
            concepts = repo.get_by_scope("path", path_id)
            return concepts, repo.edges_for_concepts([c.id for c in concepts])

    concepts, edges = await asyncio.to_thread(load)
    await deps.graph_mirror.upsert_path_concept_graph(path_id, concepts, edges)


# ========================================
# Stage
# ========================================


class ConceptGraphBuilder:
    """
    One run of the concept graph build for a single path.

    Example:
        >>> out = await ConceptGraphBuilder(deps, inp).run()
    """

    def __init__(self, deps: StageDeps, inp: StageInput):
        self.deps = deps
        self.inp = inp
        self.settings = deps.get_settings()
        self.reporter = stage_reporter(inp, STAGE)
        self.adaptive = self.settings.adaptive_enabled_for_stage(STAGE)
        self.fast = (inp.mode or "").strip().lower() == "fast"
        self.path_id: UUID | None = None
        self.intent_md = ""
        self.allowed_chunk_ids: set[str] = set()
        self.signals = AdaptiveSignals()
        self.record = AdaptiveParams(stage=STAGE, enabled=self.adaptive, signals=self.signals)
        self._sections_task: asyncio.Task | None = None
        self._sections_json: str | None = None

    @property
    def llm(self) -> LLMClient:
        return self.deps.llm

    # ---- cross-document sections ----

    def _start_section_graph(self, files: list[Any], chunks: list[Any]) -> None:
        min_score = self.settings.concept_graph_section_min_score
        if self.adaptive:
            min_score = adjust_threshold_by_content_type(
                "CONCEPT_GRAPH_SECTION_MIN_SCORE", min_score, self.signals.content_type
            )
        self._sections_task = asyncio.create_task(
            build_cross_doc_section_graph(self.llm, files, chunks, min_score, self.settings.concept_graph_section_top_k)
        )

    async def sections_json(self) -> str:
        if self._sections_json is not None:
            return self._sections_json
        self._sections_json = ""
        if self._sections_task is not None:
            try:
                self._sections_json, _ = await self._sections_task
            except Exception as e:  # Sections only enrich prompts
                logger.warning(f"{STAGE}: cross-document section graph failed (continuing): {e}")
        return self._sections_json

    def _cancel_sections(self) -> None:
        if self._sections_task is not None and not self._sections_task.done():
            self._sections_task.cancel()

    # ---- inventory ----

    async def _inventory(
        self, excerpts: str, seed_json: str, cross_doc: str, fields: dict[str, Any]
    ) -> tuple[Coverage, list[ConceptItem]]:
        prompt = build_prompt(
            CONCEPT_INVENTORY,
            excerpts=excerpts,
            path_intent_md=self.intent_md,
            cross_doc_sections_json=cross_doc,
            seed_keys=seed_json,
        )
        with llm_timer("concept_inventory", {"stage": STAGE, "path_id": str(self.path_id), **fields}):
            obj = await self.llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)
        coverage = parse_coverage(obj)
        concepts = parse_concept_inventory(obj)
        if not concepts:
            raise StageValidationError(f"{STAGE}: inventory returned 0 concepts")
        return coverage, concepts

    async def inventory_per_file(
        self,
        files: list[Any],
        chunks: list[Any],
        signatures: list[Any],
        base: ExcerptBudget,
    ) -> tuple[InventoryResult, int, int]:
        """
        Inventory every file independently.

        Returns:
            (merged result, files attempted, files succeeded)
        """
        budget = file_inventory_budget(base, self.signals, self.adaptive)
        concurrency = max(self.settings.concept_graph_file_inventory_concurrency, 1)
        self.record.record("CONCEPT_GRAPH_FILE_EXCERPTS_PER_FILE", budget.per_file, base.per_file)
        self.record.params["CONCEPT_GRAPH_FILE_EXCERPT_MAX_TOTAL_CHARS"] = {"actual": budget.max_total}
        self.record.params["CONCEPT_GRAPH_FILE_INVENTORY_CONCURRENCY"] = {"actual": concurrency}

        by_file: dict[Any, list[Any]] = {}
        for ch in chunks:
            by_file.setdefault(ch.material_file_id, []).append(ch)
        sig_by_file = {s.material_file_id: s for s in signatures}
        targets = [f for f in sorted(files, key=lambda f: str(f.id)) if by_file.get(f.id)]
        file_signals = replace(self.signals, file_count=1)
        done = 0

        async def worker(_: int, f: Any) -> tuple[Coverage, list[ConceptItem]] | None:
            nonlocal done
            try:
                fchunks = by_file[f.id]
                excerpts, _ = build_stratified_excerpts(fchunks, *budget.as_tuple())
                if not excerpts:
                    return None

                seed_json = ""
                seed_meta = SeedMeta()
                sig = sig_by_file.get(f.id)
                if sig is not None:
                    keys, seed_meta = self._seeds([sig], file_signals)
                    seed_json = seed_prompt_json(keys, seed_meta)

                fields = {"scope": "file", "file_id": str(f.id), "excerpt_chars": len(excerpts)}
                try:
                    coverage, concepts = await self._inventory(excerpts, seed_json, "", fields)
                except ContextLengthError:
                    retry_total = shorter_budget(budget.max_total)
                    if not retry_total:
                        raise
                    excerpts, _ = build_stratified_excerpts(
                        fchunks, budget.per_file, budget.max_chars, budget.max_lines, retry_total
                    )
                    coverage, concepts = await self._inventory(
                        excerpts, seed_json, "", {**fields, "excerpt_chars": len(excerpts), "retry": "shorter"}
                    )

                if seed_json and seed_meta.usable:
                    weak, _ = self._weak(concepts, coverage, seed_meta.seed_count, file_signals)
                    if weak:
                        coverage, concepts = await self._inventory(excerpts, "", "", {**fields, "retry": "seed_retry"})

                concepts, _ = normalize_concept_inventory(concepts, self.allowed_chunk_ids)
                concepts, _ = dedupe_concept_inventory_by_key(concepts)
                if not concepts:
                    return None
                return coverage, concepts
            finally:
                done += 1
                self.reporter.update_range(done, len(targets), 10, 35, f"Inventorying concepts {done}/{len(targets)}")

        self.reporter.update(10, f"Inventorying concepts ({len(targets)} files)")
        results = await run_limited_settled(targets, worker, concurrency, f"{STAGE}: file inventory")
        merged = InventoryResult()
        succeeded = 0
        for res in results:
            if res is None:
                continue
            merged.absorb(res[0], res[1])
            succeeded += 1
        failed = len(targets) - succeeded
        if failed:
            logger.warning(f"{STAGE}: per-file inventory failed for {failed}/{len(targets)} files")
        return merged.finish(), len(targets), succeeded

    async def inventory_global(
        self,
        chunks: list[Any],
        base: ExcerptBudget,
        seed_keys: list[str],
        seed_meta: SeedMeta,
    ) -> InventoryResult:
        """Sliced inventory over the whole corpus, used when per-file inventories are weak."""
        cross_doc = await self.sections_json()
        s = self.settings
        slice_total = inventory_slice_max_total(
            self.signals, s.concept_graph_global_slice_max_total_chars, self.adaptive
        )
        slice_total = slice_total or 20000
        per_file = base.per_file
        slice_max = inventory_slice_max(self.signals, s.concept_graph_global_slice_max, self.adaptive)
        estimate = estimate_inventory_sample_count(
            chunks, per_file, self.signals.file_count, slice_total, self.signals.content_type
        )
        slice_count = max(inventory_slice_count(self.signals, estimate, slice_max), 1)
        self.record.record("CONCEPT_GRAPH_INVENTORY_SLICES", slice_count, s.concept_graph_global_slice_max)
        self.record.record(
            "CONCEPT_GRAPH_INVENTORY_SLICE_MAX_TOTAL_CHARS", slice_total, s.concept_graph_global_slice_max_total_chars
        )
        self.record.params["CONCEPT_GRAPH_INVENTORY_SLICE_EXCERPTS_PER_FILE"] = {"actual": per_file}
        if estimate:
            self.record.params["CONCEPT_GRAPH_INVENTORY_SLICE_SAMPLE_ESTIMATE"] = {"actual": estimate}

        async def run_slices(count: int, seed_json: str) -> InventoryResult:
            concurrency = inventory_slice_concurrency(self.signals, count, s.concept_graph_global_slice_concurrency)
            slices = build_inventory_slices(chunks, count) or [list(chunks)]

            async def worker(idx: int, part: list[Any]) -> tuple[Coverage, list[ConceptItem], list[UUID]] | None:
                file_ids = {str(c.material_file_id): c.material_file_id for c in part}
                order = [file_ids[fid] for fid in slice_file_order(part, idx)]
                excerpts, ids = build_stratified_excerpts(
                    part, per_file, base.max_chars, base.max_lines, slice_total, file_order=order
                )
                if not excerpts:
                    return None
                fields = {"scope": "global", "slice": idx, "slice_count": len(slices), "excerpt_chars": len(excerpts)}
                try:
                    coverage, concepts = await self._inventory(excerpts, seed_json, cross_doc, fields)
                except ContextLengthError:
                    retry_total = shorter_budget(slice_total)
                    if not retry_total:
                        raise
                    excerpts, ids = build_stratified_excerpts(
                        part, per_file, base.max_chars, base.max_lines, retry_total, file_order=order
                    )
                    coverage, concepts = await self._inventory(
                        excerpts, seed_json, cross_doc, {**fields, "excerpt_chars": len(excerpts), "retry": "shorter"}
                    )
                return coverage, concepts, ids

            agg = InventoryResult()
            for res in await run_limited(slices, worker, concurrency):
                if res is not None:
                    agg.absorb(res[0], res[1], res[2])
            if not agg.concepts:
                raise StageValidationError(f"{STAGE}: global inventory returned 0 concepts")
            return agg.finish()

        # A small seed list biases every slice the same way
        seed_json = seed_prompt_json(seed_keys, seed_meta) if slice_count == 1 else ""
        result = await run_slices(slice_count, seed_json)

        if seed_json:
            weak, _ = self._weak(result.concepts, result.coverage, seed_meta.seed_count, self.signals)
            if weak:
                result = await run_slices(1, "")

        guardrail = min_concepts_guardrail(self.signals)
        weak, _ = self._weak(result.concepts, result.coverage, seed_meta.seed_count, self.signals)
        if weak and guardrail > 0:
            boosted = boost_inventory_slice_count(slice_count, slice_max, len(result.concepts), guardrail)
            if boosted > slice_count:
                extra = await run_slices(boosted, "")
                merged = InventoryResult()
                merged.absorb(result.coverage, result.concepts, result.chunk_ids)
                merged.absorb(extra.coverage, extra.concepts, extra.chunk_ids)
                result = merged.finish()
                self.record.params["CONCEPT_GRAPH_INVENTORY_SLICE_BOOST"] = {"actual": boosted, "previous": slice_count}
        return result

    def _seeds(self, signatures: list[Any], signals: AdaptiveSignals) -> tuple[list[str], SeedMeta]:
        s = self.settings
        return build_concept_seed_from_signatures(
            signatures,
            signals,
            self.adaptive,
            s.concept_graph_seed_min_files,
            s.concept_graph_seed_min_keys,
            s.concept_graph_seed_min_quality,
        )

    def _weak(
        self, concepts: list[ConceptItem], coverage: Coverage, seed_count: int, signals: AdaptiveSignals
    ) -> tuple[bool, dict[str, Any]]:
        return concept_inventory_weak(
            concepts,
            coverage,
            seed_count,
            signals,
            self.adaptive,
            self.settings.concept_graph_min_concepts,
            self.settings.concept_graph_min_coverage_conf,
        )

    # ---- coverage ----

    def coverage_overrides(self) -> dict[str, Any]:
        if not self.fast:
            return {}
        sig = self.signals
        passes = adaptive_from_ratio(sig.page_count, 1 / 80, 1, 1) if self.adaptive else 1
        per_file = clamp_int_ceiling(round(sig.avg_pages_per_file / 25), 1, 3) if self.adaptive else 3
        max_chars = 650
        if self.adaptive:
            max_chars = clamp_int_ceiling(adjust_excerpt_chars_by_content_type(650, sig.content_type), 200, 650)
        max_total = clamp_int_ceiling(round(sig.page_count * 150), 6000, 18000) if self.adaptive else 18000
        return {
            "passes": passes,
            "per_file": per_file,
            "per_file_ceiling": 3,
            "max_chars": max_chars,
            "max_total": max_total,
            "targeted_only": True,
        }

    async def complete_coverage(
        self,
        inputs: GraphInputs,
        concepts: list[ConceptItem],
        coverage: Coverage,
        seen_ids: list[UUID],
        seed_meta: SeedMeta,
        chunk_embs: dict[str, list[float]],
    ) -> list[ConceptItem]:
        params, cov_record = resolve_coverage_params(
            self.settings, self.signals, self.adaptive, STAGE, self.coverage_overrides()
        )
        self.record.params.update(cov_record.params)

        if not self.fast:
            guardrail = min_concepts_guardrail(self.signals)
            boost = (guardrail > 0 and len(concepts) < guardrail) or self._weak(
                concepts, coverage, seed_meta.seed_count, self.signals
            )[0]
            large = self.signals.page_count >= 200 or self.signals.chunk_count >= 600
            broad = large and not coverage.missing_topics
            per_file_ceiling = self.settings.concept_graph_coverage_excerpts_per_file
            if boost:
                params.targeted_only = False
                if self.settings.concept_graph_coverage_passes <= 0:
                    params.passes = max(params.passes, desired_coverage_passes(self.signals))
                params.per_file = max(
                    params.per_file, clamp_int_ceiling(round(self.signals.avg_pages_per_file / 10), 3, per_file_ceiling)
                )
                self.record.params["CONCEPT_GRAPH_COVERAGE_BOOST"] = {
                    "enabled": True,
                    "concepts": len(concepts),
                    "guardrail": guardrail,
                }
            if broad:
                params.targeted_only = False
                if self.settings.concept_graph_coverage_passes <= 0:
                    params.passes = max(params.passes, 2)
                params.per_file = max(
                    params.per_file, clamp_int_ceiling(round(self.signals.avg_pages_per_file / 10), 4, per_file_ceiling)
                )
                self.record.params["CONCEPT_GRAPH_COVERAGE_BROAD_SWEEP"] = {
                    "enabled": True,
                    "pages": self.signals.page_count,
                    "chunks": self.signals.chunk_count,
                }
            if boost or broad:
                round_cap = self.settings.concept_graph_coverage_max_rounds or params.passes
                params.max_rounds = max(params.max_rounds, min(params.passes, round_cap))

        sig_by_file = {s.material_file_id: s for s in inputs.signatures}
        seed_topics = outline_seed_topics(inputs.files, sig_by_file, self.signals)
        if seed_topics:
            self.record.params["CONCEPT_GRAPH_OUTLINE_SEED_TOPICS"] = {"actual": len(seed_topics)}

        cov_input = CoverageInput(
            path_id=self.path_id,
            material_set_id=self.inp.material_set_id,
            chunks_namespace=inputs.chunks_namespace,
            intent_md=self.intent_md,
            chunks=inputs.chunks,
            concepts=concepts,
            initial_coverage=coverage,
            initial_chunk_ids=seen_ids,
            allowed_chunk_ids=self.allowed_chunk_ids,
            chunk_embeddings=chunk_embs,
            seed_topics=seed_topics,
            allow_files=inputs.ctx.allow_files,
            signals=self.signals,
            stage=STAGE,
            reporter=self.reporter,
            progress_start=35,
            progress_end=55,
        )
        self.reporter.update(35, "Expanding coverage")
        result = await CoverageEngine(self.llm, self.deps.vector_store).complete(cov_input, params)
        self.record.params.update(result.adaptive)
        self.reporter.update(55, f"Coverage complete ({len(result.concepts)} concepts)")
        return result.concepts

    # ---- enrichment ----

    async def _assumed(self, concepts: list[ConceptItem], excerpts: str) -> dict[str, Any] | None:
        return await generate_assumed_knowledge(self.llm, concepts, excerpts, self.intent_md, STAGE, self.path_id)

    async def _alignment(self, concepts: list[ConceptItem], cross_doc: str, pass_name: str) -> dict[str, Any]:
        prompt = build_prompt(
            CONCEPT_ALIGNMENT,
            concepts_json=concepts_json_for_prompt(concepts),
            cross_doc_sections_json=cross_doc,
        )
        fields = {"stage": STAGE, "path_id": str(self.path_id), "pass": pass_name, "concept_count": len(concepts)}
        with llm_timer("concept_alignment", fields):
            return await self.llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)

    async def enrich(self, concepts: list[ConceptItem], excerpts: str) -> list[ConceptItem]:
        """
        Assumed knowledge and alignment, run concurrently; both are best-effort.

        Alignment is re-run on the enlarged list when assumed knowledge added
        new concepts.
        """
        s = self.settings
        assumed_on = s.concept_graph_assumed_knowledge_enabled and bool(excerpts) and bool(concepts)
        align_on = s.concept_graph_alignment_enabled and bool(concepts)
        self.reporter.update(56, "Assumed knowledge + alignment")
        cross_doc = await self.sections_json() if align_on else ""

        async def skipped() -> None:
            return None

        assumed_res, align_res = await asyncio.gather(
            self._assumed(concepts, excerpts) if assumed_on else skipped(),
            self._alignment(concepts, cross_doc, "initial") if align_on else skipped(),
            return_exceptions=True,
        )

        added = 0
        if isinstance(assumed_res, Exception):
            logger.warning(f"{STAGE}: assumed knowledge failed (continuing): {assumed_res}")
        elif assumed_res:
            concepts, added = apply_assumed_knowledge(concepts, assumed_res, self.allowed_chunk_ids)
            if added:
                logger.info(f"{STAGE}: assumed knowledge added {added} concepts (path {self.path_id})")
        self.reporter.update(60, f"Assumed knowledge done (+{added})")

        if align_on and added:
            try:
                align_res = await self._alignment(concepts, cross_doc, "after_assumed")
            except Exception as e:  # Alignment is best-effort
                align_res = e
        if isinstance(align_res, Exception):
            logger.warning(f"{STAGE}: concept alignment failed (continuing): {align_res}")
        elif align_res:
            concepts = apply_concept_alignment(concepts, align_res, self.allowed_chunk_ids)
        self.reporter.update(65, "Concepts aligned")
        return concepts

    # ---- run ----

    async def run(self) -> ConceptGraphOutput:
        require_deps(STAGE, self.deps.llm, self.deps.session_factory)
        require_input(STAGE, self.inp)
        try:
            return await self._run()
        finally:
            self._cancel_sections()
            self.reporter.flush()

    async def _run(self) -> ConceptGraphOutput:
        deps, inp, s = self.deps, self.inp, self.settings
        self.path_id = path_id = await resolve_path_id(deps, inp)
        out = ConceptGraphOutput(path_id=path_id)

        inputs = await asyncio.to_thread(self._load, path_id)
        self.signals = inputs.signals
        self.record = AdaptiveParams(stage=STAGE, enabled=self.adaptive, signals=self.signals)
        if not inputs.ctx.paths_confirmed:
            logger.info(f"{STAGE}: path {path_id} not confirmed by intake; skipping")
            out.skipped = True
            return out
        self.intent_md = inputs.ctx.intent_md

        input_hash = ""
        if artifact_cache_enabled():
            input_hash = compute_artifact_hash(
                STAGE,
                inp.material_set_id,
                path_id,
                {
                    "files": files_fingerprint(inputs.files),
                    "chunks": chunks_fingerprint(inputs.chunks),
                    "signatures": signatures_fingerprint(inputs.signatures),
                    "allow_files": sorted_id_strings(inputs.ctx.allow_files),
                    "intent_md": normalize_hash_text(self.intent_md),
                    "mode": inp.mode or "",
                    "env": env_snapshot(["CONCEPT_GRAPH_"], ["OPENAI_MODEL", "AI_MODEL"]),
                },
            )

        if inputs.existing:
            return await self._existing_graph(out, input_hash)

        if not inputs.chunks:
            raise StageValidationError(f"{STAGE}: no chunks for material set {inp.material_set_id}")

        chunks = inputs.chunks
        self.allowed_chunk_ids = {str(ch.id) for ch in chunks}
        chunk_embs = chunk_embeddings_by_id(chunks)

        if s.concept_graph_formula_extraction_enabled:
            await self._extract_formulas(chunks)

        self._start_section_graph(inputs.files, chunks)

        inv_budget, edge_budget = resolve_excerpt_budgets(s, self.signals, self.adaptive, self.record)
        excerpts, excerpt_ids = build_stratified_excerpts(chunks, *inv_budget.as_tuple())
        if not excerpts:
            raise StageValidationError(f"{STAGE}: empty excerpts")
        if edge_budget.as_tuple() == inv_budget.as_tuple():
            edge_excerpts = excerpts
        else:
            edge_excerpts, _ = build_stratified_excerpts(chunks, *edge_budget.as_tuple())

        seed_keys, seed_meta = self._seeds(inputs.signatures, self.signals)
        self.record.params["CONCEPT_GRAPH_SEED"] = seed_meta.to_meta()

        # ---- inventory ----
        inventory, attempted, succeeded = await self.inventory_per_file(
            inputs.files, chunks, inputs.signatures, inv_budget
        )
        min_ratio = min(s.concept_graph_min_success_ratio if s.concept_graph_min_success_ratio > 0 else 0.6, 1.0)
        self.record.params["CONCEPT_GRAPH_FILE_INVENTORY_MIN_SUCCESS_RATIO"] = {"actual": min_ratio}
        ratio = succeeded / max(attempted, 1)
        weak, weak_params = self._weak(inventory.concepts, inventory.coverage, seed_meta.seed_count, self.signals)
        self.record.params["CONCEPT_GRAPH_INVENTORY_WEAK"] = weak_params
        if succeeded == 0 or ratio < min_ratio or weak:
            logger.warning(
                f"{STAGE}: per-file inventory weak; falling back to global inventory "
                f"(path {path_id}, files {succeeded}/{attempted}, weak={weak})"
            )
            self.reporter.update(35, "Running global concept inventory")
            inventory = await self.inventory_global(chunks, inv_budget, seed_keys, seed_meta)

        concepts = inventory.concepts
        if not concepts:
            raise StageValidationError(f"{STAGE}: concept inventory returned 0 concepts")
        self.reporter.update(35, f"Inventory complete ({len(concepts)} concepts)")

        concepts, stats = normalize_concept_inventory(concepts, self.allowed_chunk_ids)
        if stats.modified:
            logger.info(
                f"Concept inventory normalized: keys={stats.keys_changed} depth={stats.depth_recomputed} "
                f"parents={stats.parents_repaired} cycles={stats.cycles_broken} citations={stats.citations_filtered}"
            )
        concepts, dups = dedupe_concept_inventory_by_key(concepts)
        if dups:
            logger.warning(f"Concept inventory returned {dups} duplicate keys; deduped")
        if not concepts:
            raise StageValidationError(f"{STAGE}: concept inventory returned 0 unique concepts")

        seen_ids = list(excerpt_ids)
        for cid in inventory.chunk_ids:
            if cid not in seen_ids:
                seen_ids.append(cid)

        # ---- coverage + enrichment ----
        concepts = await self.complete_coverage(inputs, concepts, inventory.coverage, seen_ids, seed_meta, chunk_embs)
        concepts = await self.enrich(concepts, excerpts)
        concepts, _ = normalize_concept_inventory(concepts, self.allowed_chunk_ids)
        concepts, _ = dedupe_concept_inventory_by_key(concepts)
        concepts.sort(key=lambda c: c.key)

        # ---- edges + embeddings ----
        self.reporter.update(68, "Generating edges + embeddings")

        def shorter_edges() -> str:
            total = shorter_budget(edge_budget.max_total)
            if not total:
                return ""
            text, _ = build_stratified_excerpts(
                chunks, edge_budget.per_file, edge_budget.max_chars, edge_budget.max_lines, total
            )
            return text

        edges, embeddings = await asyncio.gather(
            generate_edges(self.llm, concepts, edge_excerpts, self.intent_md, STAGE, shorter_edges),
            embed_documents(
                self.llm,
                [concept_document(c) for c in concepts],
                s.concept_graph_embed_batch_size,
                s.concept_graph_embed_concurrency,
            ),
        )
        self.reporter.update(80, "Edges + embeddings ready")
        edges = edges + assumed_prereq_edges(concepts, edges, self.allowed_chunk_ids)
        edges, edge_stats = normalize_concept_edges(edges, concepts, self.allowed_chunk_ids)
        if edge_stats.modified:
            logger.info(
                f"Concept edges normalized: missing={edge_stats.dropped_missing} self_loops={edge_stats.self_loops} "
                f"types={edge_stats.type_normalized} clamped={edge_stats.strength_clamped} deduped={edge_stats.deduped}"
            )
        if len(embeddings) != len(concepts):
            raise StageValidationError(
                f"{STAGE}: embedding count mismatch (got {len(embeddings)} want {len(concepts)})"
            )

        # ---- semantic canonical matching ----
        semantic: dict[str, UUID] = {}
        if s.canonical_concept_semantic_enabled:
            params = resolve_semantic_match_params(s, self.signals, self.adaptive)
            self.record.params.update(params.to_meta(s.canonical_concept_semantic_top_k))

            def progress(done: int, total: int) -> None:
                self.reporter.update_range(done, total, 80, 88, f"Matching canonical concepts {done}/{total}")

            semantic = await semantic_match_canonical_concepts(
                deps.session_factory, deps.vector_store, concepts, embeddings, params, progress
            )
        self.reporter.update(88, f"Canonical match complete ({len(semantic)} matched)")

        # ---- persist ----
        self.reporter.update(90, "Persisting concept graph")
        ids_by_key = {c.key: concept_row_id(path_id, c.key) for c in concepts}
        namespace = path_concepts_namespace(path_id) if deps.vector_store is not None else ""

        def persist() -> tuple[list[Concept], int] | None:
            with deps.session_factory() as session:
                advisory_xact_lock(session, STAGE, path_id)
                if ConceptRepository(session).get_by_scope("path", path_id):
                    return None
                return write_concept_graph(
                    session,
                    path_id,
                    inp.saga_id,
                    concepts,
                    edges,
                    ids_by_key,
                    self.allowed_chunk_ids,
                    namespace,
                    s.concept_graph_pinecone_batch_size,
                )

        try:
            written = await asyncio.to_thread(persist)
        except IntegrityError as e:
            if not is_unique_violation(e):
                raise
            outcome = await asyncio.to_thread(restore_soft_deleted_graph, deps.session_factory, path_id)
            if not outcome:
                raise
            logger.warning(f"{STAGE}: unique violation on insert; graph {outcome} (path {path_id})")
            await best_effort("graph mirror sync", lambda: mirror_concept_graph(deps, path_id))
            return out

        if written is None:
            logger.info(f"{STAGE}: concept graph already persisted by another worker (path {path_id})")
            out.skipped = True
            await best_effort("graph mirror sync", lambda: mirror_concept_graph(deps, path_id))
            return out
        rows, out.edges_made = written
        out.concepts_made = len(rows)
        self.reporter.update(92, "Concept graph persisted")

        canonical_by_key: dict[str, UUID] = {}
        try:
            canonical_by_key = await asyncio.to_thread(canonicalize_path, deps.session_factory, path_id, semantic)
        except Exception as e:  # Canonical links are rebuilt on the next run
            logger.warning(f"{STAGE}: canonicalization failed (continuing): {e}")

        if deps.vector_store is not None:
            embeddings_by_key = {c.key: embeddings[i] for i, c in enumerate(concepts)}
            out.pinecone_batches, out.pinecone_skipped = await upsert_concept_vectors(
                deps.vector_store,
                path_id,
                rows,
                embeddings_by_key,
                canonical_by_key,
                s.concept_graph_pinecone_batch_size,
                s.concept_graph_pinecone_concurrency,
                self.reporter,
            )
            self.reporter.update(96, f"Indexed concepts ({out.pinecone_batches} batches)")
        else:
            out.pinecone_skipped = True

        await best_effort("graph mirror sync", lambda: mirror_concept_graph(deps, path_id))
        self.reporter.update(98, "Concept graph ready")

        out.adaptive = self.record.to_meta()
        if input_hash:
            await asyncio.to_thread(self._write_cache, path_id, input_hash, out)
        self.reporter.update(100, "Concept graph built")
        return out

    def _load(self, path_id: UUID) -> GraphInputs:
        with self.deps.session_factory() as session:
            return load_graph_inputs(session, self.inp.material_set_id, path_id, STAGE, self.adaptive)

    async def _extract_formulas(self, chunks: list[Any]) -> None:
        updates = await extract_formulas(
            self.llm, chunks, self.allowed_chunk_ids, self.settings.concept_graph_formula_batch_size
        )
        if not updates:
            return
        apply_formula_updates(chunks, updates)

        def persist() -> int:
            with self.deps.session_factory() as session:
                return persist_formula_updates(session, updates)

        await best_effort("formula metadata persist", lambda: asyncio.to_thread(persist))

    async def _existing_graph(self, out: ConceptGraphOutput, input_hash: str) -> ConceptGraphOutput:
        """A graph already exists: a cache hit is a no-op, otherwise refresh canonical links and the mirror."""
        path_id = out.path_id

        def cache_hit() -> bool:
            with self.deps.session_factory() as session:
                _, hit = artifact_cache_get(
                    session, self.inp.owner_user_id, self.inp.material_set_id, path_id, ARTIFACT_TYPE, input_hash
                )
                return hit

        if input_hash and await asyncio.to_thread(cache_hit):
            logger.info(f"{STAGE}: artifact cache hit (path {path_id})")
            out.cached = True
            return out

        await best_effort(
            f"{STAGE}: canonicalize existing graph",
            lambda: asyncio.to_thread(canonicalize_path, self.deps.session_factory, path_id, {}),
        )
        await best_effort("graph mirror sync", lambda: mirror_concept_graph(self.deps, path_id))
        out.skipped = True
        return out

    def _write_cache(self, path_id: UUID, input_hash: str, out: ConceptGraphOutput) -> None:
        with self.deps.session_factory() as session:
            artifact_cache_upsert(
                session,
                self.inp.owner_user_id,
                self.inp.material_set_id,
                path_id,
                ARTIFACT_TYPE,
                input_hash,
                {
                    "concepts_made": out.concepts_made,
                    "edges_made": out.edges_made,
                    "pinecone_batches": out.pinecone_batches,
                },
            )


async def run(deps: StageDeps, inp: StageInput) -> ConceptGraphOutput:
    """Build the concept graph for (owner, material set)."""
    return await ConceptGraphBuilder(deps, inp).run()
