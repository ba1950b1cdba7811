"""
Concept graph patch stage.

Extends an existing path graph with concepts the first build missed. A
single delta probe decides whether the graph already covers the material;
otherwise the coverage engine runs with patch budgets and only the new
concepts are embedded, persisted and indexed.
"""

from __future__ import annotations

import asyncio
from typing import Any
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy.exc import IntegrityError

from src.db.database import advisory_xact_lock, is_unique_violation
from src.db.models import Concept
from src.db.repositories import ConceptRepository
from src.integrations.vector_store import path_concepts_namespace
from src.pipeline.adaptive import (
    AdaptiveParams,
    adaptive_from_ratio,
    adjust_excerpt_chars_by_content_type,
    adjust_excerpt_lines_by_content_type,
    adjust_threshold_by_content_type,
    clamp_int_ceiling,
)
from src.pipeline.artifact_cache import (
    artifact_cache_enabled,
    artifact_cache_get,
    artifact_cache_upsert,
    chunks_fingerprint,
    compute_artifact_hash,
    concepts_fingerprint,
    env_snapshot,
    files_fingerprint,
    normalize_hash_text,
    sorted_id_strings,
)
from src.pipeline.canonicalize import (
    canonicalize_path,
    resolve_semantic_match_params,
    semantic_match_canonical_concepts,
)
from src.pipeline.concept_graph import (
    ConceptGraphOutput,
    ExcerptBudget,
    GraphInputs,
    concept_document,
    embed_documents,
    generate_assumed_knowledge,
    generate_edges,
    load_graph_inputs,
    mirror_concept_graph,
    upsert_concept_vectors,
    write_concept_graph,
)
from src.pipeline.coverage import CoverageEngine, CoverageInput, resolve_coverage_params
from src.pipeline.errors import StageValidationError
from src.pipeline.excerpts import build_stratified_excerpts
from src.pipeline.inventory import (
    ConceptItem,
    Coverage,
    apply_assumed_knowledge,
    assumed_prereq_edges,
    concepts_json_for_delta,
    dedupe_concept_inventory_by_key,
    normalize_concept_edges,
    normalize_concept_inventory,
    parse_concept_inventory_delta,
)
from src.pipeline.patch_signals import (
    compute_patch_doc_signals,
    patch_breadth_scale,
    patch_complexity_scale,
    scale_ceiling,
)
from src.pipeline.primitives import clamp01, dedupe_strings, int_from_any, string_list_from_any
from src.pipeline.progress import llm_timer
from src.pipeline.prompts import CONCEPT_INVENTORY_DELTA, build_prompt
from src.pipeline.stage import (
    StageDeps,
    StageInput,
    best_effort,
    require_deps,
    require_input,
    resolve_path_id,
    stage_reporter,
)
from src.semantic.vectors import chunk_embeddings_by_id

STAGE = "concept_graph_patch_build"
ARTIFACT_TYPE = "concept_graph_patch_build"

# Patch writes share the build lock so a patch never interleaves with a build.
LOCK_NAMESPACE = "concept_graph_build"

MAX_PASSES_SCALE = 1.5
MAX_PER_FILE_SCALE = 2.2
MAX_TOTAL_SCALE = 2.0

# Inventory extras the build stores in Concept.metadata
ROW_EXTRA_KEYS = ("assumed", "required_by", "merged_from", "split_from", "split_rationale")


def concept_items_from_rows(rows: list[Concept]) -> list[ConceptItem]:
    """Existing path concepts in inventory form (parents by key, no citations)."""
    key_by_id = {r.id: (r.key or "").strip() for r in rows if r.id is not None}
    out: list[ConceptItem] = []
    for r in rows:
        key = (r.key or "").strip()
        if not key:
            continue
        meta = r.meta if isinstance(r.meta, dict) else {}
        out.append(
            ConceptItem(
                key=key,
                name=(r.name or "").strip(),
                parent_key=key_by_id.get(r.parent_id, "") if r.parent_id else "",
                depth=r.depth or 0,
                summary=(r.summary or "").strip(),
                key_points=dedupe_strings(string_list_from_any(r.key_points)),
                aliases=dedupe_strings(string_list_from_any(meta.get("aliases"))),
                importance=int_from_any(meta.get("importance"), r.sort_index or 0),
                extra={k: meta[k] for k in ROW_EXTRA_KEYS if k in meta},
            )
        )
    return out


def patch_input_hash(material_set_id: UUID | None, path_id: UUID, inputs: GraphInputs) -> str:
    """Fingerprint of everything a patch reads, including the concepts it extends."""
    return compute_artifact_hash(
        STAGE,
        material_set_id,
        path_id,
        {
            "files": files_fingerprint(inputs.files),
            "chunks": chunks_fingerprint(inputs.chunks),
            "concepts": concepts_fingerprint(inputs.existing),
            "allow_files": sorted_id_strings(inputs.ctx.allow_files),
            "intent_md": normalize_hash_text(inputs.ctx.intent_md),
            "env": env_snapshot(["CONCEPT_GRAPH_"], ["OPENAI_MODEL", "AI_MODEL"]),
        },
    )


class ConceptGraphPatcher:
    def __init__(self, deps: StageDeps, inp: StageInput):
        self.deps = deps
        self.inp = inp
        self.settings = deps.get_settings()
        self.reporter = stage_reporter(inp, STAGE)
        self.adaptive = self.settings.adaptive_enabled_for_stage(STAGE)
        self.record: AdaptiveParams | None = None

    def _budgets(self, inputs: GraphInputs) -> tuple[ExcerptBudget, ExcerptBudget]:
        s, sig, rec = self.settings, inputs.signals, self.record
        ct = sig.content_type

        per_file_ceiling = max(s.concept_graph_patch_excerpts_per_file, 0)
        per_file = per_file_ceiling
        if self.adaptive:
            per_file = clamp_int_ceiling(round(sig.avg_pages_per_file / 20), 2, per_file_ceiling)
        rec.record("CONCEPT_GRAPH_PATCH_EXCERPTS_PER_FILE", per_file, per_file_ceiling)

        chars_ceiling = s.concept_graph_patch_excerpt_max_chars if s.concept_graph_patch_excerpt_max_chars > 0 else 650
        max_chars = chars_ceiling
        lines_ceiling = s.concept_graph_patch_excerpt_max_lines
        max_lines = lines_ceiling
        total_ceiling = max(s.concept_graph_patch_excerpt_max_total_chars, 0)
        if total_ceiling == 0 and not self.adaptive:
            total_ceiling = 12000
        max_total = total_ceiling
        if self.adaptive:
            max_chars = clamp_int_ceiling(adjust_excerpt_chars_by_content_type(max_chars, ct), 200, chars_ceiling)
            if max_lines > 0:
                max_lines = clamp_int_ceiling(adjust_excerpt_lines_by_content_type(max_lines, ct), 8, lines_ceiling)
            max_total = clamp_int_ceiling(round(sig.page_count * 200), 6000, total_ceiling)
        rec.record("CONCEPT_GRAPH_PATCH_EXCERPT_MAX_CHARS", max_chars, chars_ceiling)
        rec.record("CONCEPT_GRAPH_PATCH_EXCERPT_MAX_LINES", max_lines, lines_ceiling)
        rec.record("CONCEPT_GRAPH_PATCH_EXCERPT_MAX_TOTAL_CHARS", max_total, total_ceiling)

        edge_chars_ceiling = s.concept_graph_edge_excerpt_max_chars
        if edge_chars_ceiling <= 0:
            edge_chars_ceiling = 700
        edge_chars = edge_chars_ceiling
        edge_lines_ceiling = s.concept_graph_edge_excerpt_max_lines
        edge_lines = edge_lines_ceiling
        edge_total_ceiling = s.concept_graph_edge_excerpt_max_total_chars or total_ceiling
        edge_total = edge_total_ceiling
        if self.adaptive:
            edge_chars = clamp_int_ceiling(
                adjust_excerpt_chars_by_content_type(edge_chars, ct), 200, edge_chars_ceiling
            )
            if edge_lines > 0:
                edge_lines = clamp_int_ceiling(
                    adjust_excerpt_lines_by_content_type(edge_lines, ct), 8, edge_lines_ceiling
                )
            edge_total = clamp_int_ceiling(round(sig.page_count * 200), 6000, edge_total_ceiling)
        rec.record("CONCEPT_GRAPH_EDGE_EXCERPT_MAX_CHARS", edge_chars, edge_chars_ceiling)
        rec.record("CONCEPT_GRAPH_EDGE_EXCERPT_MAX_LINES", edge_lines, edge_lines_ceiling)
        rec.record("CONCEPT_GRAPH_EDGE_EXCERPT_MAX_TOTAL_CHARS", edge_total, edge_total_ceiling)

        return (
            ExcerptBudget(per_file, max_chars, max_lines, max_total),
            ExcerptBudget(per_file, edge_chars, edge_lines, edge_total),
        )

    def _coverage_overrides(self, inputs: GraphInputs) -> dict[str, Any]:
        """Patch coverage budgets; document breadth and complexity raise their ceilings."""
        s, sig = self.settings, inputs.signals
        doc = compute_patch_doc_signals(inputs.chunks)
        breadth = patch_breadth_scale(sig, doc)
        complexity = patch_complexity_scale(doc)
        self.record.params["CONCEPT_GRAPH_PATCH_DOC_SIGNALS"] = {
            **doc.to_meta(),
            "breadth_scale": round(breadth, 3),
            "complexity_scale": round(complexity, 3),
        }

        passes_ceiling = scale_ceiling(s.concept_graph_patch_passes, breadth, MAX_PASSES_SCALE)
        per_file_ceiling = scale_ceiling(s.concept_graph_patch_coverage_excerpts_per_file, breadth, MAX_PER_FILE_SCALE)
        chars_ceiling = s.concept_graph_patch_coverage_excerpt_max_chars or 650
        total_ceiling = scale_ceiling(
            s.concept_graph_patch_coverage_excerpt_max_total_chars, max(breadth, complexity), MAX_TOTAL_SCALE
        )

        passes, per_file, max_chars, max_total = passes_ceiling, per_file_ceiling, chars_ceiling, total_ceiling
        if self.adaptive:
            passes = adaptive_from_ratio(sig.page_count, 1 / 50, 1, passes_ceiling)
            per_file = clamp_int_ceiling(round(sig.avg_pages_per_file / 20), 2, per_file_ceiling)
            max_chars = clamp_int_ceiling(
                adjust_excerpt_chars_by_content_type(chars_ceiling, sig.content_type), 200, chars_ceiling
            )
            max_total = clamp_int_ceiling(round(sig.page_count * 200), 6000, total_ceiling)
        self.record.record("CONCEPT_GRAPH_PATCH_PASSES", passes, passes_ceiling)
        self.record.record("CONCEPT_GRAPH_PATCH_COVERAGE_EXCERPTS_PER_FILE", per_file, per_file_ceiling)
        self.record.record("CONCEPT_GRAPH_PATCH_COVERAGE_EXCERPT_MAX_CHARS", max_chars, chars_ceiling)
        self.record.record("CONCEPT_GRAPH_PATCH_COVERAGE_EXCERPT_MAX_TOTAL_CHARS", max_total, total_ceiling)
        return {
            "passes": passes,
            "per_file": per_file,
            "per_file_ceiling": per_file_ceiling,
            "max_chars": max_chars,
            "max_total": max_total,
            "targeted_only": s.concept_graph_patch_targeted_only,
        }

    async def probe(self, intent_md: str, concepts_json: str, excerpts: str) -> tuple[list[ConceptItem], Coverage]:
        """One delta call over the patch excerpts. A failed probe means "run the patch"."""
        try:
            prompt = build_prompt(
                CONCEPT_INVENTORY_DELTA, path_intent_md=intent_md, concepts_json=concepts_json, excerpts=excerpts
            )
            fields = {"stage": STAGE, "excerpt_chars": len(excerpts)}
            with llm_timer("concept_inventory_delta_probe", fields):
                obj = await self.deps.llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)
            return parse_concept_inventory_delta(obj)
        except Exception as e:  # The full patch runs instead
            logger.warning(f"{STAGE}: delta probe failed (continuing with patch): {e}")
            return [], Coverage()

    def skip_thresholds(self, inputs: GraphInputs) -> tuple[float, int]:
        s, sig = self.settings, inputs.signals
        min_conf = s.concept_graph_patch_skip_min_conf
        if self.adaptive:
            min_conf = clamp01(
                adjust_threshold_by_content_type("CONCEPT_GRAPH_PATCH_SKIP_MIN_CONF", min_conf, sig.content_type)
            )
        max_missing_ceiling = s.concept_graph_patch_skip_max_missing_topics
        max_missing = max_missing_ceiling
        if self.adaptive:
            max_missing = adaptive_from_ratio(sig.concept_count, 0.02, 2, max_missing_ceiling)
        max_missing = max(max_missing, 0)
        self.record.params["CONCEPT_GRAPH_PATCH_SKIP_MIN_CONF"] = {"actual": min_conf}
        self.record.record("CONCEPT_GRAPH_PATCH_SKIP_MAX_MISSING_TOPICS", max_missing, max_missing_ceiling)
        return min_conf, max_missing

    async def run(self) -> ConceptGraphOutput:
        require_deps(STAGE, self.deps.llm, self.deps.session_factory)
        require_input(STAGE, self.inp)
        deps, inp = self.deps, self.inp

        path_id = await resolve_path_id(deps, inp)
        out = ConceptGraphOutput(path_id=path_id)

        def load() -> GraphInputs:
            with deps.session_factory() as session:
                return load_graph_inputs(session, inp.material_set_id, path_id, STAGE, self.adaptive)

        inputs = await asyncio.to_thread(load)
        self.record = AdaptiveParams(stage=STAGE, enabled=self.adaptive, signals=inputs.signals)
        try:
            return await self._run(path_id, inputs, out)
        finally:
            self.reporter.flush()
            out.adaptive = self.record.to_meta()
            if self.adaptive and self.record.params:
                logger.info(f"{STAGE}: adaptive params {out.adaptive}")

    async def _run(self, path_id: UUID, inputs: GraphInputs, out: ConceptGraphOutput) -> ConceptGraphOutput:
        deps, inp, s = self.deps, self.inp, self.settings
        if not inputs.existing:
            logger.warning(f"{STAGE}: no existing concepts; skipping (path {path_id})")
            out.skipped = True
            return out
        if not inputs.ctx.paths_confirmed:
            out.skipped = True
            return out
        if not inputs.chunks:
            raise StageValidationError(f"{STAGE}: no chunks for material set")
        intent_md = inputs.ctx.intent_md

        input_hash = ""
        if artifact_cache_enabled():
            input_hash = patch_input_hash(inp.material_set_id, path_id, inputs)

            def cache_hit() -> bool:
                with deps.session_factory() as session:
                    _, hit = artifact_cache_get(
                        session, inp.owner_user_id, inp.material_set_id, path_id, ARTIFACT_TYPE, input_hash
                    )
                    return hit

            if await asyncio.to_thread(cache_hit):
                logger.info(f"{STAGE}: cache hit; skipping (path {path_id})")
                out.cached = True
                return out

        chunks = inputs.chunks
        allowed = {str(ch.id) for ch in chunks}
        budget, edge_budget = self._budgets(inputs)
        excerpts, excerpt_ids = build_stratified_excerpts(chunks, *budget.as_tuple())
        if not excerpts:
            raise StageValidationError(f"{STAGE}: empty excerpts")
        edge_excerpts = excerpts
        if edge_budget.as_tuple() != budget.as_tuple():
            edge_excerpts, _ = build_stratified_excerpts(chunks, *edge_budget.as_tuple())
            edge_excerpts = edge_excerpts or excerpts

        existing_items = concept_items_from_rows(inputs.existing)
        existing_keys = {c.key for c in existing_items}

        self.reporter.update(10, "Probing concept coverage")
        probe_new, probe_cov = await self.probe(intent_md, concepts_json_for_delta(existing_items), excerpts)

        if not s.concept_graph_patch_force:
            min_conf, max_missing = self.skip_thresholds(inputs)
            if probe_cov.confidence >= min_conf and len(probe_cov.missing_topics) <= max_missing and not probe_new:
                logger.info(
                    f"{STAGE}: coverage high; skipping patch (path {path_id}, confidence {probe_cov.confidence:.2f})"
                )
                if input_hash:
                    await asyncio.to_thread(
                        self._write_cache, path_id, input_hash, {"skipped": True, "confidence": probe_cov.confidence}
                    )
                out.skipped = True
                return out

        concepts, _ = normalize_concept_inventory(existing_items + probe_new, allowed)
        concepts, _ = dedupe_concept_inventory_by_key(concepts)
        if not concepts:
            raise StageValidationError(f"{STAGE}: no concepts to patch")

        # ---- coverage ----
        params, cov_record = resolve_coverage_params(
            s, inputs.signals, self.adaptive, STAGE, self._coverage_overrides(inputs)
        )
        self.record.params.update(cov_record.params)
        self.reporter.update(20, "Expanding coverage")
        result = await CoverageEngine(deps.llm, deps.vector_store).complete(
            CoverageInput(
                path_id=path_id,
                material_set_id=inp.material_set_id,
                chunks_namespace=inputs.chunks_namespace,
                intent_md=intent_md,
                chunks=chunks,
                concepts=concepts,
                initial_coverage=probe_cov,
                initial_chunk_ids=list(excerpt_ids),
                allowed_chunk_ids=allowed,
                chunk_embeddings=chunk_embeddings_by_id(chunks),
                allow_files=inputs.ctx.allow_files,
                signals=inputs.signals,
                stage=STAGE,
                reporter=self.reporter,
                progress_start=20,
                progress_end=55,
            ),
            params,
        )
        self.record.params.update(result.adaptive)
        concepts, _ = normalize_concept_inventory(result.concepts, allowed)
        concepts, _ = dedupe_concept_inventory_by_key(concepts)
        concepts = await self.assumed(concepts, excerpts, intent_md, allowed, path_id)

        new_items = sorted((c for c in concepts if c.key and c.key not in existing_keys), key=lambda c: c.key)
        if not new_items:
            logger.info(f"{STAGE}: no new concepts discovered (path {path_id})")
            return out

        # ---- edges over the full set, embeddings for new items ----
        self.reporter.update(60, f"Generating edges ({len(new_items)} new concepts)")
        edges, embeddings = await asyncio.gather(
            generate_edges(deps.llm, concepts, edge_excerpts, intent_md, STAGE),
            embed_documents(
                deps.llm,
                [concept_document(c) for c in new_items],
                s.concept_graph_embed_batch_size,
                s.concept_graph_embed_concurrency,
                STAGE,
            ),
        )
        edges = edges + assumed_prereq_edges(concepts, edges, allowed)
        edges, _ = normalize_concept_edges(edges, concepts, allowed)

        semantic: dict[str, UUID] = {}
        if s.canonical_concept_semantic_enabled:
            sem_params = resolve_semantic_match_params(s, inputs.signals, self.adaptive)
            self.record.params.update(sem_params.to_meta(s.canonical_concept_semantic_top_k))
            semantic = await semantic_match_canonical_concepts(
                deps.session_factory, deps.vector_store, new_items, embeddings, sem_params
            )

        # ---- persist ----
        self.reporter.update(80, "Persisting new concepts")
        ids_by_key = {r.key: r.id for r in inputs.existing if r.key}
        for c in new_items:
            ids_by_key[c.key] = uuid4()
        namespace = path_concepts_namespace(path_id) if deps.vector_store is not None else ""

        def persist() -> tuple[list[Concept], int] | None:
            with deps.session_factory() as session:
                advisory_xact_lock(session, LOCK_NAMESPACE, path_id)
                # Keys added by another run since the inputs were read link to its rows
                live = {r.key: r.id for r in ConceptRepository(session).get_by_scope("path", path_id) if r.key}
                fresh = [c for c in new_items if c.key not in live]
                if not fresh:
                    return None
                return write_concept_graph(
                    session,
                    path_id,
                    inp.saga_id,
                    fresh,
                    edges,
                    {**ids_by_key, **live},
                    allowed,
                    namespace,
                    s.concept_graph_pinecone_batch_size,
                )

        try:
            written = await asyncio.to_thread(persist)
        except IntegrityError as e:
            if not is_unique_violation(e):
                raise
            logger.warning(f"{STAGE}: unique violation on insert; path {path_id} was patched concurrently")
            written = None
        if written is None:
            logger.info(f"{STAGE}: new concepts already persisted by another worker (path {path_id})")
            out.skipped = True
            await best_effort("graph mirror sync", lambda: mirror_concept_graph(deps, path_id))
            return out
        rows, out.edges_made = written
        out.concepts_made = len(rows)

        canonical_by_key: dict[str, UUID] = {}
        try:
            canonical_by_key = await asyncio.to_thread(canonicalize_path, deps.session_factory, path_id, semantic)
        except Exception as e:  # Canonical links are rebuilt on the next run
            logger.warning(f"{STAGE}: canonicalization failed (continuing): {e}")

        if deps.vector_store is not None:
            out.pinecone_batches, out.pinecone_skipped = await upsert_concept_vectors(
                deps.vector_store,
                path_id,
                rows,
                {c.key: embeddings[i] for i, c in enumerate(new_items)},
                canonical_by_key,
                s.concept_graph_pinecone_batch_size,
                s.concept_graph_pinecone_concurrency,
                self.reporter,
                (85, 95),
            )
        else:
            out.pinecone_skipped = True

        await best_effort("graph mirror sync", lambda: mirror_concept_graph(deps, path_id))

        if input_hash:
            await asyncio.to_thread(
                self._write_cache,
                path_id,
                input_hash,
                {"concepts_made": out.concepts_made, "edges_made": out.edges_made, "batches": out.pinecone_batches},
            )
        self.reporter.update(100, f"Concept graph patched (+{out.concepts_made})")
        return out

    async def assumed(
        self, concepts: list[ConceptItem], excerpts: str, intent_md: str, allowed: set[str], path_id: UUID
    ) -> list[ConceptItem]:
        """Best-effort assumed-knowledge pass; new prerequisites join the patch as new concepts."""
        if not self.settings.concept_graph_assumed_knowledge_enabled or not concepts or not excerpts:
            return concepts
        try:
            obj = await generate_assumed_knowledge(self.deps.llm, concepts, excerpts, intent_md, STAGE, path_id)
        except Exception as e:  # Assumed knowledge only enriches the patch
            logger.warning(f"{STAGE}: assumed knowledge failed (continuing): {e}")
            return concepts
        concepts, added = apply_assumed_knowledge(concepts, obj, allowed)
        if added:
            logger.info(f"{STAGE}: assumed knowledge added {added} concepts (path {path_id})")
        return concepts

    def _write_cache(self, path_id: UUID, input_hash: str, meta: dict[str, Any]) -> None:
        with self.deps.session_factory() as session:
            artifact_cache_upsert(
                session, self.inp.owner_user_id, self.inp.material_set_id, path_id, ARTIFACT_TYPE, input_hash, meta
            )


async def run(deps: StageDeps, inp: StageInput) -> ConceptGraphOutput:
    """Patch the concept graph for (owner, material set) with newly discovered concepts."""
    return await ConceptGraphPatcher(deps, inp).run()
