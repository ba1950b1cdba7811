"""
Realize activities stage.

Turns the activity slots declared on path nodes into grounded activity
content. For every unrealized (node, slot) pair:

1. retrieve grounding chunks (graph-assisted, local cosine fallback)
2. generate block content, auto-repair it and validate it (up to three attempts)
3. persist the activity, its default variant, concept and citation joins
   and the node link in one transaction, with a saga compensation for the
   variant vector
4. index the variant vector and mirror the path activities (best-effort)

Slots already linked at their rank are skipped, so re-runs only fill gaps.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from loguru import logger

from src.db.models import Concept, MaterialChunk, PathNode, UserConceptState
from src.db.repositories import (
    ActivityRepository,
    ConceptRepository,
    LearnerRepository,
    MaterialRepository,
    PathRepository,
)
from src.integrations.graph_mirror import NullGraphMirror
from src.integrations.vector_store import VectorRecord, chunks_namespace, path_activities_namespace
from src.pipeline.activity_content import (
    ACTIVITY_EXCERPT_MAX_CHARS,
    ACTIVITY_EXCERPT_MAX_LINES,
    filter_allowed_citations,
    repair_activity_content,
    validate_activity_content,
)
from src.pipeline.adaptive import (
    AdaptiveParams,
    AdaptiveSignals,
    adjust_excerpt_chars_by_content_type,
    adjust_excerpt_lines_by_content_type,
    clamp_int_ceiling,
    load_adaptive_signals,
    signals_from_corpus,
)
from src.pipeline.concurrency import run_limited
from src.pipeline.errors import PipelineError, StageValidationError
from src.pipeline.excerpts import build_activity_excerpts
from src.pipeline.primitives import (
    canonical_json,
    clamp01,
    dedupe_strings,
    fallback_concept_keys_for_node,
    float_from_any,
    format_rfc3339_nano,
    int_from_any,
    map_from_any,
    shorten,
    string_from_any,
    string_list_from_any,
)
from src.pipeline.progress import llm_timer
from src.pipeline.prompts import ACTIVITY_CONTENT, build_prompt
from src.pipeline.retrieval import ChunkRetrievePlan, ExpandOptions, graph_assisted_chunk_ids
from src.pipeline.saga import append_pinecone_delete
from src.pipeline.stage import (
    PathContext,
    StageDeps,
    StageInput,
    best_effort,
    filter_files_by_allowlist,
    parse_path_context,
    require_deps,
    require_input,
    resolve_path_id,
    stage_reporter,
)
from src.semantic.vectors import chunk_embeddings_by_id, top_k_chunk_ids_by_cosine

STAGE = "realize_activities"
DEFAULT_VARIANT = "default"
VARIANT_DOC_EXCERPT_CHARS = 1200

# Learner knowledge thresholds
KNOWN_MASTERY_MIN = 0.85
KNOWN_CONFIDENCE_MIN = 0.60
WEAK_MASTERY_MAX = 0.50
WEAK_CONFIDENCE_MAX = 0.35


@dataclass
class RealizeActivitiesOutput:
    path_id: UUID | None = None
    activities_made: int = 0
    variants_made: int = 0
    pinecone_skipped: bool = False
    adaptive: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path_id": str(self.path_id) if self.path_id else "",
            "activities_made": self.activities_made,
            "variants_made": self.variants_made,
            "pinecone_skipped": self.pinecone_skipped,
            "adaptive": self.adaptive,
        }


@dataclass
class ActivitySlot:
    """One declared activity placeholder on a path node."""

    node_id: UUID
    node_title: str
    node_goal: str
    node_difficulty: str
    slot: int
    kind: str
    estimated_minutes: int
    primary_keys: list[str]

    @property
    def concept_csv(self) -> str:
        csv = ", ".join(self.primary_keys).strip()
        for fallback in (self.node_title, self.node_goal, self.kind):
            if csv:
                break
            csv = (fallback or "").strip()
        return csv or "general"

    @property
    def query_text(self) -> str:
        return " ".join([self.node_title, self.node_goal, self.kind, self.concept_csv]).strip()

    @property
    def title_hint(self) -> str:
        return f"{self.kind}: {self.node_title}".strip()


# ========================================
# Slot planning
# ========================================


def sort_keys_by_weight(keys: list[str], weights: dict[str, float]) -> list[str]:
    """Order keys by material-signal weight, heaviest first; ties keep their input order."""
    if not keys or not weights:
        return list(keys)
    indexed = list(enumerate(keys))
    indexed.sort(key=lambda t: (-float(weights.get(t[1].strip().lower(), 0.0)), t[0]))
    return [k for _, k in indexed]


def material_signal_weights(meta: dict[str, Any]) -> dict[str, float]:
    out: dict[str, float] = {}
    for key, value in map_from_any(meta.get("material_signal_weights")).items():
        k = string_from_any(key).strip().lower()
        if k:
            out[k] = float_from_any(value)
    return out


def slots_for_node(
    node: PathNode,
    concepts: list[Concept],
    realized: set[tuple[UUID, int]],
    weights: dict[str, float] | None = None,
) -> list[ActivitySlot]:
    """Unrealized slots declared in ``node.meta["activity_slots"]``."""
    meta = map_from_any(node.meta)
    goal = string_from_any(meta.get("goal")).strip()
    node_keys = dedupe_strings(string_list_from_any(meta.get("concept_keys")))
    if not node_keys:
        node_keys = fallback_concept_keys_for_node(node.title, goal, concepts)
        logger.warning(f"{STAGE}: node {node.id} has no concept_keys; using inferred {','.join(node_keys)}")

    raw_slots = meta.get("activity_slots")
    if not isinstance(raw_slots, list):
        return []

    out: list[ActivitySlot] = []
    for i, raw in enumerate(raw_slots):
        if not isinstance(raw, dict):
            continue
        slot = int_from_any(raw.get("slot"), i)
        if (node.id, slot) in realized:
            continue
        keys = dedupe_strings(string_list_from_any(raw.get("primary_concept_keys"))) or list(node_keys)
        out.append(
            ActivitySlot(
                node_id=node.id,
                node_title=(node.title or "").strip(),
                node_goal=goal,
                node_difficulty=string_from_any(meta.get("difficulty")).strip(),
                slot=slot,
                kind=string_from_any(raw.get("kind")).strip() or "reading",
                estimated_minutes=int_from_any(raw.get("estimated_minutes"), 10),
                primary_keys=sort_keys_by_weight(keys, weights or {}),
            )
        )
    return out


# ========================================
# Learner knowledge context
# ========================================


def knowledge_status(mastery: float, confidence: float) -> str:
    if mastery >= KNOWN_MASTERY_MIN and confidence >= KNOWN_CONFIDENCE_MIN:
        return "known"
    if mastery <= WEAK_MASTERY_MAX or confidence <= WEAK_CONFIDENCE_MAX:
        return "weak"
    return "learning"


def build_user_knowledge_context(
    concept_keys: list[str],
    canonical_by_key: dict[str, UUID],
    states: dict[UUID, UserConceptState],
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Summarize what the learner already knows about ``concept_keys``.

    States are looked up by canonical concept ID, so mastery earned on other
    paths carries over. Keys are lowercased, deduped and sorted.
    """
    now = now or datetime.now(timezone.utc)
    keys = sorted({k.strip().lower() for k in concept_keys if k and k.strip()})
    out: dict[str, Any] = {
        "version": 1,
        "known_concept_keys": [],
        "weak_concept_keys": [],
        "due_review_concept_keys": [],
        "unseen_concept_keys": [],
        "concepts": [],
        "known_ratio": 0.0,
        "seen_or_assessed_ratio": 0.0,
    }
    seen_or_assessed = 0
    for k in keys:
        cid = canonical_by_key.get(k)
        entry: dict[str, Any] = {"key": k, "status": "unseen"}
        if cid is not None:
            entry["canonical_concept_id"] = str(cid)
        st = states.get(cid) if cid is not None else None
        if st is None:
            out["unseen_concept_keys"].append(k)
            out["concepts"].append(entry)
            continue

        entry["mastery"] = clamp01(st.mastery or 0.0)
        entry["confidence"] = clamp01(st.confidence or 0.0)
        attempts = int(st.attempts or 0)
        if attempts:
            entry["attempts"] = attempts
        if st.last_seen_at is not None:
            entry["last_seen_at"] = format_rfc3339_nano(st.last_seen_at)
        if st.next_review_at is not None:
            entry["next_review_at"] = format_rfc3339_nano(st.next_review_at)
            review_at = st.next_review_at
            if review_at.tzinfo is None:
                review_at = review_at.replace(tzinfo=timezone.utc)
            if review_at <= now:
                out["due_review_concept_keys"].append(k)

        status = knowledge_status(entry["mastery"], entry["confidence"])
        entry["status"] = status
        if status == "known":
            out["known_concept_keys"].append(k)
        elif status == "weak":
            out["weak_concept_keys"].append(k)
        if attempts > 0 or st.last_seen_at is not None:
            seen_or_assessed += 1
        out["concepts"].append(entry)

    if keys:
        out["known_ratio"] = len(out["known_concept_keys"]) / len(keys)
        out["seen_or_assessed_ratio"] = seen_or_assessed / len(keys)
    return out


def variant_vector_id(variant_id: UUID) -> str:
    return f"activity_variant:{variant_id}"


def variant_document(title: str, kind: str, excerpts: str) -> str:
    return f"{title}\n{kind}\n{shorten(excerpts, VARIANT_DOC_EXCERPT_CHARS)}".strip()


# ========================================
# Stage
# ========================================


@dataclass
class RealizeInputs:
    ctx: PathContext
    profile_doc: str = ""
    charter_json: str = ""
    slots: list[ActivitySlot] = field(default_factory=list)
    concept_id_by_key: dict[str, UUID] = field(default_factory=dict)
    canonical_by_key: dict[str, UUID] = field(default_factory=dict)
    states: dict[UUID, UserConceptState] = field(default_factory=dict)
    file_ids: list[UUID] = field(default_factory=list)
    chunk_by_id: dict[UUID, MaterialChunk] = field(default_factory=dict)
    chunk_embs: dict[str, list[float]] = field(default_factory=dict)
    chunks_namespace: str = ""
    signals: AdaptiveSignals = field(default_factory=AdaptiveSignals)


@dataclass
class RealizedActivity:
    activity_id: UUID
    variant_id: UUID
    title: str
    kind: str
    document: str


class ActivityRealizer:
    """One run of the realize-activities stage for a single path."""

    def __init__(self, deps: StageDeps, inp: StageInput):
        self.deps = deps
        self.inp = inp
        self.settings = deps.get_settings()
        self.reporter = stage_reporter(inp, STAGE)
        self.path_id: UUID | None = None
        self.inputs: RealizeInputs | None = None
        self.excerpt_lines = ACTIVITY_EXCERPT_MAX_LINES
        self.excerpt_chars = ACTIVITY_EXCERPT_MAX_CHARS
        self.pinecone_failed = False
        self.done = 0

    def _load(self, path_id: UUID) -> RealizeInputs:
        with self.deps.session_factory() as session:
            learner = LearnerRepository(session)
            profile_doc = learner.profile_doc(self.inp.owner_user_id)
            if not profile_doc:
                raise PipelineError(f"{STAGE}: missing user_profile_doc")

            paths = PathRepository(session)
            path = paths.get_by_id(path_id)
            if path is None:
                raise PipelineError(f"{STAGE}: path {path_id} not found")
            ctx = parse_path_context(path.meta)
            out = RealizeInputs(ctx=ctx, profile_doc=profile_doc)
            charter = ctx.meta.get("charter")
            if charter is not None:
                out.charter_json = canonical_json(charter)

            nodes = paths.nodes(path_id)
            if not nodes:
                raise PipelineError(f"{STAGE}: no path nodes")
            realized = paths.realized_slots([n.id for n in nodes])

            concepts = ConceptRepository(session).get_by_scope("path", path_id)
            for c in concepts:
                k = (c.key or "").strip().lower()
                if not k:
                    continue
                out.concept_id_by_key[k] = c.id
                out.canonical_by_key[k] = c.canonical_concept_id or c.id

            weights = material_signal_weights(ctx.meta)
            for node in nodes:
                out.slots.extend(slots_for_node(node, concepts, realized, weights))
            if not out.slots:
                return out

            materials = MaterialRepository(session)
            files = filter_files_by_allowlist(
                materials.files_by_set(self.inp.material_set_id), ctx.allow_files, STAGE, path_id
            )
            out.file_ids = sorted((f.id for f in files), key=str)
            chunks = materials.chunks_by_files(out.file_ids)
            if not chunks:
                raise PipelineError(f"{STAGE}: no chunks for material set")
            out.chunk_by_id = {ch.id: ch for ch in chunks}
            out.chunk_embs = chunk_embeddings_by_id(chunks)

            material_set = materials.get_set(self.inp.material_set_id)
            source_id = (material_set.source_material_set_id if material_set else None) or self.inp.material_set_id
            out.chunks_namespace = chunks_namespace(source_id)

            needed: set[UUID] = set()
            for s in out.slots:
                for k in s.primary_keys:
                    cid = out.canonical_by_key.get(k.strip().lower())
                    if cid is not None:
                        needed.add(cid)
            out.states = learner.concept_states(self.inp.owner_user_id, sorted(needed, key=str))

            if self.settings.adaptive_enabled_for_stage(STAGE):
                out.signals = load_adaptive_signals(session, self.inp.material_set_id, path_id)
            else:
                out.signals = signals_from_corpus(files, chunks)
        return out

    def _excerpt_budget(self, adaptive: bool, record: AdaptiveParams) -> None:
        if not adaptive:
            return
        content_type = self.inputs.signals.content_type
        lines = clamp_int_ceiling(
            adjust_excerpt_lines_by_content_type(ACTIVITY_EXCERPT_MAX_LINES, content_type),
            6,
            ACTIVITY_EXCERPT_MAX_LINES,
        )
        chars = clamp_int_ceiling(
            adjust_excerpt_chars_by_content_type(ACTIVITY_EXCERPT_MAX_CHARS, content_type),
            300,
            ACTIVITY_EXCERPT_MAX_CHARS,
        )
        record.record("ACTIVITY_EXCERPT_MAX_LINES", lines, ACTIVITY_EXCERPT_MAX_LINES)
        record.record("ACTIVITY_EXCERPT_MAX_CHARS", chars, ACTIVITY_EXCERPT_MAX_CHARS)
        self.excerpt_lines, self.excerpt_chars = lines, chars

    async def _retrieve(self, slot: ActivitySlot, query_emb: list[float]) -> list[UUID]:
        inputs = self.inputs
        cfg = self.settings.get_retrieval_config()
        plan = ChunkRetrievePlan(
            material_set_id=self.inp.material_set_id,
            chunks_ns=inputs.chunks_namespace,
            query_text=slot.query_text,
            query_emb=query_emb,
            file_ids=inputs.file_ids,
            allow_files=inputs.ctx.allow_files,
            seed_k=cfg["seed_k"],
            lexical_k=cfg["lexical_k"],
            final_k=cfg["final_k"],
            chunk_embs=inputs.chunk_embs,
        )
        opts = ExpandOptions(
            max_seeds=cfg["seed_k"],
            max_concepts=cfg["max_concepts"],
            max_entities=cfg["max_entities"],
            max_claims=cfg["max_claims"],
            max_evidence_per_concept=cfg["max_evidence_per_concept"],
        )
        ids, _ = await graph_assisted_chunk_ids(self.deps.vector_store, plan, self.deps.session_factory, opts)
        if ids:
            return ids
        if not inputs.chunk_embs:
            raise PipelineError(f"{STAGE}: no local embeddings available")
        top = top_k_chunk_ids_by_cosine(query_emb, inputs.chunk_embs, cfg["final_k"])
        return [UUID(cid) for cid in top]

    def _knowledge_json(self, slot: ActivitySlot) -> str:
        if not slot.primary_keys or not self.inputs.canonical_by_key:
            return "(none)"
        ctx = build_user_knowledge_context(slot.primary_keys, self.inputs.canonical_by_key, self.inputs.states)
        return json.dumps(ctx, ensure_ascii=False)

    async def _generate(self, slot: ActivitySlot, excerpts: str) -> dict[str, Any]:
        """
        Generate content, repairing and validating each attempt.

        Validation errors from one attempt are appended to the next prompt.

        Raises:
            StageValidationError: Content still fails validation after the last attempt.
        """
        prompt = build_prompt(
            ACTIVITY_CONTENT,
            user_profile_doc=self.inputs.profile_doc,
            path_charter_json=self.inputs.charter_json,
            activity_kind=slot.kind,
            activity_title=slot.title_hint,
            concept_keys_csv=slot.concept_csv,
            user_knowledge_json=self._knowledge_json(slot),
            activity_excerpts=excerpts,
        )
        attempts = max(self.settings.realize_activities_max_attempts, 1)
        errs: list[str] = []
        obj: dict[str, Any] | None = None
        for attempt in range(1, attempts + 1):
            user = prompt.user
            if errs:
                user += "\n\nVALIDATION_ERRORS_TO_FIX:\n- " + "\n- ".join(errs)
            fields = {"stage": STAGE, "node_id": str(slot.node_id), "slot": slot.slot, "attempt": attempt}
            try:
                with llm_timer("activity_content", fields):
                    obj = await self.deps.llm.generate_json(prompt.system, user, prompt.schema_name, prompt.schema)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                errs = [f"generate_failed: {e}"]
                continue
            repair_activity_content(obj, slot.kind, slot.title_hint)
            errs = validate_activity_content(obj, slot.kind)
            if not errs:
                return obj
            logger.debug(f"{STAGE}: node {slot.node_id} slot {slot.slot} attempt {attempt} invalid: {errs}")
        raise StageValidationError(f"activity_content failed validation: {'; '.join(errs)}")

    def _persist(
        self, slot: ActivitySlot, obj: dict[str, Any], citations: list[str], excerpts: str
    ) -> RealizedActivity:
        title = string_from_any(obj.get("title")).strip() or slot.title_hint
        kind = string_from_any(obj.get("kind")).strip().lower() or slot.kind
        minutes = int_from_any(obj.get("estimated_minutes"), slot.estimated_minutes)
        content = obj["content_json"]
        content["citations"] = citations
        namespace = path_activities_namespace(self.path_id)

        with self.deps.session_factory() as session:
            repo = ActivityRepository(session)
            activity = repo.create_activity(
                {
                    "owner_type": "path",
                    "owner_id": self.path_id,
                    "kind": kind,
                    "title": title,
                    "content_json": content,
                    "estimated_minutes": minutes,
                    "difficulty": slot.node_difficulty,
                    "status": "draft",
                    "meta": {"path_node_id": str(slot.node_id), "slot": slot.slot},
                }
            )
            variant_id = repo.upsert_variant(activity.id, DEFAULT_VARIANT, content)

            linked: set[UUID] = set()
            for key in slot.primary_keys:
                k = key.strip().lower()
                concept_id = self.inputs.canonical_by_key.get(k) or self.inputs.concept_id_by_key.get(k)
                if concept_id is None or concept_id in linked:
                    continue
                linked.add(concept_id)
                repo.link_concept(activity.id, concept_id, "primary", 1.0)

            for cid in citations:
                repo.add_citation(variant_id, UUID(cid), "grounding")

            repo.link_node(slot.node_id, activity.id, slot.slot, slot.slot == 0)
            append_pinecone_delete(session, self.inp.saga_id, namespace, [variant_vector_id(variant_id)])

        return RealizedActivity(
            activity_id=activity.id,
            variant_id=variant_id,
            title=title,
            kind=kind,
            document=variant_document(title, kind, excerpts),
        )

    async def _index_variant(self, made: RealizedActivity) -> None:
        if self.deps.vector_store is None:
            return
        with llm_timer("activity_variant_embedding", {"stage": STAGE, "activity_id": str(made.activity_id)}):
            vectors = await self.deps.llm.embed([made.document])
        if not vectors or not vectors[0]:
            raise PipelineError("empty variant embedding")
        record = VectorRecord(
            id=variant_vector_id(made.variant_id),
            values=list(vectors[0]),
            metadata={
                "type": "activity_variant",
                "activity_id": str(made.activity_id),
                "variant_id": str(made.variant_id),
                "path_id": str(self.path_id),
                "kind": made.kind,
                "title": made.title,
            },
        )
        await self.deps.vector_store.upsert(path_activities_namespace(self.path_id), [record])

    async def _realize(self, i: int, slot: ActivitySlot) -> RealizedActivity:
        with llm_timer("activity_query_embedding", {"stage": STAGE, "node_id": str(slot.node_id), "slot": slot.slot}):
            embs = await self.deps.llm.embed([slot.query_text])
        if not embs or not embs[0]:
            raise PipelineError(f"{STAGE}: empty query embedding")

        chunk_ids = await self._retrieve(slot, list(embs[0]))
        excerpts = build_activity_excerpts(self.inputs.chunk_by_id, chunk_ids, self.excerpt_lines, self.excerpt_chars)
        if not excerpts:
            raise PipelineError(f"{STAGE}: empty grounding excerpts")

        obj = await self._generate(slot, excerpts)
        cited = string_list_from_any(obj.get("citations"))
        cited += string_list_from_any(map_from_any(obj.get("content_json")).get("citations"))
        citations = filter_allowed_citations(cited, {str(cid) for cid in chunk_ids}, chunk_ids)
        made = await asyncio.to_thread(self._persist, slot, obj, citations, excerpts)

        if not await best_effort(f"activity variant upsert ({made.variant_id})", lambda: self._index_variant(made)):
            self.pinecone_failed = True

        self.done += 1
        total = len(self.inputs.slots)
        self.reporter.update_range(self.done, total, 5, 95, f"Realized activity {self.done}/{total}")
        return made

    async def _mirror(self) -> None:
        if isinstance(self.deps.graph_mirror, NullGraphMirror):
            return

        def load() -> list[Any]:
            with self.deps.session_factory() as session:
                return ActivityRepository(session).for_path(self.path_id)

        activities = await asyncio.to_thread(load)
        await self.deps.graph_mirror.upsert_path_activities_graph(self.path_id, activities)

    async def run(self) -> RealizeActivitiesOutput:
        require_deps(STAGE, self.deps.llm, self.deps.session_factory)
        require_input(STAGE, self.inp)
        try:
            return await self._run()
        finally:
            self.reporter.flush()

    async def _run(self) -> RealizeActivitiesOutput:
        out = RealizeActivitiesOutput()
        self.reporter.update(1, "Loading path nodes")
        self.path_id = out.path_id = await resolve_path_id(self.deps, self.inp)
        self.inputs = inputs = await asyncio.to_thread(self._load, self.path_id)

        if not inputs.slots:
            logger.info(f"{STAGE}: no unrealized slots for path {self.path_id}")
            await best_effort("graph mirror sync", self._mirror)
            self.reporter.update(100, "Nothing to realize")
            return out

        adaptive = self.settings.adaptive_enabled_for_stage(STAGE)
        record = AdaptiveParams(stage=STAGE, enabled=adaptive, signals=inputs.signals)
        self._excerpt_budget(adaptive, record)
        out.adaptive = record.to_meta()

        logger.info(f"{STAGE}: realizing {len(inputs.slots)} slots for path {self.path_id}")
        made = await run_limited(inputs.slots, self._realize, self.settings.realize_activities_concurrency)

        out.activities_made = len(made)
        out.variants_made = len(made)
        out.pinecone_skipped = self.pinecone_failed
        await best_effort("graph mirror sync", self._mirror)
        self.reporter.update(100, f"Realized {out.activities_made} activities")
        logger.info(
            f"{STAGE}: path {self.path_id} activities={out.activities_made} pinecone_skipped={out.pinecone_skipped}"
        )
        return out


async def run(deps: StageDeps, inp: StageInput) -> RealizeActivitiesOutput:
    """Realize every unrealized activity slot on the path's nodes."""
    return await ActivityRealizer(deps, inp).run()
