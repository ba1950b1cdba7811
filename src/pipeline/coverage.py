"""
Coverage completion for concept inventories.

Starting from an initial inventory and its reported missing topics, each round
finds chunks the model has not seen yet that best match those topics, asks the
delta prompt for concepts that are still missing, and merges them in. Rounds
stop at the concept cap, when nothing new is added, or after two consecutive
stalled rounds. Large corpora get a final sweep over sections that no concept
cites yet.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger

from config import Settings
from src.integrations.llm_client import LLMClient
from src.integrations.vector_store import VectorStore, chunk_filter
from src.pipeline.adaptive import (
    AdaptiveParams,
    AdaptiveSignals,
    adaptive_from_ratio,
    adjust_excerpt_chars_by_content_type,
    adjust_excerpt_lines_by_content_type,
    clamp_int_ceiling,
)
from src.pipeline.concurrency import run_limited_settled
from src.pipeline.errors import ContextLengthError, PipelineError
from src.pipeline.excerpts import build_stratified_excerpts, render_excerpts_by_ids, stratified_indices
from src.pipeline.inventory import (
    ConceptItem,
    Coverage,
    accept_outline_title,
    chunk_section_path,
    concepts_json_for_delta,
    dedupe_concept_inventory_by_key,
    desired_coverage_passes,
    normalize_concept_inventory,
    outline_seed_topic_limit,
    parse_concept_inventory_delta,
    sanitize_outline_title,
)
from src.pipeline.primitives import dedupe_strings, is_unextractable_chunk, parse_uuid
from src.pipeline.progress import ProgressReporter, llm_timer
from src.pipeline.prompts import CONCEPT_INVENTORY_DELTA, build_prompt
from src.semantic.vectors import top_k_chunk_ids_by_cosine

RETRY_MIN_TOTAL_CHARS = 12000
SECTION_SWEEP_MAX_PER_TASK = 24
AVG_CHUNK_CHARS = {"slides": 220, "prose": 450, "code": 320}


@dataclass
class CoverageParams:
    passes: int
    max_concepts: int
    per_file: int
    max_chars: int
    max_lines: int
    max_total: int
    max_missing_topics: int
    topic_top_k: int
    targeted_only: bool
    concurrency: int
    max_rounds: int
    section_sweep: bool = True
    topic_timeout: float = 4.0


@dataclass
class CoverageInput:
    path_id: UUID | None
    material_set_id: UUID | None
    chunks_namespace: str
    intent_md: str
    chunks: list[Any]
    concepts: list[ConceptItem]
    initial_coverage: Coverage = field(default_factory=Coverage)
    initial_chunk_ids: list[UUID] = field(default_factory=list)
    allowed_chunk_ids: set[str] | None = None
    chunk_embeddings: dict[str, list[float]] = field(default_factory=dict)
    seed_topics: list[str] = field(default_factory=list)
    allow_files: set[UUID] = field(default_factory=set)
    signals: AdaptiveSignals = field(default_factory=AdaptiveSignals)
    stage: str = "concept_graph_build"
    reporter: ProgressReporter | None = None
    progress_start: int = 0
    progress_end: int = 0


@dataclass
class CoverageResult:
    concepts: list[ConceptItem]
    rounds: int = 0
    added: int = 0
    sweep_added: int = 0
    missing_topics: list[str] = field(default_factory=list)
    adaptive: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeltaTask:
    excerpts: str
    candidate_ids: list[UUID]
    missing_topics: list[str] = field(default_factory=list)
    label: str = ""


# ========================================
# Parameters
# ========================================


def resolve_coverage_params(
    settings: Settings,
    signals: AdaptiveSignals,
    adaptive: bool,
    stage: str = "concept_graph_build",
    overrides: dict[str, Any] | None = None,
) -> tuple[CoverageParams, AdaptiveParams]:
    """
    Derive coverage budgets from settings (ceilings) and corpus signals.

    ``overrides`` replaces individual values (the patch stage passes its own
    budgets). Zero/None overrides are ignored.
    """
    ov = {k: v for k, v in (overrides or {}).items() if v not in (None, 0, "")}
    record = AdaptiveParams(stage=stage, enabled=adaptive, signals=signals)

    passes_ceiling = settings.concept_graph_coverage_passes
    passes = ov.get("passes", 0)
    if not passes:
        if adaptive:
            ceiling = passes_ceiling if passes_ceiling > 0 else desired_coverage_passes(signals)
            passes = adaptive_from_ratio(signals.page_count, 1 / 50, 1, ceiling)
        else:
            passes = passes_ceiling if passes_ceiling > 0 else desired_coverage_passes(signals)
    record.record("CONCEPT_GRAPH_COVERAGE_PASSES", passes, passes_ceiling)

    max_concepts_ceiling = max(settings.concept_graph_coverage_max_concepts, 0)
    max_concepts = ov.get("max_concepts", 0)
    if not max_concepts:
        if adaptive:
            max_concepts = clamp_int_ceiling(round(signals.page_count * 0.4), 40, max_concepts_ceiling)
        else:
            max_concepts = max_concepts_ceiling or 180
    record.record("CONCEPT_GRAPH_MAX_CONCEPTS", max_concepts, max_concepts_ceiling)

    per_file_ceiling = ov.get("per_file_ceiling") or settings.concept_graph_coverage_excerpts_per_file
    per_file = ov.get("per_file", 0)
    if not per_file:
        if adaptive:
            per_file = clamp_int_ceiling(round(signals.avg_pages_per_file / 15), 2, per_file_ceiling)
        else:
            per_file = per_file_ceiling
    record.record("CONCEPT_GRAPH_COVERAGE_EXCERPTS_PER_FILE", per_file, per_file_ceiling)

    max_chars_ceiling = ov.get("max_chars") or settings.concept_graph_coverage_excerpt_max_chars or 700
    max_chars = max_chars_ceiling
    if adaptive:
        max_chars = clamp_int_ceiling(
            adjust_excerpt_chars_by_content_type(max_chars, signals.content_type), 200, max_chars_ceiling
        )
    record.record("CONCEPT_GRAPH_COVERAGE_EXCERPT_MAX_CHARS", max_chars, max_chars_ceiling)

    max_lines_ceiling = settings.concept_graph_coverage_excerpt_max_lines
    max_lines = max_lines_ceiling
    if adaptive and max_lines > 0:
        max_lines = clamp_int_ceiling(
            adjust_excerpt_lines_by_content_type(max_lines, signals.content_type), 8, max_lines_ceiling
        )
    record.record("CONCEPT_GRAPH_COVERAGE_EXCERPT_MAX_LINES", max_lines, max_lines_ceiling)

    targeted_only = bool(ov.get("targeted_only", settings.concept_graph_coverage_targeted_only))
    total_ceiling = ov.get("max_total") or settings.concept_graph_coverage_excerpt_max_total_chars
    if total_ceiling <= 0:
        total_ceiling = 20000 if targeted_only else 45000
    if adaptive:
        max_total = clamp_int_ceiling(round(signals.page_count * 250), 8000, total_ceiling)
    else:
        max_total = total_ceiling
    record.record("CONCEPT_GRAPH_COVERAGE_EXCERPT_MAX_TOTAL_CHARS", max_total, total_ceiling)

    topics_ceiling = settings.concept_graph_coverage_max_missing_topics
    if adaptive and signals.concept_count > 0:
        max_topics = adaptive_from_ratio(signals.concept_count, 0.05, 6, topics_ceiling)
    else:
        max_topics = topics_ceiling
    if adaptive and signals.concept_count > 120:
        max_topics = max(max_topics, 8)
    if adaptive and signals.concept_count > 200:
        max_topics = max(max_topics, 10)
    max_topics = max_topics if max_topics > 0 else 8
    record.record("CONCEPT_GRAPH_COVERAGE_MAX_MISSING_TOPICS", max_topics, topics_ceiling)

    topk_ceiling = settings.concept_graph_coverage_topic_topk
    if adaptive and signals.concept_count > 0:
        topic_top_k = adaptive_from_ratio(signals.concept_count, 0.03, 4, topk_ceiling)
    else:
        topic_top_k = topk_ceiling
    topic_top_k = topic_top_k if topic_top_k > 0 else 6
    record.record("CONCEPT_GRAPH_COVERAGE_TOPIC_TOPK", topic_top_k, topk_ceiling)

    max_rounds = passes
    if settings.concept_graph_coverage_max_rounds > 0:
        max_rounds = min(max_rounds, settings.concept_graph_coverage_max_rounds)

    params = CoverageParams(
        passes=passes,
        max_concepts=max_concepts,
        per_file=per_file,
        max_chars=max_chars,
        max_lines=max_lines,
        max_total=max_total,
        max_missing_topics=max_topics,
        topic_top_k=topic_top_k,
        targeted_only=targeted_only,
        concurrency=settings.concept_graph_coverage_concurrency or 4,
        max_rounds=max(max_rounds, 1),
        section_sweep=settings.concept_graph_coverage_section_sweep_enabled,
        topic_timeout=settings.concept_graph_coverage_topic_timeout_seconds or 4.0,
    )
    return params, record


# ========================================
# Round helpers
# ========================================


def coverage_stall_min_added(total: int, signals: AdaptiveSignals) -> int:
    """Fewest new concepts a round must add to count as progress."""
    if total < 1:
        return 1
    min_added = max(2, round(total * 0.01))
    if signals.page_count >= 500 or signals.chunk_count >= 1500:
        min_added = max(min_added, 4)
    return min_added


def same_topic_set(a: Iterable[str], b: Iterable[str]) -> bool:
    """Case-insensitive set equality ignoring blanks."""
    norm = lambda values: {v.strip().lower() for v in values or [] if v and v.strip()}  # noqa: E731
    return norm(a) == norm(b)


def split_batches(values: list[str], size: int) -> list[list[str]]:
    if not values:
        return []
    if size <= 0:
        return [list(values)]
    return [values[i : i + size] for i in range(0, len(values), size)]


def normalize_coverage_seed_topics(topics: Iterable[str], signals: AdaptiveSignals) -> list[str]:
    limit = outline_seed_topic_limit(signals) or 40
    out: list[str] = []
    seen: set[str] = set()
    for raw in topics or []:
        title = sanitize_outline_title(raw)
        if not accept_outline_title(title) or title.lower() in seen:
            continue
        seen.add(title.lower())
        out.append(title)
        if len(out) >= limit:
            break
    return out


def merge_seed_topics(missing: list[str], seeds: list[str], max_topics: int, signals: AdaptiveSignals) -> list[str]:
    """Outline titles join the missing topics when the model reported few of its own."""
    if seeds:
        large = signals.page_count >= 200 or signals.chunk_count >= 600
        if not missing or large or len(missing) < max(6, max_topics // 2):
            missing = list(missing) + list(seeds)
    return dedupe_strings(missing)


def merge_new_concepts(
    concepts: list[ConceptItem], new: list[ConceptItem], known: set[str], allowed_chunk_ids: set[str] | None
) -> tuple[list[ConceptItem], int]:
    """Normalize the union; returns (merged, count of keys not in ``known``). ``known`` is updated."""
    merged, _ = normalize_concept_inventory(list(concepts) + list(new), allowed_chunk_ids)
    merged, _ = dedupe_concept_inventory_by_key(merged)
    added = 0
    for c in merged:
        if c.key and c.key not in known:
            known.add(c.key)
            added += 1
    return merged, added


# ========================================
# Section sweep
# ========================================


def should_run_section_sweep(signals: AdaptiveSignals) -> bool:
    return signals.page_count >= 200 or signals.chunk_count >= 600


def section_min_citations(total_chunks: int) -> int:
    if total_chunks >= 30:
        return 3
    if total_chunks >= 12:
        return 2
    return 1


def collect_section_chunks(chunks: Iterable[Any]) -> dict[str, list[Any]]:
    """Usable chunks grouped by section_path (sorted), each group in index order."""
    by_section: dict[str, list[Any]] = {}
    for ch in chunks or []:
        if ch is None or is_unextractable_chunk(ch) or not (ch.text or "").strip():
            continue
        sec = chunk_section_path(ch)
        if sec:
            by_section.setdefault(sec, []).append(ch)
    for arr in by_section.values():
        arr.sort(key=lambda c: int(c.index or 0))
    return dict(sorted(by_section.items()))


def undercovered_sections(
    section_chunks: dict[str, list[Any]], concepts: Iterable[ConceptItem], chunk_by_id: dict[UUID, Any]
) -> list[str]:
    """Sections cited fewer times than their size warrants, largest first."""
    cites: dict[str, int] = {}
    for c in concepts or []:
        for cid in c.citations:
            ch = chunk_by_id.get(parse_uuid(cid))
            if ch is None:
                continue
            sec = chunk_section_path(ch)
            if sec:
                cites[sec] = cites.get(sec, 0) + 1
    stats = [
        (len(arr), sec)
        for sec, arr in section_chunks.items()
        if cites.get(sec, 0) < section_min_citations(len(arr))
    ]
    stats.sort(key=lambda t: (-t[0], t[1]))
    return [sec for _, sec in stats]


def pick_section_chunk_ids(chunks: list[Any], per_section: int, seen: set[UUID]) -> list[UUID]:
    per_section = max(per_section, 1)
    use = [c for c in chunks if c.id not in seen]
    if len(use) < per_section:
        use = chunks
    return [use[i].id for i in stratified_indices(len(use), per_section)]


def build_section_sweep_tasks(
    sections: list[str],
    section_chunks: dict[str, list[Any]],
    seen: set[UUID],
    per_section: int,
    max_chars: int,
    max_total: int,
    signals: AdaptiveSignals,
) -> list[DeltaTask]:
    """
    Batch undercovered sections into delta tasks that fit the excerpt budget.

    Rendered chunks are added to ``seen``.
    """
    if not sections:
        return []
    max_chars = max_chars if max_chars > 0 else 700
    max_total = max_total if max_total > 0 else 20000
    limit = outline_seed_topic_limit(signals)
    if limit > 0:
        sections = sections[:limit]

    lengths: list[int] = []
    for sec in sections:
        for ch in section_chunks.get(sec, []):
            txt = (ch.text or "").strip()
            if txt:
                lengths.append(len(txt))
            if len(lengths) >= 120:
                break
        if len(lengths) >= 120:
            break
    avg_len = round(sum(lengths) / len(lengths)) if lengths else 0
    if avg_len <= 0:
        avg_len = AVG_CHUNK_CHARS.get(signals.content_type, 360)
    per_task = max_total // max(1, (avg_len + 40) * per_section)
    per_task = min(max(per_task, 1), SECTION_SWEEP_MAX_PER_TASK)

    chunk_by_id = {ch.id: ch for arr in section_chunks.values() for ch in arr}
    tasks: list[DeltaTask] = []
    batch: list[UUID] = []
    count = 0

    def flush() -> None:
        nonlocal batch, count
        if batch:
            text, used = render_excerpts_by_ids(chunk_by_id, batch, max_chars, max_total)
            if text:
                seen.update(used)
                tasks.append(DeltaTask(excerpts=text, candidate_ids=used, label="section_sweep"))
        batch = []
        count = 0

    for sec in sections:
        ids = pick_section_chunk_ids(section_chunks.get(sec, []), per_section, seen)
        if not ids:
            continue
        if count >= per_task:
            flush()
        batch.extend(ids)
        count += 1
    flush()
    return tasks


# ========================================
# Engine
# ========================================


class CoverageEngine:
    """
    Runs coverage rounds against an LLM and (optionally) a vector store.

    Topic embeddings are cached for the lifetime of the engine, so one engine
    should serve one stage run.

    Example:
        >>> engine = CoverageEngine(llm, vec)
        >>> result = await engine.complete(inp, params)
    """

    def __init__(self, llm: LLMClient, vector_store: VectorStore | None = None):
        self.llm = llm
        self.vector_store = vector_store
        self._topic_cache: dict[str, list[float]] = {}

    async def _embed_topics(self, topics: list[str]) -> list[list[float]] | None:
        missing = [t for t in topics if t not in self._topic_cache]
        if missing:
            try:
                with llm_timer("topic_embeddings", {"topic_count": len(missing)}):
                    vectors = await self.llm.embed(missing)
            except PipelineError as e:
                logger.warning(f"Topic embedding failed: {e}")
                return None
            if len(vectors) != len(missing):
                return None
            for topic, vec in zip(missing, vectors):
                if vec:
                    self._topic_cache[topic] = list(vec)
        out = [self._topic_cache.get(t) for t in topics]
        if any(not v for v in out):
            return None
        return out

    async def target_chunk_ids(
        self, inp: CoverageInput, params: CoverageParams, topics: list[str], seen: set[UUID]
    ) -> list[UUID]:
        """
        Unseen chunks closest to the missing topics.

        The vector store is queried per topic with a short timeout; when it
        yields nothing, local chunk embeddings are used instead.
        """
        topics = [t.strip() for t in dedupe_strings(topics)][: params.max_missing_topics]
        if not topics or params.topic_top_k <= 0:
            return []
        vectors = await self._embed_topics(topics)
        if vectors is None:
            return []

        out: list[UUID] = []
        taken: set[UUID] = set()

        def take(ids: Iterable[str]) -> None:
            for raw in ids:
                cid = parse_uuid(raw)
                if cid is None or cid in seen or cid in taken:
                    continue
                taken.add(cid)
                out.append(cid)

        if self.vector_store is not None and inp.chunks_namespace:
            flt = chunk_filter(sorted(inp.allow_files, key=str))
            for vec in vectors:
                try:
                    ids = await asyncio.wait_for(
                        self.vector_store.query_ids(inp.chunks_namespace, vec, params.topic_top_k, flt),
                        timeout=params.topic_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.debug(f"Coverage topic query timed out after {params.topic_timeout}s")
                    continue
                except Exception as e:  # Topic lookups are best-effort
                    logger.debug(f"Coverage topic query failed: {e}")
                    continue
                take(ids)

        if not out and inp.chunk_embeddings:
            for vec in vectors:
                take(top_k_chunk_ids_by_cosine(vec, inp.chunk_embeddings, params.topic_top_k))

        return sorted(out, key=str)

    async def run_delta_tasks(
        self,
        inp: CoverageInput,
        params: CoverageParams,
        tasks: list[DeltaTask],
        concepts_json: str,
        chunk_by_id: dict[UUID, Any],
        on_done=None,
    ) -> tuple[list[ConceptItem], list[str]]:
        """Run delta prompts concurrently; failing tasks are logged and contribute nothing."""

        async def worker(i: int, task: DeltaTask) -> tuple[list[ConceptItem], list[str]]:
            try:
                prompt = build_prompt(
                    CONCEPT_INVENTORY_DELTA,
                    path_intent_md=inp.intent_md,
                    concepts_json=concepts_json,
                    excerpts=task.excerpts,
                )
                fields = {"stage": inp.stage, "task": i, "excerpt_chars": len(task.excerpts)}
                if task.label:
                    fields["scope"] = task.label
                try:
                    with llm_timer("concept_inventory_delta", fields):
                        obj = await self.llm.generate_json(
                            prompt.system, prompt.user, prompt.schema_name, prompt.schema
                        )
                except ContextLengthError:
                    retry_max = params.max_total if params.max_total > 0 else 20000
                    if retry_max <= RETRY_MIN_TOTAL_CHARS:
                        raise
                    shorter, _ = render_excerpts_by_ids(
                        chunk_by_id, task.candidate_ids, params.max_chars, max(RETRY_MIN_TOTAL_CHARS, retry_max // 2)
                    )
                    if not shorter:
                        raise
                    prompt = build_prompt(
                        CONCEPT_INVENTORY_DELTA,
                        path_intent_md=inp.intent_md,
                        concepts_json=concepts_json,
                        excerpts=shorter,
                    )
                    with llm_timer("concept_inventory_delta", {**fields, "retry": "shorter"}):
                        obj = await self.llm.generate_json(
                            prompt.system, prompt.user, prompt.schema_name, prompt.schema
                        )
                new, cov = parse_concept_inventory_delta(obj)
                return new, cov.missing_topics
            finally:
                if on_done is not None:
                    on_done()

        results = await run_limited_settled(tasks, worker, min(len(tasks), params.concurrency), "coverage delta")
        new_all: list[ConceptItem] = []
        topics: list[str] = []
        for res in results:
            if res is None:
                continue
            new_all.extend(res[0])
            topics.extend(res[1])
        return new_all, topics

    async def complete(self, inp: CoverageInput, params: CoverageParams) -> CoverageResult:
        """
        Run coverage rounds until the inventory stops growing.

        Args:
            inp: Corpus, initial inventory and its coverage report.
            params: Budgets from ``resolve_coverage_params``.

        Returns:
            CoverageResult with the merged inventory (the input inventory when
            nothing could be added).
        """
        result = CoverageResult(concepts=list(inp.concepts))
        if not inp.concepts or not inp.chunks or params.passes <= 0:
            return result

        reporter = inp.reporter or ProgressReporter()
        chunk_by_id = {ch.id: ch for ch in inp.chunks if ch is not None}
        seen: set[UUID] = {cid for cid in inp.initial_chunk_ids if cid is not None}
        known = {c.key for c in inp.concepts if c.key}
        concepts = list(inp.concepts)

        seed_topics = normalize_coverage_seed_topics(inp.seed_topics, inp.signals)
        missing = merge_seed_topics(
            list(inp.initial_coverage.missing_topics), seed_topics, params.max_missing_topics, inp.signals
        )
        if seed_topics:
            result.adaptive["CONCEPT_GRAPH_COVERAGE_SEED_TOPICS"] = {"actual": len(seed_topics)}
        prev_missing = list(missing)
        batch_size = params.max_missing_topics or 8
        max_total_topics = batch_size * params.passes
        stall_rounds = 0
        span = max(inp.progress_end - inp.progress_start, 0)

        for rnd in range(1, params.max_rounds + 1):
            start = inp.progress_start + round((rnd - 1) / params.max_rounds * span)
            end = inp.progress_start + round(rnd / params.max_rounds * span)
            reporter.update(start, f"Coverage pass {rnd}/{params.max_rounds}")
            result.rounds = rnd

            if len(known) >= params.max_concepts:
                break

            remaining = [
                ch
                for ch in inp.chunks
                if ch is not None
                and ch.id not in seen
                and not is_unextractable_chunk(ch)
                and (ch.text or "").strip()
            ]
            if not remaining:
                break

            topic_batches = split_batches(dedupe_strings(missing)[:max_total_topics], batch_size) or [[]]
            _, strat_ids = build_stratified_excerpts(
                remaining, params.per_file, params.max_chars, params.max_lines, params.max_total, enriched=False
            )
            strat_shares: list[list[UUID]] = [[] for _ in topic_batches]
            for i, cid in enumerate(strat_ids):
                strat_shares[i % len(topic_batches)].append(cid)

            tasks: list[DeltaTask] = []
            for i, batch in enumerate(topic_batches):
                candidates = await self.target_chunk_ids(inp, params, batch, seen)
                if not params.targeted_only or not candidates:
                    candidates = candidates + strat_shares[i]
                text, used = render_excerpts_by_ids(chunk_by_id, candidates, params.max_chars, params.max_total)
                if not text:
                    continue
                seen.update(used)
                tasks.append(DeltaTask(excerpts=text, candidate_ids=candidates, missing_topics=batch))
            if not tasks:
                reporter.update(end, f"Coverage pass {rnd}/{params.max_rounds}")
                break

            done = 0

            def tick() -> None:
                nonlocal done
                done += 1
                reporter.update_range(
                    done, len(tasks), start, end, f"Coverage pass {rnd}/{params.max_rounds} ({done}/{len(tasks)})"
                )

            new, next_topics = await self.run_delta_tasks(
                inp, params, tasks, concepts_json_for_delta(concepts), chunk_by_id, tick
            )
            reporter.update(end, f"Coverage pass {rnd}/{params.max_rounds}")
            if not new:
                break

            merged, added = merge_new_concepts(concepts, new, known, inp.allowed_chunk_ids)
            if added == 0:
                break
            concepts = merged
            result.added += added
            logger.info(f"{inp.stage}: coverage round {rnd} added {added} concepts (total {len(known)})")

            missing_next = dedupe_strings(next_topics)
            if added < coverage_stall_min_added(len(concepts), inp.signals) and same_topic_set(
                prev_missing, missing_next
            ):
                stall_rounds += 1
            else:
                stall_rounds = 0
            prev_missing = missing_next
            missing = missing_next
            if stall_rounds >= 2 or not missing:
                break

        if params.section_sweep and should_run_section_sweep(inp.signals):
            section_chunks = collect_section_chunks(inp.chunks)
            under = undercovered_sections(section_chunks, concepts, chunk_by_id)
            if under:
                per_section = 2 if should_run_section_sweep(inp.signals) else 1
                sweep = build_section_sweep_tasks(
                    under, section_chunks, seen, per_section, params.max_chars, params.max_total, inp.signals
                )
                if sweep:
                    result.adaptive["CONCEPT_GRAPH_SECTION_SWEEP"] = {"sections": len(under), "tasks": len(sweep)}
                    new, next_topics = await self.run_delta_tasks(
                        inp, params, sweep, concepts_json_for_delta(concepts), chunk_by_id
                    )
                    if new:
                        concepts, added = merge_new_concepts(concepts, new, known, inp.allowed_chunk_ids)
                        result.sweep_added = added
                        if added:
                            logger.info(f"{inp.stage}: section sweep added {added} concepts (total {len(known)})")
                    if next_topics and not missing:
                        missing = dedupe_strings(next_topics)

        result.concepts = concepts
        result.missing_topics = missing
        return result
