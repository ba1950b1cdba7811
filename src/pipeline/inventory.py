"""
Concept inventory helpers.

Parsing, normalization and merging of LLM concept inventories and edges,
file-signature seeds, weakness checks and the sizing rules for the global
inventory fallback. Everything here is pure: stages load rows, call these
helpers and persist the result.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from src.pipeline.adaptive import AdaptiveSignals, adjust_threshold_by_content_type, clamp_int_ceiling
from src.pipeline.errors import StageValidationError
from src.pipeline.primitives import (
    chunk_meta,
    clamp01,
    dedupe_strings,
    filter_chunk_id_strings,
    float_from_any,
    int_from_any,
    is_unextractable_chunk,
    map_from_any,
    normalize_concept_key,
    shorten,
    string_from_any,
    string_list_from_any,
)

EDGE_TYPES = ("prereq", "related", "analogy")

ASSUMED_PREREQ_STRENGTH = 0.85
ASSUMED_PREREQ_RATIONALE = "assumed prerequisite"

DELTA_SUMMARY_MAX_CHARS = 260

_HEADING_NUM_PREFIX = re.compile(r"^(\d+(\.\d+)*|[IVX]+)\s+")
_REJECTED_TITLES = {"contents", "table of contents", "index", "preface", "foreword"}

# Extra metadata keys carried on a concept item
_LIST_EXTRA_KEYS = ("required_by", "merged_from", "split_from")
_TEXT_EXTRA_KEYS = ("split_rationale", "assumed_notes")


# ========================================
# Item types
# ========================================


@dataclass
class ConceptItem:
    key: str
    name: str
    parent_key: str = ""
    depth: int = 0
    summary: str = ""
    key_points: list[str] = field(default_factory=list)
    aliases: list[str] = field(default_factory=list)
    importance: int = 0
    citations: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "parent_key": self.parent_key or None,
            "depth": self.depth,
            "summary": self.summary,
            "key_points": list(self.key_points),
            "aliases": list(self.aliases),
            "importance": self.importance,
            "citations": list(self.citations),
        }


@dataclass
class EdgeItem:
    from_key: str
    to_key: str
    edge_type: str
    strength: float = 1.0
    rationale: str = ""
    citations: list[str] = field(default_factory=list)


@dataclass
class Coverage:
    confidence: float = 0.0
    notes: str = ""
    missing_topics: list[str] = field(default_factory=list)


@dataclass
class InventoryStats:
    modified: int = 0
    keys_changed: int = 0
    depth_recomputed: int = 0
    parents_repaired: int = 0
    cycles_broken: int = 0
    citations_filtered: int = 0


@dataclass
class EdgeStats:
    modified: int = 0
    dropped_missing: int = 0
    self_loops: int = 0
    type_normalized: int = 0
    strength_clamped: int = 0
    citations_filtered: int = 0
    deduped: int = 0


@dataclass
class SeedMeta:
    total_files: int = 0
    files_with_seeds: int = 0
    seed_count: int = 0
    avg_quality: float = 0.0
    low_quality_files: int = 0
    usable: bool = False
    reason: str = ""
    params: dict[str, Any] = field(default_factory=dict)

    def to_meta(self) -> dict[str, Any]:
        return {
            "total_files": self.total_files,
            "files_with_seeds": self.files_with_seeds,
            "seed_count": self.seed_count,
            "avg_quality": self.avg_quality,
            "low_quality_files": self.low_quality_files,
            "usable": self.usable,
            "reason": self.reason,
            "params": self.params,
        }


# ========================================
# Parsing
# ========================================


def _concept_from_map(m: dict[str, Any]) -> ConceptItem | None:
    key = string_from_any(m.get("key")).strip()
    name = string_from_any(m.get("name")).strip()
    if not key or not name:
        return None
    return ConceptItem(
        key=key,
        name=name,
        parent_key=string_from_any(m.get("parent_key")).strip(),
        depth=int_from_any(m.get("depth"), 0),
        summary=string_from_any(m.get("summary")).strip(),
        key_points=dedupe_strings(string_list_from_any(m.get("key_points"))),
        aliases=dedupe_strings(string_list_from_any(m.get("aliases"))),
        importance=int_from_any(m.get("importance"), 0),
        citations=dedupe_strings(string_list_from_any(m.get("citations"))),
    )


def parse_concept_inventory(obj: dict[str, Any]) -> list[ConceptItem]:
    """
    Read ``{concepts: [...]}`` from a concept inventory response.

    Raises:
        StageValidationError: If ``concepts`` is missing or not a list.
    """
    raw = map_from_any(obj).get("concepts")
    if not isinstance(raw, list):
        raise StageValidationError("concept_inventory: concepts missing or not a list")
    out = []
    for m in raw:
        if isinstance(m, dict):
            item = _concept_from_map(m)
            if item is not None:
                out.append(item)
    return out


def parse_coverage(obj: dict[str, Any]) -> Coverage:
    raw = map_from_any(map_from_any(obj).get("coverage"))
    if not raw:
        return Coverage()
    return Coverage(
        confidence=float_from_any(raw.get("confidence"), 0.0),
        notes=string_from_any(raw.get("notes")).strip(),
        missing_topics=dedupe_strings(string_list_from_any(raw.get("missing_topics_suspected"))),
    )


def parse_concept_inventory_delta(obj: dict[str, Any]) -> tuple[list[ConceptItem], Coverage]:
    obj = map_from_any(obj)
    cov = parse_coverage(obj)
    raw = obj.get("new_concepts")
    if not isinstance(raw, list):
        raise StageValidationError("concept_inventory_delta: new_concepts missing or not a list")
    out = []
    for m in raw:
        if isinstance(m, dict):
            item = _concept_from_map(m)
            if item is not None:
                out.append(item)
    return out, cov


def parse_concept_edges(obj: dict[str, Any]) -> list[EdgeItem]:
    raw = map_from_any(obj).get("edges")
    if not isinstance(raw, list):
        raise StageValidationError("concept_edges: edges missing or not a list")
    out = []
    for m in raw:
        if not isinstance(m, dict):
            continue
        from_key = string_from_any(m.get("from_key")).strip()
        to_key = string_from_any(m.get("to_key")).strip()
        edge_type = string_from_any(m.get("edge_type")).strip()
        if not from_key or not to_key or not edge_type:
            continue
        out.append(
            EdgeItem(
                from_key=from_key,
                to_key=to_key,
                edge_type=edge_type,
                strength=float_from_any(m.get("strength"), 1.0),
                rationale=string_from_any(m.get("rationale")).strip(),
                citations=dedupe_strings(string_list_from_any(m.get("citations"))),
            )
        )
    return out


# ========================================
# Normalization
# ========================================


def merge_concept_extra(dst: dict[str, Any], src: dict[str, Any] | None) -> dict[str, Any]:
    """Merge concept metadata: flags OR, lists union, text keeps the first non-empty value."""
    dst = dict(dst or {})
    src = map_from_any(src)
    if src.get("assumed"):
        dst["assumed"] = True
    for key in _LIST_EXTRA_KEYS:
        values = string_list_from_any(src.get(key))
        if values:
            dst[key] = dedupe_strings(string_list_from_any(dst.get(key)) + values)
    for key in _TEXT_EXTRA_KEYS:
        value = string_from_any(src.get(key)).strip()
        if value and not string_from_any(dst.get(key)).strip():
            dst[key] = value
    return dst


def _merge_duplicate(existing: ConceptItem, cand: ConceptItem) -> None:
    if not existing.name:
        existing.name = cand.name
    if len(cand.summary) > len(existing.summary):
        existing.summary = cand.summary
    existing.key_points = dedupe_strings(existing.key_points + cand.key_points)
    existing.aliases = dedupe_strings(existing.aliases + cand.aliases)
    existing.citations = dedupe_strings(existing.citations + cand.citations)
    if not existing.parent_key:
        existing.parent_key = cand.parent_key
    existing.importance = max(existing.importance, cand.importance)
    existing.extra = merge_concept_extra(existing.extra, cand.extra)


def normalize_concept_inventory(
    items: Iterable[ConceptItem], allowed_chunk_ids: set[str] | None = None
) -> tuple[list[ConceptItem], InventoryStats]:
    """
    Normalize keys, merge duplicates and repair the parent tree.

    Parents that point at themselves or at unknown keys are cleared. A parent
    chain that loops has the parent of the node closing the loop cleared.
    Depth is recomputed from the repaired tree (roots are 0).

    Returns:
        Items sorted by key, plus repair counters.
    """
    stats = InventoryStats()
    by_key: dict[str, ConceptItem] = {}
    for raw in items or []:
        key = normalize_concept_key(raw.key)
        if not key:
            continue
        if key != raw.key:
            stats.keys_changed += 1
        parent = normalize_concept_key(raw.parent_key)
        if parent != raw.parent_key:
            stats.keys_changed += 1
        citations = filter_chunk_id_strings(raw.citations, allowed_chunk_ids)
        if len(citations) != len(raw.citations):
            stats.citations_filtered += 1
        cand = ConceptItem(
            key=key,
            name=raw.name.strip(),
            parent_key=parent,
            depth=raw.depth,
            summary=raw.summary.strip(),
            key_points=dedupe_strings(raw.key_points),
            aliases=dedupe_strings(raw.aliases),
            importance=raw.importance,
            citations=citations,
            extra=dict(raw.extra or {}),
        )
        existing = by_key.get(key)
        if existing is None:
            by_key[key] = cand
        else:
            _merge_duplicate(existing, cand)

    for key, item in by_key.items():
        if item.parent_key and (item.parent_key == key or item.parent_key not in by_key):
            item.parent_key = ""
            stats.parents_repaired += 1

    for start in sorted(by_key):
        seen = {start}
        cur = by_key[start]
        while cur.parent_key:
            if cur.parent_key in seen:
                cur.parent_key = ""
                stats.cycles_broken += 1
                break
            seen.add(cur.parent_key)
            cur = by_key[cur.parent_key]

    depths: dict[str, int] = {}

    def depth_of(key: str) -> int:
        if key in depths:
            return depths[key]
        parent = by_key[key].parent_key
        d = 0 if not parent else depth_of(parent) + 1
        depths[key] = d
        return d

    for key, item in by_key.items():
        d = depth_of(key)
        if item.depth != d:
            item.depth = d
            stats.depth_recomputed += 1

    stats.modified = (
        stats.keys_changed
        + stats.depth_recomputed
        + stats.parents_repaired
        + stats.cycles_broken
        + stats.citations_filtered
    )
    return sorted(by_key.values(), key=lambda c: c.key), stats


def dedupe_concept_inventory_by_key(items: Iterable[ConceptItem]) -> tuple[list[ConceptItem], int]:
    """Collapse same-key items. Returns (items in first-seen order, duplicates removed)."""
    by_key: dict[str, ConceptItem] = {}
    order: list[str] = []
    dups = 0
    for it in items or []:
        if not it.key:
            continue
        existing = by_key.get(it.key)
        if existing is None:
            by_key[it.key] = ConceptItem(**{**it.__dict__, "extra": dict(it.extra or {})})
            order.append(it.key)
            continue
        dups += 1
        if not existing.name:
            existing.name = it.name
        if not existing.parent_key:
            existing.parent_key = it.parent_key
        if len(it.summary) > len(existing.summary):
            existing.summary = it.summary
        existing.importance = max(existing.importance, it.importance)
        if existing.parent_key:
            existing.depth = max(existing.depth, it.depth, 1)
        else:
            existing.depth = 0
        existing.key_points = dedupe_strings(existing.key_points + it.key_points)
        existing.aliases = dedupe_strings(existing.aliases + it.aliases)
        existing.citations = dedupe_strings(existing.citations + it.citations)
        existing.extra = merge_concept_extra(existing.extra, it.extra)
    return [by_key[k] for k in order], dups


def normalize_concept_edges(
    edges: Iterable[EdgeItem], concepts: Iterable[ConceptItem], allowed_chunk_ids: set[str] | None = None
) -> tuple[list[EdgeItem], EdgeStats]:
    """
    Drop invalid edges and merge duplicates on (from, to, type).

    Unknown edge types become ``related``; strength is clamped to [0, 1].
    Duplicates keep the highest strength and the longest rationale.
    """
    stats = EdgeStats()
    known = {c.key for c in concepts or [] if c.key}
    by_id: dict[tuple[str, str, str], EdgeItem] = {}
    for e in edges or []:
        from_key = normalize_concept_key(e.from_key)
        to_key = normalize_concept_key(e.to_key)
        if not from_key or not to_key:
            stats.dropped_missing += 1
            continue
        if from_key == to_key:
            stats.self_loops += 1
            continue
        if from_key not in known or to_key not in known:
            stats.dropped_missing += 1
            continue
        edge_type = (e.edge_type or "").strip().lower()
        if edge_type not in EDGE_TYPES:
            edge_type = "related"
            stats.type_normalized += 1
        strength = float(e.strength)
        if strength < 0 or strength > 1:
            strength = clamp01(strength)
            stats.strength_clamped += 1
        citations = filter_chunk_id_strings(e.citations, allowed_chunk_ids)
        if len(citations) != len(e.citations):
            stats.citations_filtered += 1

        ident = (from_key, to_key, edge_type)
        existing = by_id.get(ident)
        if existing is None:
            by_id[ident] = EdgeItem(from_key, to_key, edge_type, strength, (e.rationale or "").strip(), citations)
            continue
        stats.deduped += 1
        existing.strength = max(existing.strength, strength)
        if len((e.rationale or "").strip()) > len(existing.rationale):
            existing.rationale = e.rationale.strip()
        existing.citations = dedupe_strings(existing.citations + citations)

    stats.modified = (
        stats.dropped_missing
        + stats.self_loops
        + stats.type_normalized
        + stats.strength_clamped
        + stats.citations_filtered
        + stats.deduped
    )
    out = sorted(by_id.values(), key=lambda e: (e.from_key, e.to_key, e.edge_type))
    return out, stats


# ========================================
# Prompt payloads
# ========================================


def concepts_json_for_prompt(concepts: Iterable[ConceptItem]) -> str:
    return json.dumps({"concepts": [c.to_dict() for c in concepts or []]}, ensure_ascii=False)


def concepts_json_for_delta(concepts: Iterable[ConceptItem]) -> str:
    """Compact concept list for delta prompts: key, name, parent and a short summary."""
    rows = []
    for c in concepts or []:
        key = (c.key or "").strip()
        name = (c.name or "").strip()
        if not key or not name:
            continue
        row: dict[str, Any] = {"key": key, "name": name}
        if c.parent_key:
            row["parent_key"] = c.parent_key.strip()
        summary = shorten(c.summary, DELTA_SUMMARY_MAX_CHARS)
        if summary:
            row["summary"] = summary
        rows.append(row)
    rows.sort(key=lambda r: r["key"])
    return json.dumps({"concepts": rows}, ensure_ascii=False)


# ========================================
# Assumed knowledge & alignment
# ========================================


def apply_assumed_knowledge(
    concepts: Iterable[ConceptItem], obj: dict[str, Any], allowed_chunk_ids: set[str] | None = None
) -> tuple[list[ConceptItem], int]:
    """
    Merge an assumed-knowledge response into the inventory.

    Every assumed concept is flagged ``assumed`` and records ``required_by``.
    Existing keys absorb the name/summary/aliases; new keys are added as roots.

    Returns:
        (concepts, number of new concepts added)
    """
    obj = map_from_any(obj)
    by_key = {c.key: c for c in concepts or [] if c.key}
    raw = obj.get("assumed_concepts")
    if not isinstance(raw, list) or not raw:
        return sorted(by_key.values(), key=lambda c: c.key), 0
    notes = string_from_any(obj.get("notes")).strip()
    added = 0
    for a in raw:
        if not isinstance(a, dict):
            continue
        raw_key = string_from_any(a.get("key")).strip()
        key = normalize_concept_key(raw_key)
        if not key:
            continue
        raw_name = string_from_any(a.get("name")).strip()
        name = raw_name or key
        summary = string_from_any(a.get("summary")).strip()
        aliases = string_list_from_any(a.get("aliases"))
        citations = string_list_from_any(a.get("citations"))
        importance = int_from_any(a.get("importance"), 0)
        reqs = [k for k in (normalize_concept_key(r) for r in string_list_from_any(a.get("required_by"))) if k]

        extra: dict[str, Any] = {"assumed": True}
        if reqs:
            extra["required_by"] = reqs
        if notes:
            extra["assumed_notes"] = notes

        item = by_key.get(key)
        if item is not None:
            if not item.name:
                item.name = name
            if len(item.summary) < len(summary):
                item.summary = summary
            item.aliases = dedupe_strings(item.aliases + aliases + [raw_name, raw_key])
            item.citations = dedupe_strings(item.citations + citations)
            item.importance = max(item.importance, importance)
            item.extra = merge_concept_extra(item.extra, extra)
            continue
        by_key[key] = ConceptItem(
            key=key,
            name=name,
            summary=summary,
            aliases=dedupe_strings(aliases + [raw_name, raw_key]),
            importance=importance,
            citations=filter_chunk_id_strings(citations, allowed_chunk_ids),
            extra=merge_concept_extra({}, extra),
        )
        added += 1
    return sorted(by_key.values(), key=lambda c: c.key), added


def apply_concept_alignment(
    concepts: Iterable[ConceptItem], obj: dict[str, Any], allowed_chunk_ids: set[str] | None = None
) -> list[ConceptItem]:
    """
    Apply an alignment response: merge aliases into their canonical item and
    replace ambiguous items with one item per meaning.

    Merged canonicals record ``merged_from``; split meanings record
    ``split_from`` and ``split_rationale``.
    """
    obj = map_from_any(obj)
    by_key = {c.key: c for c in concepts or [] if c.key}
    if not by_key:
        return []

    merged_from: dict[str, list[str]] = {}
    for a in obj.get("aliases") or []:
        if not isinstance(a, dict):
            continue
        canon = normalize_concept_key(string_from_any(a.get("canonical_key")))
        base = by_key.get(canon)
        if base is None:
            continue
        for ak in string_list_from_any(a.get("alias_keys")):
            ak = normalize_concept_key(ak)
            if not ak or ak == canon or ak not in by_key:
                continue
            alias = by_key.pop(ak)
            base.aliases = dedupe_strings(base.aliases + alias.aliases + [alias.key, alias.name])
            base.key_points = dedupe_strings(base.key_points + alias.key_points)
            base.citations = dedupe_strings(base.citations + alias.citations)
            base.importance = max(base.importance, alias.importance)
            base.extra = merge_concept_extra(base.extra, alias.extra)
            merged_from.setdefault(canon, []).append(ak)
    for key, sources in merged_from.items():
        if key in by_key:
            by_key[key].extra["merged_from"] = dedupe_strings(sources)

    for sp in obj.get("splits") or []:
        if not isinstance(sp, dict):
            continue
        root = normalize_concept_key(string_from_any(sp.get("ambiguous_key")))
        orig = by_key.get(root)
        if orig is None:
            continue
        del by_key[root]
        for i, m in enumerate(sp.get("meanings") or [], start=1):
            if not isinstance(m, dict):
                continue
            key = normalize_concept_key(string_from_any(m.get("key"))) or f"{root}_variant_{i}"
            if key in by_key:
                key = f"{key}_variant_{i}"
            by_key[key] = ConceptItem(
                key=key,
                name=string_from_any(m.get("name")).strip(),
                parent_key=orig.parent_key,
                depth=orig.depth,
                summary=string_from_any(m.get("summary")).strip(),
                aliases=dedupe_strings(string_list_from_any(m.get("aliases"))),
                importance=orig.importance,
                citations=filter_chunk_id_strings(string_list_from_any(m.get("citations")), allowed_chunk_ids),
                extra={"split_from": root, "split_rationale": string_from_any(m.get("rationale")).strip()},
            )

    return sorted(by_key.values(), key=lambda c: c.key)


def assumed_prereq_edges(
    concepts: Iterable[ConceptItem], existing: Iterable[EdgeItem], allowed_chunk_ids: set[str] | None = None
) -> list[EdgeItem]:
    """``prereq`` edges from each assumed concept to the concepts that require it."""
    concepts = list(concepts or [])
    known = {c.key for c in concepts}
    seen = {(e.from_key, e.to_key) for e in existing or []}
    out = []
    for c in concepts:
        for rk in string_list_from_any(c.extra.get("required_by")):
            key = normalize_concept_key(rk)
            if not key or key == c.key or key not in known or (c.key, key) in seen:
                continue
            seen.add((c.key, key))
            out.append(
                EdgeItem(
                    from_key=c.key,
                    to_key=key,
                    edge_type="prereq",
                    strength=ASSUMED_PREREQ_STRENGTH,
                    rationale=ASSUMED_PREREQ_RATIONALE,
                    citations=filter_chunk_id_strings(c.citations, allowed_chunk_ids),
                )
            )
    return out


# ========================================
# Signature seeds
# ========================================


def signature_quality_score(signature: Any) -> float:
    """Blend of text quality and coverage, penalized when the signature has fewer than 6 keys."""
    quality = map_from_any(getattr(signature, "quality", None))
    text_quality = string_from_any(quality.get("text_quality")).strip().lower()
    text_score = {"high": 1.0, "medium": 0.7, "low": 0.3}.get(text_quality, 0.5)
    coverage = clamp01(float_from_any(quality.get("coverage"), 0.5)) if "coverage" in quality else 0.5
    score = (text_score + coverage) / 2
    if len(string_list_from_any(getattr(signature, "concept_keys", None))) < 6:
        score *= 0.6
    return clamp01(score)


def build_concept_seed_from_signatures(
    signatures: Iterable[Any],
    signals: AdaptiveSignals,
    adaptive: bool = True,
    min_files: int = 1,
    min_keys: int = 12,
    min_quality: float = 0.45,
) -> tuple[list[str], SeedMeta]:
    """
    Union of normalized signature concept keys and whether they are good
    enough to steer inventory prompts.

    Returns:
        (sorted seed keys, SeedMeta)
    """
    sigs = [s for s in signatures or [] if s is not None]
    min_files = min_files if min_files > 0 else 1
    min_keys = min_keys if min_keys > 0 else 12
    min_quality = min_quality if min_quality > 0 else 0.45
    if adaptive:
        fc = max(signals.file_count, len(sigs))
        min_files = clamp_int_ceiling(round(fc * 0.5), 1, min_files)
        min_keys = clamp_int_ceiling(round(fc * 3), 6, min_keys)
    min_quality = clamp01(
        adjust_threshold_by_content_type("CONCEPT_GRAPH_SEED_MIN_QUALITY", min_quality, signals.content_type)
    )

    meta = SeedMeta(
        total_files=len(sigs),
        params={"min_files": min_files, "min_keys": min_keys, "min_quality": min_quality},
    )
    if not sigs:
        meta.reason = "no_signatures"
        return [], meta

    keys: list[str] = []
    quality_sum = 0.0
    quality_n = 0
    for s in sigs:
        file_keys = [k for k in (normalize_concept_key(x) for x in string_list_from_any(s.concept_keys)) if k]
        if file_keys:
            meta.files_with_seeds += 1
            keys.extend(file_keys)
        score = signature_quality_score(s)
        if score > 0:
            quality_sum += score
            quality_n += 1
            if score < 0.4:
                meta.low_quality_files += 1

    seeds = sorted(set(keys))
    meta.seed_count = len(seeds)
    meta.avg_quality = quality_sum / quality_n if quality_n else 0.0

    if meta.files_with_seeds < min_files:
        meta.reason = "too_few_files"
    elif meta.seed_count < min_keys:
        meta.reason = "too_few_keys"
    elif meta.avg_quality < min_quality:
        meta.reason = "low_quality"
    else:
        meta.usable = True
    return seeds, meta


# ========================================
# Weakness & coverage sizing
# ========================================


def _is_large(signals: AdaptiveSignals) -> bool:
    return signals.page_count >= 200 or signals.chunk_count >= 600


def _is_very_large(signals: AdaptiveSignals) -> bool:
    return signals.page_count >= 500 or signals.chunk_count >= 1500


def min_concepts_guardrail(signals: AdaptiveSignals) -> int:
    """Floor on inventory size; grows with corpus size for long documents."""
    if signals.page_count < 50 and signals.chunk_count < 200:
        return 12
    g = max(12, round(signals.page_count * 0.08), round(signals.chunk_count * 0.03))
    if signals.file_count > 1:
        g = max(g, signals.file_count * 5)
    return max(g, 20)


def concept_inventory_weak(
    concepts: list[ConceptItem],
    coverage: Coverage,
    seed_count: int,
    signals: AdaptiveSignals,
    adaptive: bool = True,
    min_concepts: int = 12,
    min_coverage_conf: float = 0.35,
) -> tuple[bool, dict[str, Any]]:
    min_concepts = min_concepts if min_concepts > 0 else 12
    if adaptive:
        fc = max(signals.file_count, 1)
        min_concepts = clamp_int_ceiling(round(fc * 3), 6, min_concepts)
    min_concepts = max(min_concepts, min_concepts_guardrail(signals))
    min_cov = min_coverage_conf if min_coverage_conf > 0 else 0.35
    min_cov = clamp01(
        adjust_threshold_by_content_type("CONCEPT_GRAPH_SEED_MIN_COVERAGE_CONF", min_cov, signals.content_type)
    )
    params = {"min_concepts": min_concepts, "min_coverage_conf": min_cov}

    n = len(concepts)
    if n < min_concepts:
        return True, params
    if seed_count > 0 and n < seed_count // 2:
        return True, params
    if 0 < coverage.confidence < min_cov:
        return True, params
    return False, params


def desired_coverage_passes(signals: AdaptiveSignals) -> int:
    if _is_very_large(signals):
        return 3
    if _is_large(signals):
        return 2
    return 1


# ========================================
# Global inventory slices
# ========================================


def _slice_content_scale(content_type: str) -> float:
    return {"slides": 0.85, "code": 0.9}.get((content_type or "").strip().lower(), 1.0)


def build_inventory_slices(chunks: Iterable[Any], slice_count: int) -> list[list[Any]]:
    """Deal chunks (sorted by file then index) round-robin into slices; empty slices are dropped."""
    ordered = sorted(
        (c for c in chunks or [] if c is not None),
        key=lambda c: (str(c.material_file_id), int(c.index or 0)),
    )
    slice_count = max(slice_count, 1)
    slices: list[list[Any]] = [[] for _ in range(slice_count)]
    for i, ch in enumerate(ordered):
        slices[i % slice_count].append(ch)
    return [s for s in slices if s]


def inventory_slice_count(signals: AdaptiveSignals, base_sample: int, slice_max: int) -> int:
    """Slices needed so the sampled share of chunks reaches the target ratio."""
    if signals.chunk_count <= 0 or base_sample <= 0:
        return 1
    ratio = base_sample / signals.chunk_count
    target = 0.1
    if _is_large(signals):
        target = 0.2
    if _is_very_large(signals):
        target = 0.25
    if ratio >= target:
        return 1
    n = math.ceil(target / ratio)
    if slice_max > 0:
        n = min(n, slice_max)
    return max(n, 1)


def inventory_slice_max(signals: AdaptiveSignals, ceiling: int, adaptive: bool) -> int:
    if not adaptive:
        return ceiling if ceiling > 0 else 6
    if signals.page_count > 0:
        v = round(signals.page_count / 120)
    else:
        v = round(signals.chunk_count / 300)
    v = clamp_int_ceiling(v, 3, 12)
    if ceiling > 0:
        v = clamp_int_ceiling(v, 1, ceiling)
    return v


def inventory_slice_max_total(signals: AdaptiveSignals, ceiling: int, adaptive: bool) -> int:
    """Excerpt character budget for one global inventory slice."""
    total = 20000
    if adaptive:
        if signals.page_count > 0:
            total = signals.page_count * 120
        elif signals.chunk_count > 0:
            total = signals.chunk_count * 60
    total = int(round(total * _slice_content_scale(signals.content_type)))
    if adaptive:
        return clamp_int_ceiling(total, 12000, ceiling if ceiling > 0 else 24000)
    if ceiling > 0:
        return clamp_int_ceiling(total, 12000, ceiling)
    return max(total, 8000)


def inventory_slice_concurrency(signals: AdaptiveSignals, slice_count: int, ceiling: int) -> int:
    if slice_count <= 1:
        return 1
    if ceiling > 0:
        return max(1, min(slice_count, ceiling))
    cap = 4
    if _is_large(signals):
        cap = 8
    if _is_very_large(signals):
        cap = 12
    return min(slice_count, cap)


def estimate_inventory_sample_count(
    chunks: Iterable[Any], per_file: int, file_count: int, max_total: int, content_type: str = ""
) -> int:
    """Rough number of chunk lines an excerpt build will emit under its budgets."""
    usable = [c for c in chunks or [] if not is_unextractable_chunk(c) and (c.text or "").strip()]
    if not usable:
        return 0
    limit = len(usable)
    if per_file > 0 and file_count > 0:
        limit = min(limit, per_file * file_count)
    sample = usable[:200]
    avg_len = sum(len(c.text.strip()) for c in sample) / len(sample) if sample else 0
    if avg_len <= 0:
        avg_len = {"slides": 220, "prose": 450, "code": 320}.get(content_type, 360)
    if max_total > 0:
        limit = min(limit, int(max_total // (avg_len + 40)))
    return max(limit, 1)


def slice_file_order(chunks: Iterable[Any], offset: int) -> list[str]:
    """File IDs sorted, then rotated by ``offset`` so each slice leads with a different file."""
    ids = sorted({str(c.material_file_id) for c in chunks or [] if c is not None})
    if not ids:
        return []
    offset %= len(ids)
    return ids[offset:] + ids[:offset]


def boost_inventory_slice_count(base: int, ceiling: int, current_concepts: int, guardrail: int) -> int:
    """Multiply slices (x2 or x3) when the inventory is far below the guardrail."""
    base = max(base, 1)
    if guardrail < 1:
        return base
    current_concepts = max(current_concepts, 1)
    if current_concepts >= guardrail:
        return base
    factor = math.ceil(guardrail / current_concepts)
    if factor < 2:
        return base
    factor = min(factor, 3)
    n = base * factor
    if ceiling > 0:
        n = min(n, ceiling)
    return max(n, base)


# ========================================
# Outline seed topics
# ========================================


def outline_seed_topic_limit(signals: AdaptiveSignals) -> int:
    limit = 40
    if _is_large(signals):
        limit = 80
    if _is_very_large(signals):
        limit = 120
    if signals.file_count > 1:
        limit += clamp_int_ceiling(signals.file_count * 4, 0, 40)
    if (signals.content_type or "").strip().lower() == "slides":
        limit = clamp_int_ceiling(limit // 2, 20, limit)
    return clamp_int_ceiling(limit, 20, 160)


def _looks_like_heading(line: str) -> bool:
    if len(line) < 4 or len(line) > 80:
        return False
    if line.endswith(".") and len(line) < 10:
        return False
    letters = [ch for ch in line if ch.isalpha()]
    if not letters:
        return False
    upper = sum(1 for ch in letters if ch.isupper())
    if upper == len(letters) or (upper > 0 and upper / len(letters) >= 0.6):
        return True
    return bool(_HEADING_NUM_PREFIX.match(line))


def sanitize_outline_title(raw: str) -> str:
    s = (raw or "").strip().strip("*-")
    s = " ".join(s.split())
    s = _HEADING_NUM_PREFIX.sub("", s, count=1).strip()
    return s.strip(".").strip()


def accept_outline_title(title: str) -> bool:
    if not title:
        return False
    lower = title.strip().lower()
    if lower in _REJECTED_TITLES:
        return False
    if "isbn" in lower or "copyright" in lower:
        return False
    if "C++" in title:
        return True
    if len(title) < 3:
        return False
    if _looks_like_heading(title) or _HEADING_NUM_PREFIX.match(title):
        return True
    return sum(1 for ch in title if ch.isalpha()) >= 3 and len(title) <= 90


def _outline_titles(outline: Any, limit: int) -> list[str]:
    out: list[str] = []

    def walk(sections: Any) -> None:
        for sec in sections if isinstance(sections, list) else []:
            if len(out) >= limit:
                return
            if not isinstance(sec, dict):
                continue
            out.append(string_from_any(sec.get("title")))
            walk(sec.get("children"))

    walk(map_from_any(outline).get("sections"))
    return out


def outline_seed_topics(
    files: Iterable[Any], signature_by_file: dict[Any, Any], signals: AdaptiveSignals
) -> list[str]:
    """
    Section titles from file outlines, used to seed the coverage engine's
    missing topics. Reads the signature outline first, then any outline hint
    the extractor left in ``extraction_diagnostics``.
    """
    limit = outline_seed_topic_limit(signals)
    out: list[str] = []
    seen: set[str] = set()
    for f in files or []:
        if f is None:
            continue
        sources = []
        sig = signature_by_file.get(f.id)
        if sig is not None:
            sources.append(getattr(sig, "outline_json", None))
        diagnostics = map_from_any(getattr(f, "extraction_diagnostics", None))
        sources.append(diagnostics.get("outline_hint"))
        for outline in sources:
            for raw in _outline_titles(outline, limit):
                title = sanitize_outline_title(raw)
                if not accept_outline_title(title) or title.lower() in seen:
                    continue
                seen.add(title.lower())
                out.append(title)
                if len(out) >= limit:
                    return out
    return out


def chunk_section_path(chunk: Any) -> str:
    return string_from_any(chunk_meta(chunk).get("section_path")).strip()
