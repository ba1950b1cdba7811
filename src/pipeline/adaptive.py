"""
Adaptive parameters derived from corpus signals.

Signals (file/page/section/chunk counts, content type) are loaded once per
stage run. Parameters are pure functions of signals: the configured value acts
as a ceiling and the derived value is clamped to ``[min, ceiling]``.

Example:
    >>> signals = load_adaptive_signals(session, set_id, path_id)
    >>> per_file = clamp_int_ceiling(round(signals.avg_pages_per_file / 10), 2, 14)
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.db.queries import QUERIES

CONTENT_TYPES = ("code", "prose", "slides", "mixed")

_CODE_EXTS = {
    ".go", ".py", ".js", ".ts", ".java", ".c", ".cc", ".cpp", ".rs", ".cs",
    ".rb", ".php", ".swift", ".kt", ".m",
}
_SLIDE_EXTS = {".ppt", ".pptx", ".key"}

# Threshold deltas in (slides, mixed, code, prose) order
_THRESHOLD_DELTAS: dict[str, tuple[float, float, float, float]] = {
    "CONCEPT_GRAPH_SECTION_MIN_SCORE": (-0.05, -0.02, 0.03, 0.02),
    "GLOBAL_ENTITY_SIM_THRESHOLD": (-0.05, -0.02, 0.03, 0.02),
    "CANONICAL_CONCEPT_SEMANTIC_MIN_SCORE": (-0.04, -0.02, 0.02, 0.03),
    "CONCEPT_GRAPH_SEED_MIN_QUALITY": (-0.05, -0.03, 0.01, 0.03),
    "CONCEPT_GRAPH_SEED_MIN_COVERAGE_CONF": (-0.04, -0.02, 0.01, 0.02),
    "CONCEPT_GRAPH_PATCH_SKIP_MIN_CONF": (0.05, 0.03, -0.01, -0.02),
    "MATERIAL_SIGNAL_RETRIEVAL_WEIGHT": (-0.05, -0.02, 0.05, 0.0),
}

_EXCERPT_CHARS_FACTOR = (0.7, 0.9, 0.85, 1.15)
_EXCERPT_LINES_FACTOR = (0.6, 0.85, 0.75, 1.1)
_MIN_TEXT_CHARS_FACTOR = (0.6, 0.85, 0.9, 1.2)

_FACTOR_INDEX = {"slides": 0, "mixed": 1, "code": 2, "prose": 3}


@dataclass
class AdaptiveSignals:
    """Corpus statistics for one material set (and optionally one path)."""

    material_set_id: UUID | None = None
    path_id: UUID | None = None

    file_count: int = 0
    page_count: int = 0
    section_count: int = 0
    chunk_count: int = 0
    concept_count: int = 0
    edge_count: int = 0
    node_count: int = 0

    avg_pages_per_file: float = 0.0
    avg_chunks_per_file: float = 0.0
    chunks_per_node: float = 0.0

    content_type: str = "mixed"

    def to_meta(self) -> dict[str, Any]:
        return {
            "file_count": self.file_count,
            "page_count": self.page_count,
            "section_count": self.section_count,
            "chunk_count": self.chunk_count,
            "concept_count": self.concept_count,
            "edge_count": self.edge_count,
            "node_count": self.node_count,
            "avg_pages_per_file": self.avg_pages_per_file,
            "avg_chunks_per_file": self.avg_chunks_per_file,
            "chunks_per_node": self.chunks_per_node,
            "content_type": self.content_type,
        }

    def finalize(self) -> AdaptiveSignals:
        """Recompute the derived averages from the raw counts."""
        self.avg_pages_per_file = _safe_div(self.page_count, self.file_count)
        self.avg_chunks_per_file = _safe_div(self.chunk_count, self.file_count)
        self.chunks_per_node = _safe_div(self.chunk_count, max(self.node_count, 1))
        return self


@dataclass
class AdaptiveParam:
    """A bounded parameter: ``actual`` when adaptive, else ``ceiling``."""

    name: str
    ceiling: int
    actual: int
    enabled: bool = True

    @property
    def value(self) -> int:
        return self.actual if self.enabled else self.ceiling

    def to_meta(self) -> dict[str, int]:
        return {"actual": self.actual, "ceiling": self.ceiling}


@dataclass
class AdaptiveParams:
    """Collects the parameters a stage derived, for its output metadata."""

    stage: str
    enabled: bool
    signals: AdaptiveSignals
    params: dict[str, Any] = field(default_factory=dict)

    def record(self, name: str, actual: int | float, ceiling: int | float) -> None:
        self.params[name] = {"actual": actual, "ceiling": ceiling}

    def to_meta(self) -> dict[str, Any]:
        return adaptive_stage_meta(self.stage, self.enabled, self.signals, self.params)


def _safe_div(n: int, d: int) -> float:
    if d <= 0:
        return 0.0
    return float(n) / float(d)


def clamp_int_ceiling(v: int, lo: int, ceiling: int) -> int:
    """Floor at ``lo``; cap at ``ceiling`` only when ceiling > 0."""
    if v < lo:
        v = lo
    if ceiling > 0 and v > ceiling:
        v = ceiling
    return v


def clamp_float_ceiling(v: float, lo: float, ceiling: float) -> float:
    if v < lo:
        v = lo
    if ceiling > 0 and v > ceiling:
        v = ceiling
    return v


def adaptive_from_ratio(total: int, ratio: float, lo: int, ceiling: int) -> int:
    if total <= 0:
        return clamp_int_ceiling(lo, lo, ceiling)
    return clamp_int_ceiling(int(round(total * ratio)), lo, ceiling)


def adaptive_stage_meta(stage: str, enabled: bool, signals: AdaptiveSignals, params: dict[str, Any]) -> dict[str, Any]:
    return {
        "stage": stage,
        "enabled": enabled,
        "signals": signals.to_meta(),
        "params": params,
    }


def detect_content_type(files: list[Any]) -> str:
    """
    Classify a material set as slides, code, prose or mixed.

    A set is slides/code when at least 60% of its files are; prose when no
    file is either; otherwise mixed.
    """
    if not files:
        return "mixed"
    code_count = 0
    slide_count = 0
    for f in files:
        name = (getattr(f, "original_name", "") or "").strip().lower()
        mime = (getattr(f, "mime_type", "") or "").strip().lower()
        kind = (getattr(f, "extracted_kind", "") or "").strip().lower()
        ext = os.path.splitext(name)[1]
        if ext in _SLIDE_EXTS or "presentation" in mime or "slides" in kind:
            slide_count += 1
            continue
        # text/plain only counts when the extension says code
        if ext in _CODE_EXTS or mime.startswith("text/x-"):
            code_count += 1

    total = len(files)
    if slide_count * 100 >= total * 60:
        return "slides"
    if code_count * 100 >= total * 60:
        return "code"
    if slide_count == 0 and code_count == 0:
        return "prose"
    return "mixed"


def adjust_threshold_by_content_type(name: str, base: float, content_type: str) -> float:
    deltas = _THRESHOLD_DELTAS.get(name)
    idx = _FACTOR_INDEX.get((content_type or "").strip().lower())
    if deltas is None or idx is None:
        return base
    return base + deltas[idx]


def _scale(base: int, factors: tuple[float, float, float, float], content_type: str) -> int:
    if base <= 0:
        return base
    idx = _FACTOR_INDEX.get((content_type or "").strip().lower())
    factor = factors[idx] if idx is not None else 1.0
    return int(round(base * factor))


def adjust_excerpt_chars_by_content_type(base: int, content_type: str) -> int:
    return _scale(base, _EXCERPT_CHARS_FACTOR, content_type)


def adjust_excerpt_lines_by_content_type(base: int, content_type: str) -> int:
    return _scale(base, _EXCERPT_LINES_FACTOR, content_type)


def adjust_min_text_chars_by_content_type(base: int, content_type: str) -> int:
    return _scale(base, _MIN_TEXT_CHARS_FACTOR, content_type)


def _scalar(session: Session, query: str, params: dict[str, Any]) -> int:
    try:
        return int(session.execute(text(query), params).scalar() or 0)
    except SQLAlchemyError as e:
        logger.warning(f"Adaptive signal query failed: {e}")
        return 0


def load_adaptive_signals(
    session: Session, material_set_id: UUID | None, path_id: UUID | None = None
) -> AdaptiveSignals:
    """
    Load corpus signals for a material set.

    Counting is best-effort: a failing count query leaves that signal at 0.
    The page count falls back to ``ceil(chunks / 3)`` when chunks carry no
    page numbers.
    """
    out = AdaptiveSignals(material_set_id=material_set_id, path_id=path_id)
    if session is None or material_set_id is None:
        return out

    try:
        files = session.execute(text(QUERIES["signal_files"]), {"set_id": material_set_id}).all()
    except SQLAlchemyError as e:
        logger.warning(f"Adaptive signals unavailable for set {material_set_id}: {e}")
        return out

    out.file_count = len(files)
    if not files:
        return out
    file_ids = [f.id for f in files if f.id is not None]
    out.content_type = detect_content_type(files)

    params = {"file_ids": file_ids}
    out.chunk_count = _scalar(session, QUERIES["count_chunks"], params)
    out.page_count = _scalar(session, QUERIES["count_pages"], params)
    if out.page_count == 0 and out.chunk_count > 0:
        out.page_count = max(1, math.ceil(out.chunk_count / 3.0))
    out.section_count = _scalar(session, QUERIES["count_sections"], params)

    if path_id is not None:
        out.concept_count = _scalar(session, QUERIES["count_path_concepts"], {"path_id": path_id})
        out.edge_count = _scalar(session, QUERIES["count_path_edges"], {"path_id": path_id})
        out.node_count = _scalar(session, QUERIES["count_path_nodes"], {"path_id": path_id})

    return out.finalize()


def signals_from_corpus(files: list[Any], chunks: list[Any], content_type: str | None = None) -> AdaptiveSignals:
    """Compute signals from already-loaded files and chunks (no DB)."""
    out = AdaptiveSignals(file_count=len(files or []), chunk_count=len(chunks or []))
    pages = {ch.page for ch in chunks or [] if getattr(ch, "page", None) is not None}
    out.page_count = len(pages)
    if out.page_count == 0 and out.chunk_count > 0:
        out.page_count = max(1, math.ceil(out.chunk_count / 3.0))
    sections = set()
    for ch in chunks or []:
        meta = getattr(ch, "meta", None) or {}
        sp = str(meta.get("section_path") or "").strip() if isinstance(meta, dict) else ""
        if sp:
            sections.add(sp)
    out.section_count = len(sections)
    out.content_type = content_type or detect_content_type(files or [])
    return out.finalize()
